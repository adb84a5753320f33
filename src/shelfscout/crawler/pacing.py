"""
Politeness pacing between successive fetches to the same domain.
"""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Dict
from urllib.parse import urlparse

import structlog

logger = structlog.get_logger(__name__)


class PolitenessPacer:
    """
    Enforces a minimum delay between requests to one domain.

    The first request to a domain goes out immediately; each later one waits
    until ``delay_seconds`` have passed since the previous request started.
    """

    def __init__(
        self,
        delay_seconds: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.delay_seconds = delay_seconds
        self._clock = clock
        self._sleep = sleep
        self._last_request: Dict[str, float] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _get_domain_lock(self, domain: str) -> asyncio.Lock:
        if domain not in self._locks:
            self._locks[domain] = asyncio.Lock()
        return self._locks[domain]

    async def wait(self, url: str) -> float:
        """Sleep until a request to *url*'s domain is allowed. Returns the delay applied."""
        domain = urlparse(url).netloc.lower()
        async with self._get_domain_lock(domain):
            delay = 0.0
            last = self._last_request.get(domain)
            if last is not None and self.delay_seconds > 0:
                delay = self.delay_seconds - (self._clock() - last)
                if delay > 0:
                    logger.debug("Pacing request", domain=domain, delay=round(delay, 3))
                    await self._sleep(delay)
                else:
                    delay = 0.0
            self._last_request[domain] = self._clock()
            return delay

    def reset(self) -> None:
        self._last_request.clear()
