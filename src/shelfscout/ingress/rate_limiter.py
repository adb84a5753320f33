"""
Sliding window rate limiting for the submission boundary.

Each client identifier owns a deque of request timestamps. Timestamps older
than the window are pruned lazily on every check, and idle clients are dropped
by ``compact()``, which also runs from ``check()`` once more than
``max_clients`` identifiers are tracked.
"""

from __future__ import annotations

import asyncio
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""

    allowed: bool
    remaining: int
    limit: int
    reset_at: float
    retry_after: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"allowed": self.allowed, "remaining": self.remaining, "resetAt": self.reset_at}


class SlidingWindowRateLimiter:
    """In-memory sliding window limiter keyed by client identifier."""

    def __init__(
        self,
        limit: int = 60,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
        max_clients: int = 10_000,
    ) -> None:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self.limit = limit
        self.window_seconds = window_seconds
        self.max_clients = max_clients
        self._compact_at = max_clients
        self._clock = clock
        self._request_history: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = asyncio.Lock()

        logger.info("Rate limiter initialized", limit=limit, window_seconds=window_seconds)

    async def check(self, identifier: str) -> RateLimitResult:
        """Record a request for *identifier* if it fits in the window."""
        async with self._lock:
            current_time = self._clock()
            history = self._request_history[identifier]

            cutoff_time = current_time - self.window_seconds
            while history and history[0] <= cutoff_time:
                history.popleft()

            current_count = len(history)
            is_allowed = current_count < self.limit
            if is_allowed:
                history.append(current_time)
                remaining = self.limit - current_count - 1
                # The window frees its first slot when the oldest request ages out.
                reset_at = history[0] + self.window_seconds
                retry_after = 0
            else:
                remaining = 0
                reset_at = history[0] + self.window_seconds
                retry_after = max(1, int(reset_at - current_time + 0.999))

            if len(self._request_history) > self._compact_at:
                self._drop_idle(cutoff_time)
                # Clients still active in the window stay; back off until the map doubles.
                self._compact_at = max(self.max_clients, 2 * len(self._request_history))

            return RateLimitResult(
                allowed=is_allowed,
                remaining=remaining,
                limit=self.limit,
                reset_at=reset_at,
                retry_after=retry_after,
            )

    async def compact(self) -> int:
        """Drop clients whose whole history has aged out. Returns clients removed."""
        async with self._lock:
            return self._drop_idle(self._clock() - self.window_seconds)

    def _drop_idle(self, cutoff_time: float) -> int:
        stale = [key for key, history in self._request_history.items() if not history or history[-1] <= cutoff_time]
        for key in stale:
            del self._request_history[key]
        if stale:
            logger.debug("Compacted rate limiter", removed=len(stale), tracked=len(self._request_history))
        return len(stale)

    async def reset(self, identifier: str) -> None:
        async with self._lock:
            self._request_history.pop(identifier, None)

    def tracked_clients(self) -> int:
        return len(self._request_history)
