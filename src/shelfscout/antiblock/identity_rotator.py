"""
User agent rotation.

Cycles a fixed, pre-loaded list of user agent strings in order.
"""

from __future__ import annotations

import asyncio
from typing import Dict, List, Optional, Sequence

from shelfscout.exceptions import NoIdentitiesAvailable

# Used when no user agents are configured.
DEFAULT_USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10.15; rv:121.0) Gecko/20100101 Firefox/121.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.1 Safari/605.1.15",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36 Edg/120.0.0.0",
]


class IdentityRotator:
    """Round-robin over user agent strings. No banning."""

    def __init__(self, user_agents: Optional[Sequence[str]] = None) -> None:
        self._agents: List[str] = [ua for ua in (user_agents or []) if ua and ua.strip()]
        self._index = 0
        self._lock = asyncio.Lock()

    @classmethod
    def with_defaults(cls, user_agents: Optional[Sequence[str]] = None) -> IdentityRotator:
        """Build a rotator, falling back to the built-in desktop browsers."""
        return cls(user_agents or DEFAULT_USER_AGENTS)

    async def next(self) -> str:
        async with self._lock:
            if not self._agents:
                raise NoIdentitiesAvailable()
            agent = self._agents[self._index]
            self._index = (self._index + 1) % len(self._agents)
            return agent

    def __len__(self) -> int:
        return len(self._agents)

    def get_stats(self) -> Dict[str, int]:
        return {"total_user_agents": len(self._agents), "next_index": self._index}
