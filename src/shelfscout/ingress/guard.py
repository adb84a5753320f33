"""Rate limiting and duplicate suppression at the submission boundary."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any, Callable, Iterable, Mapping, Optional

import structlog

from shelfscout.exceptions import DuplicateRequest, RateLimited
from shelfscout.observability import increment

from .dedup import DedupCache, payload_hash
from .rate_limiter import RateLimitResult, SlidingWindowRateLimiter

if TYPE_CHECKING:
    from shelfscout.config.config import IngressConfig

logger = structlog.get_logger(__name__)


class IngressGuard:
    """Combines the per-client rate limiter with the dedup cache."""

    def __init__(
        self,
        rate_limiter: SlidingWindowRateLimiter,
        dedup_cache: DedupCache,
    ) -> None:
        self.rate_limiter = rate_limiter
        self.dedup_cache = dedup_cache

    @classmethod
    def from_config(cls, config: IngressConfig, clock: Callable[[], float] = time.time) -> IngressGuard:
        return cls(
            SlidingWindowRateLimiter(
                config.rate_limit,
                config.window_seconds,
                clock=clock,
                max_clients=config.max_tracked_clients,
            ),
            DedupCache(
                window_seconds=config.dedup_window_seconds,
                max_entries=config.dedup_max_entries,
                retention_seconds=config.dedup_retention_seconds,
                clock=clock,
            ),
        )

    async def check_rate(self, client_id: str) -> RateLimitResult:
        return await self.rate_limiter.check(client_id)

    def check_duplicate(self, request_hash: str) -> bool:
        return self.dedup_cache.is_duplicate(request_hash)

    def register_request(self, request_hash: str) -> None:
        self.dedup_cache.register(request_hash)

    async def admit(
        self,
        client_id: str,
        urls: Iterable[str],
        options: Optional[Mapping[str, Any]] = None,
    ) -> RateLimitResult:
        """Check a submission and register it.

        Raises:
            RateLimited: the client exceeded its window.
            DuplicateRequest: the same payload was seen moments ago.
        """
        rate = await self.check_rate(client_id)
        if not rate.allowed:
            increment("ingress_rejections", labels={"reason": "rate_limited"})
            logger.warning("Submission rate limited", client_id=client_id, retry_after=rate.retry_after)
            raise RateLimited(client_id, rate.retry_after, rate.reset_at, rate.limit)

        request_hash = payload_hash(urls, options)
        if self.check_duplicate(request_hash):
            increment("ingress_rejections", labels={"reason": "duplicate"})
            retry_after = self.dedup_cache.retry_after(request_hash)
            logger.warning("Duplicate submission rejected", client_id=client_id, request_hash=request_hash[:12])
            raise DuplicateRequest(request_hash, retry_after)

        self.register_request(request_hash)
        return rate

    async def compact(self) -> None:
        await self.rate_limiter.compact()
        self.dedup_cache.purge()
