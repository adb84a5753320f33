"""Submission boundary protection."""

from .dedup import DedupCache, payload_hash
from .guard import IngressGuard
from .rate_limiter import RateLimitResult, SlidingWindowRateLimiter

__all__ = ["DedupCache", "IngressGuard", "RateLimitResult", "SlidingWindowRateLimiter", "payload_hash"]
