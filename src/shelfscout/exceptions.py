"""
Exception hierarchy for ShelfScout.

Every error raised by the orchestration layer derives from ``ShelfScoutError``.
Errors carry a ``retryable`` flag which the retry policy consults when a job
fails.
"""

from __future__ import annotations

from typing import Optional


class ShelfScoutError(Exception):
    """Base class for all ShelfScout errors."""

    retryable: bool = False

    def __init__(self, message: str = "", *, retryable: Optional[bool] = None) -> None:
        super().__init__(message or self.__class__.__name__)
        if retryable is not None:
            self.retryable = retryable


class NotInitialized(ShelfScoutError):
    """Raised when a component is used before ``initialize()``."""

    def __init__(self, component: str) -> None:
        super().__init__(f"{component} is not initialized")
        self.component = component


class JobNotFound(ShelfScoutError):
    """Raised when a job id is unknown to the store."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class InvalidJobState(ShelfScoutError):
    """Raised when an operation is not allowed in the job's current state."""

    def __init__(self, job_id: str, state: str, operation: str) -> None:
        super().__init__(f"Cannot {operation} job {job_id} in state '{state}'")
        self.job_id = job_id
        self.state = state
        self.operation = operation


class MaxRetriesExceeded(ShelfScoutError):
    def __init__(self, job_id: str, attempts_made: int) -> None:
        super().__init__(f"Job {job_id} exhausted its retries after {attempts_made} attempts")
        self.job_id = job_id
        self.attempts_made = attempts_made


class StalledJob(ShelfScoutError):
    """Recorded on jobs that stopped reporting progress while active."""

    retryable = True

    def __init__(self, job_id: str, idle_seconds: float) -> None:
        super().__init__("stalled")
        self.job_id = job_id
        self.idle_seconds = idle_seconds


# --- Fetch errors ---


class FetchError(ShelfScoutError):
    """A single page fetch failed. Crawl branches swallow these."""

    retryable = True

    def __init__(self, message: str, url: Optional[str] = None) -> None:
        super().__init__(message)
        self.url = url


class FetchTimeout(FetchError):
    def __init__(self, url: Optional[str] = None, timeout: Optional[float] = None) -> None:
        super().__init__(f"Timed out after {timeout}s fetching {url}", url=url)
        self.timeout = timeout


class Blocked(FetchError):
    """The target answered with a block status (403/429)."""

    def __init__(self, status: int, url: Optional[str] = None) -> None:
        super().__init__(f"Blocked with HTTP {status} fetching {url}", url=url)
        self.status = status


class NetworkError(FetchError):
    def __init__(self, message: str, url: Optional[str] = None, proxy_failure: bool = False) -> None:
        super().__init__(message, url=url)
        self.proxy_failure = proxy_failure


class CapabilityUnavailable(ShelfScoutError):
    """The rendering or scraping capability cannot be used at all."""

    retryable = True


# --- Rotation errors ---


class AllProxiesBanned(ShelfScoutError):
    # Fatal for the current fetch, but the job may be retried later.
    retryable = True

    def __init__(self, total: int) -> None:
        super().__init__(f"All {total} proxies are banned")
        self.total = total


class NoIdentitiesAvailable(ShelfScoutError):
    def __init__(self) -> None:
        super().__init__("No user agents configured")


# --- Ingress errors ---


class RateLimited(ShelfScoutError):
    def __init__(self, client_id: str, retry_after: int, reset_at: float, limit: int) -> None:
        super().__init__(f"Rate limit of {limit} requests exceeded for {client_id}; retry after {retry_after}s")
        self.client_id = client_id
        self.retry_after = retry_after
        self.reset_at = reset_at
        self.limit = limit


class DuplicateRequest(ShelfScoutError):
    def __init__(self, payload_hash: str, retry_after: float) -> None:
        super().__init__(f"Duplicate request {payload_hash[:12]}; retry after {retry_after:.1f}s")
        self.payload_hash = payload_hash
        self.retry_after = retry_after


BLOCK_STATUSES = frozenset({403, 429})


def is_block_signal(error: BaseException) -> bool:
    """Whether *error* means the proxy used for the fetch should be banned."""
    if isinstance(error, Blocked):
        return error.status in BLOCK_STATUSES
    if isinstance(error, NetworkError):
        return error.proxy_failure
    return False
