"""
Retry policy for job attempts.

The worker does not decide retries itself: it hands the attempt outcome to a
``RetryPolicy`` and applies the returned ``RetryDecision``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional

from shelfscout.protocols import ErrorInfo

if TYPE_CHECKING:
    from shelfscout.config.config import QueueConfig


class RetryAction(str, Enum):
    SUCCEED = "succeed"
    RETRY = "retry"
    FAIL = "fail"


@dataclass(frozen=True)
class RetryDecision:
    action: RetryAction
    delay: float = 0.0
    reason: Optional[str] = None

    @classmethod
    def succeed(cls) -> RetryDecision:
        return cls(RetryAction.SUCCEED)

    @classmethod
    def retry(cls, delay: float, reason: Optional[str] = None) -> RetryDecision:
        return cls(RetryAction.RETRY, delay=delay, reason=reason)

    @classmethod
    def fail(cls, reason: Optional[str]) -> RetryDecision:
        return cls(RetryAction.FAIL, reason=reason)


@dataclass
class JobOutcome:
    """Result of one attempt: either scraped fields or an error."""

    result: Optional[Dict[str, Any]] = None
    error: Optional[ErrorInfo] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, result: Dict[str, Any]) -> JobOutcome:
        return cls(result=result)

    @classmethod
    def failure(cls, exc: BaseException, **context: Any) -> JobOutcome:
        return cls(error=ErrorInfo.from_exception(exc, **context))


class RetryPolicy:
    """Bounded exponential backoff.

    ``attempts_made`` counts attempts including the one that just finished, so a
    policy with ``max_retries=2`` allows three attempts in total.
    """

    def __init__(
        self,
        max_retries: int = 2,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        multiplier: float = 2.0,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.multiplier = multiplier

    @classmethod
    def from_config(cls, config: QueueConfig) -> RetryPolicy:
        return cls(
            max_retries=config.max_retries,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
            multiplier=config.retry_multiplier,
        )

    def backoff(self, attempts_made: int) -> float:
        exponent = max(0, attempts_made - 1)
        return min(self.max_delay, self.base_delay * (self.multiplier**exponent))

    def decide(self, outcome: JobOutcome, attempts_made: int, max_retries: Optional[int] = None) -> RetryDecision:
        if outcome.ok:
            return RetryDecision.succeed()

        assert outcome.error is not None
        reason = outcome.error.error_message or outcome.error.error_type
        if not outcome.error.is_retryable:
            return RetryDecision.fail(reason)

        limit = self.max_retries if max_retries is None else max_retries
        if attempts_made > limit:
            return RetryDecision.fail(reason)
        return RetryDecision.retry(self.backoff(attempts_made), reason)
