"""
Core contracts and data structures for ShelfScout.

Defines the job model owned by the queue, the options recognised by the scrape
capability, and the protocols for the external collaborators the orchestration
layer consumes (scraper, page renderer) or produces to (event listeners).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

# ============================================================================
# Enums
# ============================================================================


class JobState(str, Enum):
    """Lifecycle states of a scrape job."""

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"
    STALLED = "stalled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


class JobEvent(str, Enum):
    """Event names published on the event bus."""

    CREATED = "job_created"
    COMPLETED = "job_completed"
    FAILED = "job_failed"


STALLED_REASON = "stalled"

# ============================================================================
# Options and values
# ============================================================================


class ScrapeOptions(BaseModel):
    """Options recognised by the scrape capability.

    Unset fields fall back to the queue configuration.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    selectors: Dict[str, str] = Field(default_factory=dict, description="Field name to CSS selector.")
    save_result: bool = Field(default=True, description="Keep the scraped fields on the job record.")
    timeout_ms: Optional[int] = Field(default=None, gt=0, description="Hard ceiling on processing time.")
    max_retries: Optional[int] = Field(default=None, ge=0, description="Automatic retries after the first attempt.")


@dataclass
class ErrorInfo:
    """Error information recorded on a failed job."""

    error_type: str = ""
    error_message: str = ""
    is_retryable: bool = True
    context: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_exception(cls, exc: BaseException, **context: Any) -> ErrorInfo:
        return cls(
            error_type=type(exc).__name__,
            error_message=str(exc),
            is_retryable=bool(getattr(exc, "retryable", False)),
            context=context,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": self.error_type,
            "error_message": self.error_message,
            "is_retryable": self.is_retryable,
            "context": self.context,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ErrorInfo:
        return cls(
            error_type=data.get("error_type", ""),
            error_message=data.get("error_message", ""),
            is_retryable=data.get("is_retryable", True),
            context=data.get("context", {}),
        )


def _iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


@dataclass
class Job:
    """A unit of scrape work tracked by the job queue."""

    id: str
    url: str
    options: ScrapeOptions = field(default_factory=ScrapeOptions)
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    progress: int = 0
    result: Optional[Dict[str, Any]] = None
    failure_reason: Optional[str] = None
    error: Optional[ErrorInfo] = None
    created_at: float = 0.0
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    progress_at: Optional[float] = None
    available_at: Optional[float] = None
    claim_token: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Query view of the job."""
        view: Dict[str, Any] = {
            "id": self.id,
            "url": self.url,
            "state": self.state.value,
            "progress": self.progress,
            "attemptsMade": self.attempts_made,
            "createdAt": _iso(self.created_at),
            "startedAt": _iso(self.started_at),
            "finishedAt": _iso(self.finished_at),
        }
        if self.state is JobState.FAILED:
            view["failureReason"] = self.failure_reason
        else:
            view["result"] = self.result
        return view


@dataclass(frozen=True)
class JobHandle:
    """Returned by ``JobQueue.submit``."""

    id: str
    url: str
    state: JobState = JobState.WAITING


@dataclass
class RenderedPage:
    """Output of the page rendering capability."""

    url: str
    status: int
    html: str = ""
    links: List[str] = field(default_factory=list)
    headers: Dict[str, str] = field(default_factory=dict)


# ============================================================================
# Collaborator protocols
# ============================================================================


@runtime_checkable
class ScrapeCapability(Protocol):
    """Fetch a URL and extract fields from it."""

    async def scrape(self, url: str, options: ScrapeOptions) -> Dict[str, Any]:
        ...


@runtime_checkable
class PageRenderer(Protocol):
    """Fetch and render a page, returning its links.

    Implementations raise ``FetchTimeout``, ``Blocked`` or ``NetworkError`` for
    per-page failures and ``CapabilityUnavailable`` when rendering is impossible.
    """

    async def render(
        self,
        url: str,
        *,
        proxy: Optional[str] = None,
        identity: Optional[str] = None,
        timeout: float = 30.0,
    ) -> RenderedPage:
        ...


@runtime_checkable
class EventListener(Protocol):
    """Receives job lifecycle events from the event bus."""

    async def notify(self, event: str, payload: Dict[str, Any], timestamp: float) -> None:
        ...
