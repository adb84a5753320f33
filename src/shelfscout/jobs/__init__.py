"""Durable job queue, worker pool and recovery sweeps."""

from .job_queue import JobQueue, resolve_pagination
from .monitor import RetentionSweeper, StallMonitor
from .retry import JobOutcome, RetryAction, RetryDecision, RetryPolicy
from .store import JobStore

__all__ = [
    "JobOutcome",
    "JobQueue",
    "JobStore",
    "RetentionSweeper",
    "RetryAction",
    "RetryDecision",
    "RetryPolicy",
    "StallMonitor",
    "resolve_pagination",
]
