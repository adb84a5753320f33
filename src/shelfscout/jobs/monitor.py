"""
Periodic recovery sweeps for the job store.

``StallMonitor`` takes back active jobs that stopped reporting progress so a
hung fetch cannot hold a worker slot forever. ``RetentionSweeper`` deletes
terminal jobs once they are older than the retention TTL.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable, List, Optional

import structlog

from shelfscout.events import EventBus
from shelfscout.exceptions import StalledJob
from shelfscout.jobs.retry import RetryPolicy
from shelfscout.jobs.store import JobStore
from shelfscout.observability import increment
from shelfscout.protocols import STALLED_REASON, ErrorInfo, JobEvent, JobState

logger = structlog.get_logger(__name__)


class _PeriodicSweep:
    """Runs ``sweep()`` every *interval* seconds until cancelled."""

    name = "sweep"

    async def sweep(self) -> object:
        raise NotImplementedError

    async def run(self, interval: float) -> None:
        while True:
            try:
                await self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Sweep failed", sweep=self.name, error=str(e), exc_info=True)
            await asyncio.sleep(interval)


class StallMonitor(_PeriodicSweep):
    """Fails (or requeues) active jobs with no progress past the threshold."""

    name = "stall"

    def __init__(
        self,
        store: JobStore,
        events: EventBus,
        stall_threshold: float = 60.0,
        requeue: bool = False,
        policy: Optional[RetryPolicy] = None,
        interrupt: Optional[Callable[[str], None]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.events = events
        self.stall_threshold = stall_threshold
        self.requeue = requeue
        self.policy = policy or RetryPolicy()
        self._interrupt = interrupt
        self._clock = clock
        self.recovered = 0

    async def sweep(self) -> List[str]:
        now = self._clock()
        stalled = await self.store.find_stalled(now - self.stall_threshold)
        recovered: List[str] = []

        for job in stalled:
            if job.claim_token is None:
                continue
            last_seen = job.progress_at or job.started_at or job.created_at
            idle = now - last_seen
            error = ErrorInfo.from_exception(StalledJob(job.id, idle), idle_seconds=round(idle, 3))

            max_retries = job.options.max_retries if job.options.max_retries is not None else self.policy.max_retries
            if self.requeue and job.attempts_made <= max_retries:
                changed = await self.store.requeue(job.id, JobState.ACTIVE, token=job.claim_token)
                action = "requeued"
            else:
                changed = await self.store.fail(job.id, job.claim_token, STALLED_REASON, error)
                action = "failed"

            if not changed:
                # The worker finished or the job was cancelled after the query.
                continue

            if self._interrupt is not None:
                self._interrupt(job.id)

            increment("jobs_stalled")
            recovered.append(job.id)
            logger.warning(
                "Stalled job recovered",
                job_id=job.id,
                action=action,
                idle_seconds=round(idle, 1),
                attempts_made=job.attempts_made,
            )
            if action == "failed":
                increment("jobs_failed", labels={"reason": STALLED_REASON})
                self.events.publish(
                    JobEvent.FAILED.value,
                    {"jobId": job.id, "url": job.url, "error": STALLED_REASON, "attemptsMade": job.attempts_made},
                )

        self.recovered += len(recovered)
        return recovered


class RetentionSweeper(_PeriodicSweep):
    """Purges completed and failed jobs older than the retention TTL."""

    name = "retention"

    def __init__(self, store: JobStore, retention_seconds: float = 86400.0, clock: Callable[[], float] = time.time):
        self.store = store
        self.retention_seconds = retention_seconds
        self._clock = clock

    async def sweep(self) -> int:
        purged = await self.store.purge_terminal(self._clock() - self.retention_seconds)
        if purged:
            increment("jobs_purged", purged)
            logger.info("Purged terminal jobs", count=purged, retention_seconds=self.retention_seconds)
        return purged
