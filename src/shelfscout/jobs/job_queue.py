"""
Durable job queue with a bounded worker pool.

Jobs are persisted in a ``JobStore``. ``concurrency`` worker coroutines claim
the oldest waiting job, run the scrape capability under a hard timeout and
hand the outcome to the ``RetryPolicy``. Terminal transitions are published on
the ``EventBus``.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union
from uuid import uuid4

import structlog
from structlog.contextvars import bind_contextvars

from shelfscout.config.config import QueueConfig
from shelfscout.events import EventBus
from shelfscout.exceptions import FetchTimeout, InvalidJobState, JobNotFound, MaxRetriesExceeded, NotInitialized
from shelfscout.jobs.monitor import RetentionSweeper, StallMonitor
from shelfscout.jobs.retry import JobOutcome, RetryAction, RetryPolicy
from shelfscout.jobs.store import JobStore
from shelfscout.observability import gauge, histogram, increment
from shelfscout.protocols import Job, JobEvent, JobHandle, JobState, ScrapeCapability, ScrapeOptions

logger = structlog.get_logger(__name__)

OptionsLike = Union[ScrapeOptions, Mapping[str, Any], None]

# Progress reported when a worker starts an attempt. Completion sets 100.
PROGRESS_STARTED = 10


def resolve_pagination(
    page: Optional[int] = None,
    limit: Optional[int] = None,
    start: Optional[int] = None,
    end: Optional[int] = None,
) -> Tuple[int, int]:
    """Translate ``page``/``limit`` or inclusive ``start``/``end`` into offset and limit."""
    if start is not None or end is not None:
        start = start or 0
        if end is None:
            end = start + (limit or 10) - 1
        if start < 0 or end < start:
            raise ValueError(f"Invalid range start={start} end={end}")
        return start, end - start + 1

    page = page or 1
    limit = limit or 10
    if page < 1 or limit < 1:
        raise ValueError(f"Invalid pagination page={page} limit={limit}")
    return (page - 1) * limit, limit


class JobQueue:
    """Submits, tracks and processes scrape jobs."""

    def __init__(
        self,
        store: JobStore,
        scraper: ScrapeCapability,
        events: Optional[EventBus] = None,
        policy: Optional[RetryPolicy] = None,
        config: Optional[QueueConfig] = None,
    ) -> None:
        self.config = config or QueueConfig()
        self.store = store
        self.scraper = scraper
        self.events = events or EventBus()
        self.policy = policy or RetryPolicy.from_config(self.config)
        self.concurrency = self.config.concurrency

        self.stall_monitor = StallMonitor(
            store,
            self.events,
            stall_threshold=self.config.stall_threshold_seconds,
            requeue=self.config.requeue_stalled,
            policy=self.policy,
            interrupt=self._interrupt,
            clock=store.clock,
        )
        self.retention = RetentionSweeper(store, self.config.retention_seconds, clock=store.clock)

        self._initialized = False
        self._running: Dict[str, asyncio.Task[None]] = {}
        self._claims: Dict[str, str] = {}
        self._workers: List[asyncio.Task[None]] = []
        self._background: List[asyncio.Task[None]] = []
        self._wakeup = asyncio.Event()
        self.stats: Dict[str, int] = {
            "submitted": 0,
            "processed": 0,
            "completed": 0,
            "failed": 0,
            "retried": 0,
            "cancelled": 0,
            "discarded": 0,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        await self.store.initialize()
        self._initialized = True

    async def start(self) -> None:
        """Spawn the worker pool and the recovery sweeps."""
        if not self._initialized:
            await self.initialize()
        if self._workers:
            return

        for i in range(self.concurrency):
            self._workers.append(asyncio.create_task(self._worker(f"worker-{i}"), name=f"shelfscout-worker-{i}"))
        self._background = [
            asyncio.create_task(self.stall_monitor.run(self.config.stall_check_interval), name="shelfscout-stall"),
            asyncio.create_task(self.retention.run(self.config.retention_check_interval), name="shelfscout-retention"),
        ]
        logger.info("Job queue started", concurrency=self.concurrency, db_path=self.store.db_path)

    async def stop(self) -> None:
        """Cancel workers and sweeps. Jobs interrupted mid-attempt go back to ``waiting``."""
        in_flight = dict(self._claims)
        tasks = self._workers + self._background + list(self._running.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._background = []

        # Token-guarded, so a job already recovered or cancelled is left alone.
        requeued: List[str] = []
        for job_id, token in in_flight.items():
            if await self.store.requeue(job_id, JobState.ACTIVE, token=token):
                requeued.append(job_id)
        if requeued:
            self._wakeup.set()
            logger.info("Requeued interrupted jobs", count=len(requeued), job_ids=requeued)

    async def close(self) -> None:
        await self.stop()
        await self.events.drain(timeout=5.0)
        await self.store.close()
        self._initialized = False
        logger.info("Job queue closed", **self.stats)

    async def __aenter__(self) -> JobQueue:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    @property
    def is_running(self) -> bool:
        return bool(self._workers)

    def _require_initialized(self) -> None:
        if not self._initialized or not self.store.initialized:
            raise NotInitialized("JobQueue")

    # ------------------------------------------------------------------
    # Submission and queries
    # ------------------------------------------------------------------

    def validate_submission(self, urls: Iterable[str], options: OptionsLike = None) -> ScrapeOptions:
        """Check every URL and the options without creating anything.

        Raises ``ValueError`` (pydantic's ``ValidationError`` included) on the
        first problem so callers can reject a whole batch up front.
        """
        for url in urls:
            if not isinstance(url, str) or not url.startswith(("http://", "https://")):
                raise ValueError(f"Not an http(s) URL: {url}")
        opts = options if isinstance(options, ScrapeOptions) else ScrapeOptions.model_validate(options or {})
        if opts.timeout_ms and opts.timeout_ms / 1000.0 >= self.config.stall_threshold_seconds:
            raise ValueError(
                f"timeout_ms={opts.timeout_ms} must stay below the stall threshold "
                f"of {self.config.stall_threshold_seconds}s"
            )
        return opts

    async def submit(self, url: str, options: OptionsLike = None) -> JobHandle:
        self._require_initialized()
        opts = self.validate_submission([url], options)
        return await self._insert(url, opts)

    async def submit_many(self, urls: Iterable[str], options: OptionsLike = None) -> List[JobHandle]:
        """Submit several URLs. Nothing is stored unless every URL is valid."""
        self._require_initialized()
        urls = list(urls)
        opts = self.validate_submission(urls, options)
        return [await self._insert(url, opts) for url in urls]

    async def _insert(self, url: str, opts: ScrapeOptions) -> JobHandle:
        job = Job(id=str(uuid4()), url=url, options=opts)
        await self.store.insert(job)

        self.stats["submitted"] += 1
        increment("jobs_submitted")
        logger.info("Job submitted", job_id=job.id, url=url)
        self.events.publish(JobEvent.CREATED.value, {"jobId": job.id, "url": url})
        self._wakeup.set()
        return JobHandle(id=job.id, url=url)

    async def get(self, job_id: str) -> Job:
        self._require_initialized()
        job = await self.store.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    async def list(
        self,
        state: Union[JobState, str, None] = None,
        *,
        page: Optional[int] = None,
        limit: Optional[int] = None,
        start: Optional[int] = None,
        end: Optional[int] = None,
    ) -> List[Job]:
        self._require_initialized()
        offset, count = resolve_pagination(page, limit, start, end)
        state = JobState(state) if state is not None else None
        return await self.store.list(state, offset=offset, limit=count)

    async def counts(self) -> Dict[str, int]:
        self._require_initialized()
        return await self.store.counts()

    async def retry(self, job_id: str) -> Job:
        """Put a failed job back into ``waiting``."""
        job = await self.get(job_id)
        if job.state is not JobState.FAILED:
            raise InvalidJobState(job_id, job.state.value, "retry")
        if job.attempts_made >= self.config.max_manual_attempts:
            raise MaxRetriesExceeded(job_id, job.attempts_made)

        if not await self.store.requeue(job_id, JobState.FAILED):
            current = await self.get(job_id)
            raise InvalidJobState(job_id, current.state.value, "retry")

        logger.info("Job requeued by caller", job_id=job_id, attempts_made=job.attempts_made)
        self._wakeup.set()
        return await self.get(job_id)

    async def cancel(self, job_id: str) -> Job:
        """Remove a waiting, delayed or active job. Active work is interrupted."""
        job = await self.get(job_id)
        if job.state.is_terminal:
            raise InvalidJobState(job_id, job.state.value, "cancel")

        if not await self.store.delete(job_id):
            raise JobNotFound(job_id)
        interrupted = self._interrupt(job_id)

        self.stats["cancelled"] += 1
        logger.info("Job cancelled", job_id=job_id, state=job.state.value, interrupted=interrupted)
        return job

    async def wait_until_idle(self, timeout: Optional[float] = None, poll: float = 0.05) -> None:
        """Block until no job is waiting, delayed or active."""

        async def _poll() -> None:
            while True:
                counts = await self.store.counts()
                if not (counts["waiting"] or counts["active"] or counts["delayed"]):
                    return
                await asyncio.sleep(poll)

        await asyncio.wait_for(_poll(), timeout=timeout)

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "concurrency": self.concurrency,
            "running": len(self._running),
            "workers": len(self._workers),
            "stalls_recovered": self.stall_monitor.recovered,
        }

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def _interrupt(self, job_id: str) -> bool:
        task = self._running.get(job_id)
        if task is not None and not task.done():
            task.cancel()
            return True
        return False

    async def _wait_for_work(self) -> None:
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=self.config.poll_interval)
        except asyncio.TimeoutError:
            pass
        self._wakeup.clear()

    async def _worker(self, worker_id: str) -> None:
        log = logger.bind(worker_id=worker_id)
        log.debug("Worker started")
        while True:
            try:
                job = await self.store.claim(uuid4().hex, self.concurrency)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.error("Claim failed", error=str(e), exc_info=True)
                await asyncio.sleep(self.config.poll_interval)
                continue

            if job is None:
                await self._wait_for_work()
                continue

            task = asyncio.create_task(self._process(job), name=f"shelfscout-job-{job.id}")
            self._running[job.id] = task
            self._claims[job.id] = job.claim_token or ""
            gauge("jobs_active", len(self._running))
            try:
                # asyncio.wait does not raise when the job task itself is cancelled.
                await asyncio.wait({task})
            except asyncio.CancelledError:
                task.cancel()
                raise
            finally:
                self._running.pop(job.id, None)
                self._claims.pop(job.id, None)
                gauge("jobs_active", len(self._running))
                self._wakeup.set()

            if task.cancelled():
                self.stats["discarded"] += 1
                log.info("Job attempt interrupted", job_id=job.id)
            elif task.exception() is not None:
                log.error("Job processing crashed", job_id=job.id, error=str(task.exception()))

    async def _process(self, job: Job) -> None:
        assert job.claim_token is not None
        token = job.claim_token
        bind_contextvars(job_id=job.id)
        started = time.monotonic()

        await self.store.update_progress(job.id, token, PROGRESS_STARTED)
        timeout = job.options.timeout_ms / 1000.0 if job.options.timeout_ms else self.config.job_timeout_seconds

        try:
            async with asyncio.timeout(timeout):
                result = await self.scraper.scrape(job.url, job.options)
            outcome = JobOutcome.success(dict(result or {}))
        except TimeoutError:
            outcome = JobOutcome.failure(FetchTimeout(job.url, timeout), attempt=job.attempts_made)
        except Exception as e:
            outcome = JobOutcome.failure(e, attempt=job.attempts_made)

        histogram("job_duration_seconds", time.monotonic() - started)
        self.stats["processed"] += 1
        await self._apply(job, token, outcome)

    async def _apply(self, job: Job, token: str, outcome: JobOutcome) -> None:
        decision = self.policy.decide(outcome, job.attempts_made, job.options.max_retries)

        if decision.action is RetryAction.SUCCEED:
            result = outcome.result if job.options.save_result else None
            if await self.store.complete(job.id, token, result):
                self.stats["completed"] += 1
                increment("jobs_completed")
                logger.info("Job completed", job_id=job.id, attempts_made=job.attempts_made)
                self.events.publish(
                    JobEvent.COMPLETED.value,
                    {"jobId": job.id, "url": job.url, "result": outcome.result},
                )
                return

        elif decision.action is RetryAction.RETRY:
            reason = decision.reason or "error"
            if await self.store.schedule_retry(job.id, token, decision.delay, reason, outcome.error):
                self.stats["retried"] += 1
                increment("jobs_retried")
                logger.warning(
                    "Job attempt failed, retry scheduled",
                    job_id=job.id,
                    attempts_made=job.attempts_made,
                    delay=decision.delay,
                    error=reason,
                )
                return

        else:
            reason = decision.reason or "error"
            error = outcome.error
            assert error is not None
            if await self.store.fail(job.id, token, reason, error):
                self.stats["failed"] += 1
                increment("jobs_failed", labels={"reason": error.error_type or "error"})
                logger.error(
                    "Job failed",
                    job_id=job.id,
                    attempts_made=job.attempts_made,
                    error_type=error.error_type,
                    error=reason,
                    retries_exhausted=error.is_retryable,
                )
                self.events.publish(
                    JobEvent.FAILED.value,
                    {
                        "jobId": job.id,
                        "url": job.url,
                        "error": reason,
                        "errorType": error.error_type,
                        "attemptsMade": job.attempts_made,
                    },
                )
                return

        # The claim was lost to the stall monitor or a cancellation.
        self.stats["discarded"] += 1
        logger.warning("Discarding outcome of job no longer held by this worker", job_id=job.id)
