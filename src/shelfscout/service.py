"""
Submission and query surface.

``ScrapeService`` is what an HTTP layer or the CLI talks to: batches pass the
ingress guard before any job is created, and queries return the plain-dict job
view.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import structlog

from shelfscout.crawler import Crawler, CrawlRequest
from shelfscout.ingress import IngressGuard
from shelfscout.jobs import JobQueue
from shelfscout.protocols import JobState, ScrapeOptions

logger = structlog.get_logger(__name__)


class ScrapeService:
    def __init__(self, queue: JobQueue, guard: IngressGuard, crawler: Optional[Crawler] = None) -> None:
        self.queue = queue
        self.guard = guard
        self.crawler = crawler

    async def submit_batch(
        self,
        client_id: str,
        urls: Sequence[str],
        options: Union[ScrapeOptions, Mapping[str, Any], None] = None,
    ) -> Dict[str, Any]:
        """Admit a batch through the ingress guard and create one job per URL.

        Invalid URLs or options raise ``ValueError`` before the guard sees the
        batch, and ``RateLimited`` or ``DuplicateRequest`` are raised before
        anything is queued.
        """
        if not urls:
            raise ValueError("At least one URL is required")
        opts = self.queue.validate_submission(urls, options)

        rate = await self.guard.admit(client_id, urls, opts.model_dump(exclude_defaults=True))
        handles = await self.queue.submit_many(urls, opts)
        logger.info("Batch accepted", client_id=client_id, jobs=len(handles), remaining=rate.remaining)
        return {
            "jobIds": [h.id for h in handles],
            "rateLimit": rate.to_dict(),
        }

    async def get_job(self, job_id: str) -> Dict[str, Any]:
        return (await self.queue.get(job_id)).to_dict()

    async def list_jobs(
        self,
        state: Union[JobState, str, None] = None,
        *,
        page: Optional[int] = None,
        limit: Optional[int] = None,
        start: Optional[int] = None,
        end: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        jobs = await self.queue.list(state, page=page, limit=limit, start=start, end=end)
        return [job.to_dict() for job in jobs]

    async def retry_job(self, job_id: str) -> Dict[str, Any]:
        return (await self.queue.retry(job_id)).to_dict()

    async def cancel_job(self, job_id: str) -> Dict[str, Any]:
        job = await self.queue.cancel(job_id)
        return {"id": job.id, "cancelled": True, "previousState": job.state.value}

    async def discover(
        self,
        seed_url: str,
        request: Union[CrawlRequest, Mapping[str, Any], None] = None,
        enqueue: bool = False,
        options: Union[ScrapeOptions, Mapping[str, Any], None] = None,
    ) -> Dict[str, Any]:
        """Run URL discovery and optionally queue every URL found."""
        if self.crawler is None:
            raise RuntimeError("No crawler configured")
        result = await self.crawler.discover(seed_url, request)
        body = result.to_dict()
        body["timedOut"] = result.timed_out
        body["aborted"] = result.aborted
        if enqueue and result.urls:
            handles = await self.queue.submit_many(result.urls, options)
            body["jobIds"] = [h.id for h in handles]
        return body
