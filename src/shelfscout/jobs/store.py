"""
Durable job store backed by SQLite.

All job state lives in one table. Claiming a job is a single ``BEGIN
IMMEDIATE`` transaction, so two workers (in this process or another one sharing
the file) can never move the same job from ``waiting`` to ``active``. Writes
made on behalf of a worker carry its claim token; once the stall monitor or a
cancellation has taken the job away, the late worker's writes match no row.
"""

from __future__ import annotations

import asyncio
import json
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import aiosqlite
import structlog

from shelfscout.exceptions import NotInitialized
from shelfscout.protocols import STALLED_REASON, ErrorInfo, Job, JobState, ScrapeOptions

logger = structlog.get_logger(__name__)

_TERMINAL = (JobState.COMPLETED.value, JobState.FAILED.value)


class JobStore:
    """SQLite persistence for ``Job`` records."""

    def __init__(self, db_path: Path | str = Path("./data/jobs.db"), clock: Callable[[], float] = time.time) -> None:
        self.db_path = str(db_path)
        self._clock = clock
        self._db: Optional[aiosqlite.Connection] = None
        # One connection is shared, so transactions must not interleave.
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        if self._db is not None:
            return
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._db = await aiosqlite.connect(self.db_path, isolation_level=None)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA busy_timeout = 5000")
        if self.db_path != ":memory:":
            await self._db.execute("PRAGMA journal_mode = WAL")

        await self._db.execute(
            """
            CREATE TABLE IF NOT EXISTS jobs (
                id TEXT PRIMARY KEY,
                url TEXT NOT NULL,
                options TEXT NOT NULL,
                state TEXT NOT NULL,
                attempts_made INTEGER NOT NULL DEFAULT 0,
                progress INTEGER NOT NULL DEFAULT 0,
                result TEXT,
                failure_reason TEXT,
                error TEXT,
                created_at REAL NOT NULL,
                started_at REAL,
                finished_at REAL,
                progress_at REAL,
                available_at REAL,
                claim_token TEXT
            )
        """
        )
        await self._db.execute("CREATE INDEX IF NOT EXISTS idx_jobs_state_created ON jobs(state, created_at)")
        await self._db.execute("CREATE INDEX IF NOT EXISTS idx_jobs_finished ON jobs(finished_at)")
        logger.info("Job store initialized", db_path=self.db_path)

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    @property
    def initialized(self) -> bool:
        return self._db is not None

    @property
    def clock(self) -> Callable[[], float]:
        return self._clock

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise NotInitialized("JobStore")
        return self._db

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, job_id: str) -> Optional[Job]:
        db = self._conn()
        async with self._lock:
            async with db.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)) as cursor:
                row = await cursor.fetchone()
        return self._row_to_job(row) if row else None

    async def list(self, state: Optional[JobState] = None, offset: int = 0, limit: int = 50) -> List[Job]:
        db = self._conn()
        where, params = self._state_filter(state)
        query = f"SELECT * FROM jobs {where} ORDER BY created_at, rowid LIMIT ? OFFSET ?"
        async with self._lock:
            async with db.execute(query, (*params, limit, offset)) as cursor:
                rows = await cursor.fetchall()
        return [self._row_to_job(row) for row in rows]

    async def count(self, state: Optional[JobState] = None) -> int:
        db = self._conn()
        where, params = self._state_filter(state)
        async with self._lock:
            async with db.execute(f"SELECT COUNT(*) FROM jobs {where}", params) as cursor:
                row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def counts(self) -> Dict[str, int]:
        db = self._conn()
        result = {state.value: 0 for state in JobState}
        async with self._lock:
            async with db.execute("SELECT state, COUNT(*) FROM jobs GROUP BY state") as cursor:
                async for row in cursor:
                    result[row[0]] = int(row[1])
            async with db.execute(
                "SELECT COUNT(*) FROM jobs WHERE state = ? AND failure_reason = ?",
                (JobState.FAILED.value, STALLED_REASON),
            ) as cursor:
                row = await cursor.fetchone()
        result[JobState.STALLED.value] = int(row[0]) if row else 0
        return result

    async def find_stalled(self, cutoff: float) -> List[Job]:
        """Active jobs whose last progress update is older than *cutoff*."""
        db = self._conn()
        async with self._lock:
            async with db.execute(
                """
                SELECT * FROM jobs
                WHERE state = ? AND COALESCE(progress_at, started_at, created_at) < ?
                ORDER BY created_at
            """,
                (JobState.ACTIVE.value, cutoff),
            ) as cursor:
                rows = await cursor.fetchall()
        return [self._row_to_job(row) for row in rows]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def insert(self, job: Job) -> Job:
        db = self._conn()
        if not job.created_at:
            job.created_at = self._clock()
        async with self._lock:
            await db.execute(
                """
                INSERT INTO jobs (id, url, options, state, attempts_made, progress, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    job.id,
                    job.url,
                    job.options.model_dump_json(),
                    job.state.value,
                    job.attempts_made,
                    job.progress,
                    job.created_at,
                ),
            )
        return job

    async def claim(self, token: str, max_active: int) -> Optional[Job]:
        """Atomically move the oldest waiting job to ``active``.

        Delayed jobs whose backoff has elapsed are promoted to ``waiting``
        first. Returns None when nothing is waiting or ``max_active`` jobs are
        already active.
        """
        db = self._conn()
        now = self._clock()
        async with self._lock:
            await db.execute("BEGIN IMMEDIATE")
            try:
                await db.execute(
                    "UPDATE jobs SET state = ?, available_at = NULL WHERE state = ? AND available_at <= ?",
                    (JobState.WAITING.value, JobState.DELAYED.value, now),
                )
                async with db.execute("SELECT COUNT(*) FROM jobs WHERE state = ?", (JobState.ACTIVE.value,)) as cursor:
                    row = await cursor.fetchone()
                if row is not None and row[0] >= max_active:
                    await db.execute("COMMIT")
                    return None

                async with db.execute(
                    "SELECT id FROM jobs WHERE state = ? ORDER BY created_at, rowid LIMIT 1",
                    (JobState.WAITING.value,),
                ) as cursor:
                    row = await cursor.fetchone()
                if row is None:
                    await db.execute("COMMIT")
                    return None

                job_id = row[0]
                cursor = await db.execute(
                    """
                    UPDATE jobs
                    SET state = ?, claim_token = ?, attempts_made = attempts_made + 1,
                        progress = 0, started_at = ?, progress_at = ?, finished_at = NULL
                    WHERE id = ? AND state = ?
                """,
                    (JobState.ACTIVE.value, token, now, now, job_id, JobState.WAITING.value),
                )
                claimed = cursor.rowcount == 1
                await db.execute("COMMIT")
            except BaseException:
                if db.in_transaction:
                    await db.execute("ROLLBACK")
                raise

            if not claimed:
                return None
            async with db.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)) as cursor:
                claimed_row = await cursor.fetchone()
        return self._row_to_job(claimed_row) if claimed_row else None

    async def update_progress(self, job_id: str, token: str, progress: int) -> bool:
        return await self._update_claimed(
            job_id,
            token,
            "progress = ?, progress_at = ?",
            (max(0, min(100, progress)), self._clock()),
        )

    async def complete(self, job_id: str, token: str, result: Optional[Dict[str, Any]]) -> bool:
        now = self._clock()
        return await self._update_claimed(
            job_id,
            token,
            "state = ?, progress = 100, progress_at = ?, result = ?, finished_at = ?, claim_token = NULL",
            (JobState.COMPLETED.value, now, json.dumps(result) if result is not None else None, now),
        )

    async def fail(self, job_id: str, token: str, reason: str, error: Optional[ErrorInfo] = None) -> bool:
        return await self._update_claimed(
            job_id,
            token,
            "state = ?, failure_reason = ?, error = ?, finished_at = ?, claim_token = NULL",
            (JobState.FAILED.value, reason, self._dump_error(error), self._clock()),
        )

    async def schedule_retry(
        self,
        job_id: str,
        token: str,
        delay: float,
        reason: str,
        error: Optional[ErrorInfo] = None,
    ) -> bool:
        return await self._update_claimed(
            job_id,
            token,
            "state = ?, available_at = ?, failure_reason = ?, error = ?, claim_token = NULL",
            (JobState.DELAYED.value, self._clock() + delay, reason, self._dump_error(error)),
        )

    async def requeue(self, job_id: str, expected_state: JobState, token: Optional[str] = None) -> bool:
        """Move a job back to ``waiting`` if it is still in *expected_state*."""
        db = self._conn()
        query = """
            UPDATE jobs
            SET state = ?, claim_token = NULL, progress = 0, result = NULL, failure_reason = NULL,
                error = NULL, finished_at = NULL, available_at = NULL
            WHERE id = ? AND state = ?
        """
        params: List[Any] = [JobState.WAITING.value, job_id, expected_state.value]
        if token is not None:
            query += " AND claim_token = ?"
            params.append(token)
        async with self._lock:
            cursor = await db.execute(query, params)
            return cursor.rowcount == 1

    async def delete(self, job_id: str) -> bool:
        db = self._conn()
        async with self._lock:
            cursor = await db.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
            return cursor.rowcount == 1

    async def purge_terminal(self, before: float) -> int:
        """Delete completed and failed jobs that finished before *before*."""
        db = self._conn()
        async with self._lock:
            cursor = await db.execute(
                "DELETE FROM jobs WHERE state IN (?, ?) AND finished_at < ?",
                (*_TERMINAL, before),
            )
            return cursor.rowcount

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _update_claimed(self, job_id: str, token: str, assignments: str, params: tuple) -> bool:
        db = self._conn()
        async with self._lock:
            cursor = await db.execute(
                f"UPDATE jobs SET {assignments} WHERE id = ? AND state = ? AND claim_token = ?",
                (*params, job_id, JobState.ACTIVE.value, token),
            )
            return cursor.rowcount == 1

    @staticmethod
    def _state_filter(state: Optional[JobState]) -> tuple[str, tuple]:
        if state is None:
            return "", ()
        if state is JobState.STALLED:
            return "WHERE state = ? AND failure_reason = ?", (JobState.FAILED.value, STALLED_REASON)
        return "WHERE state = ?", (state.value,)

    @staticmethod
    def _dump_error(error: Optional[ErrorInfo]) -> Optional[str]:
        return json.dumps(error.to_dict()) if error is not None else None

    @staticmethod
    def _row_to_job(row: aiosqlite.Row) -> Job:
        return Job(
            id=row["id"],
            url=row["url"],
            options=ScrapeOptions.model_validate_json(row["options"]),
            state=JobState(row["state"]),
            attempts_made=row["attempts_made"],
            progress=row["progress"],
            result=json.loads(row["result"]) if row["result"] else None,
            failure_reason=row["failure_reason"],
            error=ErrorInfo.from_dict(json.loads(row["error"])) if row["error"] else None,
            created_at=row["created_at"],
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            progress_at=row["progress_at"],
            available_at=row["available_at"],
            claim_token=row["claim_token"],
        )
