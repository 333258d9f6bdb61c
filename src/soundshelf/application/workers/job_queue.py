"""Persistent Job Queue - Database-backed job queue that survives restarts.

Hey future me - this is the ONLY job storage. There is no in-memory queue in front of it:
workers poll claim_next(), which flips the oldest highest-priority PENDING row to RUNNING
with a single conditional UPDATE. If two workers race for the same row, only one UPDATE
matches and the other simply tries the next candidate.

Semantics are at-least-once:
- fail() puts the job back to PENDING until max_retries is reached, then FAILED
- a worker that dies mid-job leaves a RUNNING row with a stale lock, recover_stale()
  resets those to PENDING on startup

DEDUPE:
enqueue_if_absent() refuses to add a job when a PENDING job with the same dedupe_key exists.
That's what keeps the self-chaining backfill jobs from multiplying - every chain link checks
"is a next link already waiting?" before adding one.

USAGE:
```python
queue = PersistentJobQueue(db.session_factory, max_retries=3)
await queue.recover_stale()
job_id = await queue.enqueue(JobType.LIBRARY_SYNC, {"user_id": "u1", "access_token": "..."})
job = await queue.claim_next("worker-a1b2c3d4")
```
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from soundshelf.domain.entities import JobStatus, JobType
from soundshelf.domain.ports import IJobScheduler
from soundshelf.infrastructure.persistence.models import BackgroundJobModel, utc_now
from soundshelf.infrastructure.persistence.retry import with_db_retry

logger = logging.getLogger(__name__)

# How many candidates claim_next() tries before giving up on a contended queue
_CLAIM_CANDIDATES = 5


@dataclass
class Job:
    """A claimed job, detached from the database row."""

    id: str
    job_type: JobType
    payload: dict[str, Any] = field(default_factory=dict)
    status: JobStatus = JobStatus.PENDING
    priority: int = 0
    retries: int = 0
    max_retries: int = 3
    dedupe_key: str | None = None
    progress: dict[str, Any] | None = None
    result: Any = None
    error: str | None = None


def _model_to_job(model: BackgroundJobModel) -> Job:
    return Job(
        id=model.id,
        job_type=JobType(model.job_type),
        payload=json.loads(model.payload) if model.payload else {},
        status=JobStatus(model.status),
        priority=model.priority,
        retries=model.retries,
        max_retries=model.max_retries,
        dedupe_key=model.dedupe_key,
        progress=json.loads(model.progress) if model.progress else None,
        result=json.loads(model.result) if model.result else None,
        error=model.error,
    )


class PersistentJobQueue(IJobScheduler):
    """Database-backed job queue with dedupe keys and a progress channel."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_retries: int = 3,
        lock_timeout_seconds: int = 3600,
    ) -> None:
        """Initialize persistent job queue.

        Args:
            session_factory: Factory for creating DB sessions
            max_retries: Attempts per job before it is marked FAILED
            lock_timeout_seconds: Age after which a RUNNING job counts as abandoned
        """
        self._session_factory = session_factory
        self._max_retries = max_retries
        self._lock_timeout = lock_timeout_seconds

    @with_db_retry()
    async def enqueue(
        self,
        job_type: JobType,
        payload: dict[str, Any] | None = None,
        priority: int = 0,
        dedupe_key: str | None = None,
    ) -> str:
        """Add a job to the queue.

        Args:
            job_type: Type of job
            payload: Job data (JSON serialized)
            priority: Higher = claimed first
            dedupe_key: Optional key checked by enqueue_if_absent()

        Returns:
            Job ID
        """
        async with self._session_factory() as session:
            model = BackgroundJobModel(
                job_type=job_type.value,
                status=JobStatus.PENDING.value,
                priority=priority,
                dedupe_key=dedupe_key,
                payload=json.dumps(payload or {}),
                retries=0,
                max_retries=self._max_retries,
            )
            session.add(model)
            await session.commit()
            job_id = model.id

        logger.debug(f"Enqueued job {job_id} ({job_type.value}) with priority {priority}")
        return job_id

    # Yo, check + insert run in ONE transaction. On SQLite the write lock serializes two
    # concurrent callers, on PostgreSQL a rare duplicate is harmless - the job is idempotent.
    @with_db_retry()
    async def enqueue_if_absent(
        self,
        job_type: JobType,
        payload: dict[str, Any] | None = None,
        dedupe_key: str | None = None,
        priority: int = 0,
    ) -> str | None:
        """Enqueue unless a PENDING job with the same dedupe key exists.

        Returns:
            New job id, or None when an equivalent job is already waiting
        """
        key = dedupe_key or job_type.value
        async with self._session_factory() as session:
            existing = await session.execute(
                select(BackgroundJobModel.id)
                .where(
                    BackgroundJobModel.dedupe_key == key,
                    BackgroundJobModel.status == JobStatus.PENDING.value,
                )
                .limit(1)
            )
            existing_id = existing.scalar_one_or_none()
            if existing_id is not None:
                logger.debug(f"Job with key {key} already pending ({existing_id}), not enqueued")
                return None

            model = BackgroundJobModel(
                job_type=job_type.value,
                status=JobStatus.PENDING.value,
                priority=priority,
                dedupe_key=key,
                payload=json.dumps(payload or {}),
                retries=0,
                max_retries=self._max_retries,
            )
            session.add(model)
            await session.commit()
            job_id = model.id

        logger.debug(f"Enqueued job {job_id} ({job_type.value}) with key {key}")
        return job_id

    async def claim_next(
        self, worker_id: str, job_types: list[JobType] | None = None
    ) -> Job | None:
        """Lock the next PENDING job for this worker and mark it RUNNING.

        Args:
            worker_id: Unique worker id (stored in locked_by)
            job_types: Only claim these types (None = any)

        Returns:
            The claimed job, or None when nothing is waiting
        """
        async with self._session_factory() as session:
            query = (
                select(BackgroundJobModel.id)
                .where(BackgroundJobModel.status == JobStatus.PENDING.value)
                .order_by(BackgroundJobModel.priority.desc(), BackgroundJobModel.created_at)
                .limit(_CLAIM_CANDIDATES)
            )
            if job_types:
                query = query.where(
                    BackgroundJobModel.job_type.in_([jt.value for jt in job_types])
                )
            candidates = list((await session.execute(query)).scalars().all())

            for job_id in candidates:
                now = utc_now()
                # Atomic lock with optimistic concurrency
                result = await session.execute(
                    update(BackgroundJobModel)
                    .where(
                        BackgroundJobModel.id == job_id,
                        BackgroundJobModel.status == JobStatus.PENDING.value,
                    )
                    .values(
                        status=JobStatus.RUNNING.value,
                        locked_by=worker_id,
                        locked_at=now,
                        started_at=now,
                    )
                )
                await session.commit()
                if result.rowcount == 0:
                    # Another worker got it
                    continue

                model = await session.get(BackgroundJobModel, job_id, populate_existing=True)
                if model is None:
                    continue
                return _model_to_job(model)
        return None

    @with_db_retry()
    async def complete(self, job_id: str, result: Any = None) -> None:
        """Mark job as completed.

        Args:
            job_id: Job ID
            result: Optional result data (JSON serialized)
        """
        async with self._session_factory() as session:
            await session.execute(
                update(BackgroundJobModel)
                .where(BackgroundJobModel.id == job_id)
                .values(
                    status=JobStatus.COMPLETED.value,
                    result=json.dumps(result) if result is not None else None,
                    error=None,
                    completed_at=utc_now(),
                    locked_by=None,
                    locked_at=None,
                )
            )
            await session.commit()
        logger.debug(f"Job {job_id} completed")

    @with_db_retry()
    async def fail(self, job_id: str, error: str) -> bool:
        """Mark job as failed (with retry logic).

        Args:
            job_id: Job ID
            error: Human-readable failure reason

        Returns:
            True if the job will be retried, False if it failed permanently
        """
        async with self._session_factory() as session:
            model = await session.get(BackgroundJobModel, job_id)
            if model is None:
                logger.warning(f"Job {job_id} not found in DB for failure update")
                return False

            model.retries += 1
            model.error = error
            model.locked_by = None
            model.locked_at = None

            if model.retries < model.max_retries:
                model.status = JobStatus.PENDING.value
                model.started_at = None
                logger.info(
                    f"Job {job_id} failed (attempt {model.retries}/{model.max_retries}), "
                    f"will be retried: {error}"
                )
                should_retry = True
            else:
                # Max retries reached - permanent failure
                model.status = JobStatus.FAILED.value
                model.completed_at = utc_now()
                logger.warning(
                    f"Job {job_id} failed permanently after {model.retries} attempts: {error}"
                )
                should_retry = False

            await session.commit()
        return should_retry

    async def update_progress(self, job_id: str, progress: dict[str, Any]) -> None:
        """Publish the latest progress of a running job (last write wins)."""
        async with self._session_factory() as session:
            await session.execute(
                update(BackgroundJobModel)
                .where(BackgroundJobModel.id == job_id)
                .values(progress=json.dumps(progress))
            )
            await session.commit()

    async def count_pending(self, job_type: JobType | None = None) -> int:
        """Number of PENDING jobs (optionally of one type)."""
        async with self._session_factory() as session:
            query = select(func.count(BackgroundJobModel.id)).where(
                BackgroundJobModel.status == JobStatus.PENDING.value
            )
            if job_type is not None:
                query = query.where(BackgroundJobModel.job_type == job_type.value)
            return int((await session.execute(query)).scalar_one())

    async def get_job(self, job_id: str) -> Job | None:
        """Load a job by id (None if unknown)."""
        async with self._session_factory() as session:
            model = await session.get(BackgroundJobModel, job_id)
            return _model_to_job(model) if model is not None else None

    async def latest_user_payloads(
        self, job_type: JobType = JobType.LIBRARY_SYNC
    ) -> dict[str, dict[str, Any]]:
        """Payload of each user's newest COMPLETED job of a type.

        Hey future me - this is how recurring jobs know which users exist and which token to
        use: the last library sync that actually worked. A user whose token expired simply
        gets a fresh one with their next library sync request.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                select(BackgroundJobModel.payload)
                .where(
                    BackgroundJobModel.job_type == job_type.value,
                    BackgroundJobModel.status == JobStatus.COMPLETED.value,
                )
                .order_by(BackgroundJobModel.completed_at.desc())
            )
            payloads: dict[str, dict[str, Any]] = {}
            for raw in result.scalars():
                payload = json.loads(raw) if raw else {}
                user_id = payload.get("user_id")
                if user_id and user_id not in payloads:
                    payloads[user_id] = payload
            return payloads

    async def recover_stale(self) -> int:
        """Reset RUNNING jobs of crashed workers to PENDING.

        Hey future me - call this BEFORE starting workers! A RUNNING row whose lock is older
        than lock_timeout_seconds belongs to a worker that died.

        Returns:
            Number of recovered jobs
        """
        threshold = utc_now() - timedelta(seconds=self._lock_timeout)
        async with self._session_factory() as session:
            result = await session.execute(
                update(BackgroundJobModel)
                .where(
                    BackgroundJobModel.status == JobStatus.RUNNING.value,
                    BackgroundJobModel.locked_at < threshold,
                )
                .values(
                    status=JobStatus.PENDING.value,
                    locked_by=None,
                    locked_at=None,
                    started_at=None,
                )
            )
            await session.commit()
        recovered = result.rowcount or 0
        if recovered > 0:
            logger.warning(f"Recovered {recovered} stale jobs from crashed workers")
        return recovered


def backfill_dedupe_key(job_type: JobType) -> str:
    """Dedupe key shared by every link of a backfill chain."""
    return f"{job_type.value}:backfill"


async def enqueue_backfill_if_absent(
    scheduler: IJobScheduler, job_type: JobType, payload: dict[str, Any] | None = None
) -> str | None:
    """Enqueue the next link of a backfill chain unless one is already waiting."""
    return await scheduler.enqueue_if_absent(
        job_type, payload, dedupe_key=backfill_dedupe_key(job_type)
    )
