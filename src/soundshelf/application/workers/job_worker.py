"""Job worker - polls the persistent queue and runs claimed jobs."""

import asyncio
import contextlib
import logging
import time
import uuid

from soundshelf.application.workers.job_handlers import JobHandlers
from soundshelf.application.workers.job_queue import Job, PersistentJobQueue
from soundshelf.infrastructure.observability import (
    log_operation,
    log_worker_health,
    set_correlation_id,
)

logger = logging.getLogger(__name__)


class JobWorker:
    """Background loop: claim → run → complete/fail.

    Hey future me - one worker runs ONE job at a time. Want parallelism? Start more workers,
    claim_next() guarantees they never grab the same job. While the queue has work the loop
    doesn't sleep at all, it only waits poll_interval_seconds when claim_next() came back empty.
    """

    def __init__(
        self,
        queue: PersistentJobQueue,
        handlers: JobHandlers,
        poll_interval_seconds: float = 2.0,
        worker_id: str | None = None,
    ) -> None:
        """Initialize worker.

        Args:
            queue: Job queue to claim from
            handlers: Handler registry
            poll_interval_seconds: Sleep between polls of an empty queue
            worker_id: Unique id stored in locked_by (auto-generated if None)
        """
        self._queue = queue
        self._handlers = handlers
        self.poll_interval_seconds = poll_interval_seconds
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._start_time = time.time()
        self._cycles_completed = 0
        self._jobs_completed = 0
        self._errors_total = 0

    @property
    def is_running(self) -> bool:
        """True while the background loop is active."""
        return self._running

    async def start(self) -> None:
        """Start the worker loop as background task (idempotent)."""
        if self._running:
            logger.warning("job_worker.already_running")
            return

        self._running = True
        self._start_time = time.time()
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "worker.started",
            extra={
                "worker": "job_worker",
                "worker_id": self.worker_id,
                "poll_interval_seconds": self.poll_interval_seconds,
            },
        )

    async def stop(self) -> None:
        """Stop the worker loop and wait for it (idempotent).

        A job interrupted here stays RUNNING and is recovered by recover_stale() later.
        """
        self._running = False
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.info(
            "worker.stopped",
            extra={
                "worker": "job_worker",
                "jobs_completed": self._jobs_completed,
                "errors_total": self._errors_total,
                "uptime_seconds": int(time.time() - self._start_time),
            },
        )

    async def _run_loop(self) -> None:
        while self._running:
            try:
                ran_job = await self.run_once()
                self._cycles_completed += 1

                # Log health every 50 cycles
                if self._cycles_completed % 50 == 0:
                    log_worker_health(
                        logger,
                        "job_worker",
                        self._cycles_completed,
                        self._errors_total,
                        time.time() - self._start_time,
                        extra_stats={"jobs_completed": self._jobs_completed},
                    )
            except Exception as e:
                # Do not crash the loop on queue errors - log and continue
                self._errors_total += 1
                ran_job = False
                logger.error(
                    "job_worker.cycle.failed",
                    extra={"error_type": type(e).__name__},
                    exc_info=True,
                )

            if not ran_job:
                await asyncio.sleep(self.poll_interval_seconds)

    async def run_once(self) -> bool:
        """Claim and run at most one job.

        Returns:
            True if a job was run (successfully or not), False if the queue was empty
        """
        job = await self._queue.claim_next(self.worker_id)
        if job is None:
            return False
        await self._execute(job)
        return True

    async def run_until_empty(self, max_jobs: int = 1000) -> int:
        """Run jobs until the queue is drained (or max_jobs were run).

        Returns:
            Number of jobs run
        """
        count = 0
        while count < max_jobs and await self.run_once():
            count += 1
        return count

    async def _execute(self, job: Job) -> None:
        set_correlation_id(job.id)
        try:
            async with log_operation(
                logger, "job", job_id=job.id, job_type=job.job_type.value, attempt=job.retries + 1
            ):
                result = await self._handlers.handle(job)
        except Exception as e:
            self._errors_total += 1
            await self._queue.fail(job.id, str(e) or type(e).__name__)
            return

        await self._queue.complete(job.id, result)
        self._jobs_completed += 1
