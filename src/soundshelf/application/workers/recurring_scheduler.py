"""Recurring Job Scheduler - enqueues the periodic all-user jobs.

Hey future me - a library sync only chains play history for QUICK syncs and smart playlist
pushes once per sync. Everything that has to happen on a clock lives here:

- PLAY_HISTORY_SYNC every 100 minutes for every known user. Spotify only returns the last
  50 plays, so waiting much longer than that loses history for heavy listeners.
- SMART_PLAYLIST_SYNC once a day for users with auto-synced smart playlists. The library
  changes slowly, unchanged playlists are skipped by their track hash anyway.

"Known user" = has a COMPLETED library sync job, whose payload also provides the token.
Every enqueue goes through enqueue_if_absent() with the per-user dedupe key, so a slow
worker never piles up duplicates of the same job.

The first run of each schedule happens one interval after start(), a restart loop must not
hammer Spotify.
"""

import asyncio
import contextlib
import logging
import time
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from soundshelf.application.workers.job_handlers import user_dedupe_key
from soundshelf.application.workers.job_queue import PersistentJobQueue
from soundshelf.domain.entities import JobType
from soundshelf.infrastructure.persistence.repositories import SmartPlaylistRepository

logger = logging.getLogger(__name__)


class RecurringJobScheduler:
    """Enqueues per-user jobs on fixed intervals.

    Lifecycle:
    - Created in lifecycle.py next to the JobWorker
    - Runs as asyncio task via start()
    - Stopped via stop() during shutdown
    """

    def __init__(
        self,
        queue: PersistentJobQueue,
        session_factory: async_sessionmaker[AsyncSession],
        play_history_interval_seconds: float = 100 * 60,
        smart_playlist_interval_seconds: float = 24 * 3600,
        check_interval_seconds: float = 60.0,
    ) -> None:
        """Initialize the scheduler.

        Args:
            queue: Queue the jobs go to
            session_factory: Factory for creating DB sessions
            play_history_interval_seconds: Period of the play history import
            smart_playlist_interval_seconds: Period of the smart playlist push
            check_interval_seconds: How often the loop looks for due schedules
        """
        self._queue = queue
        self._session_factory = session_factory
        self._intervals: dict[JobType, float] = {
            JobType.PLAY_HISTORY_SYNC: play_history_interval_seconds,
            JobType.SMART_PLAYLIST_SYNC: smart_playlist_interval_seconds,
        }
        self._check_interval = check_interval_seconds
        self._next_run: dict[JobType, float] = {}
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._stats: dict[str, Any] = {"jobs_enqueued": 0, "last_run_at": None}

    @property
    def is_running(self) -> bool:
        """True while the background loop is active."""
        return self._running

    def next_run_in(self, job_type: JobType, now: float | None = None) -> float | None:
        """Seconds until a schedule is due (None before start())."""
        due = self._next_run.get(job_type)
        if due is None:
            return None
        return max(0.0, due - (time.monotonic() if now is None else now))

    async def start(self) -> None:
        """Start the scheduler loop as background task (idempotent)."""
        if self._running:
            logger.warning("recurring_scheduler.already_running")
            return

        now = time.monotonic()
        self._next_run = {
            job_type: now + interval for job_type, interval in self._intervals.items()
        }
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            f"RecurringJobScheduler started (play history every "
            f"{self._intervals[JobType.PLAY_HISTORY_SYNC] / 60:.0f} min, smart playlists every "
            f"{self._intervals[JobType.SMART_PLAYLIST_SYNC] / 3600:.0f} h)"
        )

    async def stop(self) -> None:
        """Stop the scheduler loop and wait for it (idempotent)."""
        self._running = False
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.info(
            f"RecurringJobScheduler stopped ({self._stats['jobs_enqueued']} jobs enqueued)"
        )

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.run_due()
            except Exception as e:
                # Log but don't crash - we'll try again next cycle
                logger.exception(f"RecurringJobScheduler error: {e}")

            await asyncio.sleep(self._check_interval)

    async def run_due(self, now: float | None = None) -> dict[JobType, int]:
        """Enqueue every schedule whose time has come.

        Args:
            now: Monotonic clock value (defaults to time.monotonic())

        Returns:
            Jobs enqueued per due job type
        """
        now = time.monotonic() if now is None else now
        enqueued: dict[JobType, int] = {}
        for job_type, interval in self._intervals.items():
            if now < self._next_run.get(job_type, now):
                continue
            # Reschedule first - a failing run must not retry every check interval
            self._next_run[job_type] = now + interval
            enqueued[job_type] = await self.enqueue_for_all_users(job_type)
        return enqueued

    async def enqueue_for_all_users(self, job_type: JobType) -> int:
        """Enqueue one job of the given per-user type for every eligible user.

        Returns:
            Number of new jobs (users with an equivalent job already waiting don't count)
        """
        payloads = await self._queue.latest_user_payloads(JobType.LIBRARY_SYNC)
        if job_type == JobType.SMART_PLAYLIST_SYNC:
            async with self._session_factory() as session:
                eligible = await SmartPlaylistRepository(session).list_auto_sync_user_ids()
            payloads = {uid: p for uid, p in payloads.items() if uid in eligible}

        count = 0
        for user_id, payload in payloads.items():
            access_token = payload.get("access_token")
            if not access_token:
                logger.debug(f"No token known for user {user_id}, skipping {job_type.value}")
                continue
            try:
                job_id = await self._queue.enqueue_if_absent(
                    job_type,
                    {"user_id": user_id, "access_token": access_token},
                    dedupe_key=user_dedupe_key(job_type, user_id),
                )
            except Exception as e:
                logger.warning(f"Failed to enqueue {job_type.value} for user {user_id}: {e}")
                continue
            if job_id is not None:
                count += 1

        self._stats["jobs_enqueued"] += count
        self._stats["last_run_at"] = time.time()
        logger.info(f"Scheduled {job_type.value} for {count}/{len(payloads)} users")
        return count

    def get_stats(self) -> dict[str, Any]:
        """Scheduler statistics."""
        return {
            **self._stats,
            "running": self._running,
            "intervals": {job_type.value: s for job_type, s in self._intervals.items()},
        }
