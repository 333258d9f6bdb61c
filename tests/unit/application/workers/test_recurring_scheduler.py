"""Tests for the recurring all-user job scheduler."""

import asyncio

import pytest

from soundshelf.application.workers.job_queue import PersistentJobQueue
from soundshelf.application.workers.recurring_scheduler import RecurringJobScheduler
from soundshelf.domain.entities import JobStatus, JobType
from soundshelf.infrastructure.persistence import Database
from soundshelf.infrastructure.persistence.models import SmartPlaylistModel


@pytest.fixture
def queue(db: Database) -> PersistentJobQueue:
    return PersistentJobQueue(db.session_factory)


@pytest.fixture
def scheduler(db: Database, queue: PersistentJobQueue) -> RecurringJobScheduler:
    return RecurringJobScheduler(
        queue,
        db.session_factory,
        play_history_interval_seconds=100,
        smart_playlist_interval_seconds=1000,
        check_interval_seconds=0.01,
    )


async def _completed_library_sync(
    queue: PersistentJobQueue, user_id: str, access_token: str | None = "token"
) -> None:
    payload = {"user_id": user_id}
    if access_token is not None:
        payload["access_token"] = access_token
    job_id = await queue.enqueue(JobType.LIBRARY_SYNC, payload)
    job = await queue.claim_next("w1")
    assert job is not None and job.id == job_id
    await queue.complete(job_id, {"state": "done"})


async def _smart_playlist(db: Database, user_id: str, auto_sync: bool) -> None:
    async with db.session_factory() as session:
        session.add(
            SmartPlaylistModel(
                user_id=user_id,
                name=f"{user_id} mix",
                remote_playlist_id=f"remote-{user_id}",
                auto_sync=auto_sync,
            )
        )
        await session.commit()


async def _pending_payloads(queue: PersistentJobQueue, job_type: JobType) -> list[dict]:
    payloads = []
    while (job := await queue.claim_next("check", [job_type])) is not None:
        assert job.status == JobStatus.RUNNING
        payloads.append(job.payload)
    return payloads


class TestEnqueueForAllUsers:
    """Test enqueue_for_all_users."""

    async def test_play_history_for_every_synced_user(
        self, queue: PersistentJobQueue, scheduler: RecurringJobScheduler
    ) -> None:
        await _completed_library_sync(queue, "u1", "old-token")
        await _completed_library_sync(queue, "u1", "new-token")
        await _completed_library_sync(queue, "u2")

        count = await scheduler.enqueue_for_all_users(JobType.PLAY_HISTORY_SYNC)

        assert count == 2
        payloads = await _pending_payloads(queue, JobType.PLAY_HISTORY_SYNC)
        assert sorted(payloads, key=lambda p: p["user_id"]) == [
            {"user_id": "u1", "access_token": "new-token"},
            {"user_id": "u2", "access_token": "token"},
        ]

    async def test_waiting_job_is_not_duplicated(
        self, queue: PersistentJobQueue, scheduler: RecurringJobScheduler
    ) -> None:
        await _completed_library_sync(queue, "u1")

        assert await scheduler.enqueue_for_all_users(JobType.PLAY_HISTORY_SYNC) == 1
        assert await scheduler.enqueue_for_all_users(JobType.PLAY_HISTORY_SYNC) == 0
        assert await queue.count_pending(JobType.PLAY_HISTORY_SYNC) == 1
        assert scheduler.get_stats()["jobs_enqueued"] == 1

    async def test_users_without_token_are_skipped(
        self, queue: PersistentJobQueue, scheduler: RecurringJobScheduler
    ) -> None:
        await _completed_library_sync(queue, "u1", access_token=None)

        assert await scheduler.enqueue_for_all_users(JobType.PLAY_HISTORY_SYNC) == 0

    async def test_unfinished_syncs_do_not_count(
        self, queue: PersistentJobQueue, scheduler: RecurringJobScheduler
    ) -> None:
        await queue.enqueue(JobType.LIBRARY_SYNC, {"user_id": "u1", "access_token": "token"})

        assert await scheduler.enqueue_for_all_users(JobType.PLAY_HISTORY_SYNC) == 0

    async def test_smart_playlists_only_for_auto_sync_users(
        self, db: Database, queue: PersistentJobQueue, scheduler: RecurringJobScheduler
    ) -> None:
        for user_id in ("u1", "u2", "u3"):
            await _completed_library_sync(queue, user_id)
        await _smart_playlist(db, "u1", auto_sync=True)
        await _smart_playlist(db, "u2", auto_sync=False)

        count = await scheduler.enqueue_for_all_users(JobType.SMART_PLAYLIST_SYNC)

        assert count == 1
        payloads = await _pending_payloads(queue, JobType.SMART_PLAYLIST_SYNC)
        assert [p["user_id"] for p in payloads] == ["u1"]


class TestSchedule:
    """Test due-time handling and the background loop."""

    async def test_nothing_due_before_first_interval(
        self, queue: PersistentJobQueue, scheduler: RecurringJobScheduler
    ) -> None:
        await _completed_library_sync(queue, "u1")
        await scheduler.start()
        try:
            # let the loop tick a few times
            await asyncio.sleep(0.05)
            assert scheduler.is_running
            assert scheduler.next_run_in(JobType.PLAY_HISTORY_SYNC) == pytest.approx(100, abs=5)
            assert await queue.count_pending() == 0
        finally:
            await scheduler.stop()

        assert not scheduler.is_running

    async def test_run_due_honors_intervals(
        self, db: Database, queue: PersistentJobQueue, scheduler: RecurringJobScheduler
    ) -> None:
        await _completed_library_sync(queue, "u1")
        await _smart_playlist(db, "u1", auto_sync=True)
        scheduler._next_run = {
            JobType.PLAY_HISTORY_SYNC: 100.0,
            JobType.SMART_PLAYLIST_SYNC: 1000.0,
        }

        assert await scheduler.run_due(now=50.0) == {}
        assert await scheduler.run_due(now=150.0) == {JobType.PLAY_HISTORY_SYNC: 1}
        assert scheduler.next_run_in(JobType.PLAY_HISTORY_SYNC, now=150.0) == 100.0
        assert await scheduler.run_due(now=1200.0) == {
            JobType.PLAY_HISTORY_SYNC: 0,
            JobType.SMART_PLAYLIST_SYNC: 1,
        }

    def test_next_run_unknown_before_start(self, scheduler: RecurringJobScheduler) -> None:
        assert scheduler.next_run_in(JobType.PLAY_HISTORY_SYNC) is None
        assert not scheduler.is_running
