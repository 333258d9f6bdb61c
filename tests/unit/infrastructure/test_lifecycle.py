"""Tests for component wiring and the application lifespan."""

import logging
from collections.abc import Iterator
from pathlib import Path

import pytest

from soundshelf.config import DatabaseSettings, EnrichmentSettings, Settings
from soundshelf.domain.entities import JobStatus, JobType
from soundshelf.infrastructure.lifecycle import build_components, lifespan


@pytest.fixture(autouse=True)
def restore_root_logger() -> Iterator[None]:
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


class TestBuildComponents:
    """Test build_components."""

    async def test_wiring(self, settings: Settings) -> None:
        components = build_components(settings)
        try:
            assert components.worker.worker_id == settings.jobs.worker_id
            assert set(components.handlers.handlers) == set(JobType)
            # No Last.fm key, no genre backfill
            assert components.handlers._genre_source is None
            assert components.handlers._audio_source is components.reccobeats_client
        finally:
            await components.close()

    async def test_lastfm_key_enables_genres(self, settings: Settings) -> None:
        configured = settings.model_copy(
            update={"enrichment": EnrichmentSettings(lastfm_api_key="key")}
        )
        components = build_components(configured)
        try:
            assert components.handlers._genre_source is components.lastfm_client
        finally:
            await components.close()

    async def test_sqlite_directory_is_created(self, tmp_path: Path) -> None:
        db_file = tmp_path / "nested" / "dir" / "soundshelf.db"
        settings = Settings(
            database=DatabaseSettings(url=f"sqlite+aiosqlite:///{db_file}")
        )

        components = build_components(settings)
        await components.close()

        assert db_file.parent.is_dir()


class TestLifespan:
    """Test lifespan startup/shutdown."""

    async def test_startup_creates_tables_and_recovers_jobs(self, settings: Settings) -> None:
        async with lifespan(settings, start_worker=False) as components:
            job_id = await components.queue.enqueue(JobType.GENRE_BACKFILL)
            assert await components.queue.claim_next("crashed-worker") is not None

        # Second start: a RUNNING job is only stale after the lock timeout
        async with lifespan(settings, start_worker=False) as components:
            job = await components.queue.get_job(job_id)
            assert job is not None
            assert job.status == JobStatus.RUNNING
            assert not components.worker.is_running

    async def test_worker_is_stopped_on_exit(self, settings: Settings) -> None:
        async with lifespan(settings) as components:
            assert components.worker.is_running

        assert not components.worker.is_running

    async def test_scheduler_runs_with_worker(self, settings: Settings) -> None:
        async with lifespan(settings) as components:
            assert components.scheduler.is_running
            assert components.scheduler.next_run_in(JobType.PLAY_HISTORY_SYNC) == pytest.approx(
                settings.jobs.play_history_interval_minutes * 60, abs=5
            )

        assert not components.scheduler.is_running

    async def test_scheduler_can_be_left_off(self, settings: Settings) -> None:
        async with lifespan(settings, start_worker=False, start_scheduler=False) as components:
            assert not components.scheduler.is_running
