"""Shared fixtures: settings pointing at a temp SQLite file, database, session, fakes."""

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
from fakes import FakeRemoteSource
from sqlalchemy.ext.asyncio import AsyncSession

from soundshelf.config import (
    DatabaseSettings,
    EnrichmentSettings,
    Settings,
    SpotifySettings,
    SyncSettings,
)
from soundshelf.infrastructure.persistence import Database


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with every delay switched off and an unthrottled progress channel."""
    return Settings(
        database=DatabaseSettings(url=f"sqlite+aiosqlite:///{tmp_path / 'soundshelf.db'}"),
        spotify=SpotifySettings(inter_page_delay_ms=0),
        sync=SyncSettings(
            track_batch_size=2,
            album_batch_size=2,
            playlist_batch_size=2,
            progress_min_interval_ms=0,
            progress_min_delta=None,
            job_progress_interval_ms=0,
            smart_playlist_delay_ms=0,
        ),
        enrichment=EnrichmentSettings(reccobeats_chunk_delay_ms=0, lastfm_min_interval_ms=0),
    )


@pytest.fixture
async def db(settings: Settings) -> AsyncGenerator[Database, None]:
    """Fresh database with all tables."""
    database = Database(settings)
    await database.create_tables()
    yield database
    await database.close()


# Hey future me - tests that also run queue/handler code (own sessions) should open short
# sessions via db.session_factory instead, a long-lived writer here would hold the lock.
@pytest.fixture
async def session(db: Database) -> AsyncGenerator[AsyncSession, None]:
    """Session on the test database."""
    async with db.session_factory() as session:
        yield session


@pytest.fixture
def source() -> FakeRemoteSource:
    """Empty in-memory remote library."""
    return FakeRemoteSource()
