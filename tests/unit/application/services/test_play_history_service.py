"""Tests for the recently-played import."""

from datetime import timedelta

from fakes import BASE_TIME, FakeRemoteSource, played, saved_track
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from soundshelf.application.services.artist_resolution_cache import ArtistResolutionCache
from soundshelf.application.services.batch_processor import LibraryIngestor
from soundshelf.application.services.entity_reconciler import EntityReconciler
from soundshelf.application.services.play_history_service import PlayHistoryService
from soundshelf.infrastructure.persistence.models import (
    LibraryMembershipModel,
    PlayEventModel,
    ensure_utc_aware,
)
from soundshelf.infrastructure.persistence.repositories import ArtistRepository


async def _library(session: AsyncSession, source: FakeRemoteSource, *track_ids: str) -> None:
    cache = ArtistResolutionCache(source, ArtistRepository(session))
    ingestor = LibraryIngestor(session, EntityReconciler(session), cache, "token")
    await ingestor.ingest_track_batch("u1", [saved_track(tid) for tid in track_ids])


class TestPlayHistoryService:
    """Test PlayHistoryService."""

    async def test_plays_are_recorded_and_counted(
        self, session: AsyncSession, source: FakeRemoteSource
    ) -> None:
        await _library(session, source, "t1")
        source.recently_played = [played("t1", 1), played("t1", 2), played("stranger", 3)]

        result = await PlayHistoryService(session, source).sync_recently_played("u1", "token")

        assert result.recorded == 2
        assert result.unmatched == 1
        assert result.duplicates == 0
        membership = (await session.execute(select(LibraryMembershipModel))).scalar_one()
        assert membership.total_play_count == 2
        assert membership.last_played_at is not None
        assert ensure_utc_aware(membership.last_played_at) == BASE_TIME + timedelta(minutes=2)

    async def test_replaying_the_same_response_is_a_no_op(
        self, session: AsyncSession, source: FakeRemoteSource
    ) -> None:
        await _library(session, source, "t1")
        source.recently_played = [played("t1", 1), played("t1", 2)]
        service = PlayHistoryService(session, source)
        await service.sync_recently_played("u1", "token")

        result = await service.sync_recently_played("u1", "token")

        assert result.recorded == 0
        assert result.duplicates == 2
        events = await session.execute(select(func.count()).select_from(PlayEventModel))
        assert events.scalar_one() == 2
        membership = (await session.execute(select(LibraryMembershipModel))).scalar_one()
        assert membership.total_play_count == 2

    async def test_older_play_does_not_move_last_played_back(
        self, session: AsyncSession, source: FakeRemoteSource
    ) -> None:
        await _library(session, source, "t1")
        source.recently_played = [played("t1", 10), played("t1", 5)]

        await PlayHistoryService(session, source).sync_recently_played("u1", "token")

        membership = (await session.execute(select(LibraryMembershipModel))).scalar_one()
        assert membership.last_played_at is not None
        assert ensure_utc_aware(membership.last_played_at) == BASE_TIME + timedelta(minutes=10)

    async def test_empty_history(self, session: AsyncSession, source: FakeRemoteSource) -> None:
        result = await PlayHistoryService(session, source).sync_recently_played("u1", "token")

        assert result.recorded == 0
        assert source.calls["list_recently_played"] == 1
