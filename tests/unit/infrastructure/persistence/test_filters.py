"""Tests for smart-playlist filter translation."""

from datetime import timedelta

import pytest
from fakes import BASE_TIME, FakeRemoteSource, saved_track
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from soundshelf.application.services.artist_resolution_cache import ArtistResolutionCache
from soundshelf.application.services.batch_processor import LibraryIngestor
from soundshelf.application.services.entity_reconciler import EntityReconciler
from soundshelf.domain.entities import SourceType
from soundshelf.domain.value_objects import FilterExpression, FilterKind, PlaylistCriteria
from soundshelf.infrastructure.persistence.models import (
    ArtistModel,
    LibraryMembershipModel,
    TrackModel,
)
from soundshelf.infrastructure.persistence.repositories import (
    ArtistRepository,
    SmartPlaylistRepository,
)


@pytest.fixture
async def library(session: AsyncSession) -> AsyncSession:
    """Three tracks of u1 and one of u2.

    t1: ar1, liked, oldest, genre "shoegaze", rating 5, 10 plays
    t2: ar2, playlist only, artist genre "jazz"
    t3: ar1, liked, newest
    """
    source = FakeRemoteSource()
    cache = ArtistResolutionCache(source, ArtistRepository(session))
    ingestor = LibraryIngestor(session, EntityReconciler(session), cache, "token")
    await ingestor.ingest_track_batch("u1", [saved_track("t1", added_at=BASE_TIME)])
    await ingestor.ingest_track_batch(
        "u1",
        [saved_track("t2", artist_ids=("ar2",), added_at=BASE_TIME + timedelta(hours=1))],
        SourceType.PLAYLIST,
        "pl1",
        "Road Trip",
    )
    await ingestor.ingest_track_batch(
        "u1", [saved_track("t3", added_at=BASE_TIME + timedelta(days=1))]
    )
    await ingestor.ingest_track_batch("u2", [saved_track("other")])

    t1 = (
        await session.execute(select(TrackModel).where(TrackModel.spotify_id == "t1"))
    ).scalar_one()
    t1.set_genres(["shoegaze", "dream pop"])
    ar2 = (
        await session.execute(select(ArtistModel).where(ArtistModel.spotify_id == "ar2"))
    ).scalar_one()
    ar2.set_genres(["jazz"])
    membership = (
        await session.execute(
            select(LibraryMembershipModel).where(LibraryMembershipModel.track_id == t1.id)
        )
    ).scalar_one()
    membership.rating = 5.0
    membership.total_play_count = 10
    await session.commit()
    return session


async def _match(session: AsyncSession, *filters: FilterExpression, **kwargs: object) -> list[str]:
    criteria = PlaylistCriteria(filters=list(filters), **kwargs)  # type: ignore[arg-type]
    return await SmartPlaylistRepository(session).matching_track_ids("u1", criteria)


class TestFilterTranslation:
    """Test each FilterKind against a small library."""

    async def test_no_filters_matches_whole_library_newest_first(
        self, library: AsyncSession
    ) -> None:
        assert await _match(library) == ["t3", "t2", "t1"]

    async def test_genre_matches_track_or_artist_genres(self, library: AsyncSession) -> None:
        assert await _match(library, FilterExpression(FilterKind.GENRE, "Shoegaze")) == ["t1"]
        assert await _match(library, FilterExpression(FilterKind.GENRE, "jazz")) == ["t2"]
        # whole element only, "pop" is not "dream pop"
        assert await _match(library, FilterExpression(FilterKind.GENRE, "pop")) == []

    async def test_artist_name_is_case_insensitive(self, library: AsyncSession) -> None:
        result = await _match(library, FilterExpression(FilterKind.ARTIST, "ARTIST AR1"))

        assert result == ["t3", "t1"]

    async def test_rating_and_play_count(self, library: AsyncSession) -> None:
        assert await _match(library, FilterExpression(FilterKind.MIN_RATING, 4)) == ["t1"]
        assert await _match(library, FilterExpression(FilterKind.MIN_PLAY_COUNT, 5)) == ["t1"]

    async def test_source(self, library: AsyncSession) -> None:
        liked = await _match(library, FilterExpression(FilterKind.SOURCE, SourceType.LIKED))
        playlist = await _match(library, FilterExpression(FilterKind.SOURCE, SourceType.PLAYLIST))

        assert liked == ["t3", "t1"]
        assert playlist == ["t2"]

    async def test_added_after(self, library: AsyncSession) -> None:
        result = await _match(
            library, FilterExpression(FilterKind.ADDED_AFTER, BASE_TIME + timedelta(minutes=30))
        )

        assert result == ["t3", "t2"]

    async def test_match_all_versus_any(self, library: AsyncSession) -> None:
        genre = FilterExpression(FilterKind.GENRE, "jazz")
        rating = FilterExpression(FilterKind.MIN_RATING, 4.5)

        assert await _match(library, genre, rating) == []
        assert await _match(library, genre, rating, match_all=False) == ["t2", "t1"]

    async def test_limit_keeps_newest(self, library: AsyncSession) -> None:
        assert await _match(library, limit=2) == ["t3", "t2"]
