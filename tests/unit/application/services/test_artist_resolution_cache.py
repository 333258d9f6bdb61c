"""Tests for the three-tier artist resolution cache."""

import pytest
from fakes import FakeRemoteSource
from sqlalchemy.ext.asyncio import AsyncSession

from soundshelf.application.services.artist_resolution_cache import ArtistResolutionCache
from soundshelf.domain.exceptions import AuthenticationError, RemoteSourceError
from soundshelf.infrastructure.persistence.models import ArtistModel
from soundshelf.infrastructure.persistence.repositories import ArtistRepository


@pytest.fixture
async def stored_artist(session: AsyncSession) -> ArtistModel:
    """Artist already in the store (tier 2)."""
    model = ArtistModel(spotify_id="stored", name="Stored Artist")
    model.set_genres(["dream pop"])
    session.add(model)
    await session.commit()
    return model


@pytest.fixture
def cache(session: AsyncSession, source: FakeRemoteSource) -> ArtistResolutionCache:
    return ArtistResolutionCache(source, ArtistRepository(session), batch_size=50)


class TestArtistResolutionCache:
    """Test session → store → remote resolution."""

    async def test_each_tier_is_used_once(
        self,
        cache: ArtistResolutionCache,
        source: FakeRemoteSource,
        stored_artist: ArtistModel,
    ) -> None:
        """Session hits skip the store, store hits skip the remote, the rest is ONE call."""
        source.add_artist("warm")
        source.add_artist("new1")
        source.add_artist("new2")

        await cache.resolve("token", ["warm"])
        assert source.artist_calls == [["warm"]]

        resolved = await cache.resolve("token", ["warm", "stored", "new1", "new2"])

        assert set(resolved) == {"warm", "stored", "new1", "new2"}
        assert resolved["stored"].genres == ["dream pop"]
        # Only the ids nobody knew went to the remote, in a single call
        assert source.artist_calls == [["warm"], ["new1", "new2"]]
        assert cache.stats.session_hits == 1
        assert cache.stats.store_hits == 1
        assert cache.stats.remote_hits == 3
        assert cache.stats.remote_calls == 2

    async def test_store_hits_are_cached_for_the_run(
        self,
        cache: ArtistResolutionCache,
        source: FakeRemoteSource,
        stored_artist: ArtistModel,
    ) -> None:
        await cache.resolve("token", ["stored"])
        await cache.resolve("token", ["stored"])

        assert cache.stats.store_hits == 1
        assert cache.stats.session_hits == 1
        assert source.artist_calls == []

    async def test_remote_calls_are_chunked(
        self, session: AsyncSession, source: FakeRemoteSource
    ) -> None:
        cache = ArtistResolutionCache(source, ArtistRepository(session), batch_size=2)
        for artist_id in ("a", "b", "c"):
            source.add_artist(artist_id)

        resolved = await cache.resolve("token", ["a", "b", "c", "a"])

        assert set(resolved) == {"a", "b", "c"}
        assert source.artist_calls == [["a", "b"], ["c"]]

    async def test_unknown_ids_are_missing_not_errors(
        self, cache: ArtistResolutionCache, source: FakeRemoteSource
    ) -> None:
        resolved = await cache.resolve("token", ["ghost"])

        assert resolved == {}
        assert cache.stats.misses == 1

    async def test_remote_failure_degrades_to_missing(
        self, cache: ArtistResolutionCache, source: FakeRemoteSource
    ) -> None:
        """A failing /artists call must not fail the batch."""
        source.fail_with["get_artists"] = RemoteSourceError("boom", status_code=500)

        resolved = await cache.resolve("token", ["x"])

        assert resolved == {}
        assert cache.stats.misses == 1

    async def test_rejected_token_propagates(
        self, cache: ArtistResolutionCache, source: FakeRemoteSource
    ) -> None:
        source.fail_with["get_artists"] = AuthenticationError(http_status=401)

        with pytest.raises(AuthenticationError):
            await cache.resolve("token", ["x"])

    async def test_clear_resets_cache_and_stats(
        self, cache: ArtistResolutionCache, source: FakeRemoteSource
    ) -> None:
        source.add_artist("a")
        await cache.resolve("token", ["a"])
        assert len(cache) == 1

        cache.clear()

        assert len(cache) == 0
        assert cache.stats.remote_hits == 0
        await cache.resolve("token", ["a"])
        assert len(source.artist_calls) == 2
