"""Tests for pushing smart playlists to Spotify."""

import json

import pytest
from fakes import FakeRemoteSource, saved_track
from sqlalchemy.ext.asyncio import AsyncSession

from soundshelf.application.services.artist_resolution_cache import ArtistResolutionCache
from soundshelf.application.services.batch_processor import LibraryIngestor
from soundshelf.application.services.entity_reconciler import EntityReconciler
from soundshelf.application.services.smart_playlist_sync_service import (
    SmartPlaylistSyncService,
)
from soundshelf.config import Settings
from soundshelf.domain.exceptions import AuthenticationError, RemoteSourceError
from soundshelf.domain.value_objects import (
    FilterExpression,
    FilterKind,
    PlaylistCriteria,
    hash_track_ids,
)
from soundshelf.infrastructure.persistence.models import SmartPlaylistModel
from soundshelf.infrastructure.persistence.repositories import ArtistRepository


async def _library(session: AsyncSession, source: FakeRemoteSource, *track_ids: str) -> None:
    cache = ArtistResolutionCache(source, ArtistRepository(session))
    ingestor = LibraryIngestor(session, EntityReconciler(session), cache, "token")
    await ingestor.ingest_track_batch("u1", [saved_track(tid) for tid in track_ids])


async def _smart_playlist(
    session: AsyncSession,
    criteria: PlaylistCriteria | None = None,
    remote_playlist_id: str | None = "remote-1",
    auto_sync: bool = True,
) -> SmartPlaylistModel:
    model = SmartPlaylistModel(
        user_id="u1",
        name="Everything",
        description="All my tracks",
        criteria=json.dumps((criteria or PlaylistCriteria()).to_dict()),
        remote_playlist_id=remote_playlist_id,
        auto_sync=auto_sync,
    )
    session.add(model)
    await session.commit()
    return model


@pytest.fixture
def service(
    session: AsyncSession, source: FakeRemoteSource, settings: Settings
) -> SmartPlaylistSyncService:
    return SmartPlaylistSyncService(session, source, settings.spotify, settings.sync)


class TestSmartPlaylistSyncService:
    """Test hash-based change detection for outbound playlists."""

    async def test_first_sync_pushes_tracks_and_stores_hash(
        self,
        session: AsyncSession,
        source: FakeRemoteSource,
        service: SmartPlaylistSyncService,
    ) -> None:
        await _library(session, source, "t2", "t1")
        playlist = await _smart_playlist(session)

        result = await service.sync_user_playlists("u1", "token")

        assert result.synced == 1
        assert sorted(source.replaced["remote-1"]) == ["spotify:track:t1", "spotify:track:t2"]
        assert source.details["remote-1"] == ("[Soundshelf] Everything", "All my tracks")
        assert playlist.track_ids_hash == hash_track_ids(["t1", "t2"])
        assert playlist.last_synced_at is not None

    async def test_unchanged_set_makes_no_remote_write(
        self,
        session: AsyncSession,
        source: FakeRemoteSource,
        service: SmartPlaylistSyncService,
    ) -> None:
        await _library(session, source, "t1", "t2")
        await _smart_playlist(session)
        await service.sync_user_playlists("u1", "token")

        result = await service.sync_user_playlists("u1", "token")

        assert result.skipped == 1
        assert result.synced == 0
        assert source.calls["replace_playlist_tracks"] == 1
        assert source.calls["update_playlist_details"] == 1

    async def test_new_matching_track_triggers_push(
        self,
        session: AsyncSession,
        source: FakeRemoteSource,
        service: SmartPlaylistSyncService,
    ) -> None:
        await _library(session, source, "t1")
        await _smart_playlist(session)
        await service.sync_user_playlists("u1", "token")

        await _library(session, source, "t2")
        result = await service.sync_user_playlists("u1", "token")

        assert result.synced == 1
        assert len(source.replaced["remote-1"]) == 2

    async def test_failed_push_does_not_store_hash(
        self,
        session: AsyncSession,
        source: FakeRemoteSource,
        service: SmartPlaylistSyncService,
    ) -> None:
        await _library(session, source, "t1")
        playlist = await _smart_playlist(session)
        source.fail_with["replace_playlist_tracks"] = RemoteSourceError("500", status_code=500)

        result = await service.sync_user_playlists("u1", "token")

        assert result.synced == 0
        assert len(result.errors) == 1
        assert playlist.track_ids_hash is None

    async def test_rejected_token_propagates(
        self,
        session: AsyncSession,
        source: FakeRemoteSource,
        service: SmartPlaylistSyncService,
    ) -> None:
        await _library(session, source, "t1")
        await _smart_playlist(session)
        source.fail_with["update_playlist_details"] = AuthenticationError(http_status=401)

        with pytest.raises(AuthenticationError):
            await service.sync_user_playlists("u1", "token")

    async def test_only_auto_sync_playlists_with_remote_id(
        self,
        session: AsyncSession,
        source: FakeRemoteSource,
        service: SmartPlaylistSyncService,
    ) -> None:
        await _library(session, source, "t1")
        await _smart_playlist(session, remote_playlist_id=None)
        await _smart_playlist(session, remote_playlist_id="remote-2", auto_sync=False)

        result = await service.sync_user_playlists("u1", "token")

        assert result.synced == 0
        assert result.skipped == 0
        assert source.replaced == {}

    async def test_criteria_select_the_pushed_tracks(
        self,
        session: AsyncSession,
        source: FakeRemoteSource,
        service: SmartPlaylistSyncService,
    ) -> None:
        await _library(session, source, "t1", "t2", "t3")
        criteria = PlaylistCriteria(filters=[FilterExpression(FilterKind.ARTIST, "artist ar1")])
        await _smart_playlist(session, criteria=PlaylistCriteria(limit=2))
        await _smart_playlist(session, criteria=criteria, remote_playlist_id="remote-2")

        await service.sync_user_playlists("u1", "token")

        assert len(source.replaced["remote-1"]) == 2
        assert len(source.replaced["remote-2"]) == 3
