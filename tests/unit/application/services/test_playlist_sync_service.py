"""Tests for inbound playlist sync with snapshot change detection."""

import pytest
from fakes import FakeRemoteSource, remote_playlist, saved_track
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from soundshelf.application.services.artist_resolution_cache import ArtistResolutionCache
from soundshelf.application.services.playlist_sync_service import PlaylistSyncService
from soundshelf.config import Settings
from soundshelf.domain.exceptions import AuthenticationError, RemoteSourceError
from soundshelf.infrastructure.persistence.models import RemotePlaylistModel, SmartPlaylistModel
from soundshelf.infrastructure.persistence.repositories import (
    ArtistRepository,
    MembershipRepository,
)

# Hey future me - the central promise here: an unchanged snapshot token means ZERO track
# fetches for that playlist, and a failed fetch never stores the new token.


@pytest.fixture
def service(
    session: AsyncSession, source: FakeRemoteSource, settings: Settings
) -> PlaylistSyncService:
    cache = ArtistResolutionCache(source, ArtistRepository(session))
    return PlaylistSyncService(session, source, cache, settings.sync)


async def _mirror(session: AsyncSession, spotify_id: str) -> RemotePlaylistModel:
    result = await session.execute(
        select(RemotePlaylistModel).where(RemotePlaylistModel.spotify_id == spotify_id)
    )
    return result.scalar_one()


class TestPlaylistSyncService:
    """Test PlaylistSyncService."""

    async def test_first_sync_fetches_and_stores_token(
        self, session: AsyncSession, source: FakeRemoteSource, service: PlaylistSyncService
    ) -> None:
        source.playlists = [remote_playlist("pl1", "snap-1", total_tracks=3)]
        source.playlist_tracks["pl1"] = [saved_track(f"t{i}") for i in range(3)]

        result = await service.sync_playlists("u1", "token")

        assert result.total_playlists == 1
        assert result.playlist_tracks == 3
        assert result.new_tracks == 3
        assert result.skipped_playlists == 0
        assert result.errors == []
        assert (await _mirror(session, "pl1")).snapshot_token == "snap-1"
        assert await MembershipRepository(session).count_for_user("u1") == 3
        assert len(service.new_track_ids) == 3

    async def test_unchanged_snapshot_skips_track_fetch(
        self, source: FakeRemoteSource, service: PlaylistSyncService
    ) -> None:
        source.playlists = [remote_playlist("pl1", "snap-1", total_tracks=1)]
        source.playlist_tracks["pl1"] = [saved_track("t1")]
        await service.sync_playlists("u1", "token")
        fetches_after_first_run = source.calls["list_playlist_tracks"]

        result = await service.sync_playlists("u1", "token")

        assert source.calls["list_playlist_tracks"] == fetches_after_first_run
        assert result.skipped_playlists == 1
        assert result.playlist_tracks == 0

    async def test_changed_snapshot_refetches(
        self, session: AsyncSession, source: FakeRemoteSource, service: PlaylistSyncService
    ) -> None:
        source.playlists = [remote_playlist("pl1", "snap-1", total_tracks=1)]
        source.playlist_tracks["pl1"] = [saved_track("t1")]
        await service.sync_playlists("u1", "token")

        source.playlists = [remote_playlist("pl1", "snap-2", total_tracks=2)]
        source.playlist_tracks["pl1"] = [saved_track("t1"), saved_track("t2")]
        result = await service.sync_playlists("u1", "token")

        assert source.playlist_track_fetches == ["pl1", "pl1"]
        assert result.playlist_tracks == 2
        # t1 is already in the library, only t2 is new
        assert result.new_tracks == 1
        assert (await _mirror(session, "pl1")).snapshot_token == "snap-2"

    async def test_force_refresh_ignores_tokens(
        self, source: FakeRemoteSource, service: PlaylistSyncService
    ) -> None:
        source.playlists = [remote_playlist("pl1", "snap-1", total_tracks=1)]
        source.playlist_tracks["pl1"] = [saved_track("t1")]
        await service.sync_playlists("u1", "token")

        result = await service.sync_playlists("u1", "token", force_refresh=True)

        assert source.calls["list_playlist_tracks"] == 2
        assert result.skipped_playlists == 0

    async def test_failed_fetch_keeps_token_unset(
        self, session: AsyncSession, source: FakeRemoteSource, service: PlaylistSyncService
    ) -> None:
        """A playlist error is recorded, the next playlist still syncs, retry happens next run."""
        source.playlists = [
            remote_playlist("bad", "snap-1", total_tracks=1),
            remote_playlist("good", "snap-1", total_tracks=1),
        ]
        source.playlist_tracks["good"] = [saved_track("t1")]
        source.playlist_errors["bad"] = RemoteSourceError("502 from Spotify", status_code=502)

        result = await service.sync_playlists("u1", "token")

        assert len(result.errors) == 1
        assert "bad" in result.errors[0]
        assert (await _mirror(session, "bad")).snapshot_token is None
        assert (await _mirror(session, "good")).snapshot_token == "snap-1"

        source.playlist_errors.clear()
        source.playlist_tracks["bad"] = [saved_track("t2")]
        retry = await service.sync_playlists("u1", "token")
        assert retry.skipped_playlists == 1
        assert retry.playlist_tracks == 1

    async def test_rejected_token_aborts(
        self, source: FakeRemoteSource, service: PlaylistSyncService
    ) -> None:
        source.playlists = [remote_playlist("pl1", total_tracks=1)]
        source.playlist_errors["pl1"] = AuthenticationError(http_status=401)

        with pytest.raises(AuthenticationError):
            await service.sync_playlists("u1", "token")

    async def test_empty_playlist_is_marked_synced_without_fetch(
        self, session: AsyncSession, source: FakeRemoteSource, service: PlaylistSyncService
    ) -> None:
        source.playlists = [remote_playlist("empty", "snap-1", total_tracks=0)]

        await service.sync_playlists("u1", "token")

        assert source.calls["list_playlist_tracks"] == 0
        assert (await _mirror(session, "empty")).snapshot_token == "snap-1"

    async def test_app_controlled_playlists_are_excluded(
        self, session: AsyncSession, source: FakeRemoteSource, service: PlaylistSyncService
    ) -> None:
        session.add(
            SmartPlaylistModel(user_id="u1", name="Chill", remote_playlist_id="ours")
        )
        await session.commit()
        source.playlists = [
            remote_playlist("ours", total_tracks=5),
            remote_playlist("theirs", total_tracks=1),
        ]
        source.playlist_tracks["theirs"] = [saved_track("t1")]

        result = await service.sync_playlists("u1", "token")

        assert result.total_playlists == 1
        assert source.playlist_track_fetches == ["theirs"]

    async def test_progress_per_playlist(
        self, source: FakeRemoteSource, service: PlaylistSyncService
    ) -> None:
        source.playlists = [remote_playlist(f"pl{i}") for i in range(3)]
        seen: list[tuple[int, int]] = []

        async def on_progress(done: int, total: int) -> None:
            seen.append((done, total))

        await service.sync_playlists("u1", "token", on_progress=on_progress)

        assert seen == [(1, 3), (2, 3), (3, 3)]

    async def test_limit_only_syncs_first_playlists(
        self, source: FakeRemoteSource, service: PlaylistSyncService
    ) -> None:
        source.playlists = [remote_playlist(f"pl{i}") for i in range(5)]

        result = await service.sync_playlists("u1", "token", limit=3)

        assert result.total_playlists == 3
