"""Tests for SpotifyLibrarySource JSON conversion and paging."""

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from soundshelf.config import SpotifySettings
from soundshelf.infrastructure.integrations.spotify_client import SpotifyClient
from soundshelf.infrastructure.plugins.spotify_source import (
    SpotifyLibrarySource,
    parse_spotify_datetime,
)


def _track_json(track_id: str, **overrides: object) -> dict:
    data: dict = {
        "id": track_id,
        "type": "track",
        "name": f"Song {track_id}",
        "duration_ms": 180000,
        "artists": [{"id": "ar1", "name": "Band"}],
        "album": {
            "id": "al1",
            "name": "Record",
            "artists": [{"id": "ar1", "name": "Band"}],
            "images": [{"url": "https://img/large"}, {"url": "https://img/small"}],
        },
        "external_ids": {"isrc": "USABC1234567"},
    }
    data.update(overrides)
    return data


@pytest.fixture
def client() -> MagicMock:
    return MagicMock(spec=SpotifyClient)


@pytest.fixture
def source(client: MagicMock) -> SpotifyLibrarySource:
    return SpotifyLibrarySource(client, SpotifySettings(page_size=2, inter_page_delay_ms=0))


class TestParseSpotifyDatetime:
    """Test timestamp parsing."""

    def test_zulu_timestamp(self) -> None:
        assert parse_spotify_datetime("2024-01-01T12:00:00Z") == datetime(
            2024, 1, 1, 12, tzinfo=UTC
        )

    @pytest.mark.parametrize("value", [None, "", "yesterday"])
    def test_missing_or_garbage(self, value: str | None) -> None:
        assert parse_spotify_datetime(value) is None


class TestSavedTracks:
    """Test list_saved_tracks and streaming."""

    async def test_conversion_skips_local_files_and_episodes(
        self, client: MagicMock, source: SpotifyLibrarySource
    ) -> None:
        client.get_saved_tracks = AsyncMock(
            return_value={
                "items": [
                    {"added_at": "2024-02-01T00:00:00Z", "track": _track_json("t1")},
                    {"track": _track_json("local", is_local=True)},
                    {"track": _track_json("ep1", type="episode")},
                    {"track": None},
                ],
                "total": 4,
                "next": None,
            }
        )

        page = await source.list_saved_tracks("token", offset=0, limit=50)

        assert page.total == 4
        assert page.next_offset is None
        (saved,) = page.items
        assert saved.track.remote_id == "t1"
        assert saved.track.isrc == "USABC1234567"
        assert saved.track.album is not None
        assert saved.track.album.image_url == "https://img/large"
        assert saved.added_at == datetime(2024, 2, 1, tzinfo=UTC)

    async def test_relinked_track_keeps_original_id(
        self, client: MagicMock, source: SpotifyLibrarySource
    ) -> None:
        client.get_saved_tracks = AsyncMock(
            return_value={
                "items": [{"track": _track_json("market", linked_from={"id": "original"})}],
                "total": 1,
            }
        )

        page = await source.list_saved_tracks("token")

        assert page.items[0].track.linked_from_id == "original"

    async def test_stream_follows_next_and_honours_limit(
        self, client: MagicMock, source: SpotifyLibrarySource
    ) -> None:
        client.get_saved_tracks = AsyncMock(
            side_effect=[
                {
                    "items": [{"track": _track_json("t1")}, {"track": _track_json("t2")}],
                    "total": 5,
                    "next": "more",
                },
                {"items": [{"track": _track_json("t3")}], "total": 5, "next": "more"},
            ]
        )

        ids = [s.track.remote_id async for s in source.stream_saved_tracks("token", limit=3)]

        assert ids == ["t1", "t2", "t3"]
        second_call = client.get_saved_tracks.await_args_list[1]
        assert second_call.kwargs == {"limit": 1, "offset": 2}


class TestSavedAlbums:
    """Test list_saved_albums."""

    async def test_album_tracks_are_completed(
        self, client: MagicMock, source: SpotifyLibrarySource
    ) -> None:
        album_json = {
            "id": "al1",
            "name": "Double Album",
            "artists": [{"id": "ar1", "name": "Band"}],
            "label": "Label",
            "tracks": {
                "items": [{"id": "t1", "name": "One", "artists": [{"id": "ar1"}]}],
                "next": "more",
            },
        }
        client.get_saved_albums = AsyncMock(
            return_value={
                "items": [{"added_at": "2024-03-01T00:00:00Z", "album": album_json}],
                "total": 1,
            }
        )
        client.get_album_tracks = AsyncMock(
            return_value={
                "items": [{"id": "t2", "name": "Two", "artists": [{"id": "ar1"}]}],
                "next": None,
            }
        )

        page = await source.list_saved_albums("token")

        album = page.items[0].album
        assert album.label == "Label"
        assert [t.remote_id for t in album.tracks] == ["t1", "t2"]
        # simplified tracks point back at their album
        assert all(t.album is album for t in album.tracks)
        client.get_album_tracks.assert_awaited_once_with("token", "al1", limit=50, offset=1)


class TestPlaylistsAndHistory:
    """Test playlists, recently played and artists."""

    async def test_playlist_metadata(self, client: MagicMock, source: SpotifyLibrarySource) -> None:
        client.get_user_playlists = AsyncMock(
            return_value={
                "items": [
                    {
                        "id": "pl1",
                        "name": "Road Trip",
                        "snapshot_id": "snap",
                        "tracks": {"total": 12},
                        "owner": {"id": "me", "display_name": "Me"},
                    },
                    None,
                ],
                "total": 1,
            }
        )

        page = await source.list_playlists("token")

        (playlist,) = page.items
        assert playlist.snapshot_token == "snap"
        assert playlist.total_tracks == 12
        assert playlist.owner_name == "Me"

    async def test_playlist_tracks_are_paged(
        self, client: MagicMock, source: SpotifyLibrarySource
    ) -> None:
        client.get_playlist_items = AsyncMock(
            side_effect=[
                {"items": [{"track": _track_json("t1")}], "next": "more"},
                {"items": [{"track": _track_json("t2")}], "next": None},
            ]
        )

        tracks = await source.list_playlist_tracks("token", "pl1")

        assert [t.track.remote_id for t in tracks] == ["t1", "t2"]

    async def test_recently_played_passes_cursor_in_ms(
        self, client: MagicMock, source: SpotifyLibrarySource
    ) -> None:
        client.get_recently_played = AsyncMock(
            return_value={
                "items": [
                    {"track": _track_json("t1"), "played_at": "2024-01-01T12:00:00.123Z"},
                    {"track": _track_json("t2"), "played_at": None},
                ]
            }
        )
        after = datetime(2024, 1, 1, tzinfo=UTC)

        played = await source.list_recently_played("token", after=after)

        assert [p.track.remote_id for p in played] == ["t1"]
        client.get_recently_played.assert_awaited_once_with(
            "token", limit=50, after_ms=int(after.timestamp() * 1000)
        )

    async def test_artists(self, client: MagicMock, source: SpotifyLibrarySource) -> None:
        client.get_several_artists = AsyncMock(
            return_value=[
                {"id": "ar1", "name": "Band", "genres": ["rock"], "popularity": 50, "images": []}
            ]
        )

        (artist,) = await source.get_artists("token", ["ar1"])

        assert artist.genres == ["rock"]
        assert artist.popularity == 50
        assert artist.image_url is None
