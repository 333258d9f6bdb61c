"""
Spotify library source - converts Spotify API JSON to sync DTOs.

Hey future me – two layers on purpose:
- SpotifyClient: low-level HTTP (returns dicts, handles 429/auth errors)
- SpotifyLibrarySource: implements IRemoteLibrarySource and converts EVERYTHING to DTOs

If Spotify changes its JSON, only the _convert_* methods change. The sync services never
see a raw dict.

Usage:
    source = SpotifyLibrarySource(spotify_client, settings.spotify)
    async for saved in source.stream_saved_tracks(token):
        ...
"""

import logging
from datetime import UTC, datetime
from typing import Any

from soundshelf.config.settings import SpotifySettings
from soundshelf.domain.dtos import (
    ArtistMetadata,
    Page,
    PlayedTrack,
    RemoteAlbum,
    RemoteArtistRef,
    RemotePlaylist,
    RemoteTrack,
    SavedAlbum,
    SavedTrack,
)
from soundshelf.domain.ports import IRemoteLibrarySource
from soundshelf.infrastructure.integrations.spotify_client import SpotifyClient

logger = logging.getLogger(__name__)

PLAYLIST_PAGE_SIZE = 100


def parse_spotify_datetime(value: str | None) -> datetime | None:
    """Parse Spotify ISO timestamps ("2024-01-01T12:00:00Z") to aware UTC datetimes."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.debug(f"Unparseable Spotify timestamp: {value!r}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _next_offset(data: dict[str, Any], offset: int, count: int) -> int | None:
    if not data.get("next") or count == 0:
        return None
    return offset + count


def _first_image(images: list[dict[str, Any]] | None) -> str | None:
    # Spotify orders images largest first
    if not images:
        return None
    return images[0].get("url")


class SpotifyLibrarySource(IRemoteLibrarySource):
    """IRemoteLibrarySource backed by the Spotify Web API."""

    def __init__(self, client: SpotifyClient, settings: SpotifySettings) -> None:
        """
        Initialize the source.

        Args:
            client: Low-level Spotify HTTP client
            settings: Spotify settings (page size, inter-page delay)
        """
        self._client = client
        self.page_size = settings.page_size
        self.page_delay_seconds = settings.inter_page_delay_ms / 1000

    # =========================================================================
    # CONVERSION
    # =========================================================================

    def _convert_artist_ref(self, data: dict[str, Any]) -> RemoteArtistRef | None:
        if not data.get("id"):
            return None
        return RemoteArtistRef(remote_id=data["id"], name=data.get("name") or "Unknown Artist")

    def _convert_artist(self, data: dict[str, Any]) -> ArtistMetadata:
        return ArtistMetadata(
            remote_id=data["id"],
            name=data.get("name") or "Unknown Artist",
            genres=list(data.get("genres") or []),
            popularity=data.get("popularity"),
            image_url=_first_image(data.get("images")),
        )

    def _convert_album(self, data: dict[str, Any], with_tracks: bool = False) -> RemoteAlbum:
        """
        Convert Spotify album JSON to RemoteAlbum.

        Args:
            data: Album JSON (simplified or full)
            with_tracks: Also convert the nested first page of tracks (saved albums)
        """
        artists = [
            ref for ref in (self._convert_artist_ref(a) for a in data.get("artists") or []) if ref
        ]
        album = RemoteAlbum(
            remote_id=data["id"],
            name=data.get("name") or "Unknown Album",
            artists=artists,
            image_url=_first_image(data.get("images")),
            release_date=data.get("release_date"),
            release_date_precision=data.get("release_date_precision"),
            total_tracks=data.get("total_tracks"),
            album_type=data.get("album_type"),
            label=data.get("label"),
            popularity=data.get("popularity"),
        )
        if with_tracks:
            # Hey future me – tracks inside an album are SIMPLIFIED, they have no album
            # field. We pass the parent album along so the reconciler links them correctly.
            for item in (data.get("tracks") or {}).get("items") or []:
                track = self._convert_track(item, album=album)
                if track is not None:
                    album.tracks.append(track)
        return album

    def _convert_track(
        self, data: dict[str, Any] | None, album: RemoteAlbum | None = None
    ) -> RemoteTrack | None:
        """
        Convert Spotify track JSON to RemoteTrack.

        Returns None for things that aren't syncable tracks (local files, podcast
        episodes, removed tracks without id).

        Args:
            data: Track JSON from Spotify API
            album: Parent album for simplified tracks
        """
        if not data or not data.get("id") or data.get("is_local"):
            return None
        if data.get("type", "track") != "track":
            return None

        artists = [
            ref for ref in (self._convert_artist_ref(a) for a in data.get("artists") or []) if ref
        ]
        album_data = data.get("album")
        if album_data and album_data.get("id"):
            album = self._convert_album(album_data)

        return RemoteTrack(
            remote_id=data["id"],
            name=data.get("name") or "Unknown Track",
            artists=artists,
            duration_ms=int(data.get("duration_ms") or 0),
            album=album,
            track_number=data.get("track_number"),
            disc_number=data.get("disc_number"),
            explicit=bool(data.get("explicit", False)),
            popularity=data.get("popularity"),
            preview_url=data.get("preview_url"),
            isrc=(data.get("external_ids") or {}).get("isrc"),
            linked_from_id=(data.get("linked_from") or {}).get("id"),
        )

    def _convert_playlist(self, data: dict[str, Any]) -> RemotePlaylist:
        owner = data.get("owner") or {}
        return RemotePlaylist(
            remote_id=data["id"],
            name=data.get("name") or "Untitled Playlist",
            snapshot_token=data.get("snapshot_id") or "",
            total_tracks=int((data.get("tracks") or {}).get("total") or 0),
            owner_id=owner.get("id"),
            owner_name=owner.get("display_name"),
            description=data.get("description") or None,
            image_url=_first_image(data.get("images")),
            public=data.get("public"),
            collaborative=bool(data.get("collaborative", False)),
        )

    # =========================================================================
    # IRemoteLibrarySource
    # =========================================================================

    async def list_saved_tracks(
        self, access_token: str, offset: int = 0, limit: int = 50
    ) -> Page[SavedTrack]:
        """Get one page of liked tracks."""
        data = await self._client.get_saved_tracks(access_token, limit=limit, offset=offset)
        raw_items = data.get("items") or []
        items: list[SavedTrack] = []
        for raw in raw_items:
            track = self._convert_track(raw.get("track"))
            if track is not None:
                items.append(
                    SavedTrack(track=track, added_at=parse_spotify_datetime(raw.get("added_at")))
                )
        return Page(
            items=items,
            total=int(data.get("total") or 0),
            offset=offset,
            next_offset=_next_offset(data, offset, len(raw_items)),
        )

    async def list_saved_albums(
        self, access_token: str, offset: int = 0, limit: int = 50
    ) -> Page[SavedAlbum]:
        """Get one page of saved albums, each with its COMPLETE track list."""
        data = await self._client.get_saved_albums(access_token, limit=limit, offset=offset)
        raw_items = data.get("items") or []
        items: list[SavedAlbum] = []
        for raw in raw_items:
            album_data = raw.get("album")
            if not album_data or not album_data.get("id"):
                continue
            album = self._convert_album(album_data, with_tracks=True)
            await self._fetch_remaining_album_tracks(access_token, album_data, album)
            items.append(
                SavedAlbum(album=album, added_at=parse_spotify_datetime(raw.get("added_at")))
            )
        return Page(
            items=items,
            total=int(data.get("total") or 0),
            offset=offset,
            next_offset=_next_offset(data, offset, len(raw_items)),
        )

    async def _fetch_remaining_album_tracks(
        self, access_token: str, album_data: dict[str, Any], album: RemoteAlbum
    ) -> None:
        # Saved-album payloads embed only the first 50 tracks
        tracks_page = album_data.get("tracks") or {}
        offset = len(tracks_page.get("items") or [])
        has_next = bool(tracks_page.get("next"))
        while has_next:
            page = await self._client.get_album_tracks(
                access_token, album.remote_id, limit=50, offset=offset
            )
            raw_items = page.get("items") or []
            for item in raw_items:
                track = self._convert_track(item, album=album)
                if track is not None:
                    album.tracks.append(track)
            offset += len(raw_items)
            has_next = bool(page.get("next")) and bool(raw_items)

    async def list_playlists(
        self, access_token: str, offset: int = 0, limit: int = 50
    ) -> Page[RemotePlaylist]:
        """Get one page of playlist metadata."""
        data = await self._client.get_user_playlists(access_token, limit=limit, offset=offset)
        raw_items = data.get("items") or []
        items = [self._convert_playlist(raw) for raw in raw_items if raw and raw.get("id")]
        return Page(
            items=items,
            total=int(data.get("total") or 0),
            offset=offset,
            next_offset=_next_offset(data, offset, len(raw_items)),
        )

    async def list_playlist_tracks(
        self, access_token: str, playlist_id: str
    ) -> list[SavedTrack]:
        """Get ALL syncable tracks of a playlist."""
        tracks: list[SavedTrack] = []
        offset = 0
        while True:
            data = await self._client.get_playlist_items(
                access_token, playlist_id, limit=PLAYLIST_PAGE_SIZE, offset=offset
            )
            raw_items = data.get("items") or []
            for raw in raw_items:
                track = self._convert_track(raw.get("track"))
                if track is not None:
                    tracks.append(
                        SavedTrack(
                            track=track, added_at=parse_spotify_datetime(raw.get("added_at"))
                        )
                    )
            next_offset = _next_offset(data, offset, len(raw_items))
            if next_offset is None:
                return tracks
            offset = next_offset

    async def list_recently_played(
        self, access_token: str, after: datetime | None = None
    ) -> list[PlayedTrack]:
        """Get up to 50 recently played tracks."""
        after_ms = int(after.timestamp() * 1000) if after is not None else None
        data = await self._client.get_recently_played(access_token, limit=50, after_ms=after_ms)
        played: list[PlayedTrack] = []
        for raw in data.get("items") or []:
            track = self._convert_track(raw.get("track"))
            played_at = parse_spotify_datetime(raw.get("played_at"))
            if track is not None and played_at is not None:
                played.append(PlayedTrack(track=track, played_at=played_at))
        return played

    async def get_artists(
        self, access_token: str, artist_ids: list[str]
    ) -> list[ArtistMetadata]:
        """Get full artist metadata for one batch of ids."""
        raw_artists = await self._client.get_several_artists(access_token, artist_ids)
        return [self._convert_artist(a) for a in raw_artists if a.get("id")]

    async def replace_playlist_tracks(
        self, access_token: str, playlist_id: str, track_uris: list[str]
    ) -> None:
        """Replace the full track list of a remote playlist."""
        await self._client.replace_playlist_items(access_token, playlist_id, track_uris)

    async def update_playlist_details(
        self,
        access_token: str,
        playlist_id: str,
        name: str,
        description: str | None = None,
    ) -> None:
        """Update name/description of a remote playlist."""
        await self._client.update_playlist_details(access_token, playlist_id, name, description)
