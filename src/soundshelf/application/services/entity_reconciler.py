"""Maps remote tracks and albums onto canonical artist/album/track rows."""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from soundshelf.domain.dtos import ArtistMetadata, RemoteAlbum, RemoteArtistRef, RemoteTrack
from soundshelf.domain.entities import ReconciledAlbum, ReconciledTrack
from soundshelf.domain.exceptions import MissingArtistError
from soundshelf.infrastructure.persistence.models import ArtistModel, TrackModel
from soundshelf.infrastructure.persistence.repositories import (
    AlbumRepository,
    ArtistRepository,
    TrackRepository,
)

logger = logging.getLogger(__name__)


# Hey future me - the reconciler only writes CANONICAL rows (shared by all users). It never
# touches memberships, that's LibraryIngestor's job. Policy per entity:
# - artist: find-or-create, metadata from the resolved map, never updated here
# - album seen via a track: find-or-create, never updated (album sync refreshes it)
# - track: find-or-create, re-observations refresh track-level detail only
# Audio features and genres belong to the enrichment services and are never written here.
class EntityReconciler:
    """Find-or-create for canonical entities."""

    def __init__(self, session: AsyncSession) -> None:
        self._artists = ArtistRepository(session)
        self._albums = AlbumRepository(session)
        self._tracks = TrackRepository(session)

    async def _ensure_artist(
        self, ref: RemoteArtistRef, artist_map: dict[str, ArtistMetadata]
    ) -> ArtistModel:
        artist, created = await self._artists.get_or_create(
            ref.remote_id, ref.name, artist_map.get(ref.remote_id)
        )
        if created and ref.remote_id not in artist_map:
            logger.debug(f"Created artist {ref.remote_id} without resolved metadata")
        return artist

    async def reconcile_track(
        self,
        track: RemoteTrack,
        artist_map: dict[str, ArtistMetadata],
        known_track: TrackModel | None = None,
    ) -> ReconciledTrack:
        """Reconcile one remote track.

        Args:
            track: Remote track
            artist_map: Resolved artist metadata of the batch
            known_track: Existing canonical row from the batch pre-check (skips the lookup)

        Returns:
            Local artist/album/track ids

        Raises:
            MissingArtistError: The track carries no artist
        """
        if not track.artists:
            raise MissingArtistError(track.remote_id)

        if known_track is not None:
            TrackRepository.refresh(known_track, track)
            if known_track.album_id is None and track.album is not None:
                album_id = await self._ensure_album(track.album, track, artist_map)
                known_track.album_id = album_id
            return ReconciledTrack(
                artist_id=known_track.artist_id,
                album_id=known_track.album_id,
                track_id=known_track.id,
            )

        artist = await self._ensure_artist(track.artists[0], artist_map)
        album_id: str | None = None
        if track.album is not None:
            album_id = await self._ensure_album(track.album, track, artist_map)

        model, created = await self._tracks.get_or_create(track, artist.id, album_id)
        if not created:
            TrackRepository.refresh(model, track)
        return ReconciledTrack(artist_id=artist.id, album_id=model.album_id, track_id=model.id)

    async def _ensure_album(
        self,
        album: RemoteAlbum,
        track: RemoteTrack,
        artist_map: dict[str, ArtistMetadata],
    ) -> str:
        # Compilations list "Various Artists" on the album, fall back to the track artist
        album_artist_ref = album.artists[0] if album.artists else track.artists[0]
        album_artist = await self._ensure_artist(album_artist_ref, artist_map)
        model, _ = await self._albums.get_or_create(album, album_artist.id)
        return model.id

    async def reconcile_album(
        self, album: RemoteAlbum, artist_map: dict[str, ArtistMetadata]
    ) -> ReconciledAlbum:
        """Reconcile a saved album and all tracks it carries.

        Unlike albums seen through a track, the album row's metadata is refreshed here.

        Raises:
            MissingArtistError: The album carries no artist
        """
        if not album.artists:
            raise MissingArtistError(album.remote_id)

        artist = await self._ensure_artist(album.artists[0], artist_map)
        album_model, _ = await self._albums.upsert_full(album, artist.id)

        track_ids: list[str] = []
        for track in album.tracks:
            track_artist_ref = track.artists[0] if track.artists else album.artists[0]
            track_artist = await self._ensure_artist(track_artist_ref, artist_map)
            model, created = await self._tracks.get_or_create(
                track, track_artist.id, album_model.id
            )
            if not created:
                TrackRepository.refresh(model, track)
            track_ids.append(model.id)

        return ReconciledAlbum(
            artist_id=artist.id, album_id=album_model.id, track_ids=track_ids
        )
