"""Repository implementations for the sync engine.

Hey future me - repositories here return ORM models, not domain entities. The sync engine
reads and writes a handful of columns in tight loops, mapping every row to a dataclass and
back would double the work for nothing. Domain objects (DTOs, results) stay in the services.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime
from typing import TypeVar

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from soundshelf.domain.dtos import (
    ArtistMetadata,
    AudioFeatures,
    RemoteAlbum,
    RemotePlaylist,
    RemoteTrack,
)
from soundshelf.domain.entities import SourceType
from soundshelf.domain.exceptions import EntityNotFoundException
from soundshelf.domain.value_objects import PlaylistCriteria

from .filters import matching_track_ids_query
from .models import (
    AlbumModel,
    ArtistModel,
    LibraryMembershipModel,
    MembershipSourceModel,
    PlayEventModel,
    RemotePlaylistModel,
    SmartPlaylistModel,
    TrackModel,
    UserAlbumModel,
    ensure_utc_aware,
    utc_now,
)
from .retry import is_unique_violation

logger = logging.getLogger(__name__)

M = TypeVar("M")


class _BaseRepository:
    """Shared find-or-create plumbing."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with a session."""
        self.session = session

    # Hey future me - this is THE find-or-create primitive. Read first, insert inside a
    # SAVEPOINT, and if a concurrent run (other user, same artist) won the race the unique
    # constraint fires → we roll back just the savepoint and re-read the winner's row.
    # Only unique violations are handled, FK errors etc. propagate as bugs.
    async def _get_or_create(
        self,
        lookup: Callable[[], Awaitable[M | None]],
        build: Callable[[], M],
    ) -> tuple[M, bool]:
        existing = await lookup()
        if existing is not None:
            return existing, False

        model = build()
        try:
            async with self.session.begin_nested():
                self.session.add(model)
        except IntegrityError as e:
            if not is_unique_violation(e):
                raise
            existing = await lookup()
            if existing is None:
                raise
            logger.debug(f"Lost create race for {type(model).__name__}, re-read existing row")
            return existing, False
        return model, True


class ArtistRepository(_BaseRepository):
    """Canonical artists."""

    async def get_by_spotify_id(self, spotify_id: str) -> ArtistModel | None:
        """Get artist by Spotify id."""
        stmt = select(ArtistModel).where(ArtistModel.spotify_id == spotify_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_many_by_spotify_ids(self, spotify_ids: Iterable[str]) -> list[ArtistModel]:
        """Get all artists for the given Spotify ids in ONE query."""
        ids = list(set(spotify_ids))
        if not ids:
            return []
        stmt = select(ArtistModel).where(ArtistModel.spotify_id.in_(ids))
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_or_create(
        self, spotify_id: str, name: str, metadata: ArtistMetadata | None
    ) -> tuple[ArtistModel, bool]:
        """Find artist by Spotify id or create it from resolved metadata.

        A missing metadata entry still creates the artist (empty genres, no image).
        """

        def build() -> ArtistModel:
            model = ArtistModel(
                spotify_id=spotify_id,
                name=metadata.name if metadata else name,
                image_url=metadata.image_url if metadata else None,
                popularity=metadata.popularity if metadata else None,
            )
            model.set_genres(metadata.genres if metadata else [])
            return model

        return await self._get_or_create(lambda: self.get_by_spotify_id(spotify_id), build)


class AlbumRepository(_BaseRepository):
    """Canonical albums."""

    async def get_by_spotify_id(self, spotify_id: str) -> AlbumModel | None:
        """Get album by Spotify id."""
        stmt = select(AlbumModel).where(AlbumModel.spotify_id == spotify_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_or_create(self, album: RemoteAlbum, artist_id: str) -> tuple[AlbumModel, bool]:
        """Find album or create it. Existing albums are NOT updated."""
        return await self._get_or_create(
            lambda: self.get_by_spotify_id(album.remote_id),
            lambda: self._build(album, artist_id),
        )

    async def upsert_full(self, album: RemoteAlbum, artist_id: str) -> tuple[AlbumModel, bool]:
        """Create the album or refresh ALL its metadata (album-level sync only)."""
        model, created = await self.get_or_create(album, artist_id)
        if not created:
            self._apply(model, album)
        return model, created

    def _build(self, album: RemoteAlbum, artist_id: str) -> AlbumModel:
        model = AlbumModel(spotify_id=album.remote_id, artist_id=artist_id)
        self._apply(model, album)
        return model

    @staticmethod
    def _apply(model: AlbumModel, album: RemoteAlbum) -> None:
        model.name = album.name
        model.image_url = album.image_url
        model.release_date = album.release_date
        model.release_date_precision = album.release_date_precision
        model.total_tracks = album.total_tracks
        model.album_type = album.album_type
        if album.label is not None:
            model.label = album.label
        if album.popularity is not None:
            model.popularity = album.popularity


class TrackRepository(_BaseRepository):
    """Canonical tracks plus the enrichment backlog queries."""

    async def get_by_spotify_id(self, spotify_id: str) -> TrackModel | None:
        """Get track by Spotify id."""
        stmt = select(TrackModel).where(TrackModel.spotify_id == spotify_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_map_by_spotify_ids(self, spotify_ids: Iterable[str]) -> dict[str, TrackModel]:
        """Get existing tracks keyed by Spotify id in ONE query."""
        ids = list(set(spotify_ids))
        if not ids:
            return {}
        stmt = select(TrackModel).where(TrackModel.spotify_id.in_(ids))
        result = await self.session.execute(stmt)
        return {model.spotify_id: model for model in result.scalars().all()}

    async def get_or_create(
        self, track: RemoteTrack, artist_id: str, album_id: str | None
    ) -> tuple[TrackModel, bool]:
        """Find track by canonical Spotify id or create it."""

        def build() -> TrackModel:
            model = TrackModel(
                spotify_id=track.canonical_id, artist_id=artist_id, album_id=album_id
            )
            self.refresh(model, track)
            return model

        model, created = await self._get_or_create(
            lambda: self.get_by_spotify_id(track.canonical_id), build
        )
        if not created and model.album_id is None and album_id is not None:
            model.album_id = album_id
        return model, created

    # Hey future me - ONLY track-level detail gets refreshed here. Audio features and genres
    # are owned by the enrichment services - never add them to this method! Setting an
    # attribute to its current value doesn't dirty the row, so unchanged tracks cost no UPDATE.
    @staticmethod
    def refresh(model: TrackModel, track: RemoteTrack) -> None:
        """Apply track-level metadata from a remote observation."""
        model.title = track.name
        model.duration_ms = track.duration_ms
        model.explicit = track.explicit
        if track.track_number is not None:
            model.track_number = track.track_number
        if track.disc_number is not None:
            model.disc_number = track.disc_number
        if track.popularity is not None:
            model.popularity = track.popularity
        if track.preview_url is not None:
            model.preview_url = track.preview_url
        if track.isrc and not model.isrc:
            model.isrc = track.isrc

    async def count_pending_audio_features(self, track_ids: list[str] | None = None) -> int:
        """Count tracks never sent to the audio-features provider."""
        stmt = select(func.count(TrackModel.id)).where(
            TrackModel.audio_features_updated_at.is_(None)
        )
        if track_ids is not None:
            stmt = stmt.where(TrackModel.id.in_(track_ids))
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def list_pending_audio_features(
        self, limit: int, track_ids: list[str] | None = None
    ) -> list[TrackModel]:
        """Oldest tracks without audio features first."""
        stmt = (
            select(TrackModel)
            .where(TrackModel.audio_features_updated_at.is_(None))
            .order_by(TrackModel.created_at, TrackModel.id)
            .limit(limit)
        )
        if track_ids is not None:
            stmt = stmt.where(TrackModel.id.in_(track_ids))
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    def apply_audio_features(model: TrackModel, features: AudioFeatures | None) -> None:
        """Store features (if any) and mark the track as processed."""
        if features is not None:
            model.acousticness = features.acousticness
            model.danceability = features.danceability
            model.energy = features.energy
            model.instrumentalness = features.instrumentalness
            model.key = features.key
            model.liveness = features.liveness
            model.loudness = features.loudness
            model.mode = features.mode
            model.speechiness = features.speechiness
            model.tempo = features.tempo
            model.valence = features.valence
        model.audio_features_updated_at = utc_now()

    async def count_pending_genres(self) -> int:
        """Count tracks never sent to the genre provider."""
        stmt = select(func.count(TrackModel.id)).where(TrackModel.genres_updated_at.is_(None))
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def list_pending_genres(self, limit: int) -> list[tuple[TrackModel, str]]:
        """Tracks without genres plus their artist name."""
        stmt = (
            select(TrackModel, ArtistModel.name)
            .join(ArtistModel, ArtistModel.id == TrackModel.artist_id)
            .where(TrackModel.genres_updated_at.is_(None))
            .order_by(TrackModel.created_at, TrackModel.id)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [(row[0], row[1]) for row in result.all()]


class MembershipRepository(_BaseRepository):
    """Per-user library memberships."""

    async def get_map_by_track_spotify_ids(
        self, user_id: str, spotify_ids: Iterable[str]
    ) -> dict[str, LibraryMembershipModel]:
        """Existing memberships of the user keyed by canonical Spotify track id (ONE query)."""
        ids = list(set(spotify_ids))
        if not ids:
            return {}
        stmt = (
            select(LibraryMembershipModel, TrackModel.spotify_id)
            .join(TrackModel, TrackModel.id == LibraryMembershipModel.track_id)
            .where(LibraryMembershipModel.user_id == user_id)
            .where(TrackModel.spotify_id.in_(ids))
        )
        result = await self.session.execute(stmt)
        return {row[1]: row[0] for row in result.all()}

    async def get(self, user_id: str, track_id: str) -> LibraryMembershipModel | None:
        """Get the membership of a user for a canonical track."""
        stmt = select(LibraryMembershipModel).where(
            LibraryMembershipModel.user_id == user_id,
            LibraryMembershipModel.track_id == track_id,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_or_create(
        self, user_id: str, track_id: str, added_at: datetime | None
    ) -> tuple[LibraryMembershipModel, bool]:
        """Find or create the (user, track) membership. added_at is never changed later."""
        return await self._get_or_create(
            lambda: self.get(user_id, track_id),
            lambda: LibraryMembershipModel(
                user_id=user_id, track_id=track_id, added_at=added_at or utc_now()
            ),
        )

    async def count_for_user(self, user_id: str) -> int:
        """Number of tracks in the user's library."""
        stmt = select(func.count(LibraryMembershipModel.id)).where(
            LibraryMembershipModel.user_id == user_id
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def list_track_ids_for_user(self, user_id: str) -> list[str]:
        """Local track ids of the user's library."""
        stmt = select(LibraryMembershipModel.track_id).where(
            LibraryMembershipModel.user_id == user_id
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())


class MembershipSourceRepository(_BaseRepository):
    """Membership provenance records."""

    async def _find(
        self, membership_id: str, source_type: SourceType, source_id: str | None
    ) -> MembershipSourceModel | None:
        stmt = select(MembershipSourceModel).where(
            MembershipSourceModel.membership_id == membership_id,
            MembershipSourceModel.source_type == source_type.value,
        )
        if source_id is None:
            stmt = stmt.where(MembershipSourceModel.source_id.is_(None))
        else:
            stmt = stmt.where(MembershipSourceModel.source_id == source_id)
        result = await self.session.execute(stmt.limit(1))
        return result.scalar_one_or_none()

    # Hey future me - source_id NULL is its own bucket ("liked" has no container). The unique
    # constraint can't catch duplicate NULLs, so the find-first lookup above is what keeps
    # "liked" from being recorded twice. Both paths go through _get_or_create.
    async def add_source(
        self,
        membership_id: str,
        source_type: SourceType,
        source_id: str | None = None,
        source_name: str | None = None,
    ) -> bool:
        """Record a provenance for a membership.

        Returns:
            True if a new provenance row was created
        """
        model, created = await self._get_or_create(
            lambda: self._find(membership_id, source_type, source_id),
            lambda: MembershipSourceModel(
                membership_id=membership_id,
                source_type=source_type.value,
                source_id=source_id,
                source_name=source_name,
            ),
        )
        if not created and source_name and model.source_name != source_name:
            model.source_name = source_name
        return created

    async def list_for_membership(self, membership_id: str) -> list[MembershipSourceModel]:
        """All provenances of a membership."""
        stmt = select(MembershipSourceModel).where(
            MembershipSourceModel.membership_id == membership_id
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())


class PlayEventRepository(_BaseRepository):
    """Play history."""

    async def latest_played_at(self, user_id: str) -> datetime | None:
        """Most recent stored play of the user."""
        stmt = (
            select(func.max(PlayEventModel.played_at))
            .join(
                LibraryMembershipModel,
                LibraryMembershipModel.id == PlayEventModel.membership_id,
            )
            .where(LibraryMembershipModel.user_id == user_id)
        )
        result = await self.session.execute(stmt)
        value = result.scalar_one_or_none()
        return ensure_utc_aware(value) if value is not None else None

    async def add(
        self, membership_id: str, played_at: datetime, duration_ms: int | None
    ) -> None:
        """Insert a play event and flush so uniqueness is checked right away."""
        self.session.add(
            PlayEventModel(
                membership_id=membership_id,
                played_at=played_at,
                duration_ms=duration_ms,
            )
        )
        await self.session.flush()

    async def count_for_membership(self, membership_id: str) -> int:
        """Number of stored plays of a membership."""
        stmt = select(func.count(PlayEventModel.id)).where(
            PlayEventModel.membership_id == membership_id
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one())


class RemotePlaylistRepository(_BaseRepository):
    """Local mirrors of remote playlists."""

    async def get_by_spotify_id(self, user_id: str, spotify_id: str) -> RemotePlaylistModel | None:
        """Get the user's mirror of a remote playlist."""
        stmt = select(RemotePlaylistModel).where(
            RemotePlaylistModel.user_id == user_id,
            RemotePlaylistModel.spotify_id == spotify_id,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert_metadata(
        self, user_id: str, playlist: RemotePlaylist
    ) -> tuple[RemotePlaylistModel, bool]:
        """Create or refresh playlist metadata. The snapshot token is NOT touched here."""
        model, created = await self._get_or_create(
            lambda: self.get_by_spotify_id(user_id, playlist.remote_id),
            lambda: RemotePlaylistModel(
                user_id=user_id, spotify_id=playlist.remote_id, name=playlist.name
            ),
        )
        model.name = playlist.name
        model.description = playlist.description
        model.total_tracks = playlist.total_tracks
        model.owner_id = playlist.owner_id
        model.owner_name = playlist.owner_name
        model.image_url = playlist.image_url
        return model, created

    @staticmethod
    def mark_synced(model: RemotePlaylistModel, snapshot_token: str) -> None:
        """Persist the snapshot token after the tracks were ingested."""
        model.snapshot_token = snapshot_token
        model.last_synced_at = utc_now()


class SmartPlaylistRepository(_BaseRepository):
    """Smart playlists and their remote mirrors."""

    async def get(self, playlist_id: str) -> SmartPlaylistModel:
        """Get smart playlist by id."""
        model = await self.session.get(SmartPlaylistModel, playlist_id)
        if model is None:
            raise EntityNotFoundException("SmartPlaylist", playlist_id)
        return model

    async def list_auto_sync(self, user_id: str) -> list[SmartPlaylistModel]:
        """Smart playlists of the user that are mirrored to Spotify."""
        stmt = (
            select(SmartPlaylistModel)
            .where(SmartPlaylistModel.user_id == user_id)
            .where(SmartPlaylistModel.auto_sync.is_(True))
            .where(SmartPlaylistModel.remote_playlist_id.is_not(None))
            .order_by(SmartPlaylistModel.created_at)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_auto_sync_user_ids(self) -> set[str]:
        """Users owning at least one smart playlist that is mirrored to Spotify."""
        stmt = (
            select(SmartPlaylistModel.user_id)
            .where(SmartPlaylistModel.auto_sync.is_(True))
            .where(SmartPlaylistModel.remote_playlist_id.is_not(None))
            .distinct()
        )
        result = await self.session.execute(stmt)
        return set(result.scalars().all())

    async def get_controlled_remote_ids(self, user_id: str) -> set[str]:
        """Remote playlist ids whose content is written by this app."""
        stmt = select(SmartPlaylistModel.remote_playlist_id).where(
            SmartPlaylistModel.user_id == user_id,
            SmartPlaylistModel.remote_playlist_id.is_not(None),
        )
        result = await self.session.execute(stmt)
        return {rid for rid in result.scalars().all() if rid}

    async def matching_track_ids(self, user_id: str, criteria: PlaylistCriteria) -> list[str]:
        """Remote ids of the user's tracks matching the criteria."""
        result = await self.session.execute(matching_track_ids_query(user_id, criteria))
        return list(result.scalars().all())

    @staticmethod
    def get_criteria(model: SmartPlaylistModel) -> PlaylistCriteria:
        """Parse the stored criteria JSON."""
        return PlaylistCriteria.from_dict(json.loads(model.criteria or "{}"))

    @staticmethod
    def mark_pushed(model: SmartPlaylistModel, track_ids_hash: str) -> None:
        """Remember the fingerprint of the track set now on Spotify."""
        model.track_ids_hash = track_ids_hash
        model.last_synced_at = utc_now()


class UserAlbumRepository(_BaseRepository):
    """Per-user album rows (saved flag + aggregates)."""

    async def get(self, user_id: str, album_id: str) -> UserAlbumModel | None:
        """Get the user's row for an album."""
        stmt = select(UserAlbumModel).where(
            UserAlbumModel.user_id == user_id, UserAlbumModel.album_id == album_id
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def mark_saved(
        self, user_id: str, album_id: str, saved_at: datetime | None
    ) -> bool:
        """Flag the album as saved by the user.

        Returns:
            True if the album was not saved before (a NEW album for this user)
        """
        model, created = await self._get_or_create(
            lambda: self.get(user_id, album_id),
            lambda: UserAlbumModel(user_id=user_id, album_id=album_id),
        )
        was_saved = model.is_saved and not created
        model.is_saved = True
        if model.saved_at is None:
            model.saved_at = saved_at or utc_now()
        return not was_saved

    async def list_saved_album_ids(self, user_id: str) -> list[str]:
        """Album ids saved by the user."""
        stmt = select(UserAlbumModel.album_id).where(
            UserAlbumModel.user_id == user_id,
            UserAlbumModel.is_saved.is_(True),
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
