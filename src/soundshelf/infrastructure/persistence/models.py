"""SQLAlchemy ORM models for Soundshelf."""

import json
import uuid
from datetime import UTC, datetime

import sqlalchemy as sa
from sqlalchemy import (
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


# Hey future me, utc_now() ensures ALL timestamps are UTC! Never use datetime.now() without
# a timezone - naive datetimes break comparisons the moment the server moves.
def utc_now() -> datetime:
    """Get current UTC time."""
    return datetime.now(UTC)


# Hey future me - SQLite doesn't preserve timezone info! Stored UTC datetimes come back naive.
# ALWAYS run DB datetimes through this before comparing with datetime.now(UTC).
def ensure_utc_aware(dt: datetime) -> datetime:
    """Ensure datetime is UTC-aware, assuming naive datetimes are UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


def _new_id() -> str:
    return str(uuid.uuid4())


def _load_json_list(raw: str | None) -> list[str]:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return []
    return [str(v) for v in value] if isinstance(value, list) else []


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# =============================================================================
# CANONICAL METADATA - shared by all users, keyed by Spotify id
# =============================================================================


class ArtistModel(Base):
    """Canonical artist.

    Hey future me - artists are created ONCE and never updated by the sync hot path.
    Genres/popularity/image come from the artist resolution cache at creation time.
    """

    __tablename__ = "artists"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    spotify_id: Mapped[str] = mapped_column(
        String(64), nullable=False, unique=True, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    image_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    # Hey future me - genres are stored as JSON text (SQLite compatible)!
    # Use genre_list / set_genres, never json.loads() in services.
    genres: Mapped[str | None] = mapped_column(Text, nullable=True)
    popularity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=utc_now, onupdate=utc_now, nullable=False
    )

    albums: Mapped[list["AlbumModel"]] = relationship(
        "AlbumModel", back_populates="artist"
    )
    tracks: Mapped[list["TrackModel"]] = relationship(
        "TrackModel", back_populates="artist"
    )

    @property
    def genre_list(self) -> list[str]:
        """Genres as a list."""
        return _load_json_list(self.genres)

    def set_genres(self, genres: list[str]) -> None:
        """Store genres as JSON text."""
        self.genres = json.dumps(genres) if genres else None


class AlbumModel(Base):
    """Canonical album.

    Only album-level sync refreshes these columns - an album discovered through a
    track is created once and left alone.
    """

    __tablename__ = "albums"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    spotify_id: Mapped[str] = mapped_column(
        String(64), nullable=False, unique=True, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    artist_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("artists.id", ondelete="CASCADE"), nullable=False
    )
    image_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    release_date: Mapped[str | None] = mapped_column(String(10), nullable=True)
    release_date_precision: Mapped[str | None] = mapped_column(String(10), nullable=True)
    total_tracks: Mapped[int | None] = mapped_column(Integer, nullable=True)
    album_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    label: Mapped[str | None] = mapped_column(String(255), nullable=True)
    popularity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=utc_now, onupdate=utc_now, nullable=False
    )

    artist: Mapped["ArtistModel"] = relationship("ArtistModel", back_populates="albums")
    tracks: Mapped[list["TrackModel"]] = relationship(
        "TrackModel", back_populates="album"
    )

    __table_args__ = (Index("ix_albums_artist", "artist_id"),)


class TrackModel(Base):
    """Canonical track.

    Hey future me - audio feature and genre columns belong to the ENRICHMENT pipeline.
    The reconciler refreshes title/duration/flags but must never touch them.
    """

    __tablename__ = "tracks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    spotify_id: Mapped[str] = mapped_column(
        String(64), nullable=False, unique=True, index=True
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    artist_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("artists.id", ondelete="CASCADE"), nullable=False
    )
    album_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("albums.id", ondelete="SET NULL"), nullable=True
    )
    duration_ms: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    track_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    disc_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    explicit: Mapped[bool] = mapped_column(
        sa.Boolean(), nullable=False, server_default="0", default=False
    )
    popularity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    preview_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    isrc: Mapped[str | None] = mapped_column(String(12), nullable=True, index=True)

    # Audio features (ReccoBeats)
    acousticness: Mapped[float | None] = mapped_column(Float, nullable=True)
    danceability: Mapped[float | None] = mapped_column(Float, nullable=True)
    energy: Mapped[float | None] = mapped_column(Float, nullable=True)
    instrumentalness: Mapped[float | None] = mapped_column(Float, nullable=True)
    key: Mapped[int | None] = mapped_column(Integer, nullable=True)
    liveness: Mapped[float | None] = mapped_column(Float, nullable=True)
    loudness: Mapped[float | None] = mapped_column(Float, nullable=True)
    mode: Mapped[int | None] = mapped_column(Integer, nullable=True)
    speechiness: Mapped[float | None] = mapped_column(Float, nullable=True)
    tempo: Mapped[float | None] = mapped_column(Float, nullable=True)
    valence: Mapped[float | None] = mapped_column(Float, nullable=True)
    # NULL = never attempted. Set even when the provider had nothing for this track.
    audio_features_updated_at: Mapped[datetime | None] = mapped_column(
        nullable=True, index=True
    )

    # Genres (Last.fm tags), JSON text like ArtistModel.genres
    genres: Mapped[str | None] = mapped_column(Text, nullable=True)
    genres_updated_at: Mapped[datetime | None] = mapped_column(nullable=True, index=True)

    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=utc_now, onupdate=utc_now, nullable=False
    )

    artist: Mapped["ArtistModel"] = relationship("ArtistModel", back_populates="tracks")
    album: Mapped["AlbumModel | None"] = relationship(
        "AlbumModel", back_populates="tracks"
    )

    __table_args__ = (
        Index("ix_tracks_artist", "artist_id"),
        Index("ix_tracks_album", "album_id"),
    )

    @property
    def genre_list(self) -> list[str]:
        """Genres as a list."""
        return _load_json_list(self.genres)

    def set_genres(self, genres: list[str]) -> None:
        """Store genres as JSON text."""
        self.genres = json.dumps(genres) if genres else None


# =============================================================================
# PER-USER LIBRARY
# =============================================================================


class LibraryMembershipModel(Base):
    """A canonical track being part of one user's library.

    Hey future me - exactly ONE row per (user, track), enforced by uq_membership_user_track.
    added_at is immutable after creation, the counters change with play/rating events.
    """

    __tablename__ = "library_memberships"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    track_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("tracks.id", ondelete="CASCADE"), nullable=False
    )
    added_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    last_played_at: Mapped[datetime | None] = mapped_column(nullable=True)
    total_play_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    rating: Mapped[float | None] = mapped_column(Float, nullable=True)
    rated_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)

    track: Mapped["TrackModel"] = relationship("TrackModel")
    sources: Mapped[list["MembershipSourceModel"]] = relationship(
        "MembershipSourceModel",
        back_populates="membership",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        sa.UniqueConstraint("user_id", "track_id", name="uq_membership_user_track"),
        Index("ix_memberships_track", "track_id"),
    )


class MembershipSourceModel(Base):
    """Provenance of a membership (liked, playlist, album, artist top tracks).

    Hey future me - source_id is NULL for "liked" (there's no remote container). Most
    databases treat NULLs as distinct in unique constraints, so uq_membership_source does
    NOT protect the liked bucket. MembershipSourceRepository.add_source() has a dedicated
    find-first path for that case - don't replace it with a blind insert!
    """

    __tablename__ = "membership_sources"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    membership_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("library_memberships.id", ondelete="CASCADE"),
        nullable=False,
    )
    source_type: Mapped[str] = mapped_column(String(20), nullable=False)
    source_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    source_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)

    membership: Mapped["LibraryMembershipModel"] = relationship(
        "LibraryMembershipModel", back_populates="sources"
    )

    __table_args__ = (
        sa.UniqueConstraint(
            "membership_id", "source_type", "source_id", name="uq_membership_source"
        ),
    )


class PlayEventModel(Base):
    """One play of a membership. Append-only."""

    __tablename__ = "play_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    membership_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("library_memberships.id", ondelete="CASCADE"),
        nullable=False,
    )
    played_at: Mapped[datetime] = mapped_column(nullable=False)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Re-ingesting the same remote play must be a no-op - see PlayHistoryService
    __table_args__ = (
        sa.UniqueConstraint(
            "membership_id", "played_at", name="uq_play_event_membership_played_at"
        ),
    )


# =============================================================================
# PLAYLISTS
# =============================================================================


class RemotePlaylistModel(Base):
    """Local mirror of a user's Spotify playlist.

    snapshot_token is only written AFTER the playlist's tracks were ingested. NULL means
    "never fully synced" and always triggers a track fetch.
    """

    __tablename__ = "remote_playlists"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    spotify_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    snapshot_token: Mapped[str | None] = mapped_column(String(128), nullable=True)
    total_tracks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    owner_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    owner_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    image_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=utc_now, onupdate=utc_now, nullable=False
    )

    __table_args__ = (
        sa.UniqueConstraint("user_id", "spotify_id", name="uq_remote_playlist_user"),
    )


class SmartPlaylistModel(Base):
    """Rule-based playlist, optionally mirrored to a Spotify playlist.

    Hey future me - track_ids_hash is the fingerprint of the LAST PUSHED track set
    (see hash_track_ids). Same hash = skip the remote write entirely.
    """

    __tablename__ = "smart_playlists"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # PlaylistCriteria.to_dict() as JSON text
    criteria: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    remote_playlist_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    auto_sync: Mapped[bool] = mapped_column(
        sa.Boolean(), nullable=False, default=False, server_default="0"
    )
    track_ids_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=utc_now, onupdate=utc_now, nullable=False
    )


# =============================================================================
# AGGREGATES - rebuilt once per sync run by AggregationService
# =============================================================================


class UserArtistStatsModel(Base):
    """Per-user aggregates for one artist."""

    __tablename__ = "user_artist_stats"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    artist_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("artists.id", ondelete="CASCADE"), nullable=False
    )
    track_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    album_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_duration_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_play_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rated_track_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    avg_rating: Mapped[float | None] = mapped_column(Float, nullable=True)
    first_added_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_played_at: Mapped[datetime | None] = mapped_column(nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        default=utc_now, onupdate=utc_now, nullable=False
    )

    __table_args__ = (
        sa.UniqueConstraint("user_id", "artist_id", name="uq_user_artist_stats"),
    )


class UserAlbumModel(Base):
    """Per-user album record: saved flag plus aggregates.

    is_saved/saved_at are written by the album phase, the aggregate columns by
    AggregationService. The row existing before an album sync = "updated" album.
    """

    __tablename__ = "user_albums"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    album_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("albums.id", ondelete="CASCADE"), nullable=False
    )
    is_saved: Mapped[bool] = mapped_column(
        sa.Boolean(), nullable=False, default=False, server_default="0"
    )
    saved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    track_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_play_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    avg_rating: Mapped[float | None] = mapped_column(Float, nullable=True)
    first_added_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_played_at: Mapped[datetime | None] = mapped_column(nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        default=utc_now, onupdate=utc_now, nullable=False
    )

    __table_args__ = (
        sa.UniqueConstraint("user_id", "album_id", name="uq_user_album"),
    )


# =============================================================================
# BACKGROUND JOBS
# =============================================================================


class BackgroundJobModel(Base):
    """Persistent job storage for background workers.

    Stores all background jobs with their status, payload, progress and results.
    Survives app restarts - RUNNING jobs of a dead worker are recovered on startup.
    """

    __tablename__ = "background_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    # Job type: library_sync, genre_backfill, ... (JobType values)
    job_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    # Status: pending, running, completed, failed (JobStatus values)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    # Priority: Higher = processed first (default 0)
    priority: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, index=True
    )
    # "Only one waiting job per key" - see PersistentJobQueue.enqueue_if_absent()
    dedupe_key: Mapped[str | None] = mapped_column(String(128), nullable=True)
    # Job payload as JSON
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    # Latest progress update as JSON (the progress channel)
    progress: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Result as JSON
    result: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Human-readable failure reason
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    retries: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, default=utc_now
    )
    started_at: Mapped[datetime | None] = mapped_column(
        sa.DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        sa.DateTime(timezone=True), nullable=True
    )
    # Worker locking - prevents multiple workers processing the same job
    locked_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(
        sa.DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        # Fast query for pending jobs ordered by priority
        Index("ix_jobs_pending", "status", "priority", "created_at"),
        # Fast dedupe lookup
        Index("ix_jobs_dedupe", "dedupe_key", "status"),
    )
