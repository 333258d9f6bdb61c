"""Domain entities for the library sync engine.

These are plain dataclasses - the domain layer doesn't depend on SQLAlchemy or pydantic.
Persisted rows live in infrastructure/persistence/models.py.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


# Hey future me, SourceType is the PROVENANCE of a membership - why a track is in the user's
# library. One membership can have several (liked AND in a playlist AND on a saved album).
# The value is stored as string in membership_sources.source_type, don't rename values!
class SourceType(str, Enum):
    """Reason a track is part of a user's library."""

    LIKED = "liked"
    PLAYLIST = "playlist"
    ALBUM = "album"
    ARTIST_TOP = "artist_top"


class SyncPhase(str, Enum):
    """Phase reported on the progress channel."""

    COUNTING = "counting"
    TRACKS = "tracks"
    ALBUMS = "albums"
    PLAYLISTS = "playlists"
    STATS = "stats"
    DONE = "done"


# Yo, this is the orchestrator's state machine. Transitions are strictly linear
# (COUNTING → ... → DONE), FAILED is reachable from everywhere. A FAILED run still
# returns its partial result - it never raises out of sync_user_library().
class SyncState(str, Enum):
    """Library sync run state."""

    COUNTING = "counting"
    SYNCING_TRACKS = "syncing_tracks"
    SYNCING_ALBUMS = "syncing_albums"
    SYNCING_PLAYLISTS = "syncing_playlists"
    AGGREGATING_STATS = "aggregating_stats"
    DONE = "done"
    FAILED = "failed"


class JobType(str, Enum):
    """Background job types."""

    LIBRARY_SYNC = "library_sync"
    PLAY_HISTORY_SYNC = "play_history_sync"
    SMART_PLAYLIST_SYNC = "smart_playlist_sync"
    AUDIO_FEATURES_BACKFILL = "audio_features_backfill"
    GENRE_BACKFILL = "genre_backfill"


class JobStatus(str, Enum):
    """Background job status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class SyncItemCounts:
    """Item counts used to weight progress.

    album_tracks / playlist_tracks are estimates unless the count request could measure them.
    """

    tracks: int = 0
    albums: int = 0
    playlists: int = 0
    album_tracks: int = 0
    playlist_tracks: int = 0


@dataclass
class SyncOptions:
    """Which phases to run and optional per-phase caps (quick sync)."""

    sync_liked_tracks: bool = True
    sync_albums: bool = True
    sync_playlists: bool = True
    force_refresh_playlists: bool = False
    track_limit: int | None = None
    album_limit: int | None = None
    playlist_limit: int | None = None

    @property
    def is_bounded(self) -> bool:
        """True when any phase is capped."""
        return any(
            limit is not None
            for limit in (self.track_limit, self.album_limit, self.playlist_limit)
        )


@dataclass
class SyncRunResult:
    """Aggregate result of one sync run. Not persisted."""

    errors: list[str] = field(default_factory=list)
    new_tracks: int = 0
    updated_tracks: int = 0
    new_albums: int = 0
    updated_albums: int = 0
    total_tracks: int = 0
    total_albums: int = 0
    total_playlists: int | None = None
    playlist_tracks: int | None = None
    skipped_playlists: int | None = None
    state: SyncState = SyncState.COUNTING
    failure_reason: str | None = None

    @property
    def failed(self) -> bool:
        """True when the run ended in the FAILED state."""
        return self.state == SyncState.FAILED

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the job result column."""
        data = asdict(self)
        data["state"] = self.state.value
        return data


@dataclass
class StreamCounts:
    """Counters produced by the streaming batch processor."""

    processed: int = 0
    new: int = 0
    updated: int = 0
    failed: int = 0

    def merge(self, other: "StreamCounts") -> None:
        """Add another counter set to this one."""
        self.processed += other.processed
        self.new += other.new
        self.updated += other.updated
        self.failed += other.failed


@dataclass
class AlbumSyncResult:
    """Result of the album phase."""

    new_albums: int = 0
    updated_albums: int = 0
    total_albums: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class PlaylistSyncResult:
    """Result of the inbound playlist phase."""

    total_playlists: int = 0
    playlist_tracks: int = 0
    new_tracks: int = 0
    skipped_playlists: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class SmartPlaylistSyncResult:
    """Result of pushing smart playlists to Spotify."""

    synced: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class PlayHistorySyncResult:
    """Result of a recently-played sync."""

    recorded: int = 0
    duplicates: int = 0
    unmatched: int = 0


@dataclass
class EnrichmentBatchResult:
    """Result of one enrichment chunk."""

    processed: int = 0
    updated: int = 0
    failed: int = 0

    @property
    def made_progress(self) -> bool:
        """True when at least one item left the pending set."""
        return self.processed > self.failed


@dataclass(frozen=True)
class ReconciledTrack:
    """Local ids produced by reconciling one remote track."""

    artist_id: str
    album_id: str | None
    track_id: str


@dataclass(frozen=True)
class ReconciledAlbum:
    """Local ids produced by reconciling one remote album."""

    artist_id: str
    album_id: str
    track_ids: list[str] = field(default_factory=list)


@dataclass
class PhaseBreakdown:
    """Processed/total for one phase."""

    processed: int = 0
    total: int = 0


@dataclass
class SyncProgress:
    """One update on the progress channel.

    Hey future me - this is what the job runner stores in background_jobs.progress
    and what any UI polls. percentage is the WEIGHTED overall value (0-100), while
    current/total describe the active phase only.
    """

    phase: SyncPhase
    current: int
    total: int
    percentage: int
    message: str
    errors: list[str] = field(default_factory=list)
    error_count: int = 0
    estimated_time_remaining: float | None = None
    items_per_second: float | None = None
    breakdown: dict[str, PhaseBreakdown] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the job progress channel."""
        data: dict[str, Any] = {
            "phase": self.phase.value,
            "current": self.current,
            "total": self.total,
            "percentage": self.percentage,
            "message": self.message,
            "errorCount": self.error_count,
            "breakdown": {
                name: {"processed": part.processed, "total": part.total}
                for name, part in self.breakdown.items()
            },
        }
        if self.errors:
            # Only the tail - the full list goes to the job result
            data["errors"] = self.errors[-10:]
        if self.estimated_time_remaining is not None:
            data["estimatedTimeRemaining"] = round(self.estimated_time_remaining, 1)
        if self.items_per_second is not None:
            data["itemsPerSecond"] = round(self.items_per_second, 2)
        return data


__all__ = [
    "AlbumSyncResult",
    "EnrichmentBatchResult",
    "JobStatus",
    "JobType",
    "PhaseBreakdown",
    "PlayHistorySyncResult",
    "PlaylistSyncResult",
    "ReconciledAlbum",
    "ReconciledTrack",
    "SmartPlaylistSyncResult",
    "SourceType",
    "StreamCounts",
    "SyncItemCounts",
    "SyncOptions",
    "SyncPhase",
    "SyncProgress",
    "SyncRunResult",
    "SyncState",
]
