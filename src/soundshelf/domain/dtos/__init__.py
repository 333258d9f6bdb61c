"""
Data Transfer Objects for the remote library source.

Hey future me - these DTOs are the lingua franca between the Spotify adapter
(infrastructure/plugins/spotify_source.py) and the sync services. Services never
touch raw Spotify JSON, they only see these dumb data carriers.

Flow: Spotify JSON → SpotifyLibrarySource._convert_*() → DTO → services → repositories
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Generic, TypeVar

from soundshelf.domain.exceptions import ValidationException

T = TypeVar("T")


@dataclass(frozen=True)
class RemoteArtistRef:
    """Artist reference embedded in a track or album payload (id + name only)."""

    remote_id: str
    name: str


# Hey future me - ArtistMetadata is the FULL artist (genres, popularity, image) that the
# artist resolution cache hands to the reconciler. Embedded RemoteArtistRefs don't carry
# genres, that's why the cache exists at all.
@dataclass
class ArtistMetadata:
    """Full artist metadata resolved from the store or the remote API."""

    remote_id: str
    name: str
    genres: list[str] = field(default_factory=list)
    popularity: int | None = None
    image_url: str | None = None


@dataclass
class RemoteTrack:
    """A track as returned by the remote source."""

    remote_id: str
    name: str
    artists: list[RemoteArtistRef]
    duration_ms: int
    album: "RemoteAlbum | None" = None
    track_number: int | None = None
    disc_number: int | None = None
    explicit: bool = False
    popularity: int | None = None
    preview_url: str | None = None
    isrc: str | None = None
    # Spotify "relinks" tracks per market - linked_from holds the ORIGINAL id
    linked_from_id: str | None = None

    def __post_init__(self) -> None:
        """Validate essential fields."""
        if not self.remote_id:
            raise ValidationException("Remote track id cannot be empty")

    @property
    def canonical_id(self) -> str:
        """Remote id used as the canonical key (original id when relinked)."""
        return self.linked_from_id or self.remote_id

    @property
    def uri(self) -> str:
        """Spotify URI of the canonical track."""
        return f"spotify:track:{self.canonical_id}"


@dataclass
class RemoteAlbum:
    """An album as returned by the remote source.

    tracks is only filled for album-level payloads (saved albums), never for
    the simplified album embedded in a track.
    """

    remote_id: str
    name: str
    artists: list[RemoteArtistRef] = field(default_factory=list)
    image_url: str | None = None
    release_date: str | None = None
    release_date_precision: str | None = None
    total_tracks: int | None = None
    album_type: str | None = None
    label: str | None = None
    popularity: int | None = None
    tracks: list[RemoteTrack] = field(default_factory=list)

    def __post_init__(self) -> None:
        """Validate essential fields."""
        if not self.remote_id:
            raise ValidationException("Remote album id cannot be empty")


@dataclass
class SavedTrack:
    """A liked track (or playlist entry) with its added-at timestamp."""

    track: RemoteTrack
    added_at: datetime | None = None


@dataclass
class SavedAlbum:
    """A saved album with its added-at timestamp."""

    album: RemoteAlbum
    added_at: datetime | None = None


@dataclass
class RemotePlaylist:
    """Playlist metadata (no tracks)."""

    remote_id: str
    name: str
    snapshot_token: str
    total_tracks: int = 0
    owner_id: str | None = None
    owner_name: str | None = None
    description: str | None = None
    image_url: str | None = None
    public: bool | None = None
    collaborative: bool = False


@dataclass
class PlayedTrack:
    """One recently-played entry."""

    track: RemoteTrack
    played_at: datetime


@dataclass
class Page(Generic[T]):
    """One page of a paginated remote listing."""

    items: list[T]
    total: int
    offset: int = 0
    next_offset: int | None = None

    @property
    def has_next(self) -> bool:
        """True when another page exists."""
        return self.next_offset is not None


@dataclass
class AudioFeatures:
    """Audio analysis values (ReccoBeats)."""

    acousticness: float | None = None
    danceability: float | None = None
    energy: float | None = None
    instrumentalness: float | None = None
    key: int | None = None
    liveness: float | None = None
    loudness: float | None = None
    mode: int | None = None
    speechiness: float | None = None
    tempo: float | None = None
    valence: float | None = None


@dataclass(frozen=True)
class GenreTag:
    """A community tag with its weight (Last.fm count, 0-100)."""

    name: str
    weight: int


__all__ = [
    "ArtistMetadata",
    "AudioFeatures",
    "GenreTag",
    "Page",
    "PlayedTrack",
    "RemoteAlbum",
    "RemoteArtistRef",
    "RemotePlaylist",
    "RemoteTrack",
    "SavedAlbum",
    "SavedTrack",
]
