"""Domain ports (interfaces) for dependency inversion."""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import datetime
from typing import Any

from soundshelf.domain.dtos import (
    ArtistMetadata,
    AudioFeatures,
    GenreTag,
    Page,
    PlayedTrack,
    RemotePlaylist,
    SavedAlbum,
    SavedTrack,
)
from soundshelf.domain.entities import JobType, SyncProgress

# Hey future me, progress reporting is an INJECTED capability. The orchestrator always has a
# sink - callers who don't care get null_progress_sink. No more "if on_progress: ..." checks.
ProgressSink = Callable[[SyncProgress], Awaitable[None]]


async def null_progress_sink(progress: SyncProgress) -> None:
    """Progress sink that discards every update."""
    return None


# Hey future me, IRemoteLibrarySource is the PORT for the user's Spotify library. The sync
# services only talk to this interface - the real implementation is
# infrastructure/plugins/spotify_source.py, tests use a small in-memory fake. Every call takes
# the access token explicitly; refreshing it is somebody else's job.
class IRemoteLibrarySource(ABC):
    """Paginated access to a user's remote library."""

    # Pause between two page fetches of a stream (seconds)
    page_delay_seconds: float = 0.0
    page_size: int = 50

    @abstractmethod
    async def list_saved_tracks(
        self, access_token: str, offset: int = 0, limit: int = 50
    ) -> Page[SavedTrack]:
        """Get one page of liked tracks."""
        pass

    @abstractmethod
    async def list_saved_albums(
        self, access_token: str, offset: int = 0, limit: int = 50
    ) -> Page[SavedAlbum]:
        """Get one page of saved albums (with nested track lists)."""
        pass

    @abstractmethod
    async def list_playlists(
        self, access_token: str, offset: int = 0, limit: int = 50
    ) -> Page[RemotePlaylist]:
        """Get one page of the user's playlists (metadata only)."""
        pass

    @abstractmethod
    async def list_playlist_tracks(
        self, access_token: str, playlist_id: str
    ) -> list[SavedTrack]:
        """Get ALL tracks of a playlist."""
        pass

    @abstractmethod
    async def list_recently_played(
        self, access_token: str, after: datetime | None = None
    ) -> list[PlayedTrack]:
        """Get recently played tracks, optionally only those after a timestamp."""
        pass

    @abstractmethod
    async def get_artists(
        self, access_token: str, artist_ids: list[str]
    ) -> list[ArtistMetadata]:
        """Get full artist metadata for up to one API batch of ids."""
        pass

    @abstractmethod
    async def replace_playlist_tracks(
        self, access_token: str, playlist_id: str, track_uris: list[str]
    ) -> None:
        """Replace the full track list of a remote playlist."""
        pass

    @abstractmethod
    async def update_playlist_details(
        self,
        access_token: str,
        playlist_id: str,
        name: str,
        description: str | None = None,
    ) -> None:
        """Update name/description of a remote playlist."""
        pass

    # Yo, the streams are NOT abstract - they are built from the list_* pages so every
    # implementation (and every fake) streams the same way. Only one page is in memory at a
    # time, and limit truncates the stream for the quick sync.
    async def stream_saved_tracks(
        self, access_token: str, limit: int | None = None
    ) -> AsyncIterator[SavedTrack]:
        """Lazily yield liked tracks page by page."""
        async for item in self._stream(self.list_saved_tracks, access_token, limit):
            yield item

    async def stream_saved_albums(
        self, access_token: str, limit: int | None = None
    ) -> AsyncIterator[SavedAlbum]:
        """Lazily yield saved albums page by page."""
        async for item in self._stream(self.list_saved_albums, access_token, limit):
            yield item

    async def list_all_playlists(
        self, access_token: str, limit: int | None = None
    ) -> list[RemotePlaylist]:
        """Collect all playlists (metadata is small, no need to stream)."""
        return [p async for p in self._stream(self.list_playlists, access_token, limit)]

    async def _stream(
        self,
        fetch_page: Callable[..., Awaitable[Page[Any]]],
        access_token: str,
        limit: int | None,
    ) -> AsyncIterator[Any]:
        offset: int | None = 0
        yielded = 0
        while offset is not None:
            page_limit = self.page_size
            if limit is not None:
                page_limit = min(page_limit, limit - yielded)
                if page_limit <= 0:
                    return
            page = await fetch_page(access_token, offset=offset, limit=page_limit)
            for item in page.items:
                yield item
                yielded += 1
                if limit is not None and yielded >= limit:
                    return
            offset = page.next_offset
            if offset is not None and self.page_delay_seconds > 0:
                await asyncio.sleep(self.page_delay_seconds)


class IJobScheduler(ABC):
    """Reliable job execution with at-least-once retry and a progress channel."""

    @abstractmethod
    async def enqueue(
        self,
        job_type: JobType,
        payload: dict[str, Any] | None = None,
        priority: int = 0,
        dedupe_key: str | None = None,
    ) -> str:
        """Enqueue a job and return its id."""
        pass

    @abstractmethod
    async def enqueue_if_absent(
        self,
        job_type: JobType,
        payload: dict[str, Any] | None = None,
        dedupe_key: str | None = None,
        priority: int = 0,
    ) -> str | None:
        """Enqueue unless a pending job with the same dedupe key exists.

        Returns:
            New job id, or None when an equivalent job is already waiting
        """
        pass

    @abstractmethod
    async def update_progress(self, job_id: str, progress: dict[str, Any]) -> None:
        """Publish progress for a running job."""
        pass


class IAudioFeaturesSource(ABC):
    """Third-party audio analysis provider."""

    @abstractmethod
    async def get_audio_features(
        self, track_ids: list[str]
    ) -> dict[str, AudioFeatures | None]:
        """Get audio features keyed by remote track id (None when unknown)."""
        pass


class IGenreTagSource(ABC):
    """Third-party community tag provider."""

    @abstractmethod
    async def get_track_tags(self, artist: str, title: str) -> list[GenreTag]:
        """Get top tags of a track."""
        pass

    @abstractmethod
    async def get_artist_tags(self, artist: str) -> list[GenreTag]:
        """Get top tags of an artist."""
        pass


__all__ = [
    "IAudioFeaturesSource",
    "IGenreTagSource",
    "IJobScheduler",
    "IRemoteLibrarySource",
    "ProgressSink",
    "null_progress_sink",
]
