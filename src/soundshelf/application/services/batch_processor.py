"""Streaming batch ingestion of remote library items.

Hey future me - two pieces live here:

1. StreamingBatchProcessor: generic. Pulls items from an async iterator, buffers at most
   batch_size, hands the buffer to a handler, drops it, yields to the event loop and reports
   progress. Never holds more than one batch (plus one remote page) in memory.

2. LibraryIngestor: the handlers. One bulk query for existing memberships, one for existing
   tracks, one artist resolution per batch - then every item in its own SAVEPOINT so a broken
   item rolls back alone. ONE commit per batch, a committed batch is the unit of progress.
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from soundshelf.domain.dtos import RemoteArtistRef, SavedAlbum, SavedTrack
from soundshelf.domain.entities import SourceType, StreamCounts
from soundshelf.infrastructure.persistence.repositories import (
    MembershipRepository,
    MembershipSourceRepository,
    TrackRepository,
    UserAlbumRepository,
)
from soundshelf.infrastructure.persistence.retry import execute_with_retry

from .artist_resolution_cache import ArtistResolutionCache
from .entity_reconciler import EntityReconciler

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class StreamProgress:
    """Progress of one stream after a batch."""

    current: int
    total: int
    items_per_second: float
    eta_seconds: float | None
    counts: StreamCounts


BatchHandler = Callable[[str, list[T]], Awaitable[StreamCounts]]
StreamProgressCallback = Callable[[StreamProgress], Awaitable[None]]


async def iterate(items: Iterable[T]) -> AsyncIterator[T]:
    """Expose an already fetched list as an async stream."""
    for item in items:
        yield item


class StreamingBatchProcessor:
    """Consumes a lazy item stream in bounded batches."""

    def __init__(self, inter_batch_delay_ms: int = 0) -> None:
        """
        Initialize processor.

        Args:
            inter_batch_delay_ms: Pause between two batches (throttles the remote source)
        """
        self._inter_batch_delay = inter_batch_delay_ms / 1000

    async def process_stream(
        self,
        user_id: str,
        items: AsyncIterable[T],
        batch_size: int,
        on_batch: BatchHandler[T],
        *,
        estimated_total: int = 0,
        on_progress: StreamProgressCallback | None = None,
        label: str = "items",
    ) -> StreamCounts:
        """Process a stream batch by batch.

        Args:
            user_id: Library owner
            items: Lazy item stream
            batch_size: Max items per batch
            on_batch: Handler for one batch (returns its counts)
            estimated_total: Total from the count request (for progress/ETA)
            on_progress: Called after every batch
            label: Stream name for logs

        Returns:
            Summed counts of all batches
        """
        batch_size = max(1, batch_size)
        totals = StreamCounts()
        started = time.monotonic()
        buffer: list[T] = []
        batches = 0

        async def flush() -> None:
            nonlocal buffer, batches
            batch, buffer = buffer, []
            if batches > 0 and self._inter_batch_delay > 0:
                await asyncio.sleep(self._inter_batch_delay)
            batches += 1
            totals.merge(await on_batch(user_id, batch))
            # Let progress consumers and other tasks run between batches
            await asyncio.sleep(0)
            if on_progress is not None:
                await on_progress(self._progress(totals, estimated_total, started))

        async for item in items:
            buffer.append(item)
            if len(buffer) >= batch_size:
                await flush()
        if buffer:
            await flush()

        logger.debug(
            f"Stream '{label}' done: {totals.processed} processed, {totals.new} new, "
            f"{totals.updated} updated, {totals.failed} failed in {batches} batches"
        )
        return totals

    @staticmethod
    def _progress(totals: StreamCounts, estimated_total: int, started: float) -> StreamProgress:
        current = totals.processed + totals.failed
        total = max(estimated_total, current)
        elapsed = time.monotonic() - started
        items_per_second = current / max(elapsed, 0.001)
        remaining = total - current
        eta = remaining / items_per_second if items_per_second > 0 and remaining > 0 else None
        return StreamProgress(
            current=current,
            total=total,
            items_per_second=items_per_second,
            eta_seconds=eta,
            counts=StreamCounts(
                processed=totals.processed,
                new=totals.new,
                updated=totals.updated,
                failed=totals.failed,
            ),
        )


class LibraryIngestor:
    """Batch handlers that turn remote items into memberships.

    Item errors are appended to the shared errors list as "<label> <remote id>: <message>".
    new_track_ids collects canonical track ids that became NEW memberships (for enrichment).
    """

    def __init__(
        self,
        session: AsyncSession,
        reconciler: EntityReconciler,
        artist_cache: ArtistResolutionCache,
        access_token: str,
        errors: list[str] | None = None,
    ) -> None:
        self._session = session
        self._reconciler = reconciler
        self._artist_cache = artist_cache
        self._access_token = access_token
        self._tracks = TrackRepository(session)
        self._memberships = MembershipRepository(session)
        self._sources = MembershipSourceRepository(session)
        self._user_albums = UserAlbumRepository(session)
        self.errors: list[str] = errors if errors is not None else []
        self.new_track_ids: list[str] = []

    def _record_error(self, label: str, remote_id: str, error: Exception) -> None:
        message = f"{label} {remote_id}: {error}"
        self.errors.append(message)
        logger.warning(message)

    async def ingest_track_batch(
        self,
        user_id: str,
        batch: list[SavedTrack],
        source_type: SourceType = SourceType.LIKED,
        source_id: str | None = None,
        source_name: str | None = None,
        label: str = "Track",
    ) -> StreamCounts:
        """Ingest liked tracks or playlist entries.

        Args:
            user_id: Library owner
            batch: Remote entries
            source_type: Provenance to record
            source_id: Provenance container id (playlist id, None for liked)
            source_name: Human-readable container name
            label: Error message prefix

        Returns:
            Counts of this batch (existing memberships count as updated)
        """
        counts = StreamCounts()
        canonical_ids = [saved.track.canonical_id for saved in batch]
        existing_memberships = await self._memberships.get_map_by_track_spotify_ids(
            user_id, canonical_ids
        )
        existing_tracks = await self._tracks.get_map_by_spotify_ids(canonical_ids)
        artist_map = await self._artist_cache.resolve(
            self._access_token,
            (ref.remote_id for saved in batch for ref in _track_artist_refs(saved)),
        )

        for saved in batch:
            track = saved.track
            try:
                async with self._session.begin_nested():
                    reconciled = await self._reconciler.reconcile_track(
                        track, artist_map, known_track=existing_tracks.get(track.canonical_id)
                    )
                    membership = existing_memberships.get(track.canonical_id)
                    created = False
                    if membership is None:
                        membership, created = await self._memberships.get_or_create(
                            user_id, reconciled.track_id, saved.added_at
                        )
                    await self._sources.add_source(
                        membership.id, source_type, source_id, source_name
                    )
            except Exception as e:
                counts.failed += 1
                self._record_error(label, track.remote_id, e)
                continue

            counts.processed += 1
            if created:
                counts.new += 1
                self.new_track_ids.append(reconciled.track_id)
            else:
                counts.updated += 1

        await execute_with_retry(self._session.commit)
        return counts

    async def ingest_album_batch(self, user_id: str, batch: list[SavedAlbum]) -> StreamCounts:
        """Ingest saved albums including memberships for all of their tracks.

        new/updated count ALBUMS (new = not saved by this user before). Album track
        memberships are not counted as new tracks.
        """
        counts = StreamCounts()
        artist_map = await self._artist_cache.resolve(
            self._access_token,
            (ref.remote_id for saved in batch for ref in _album_artist_refs(saved)),
        )

        for saved in batch:
            album = saved.album
            try:
                async with self._session.begin_nested():
                    reconciled = await self._reconciler.reconcile_album(album, artist_map)
                    for track_id in reconciled.track_ids:
                        membership, _ = await self._memberships.get_or_create(
                            user_id, track_id, saved.added_at
                        )
                        await self._sources.add_source(
                            membership.id, SourceType.ALBUM, album.remote_id, album.name
                        )
                    is_new = await self._user_albums.mark_saved(
                        user_id, reconciled.album_id, saved.added_at
                    )
            except Exception as e:
                counts.failed += 1
                self._record_error("Album", album.remote_id, e)
                continue

            counts.processed += 1
            if is_new:
                counts.new += 1
            else:
                counts.updated += 1

        await execute_with_retry(self._session.commit)
        return counts


def _track_artist_refs(saved: SavedTrack) -> list[RemoteArtistRef]:
    refs = list(saved.track.artists)
    if saved.track.album is not None:
        refs.extend(saved.track.album.artists)
    return refs


def _album_artist_refs(saved: SavedAlbum) -> list[RemoteArtistRef]:
    refs = list(saved.album.artists)
    for track in saved.album.tracks:
        refs.extend(track.artists)
    return refs
