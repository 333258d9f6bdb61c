"""Inbound playlist sync with snapshot-token change detection.

Hey future me - Spotify gives every playlist an opaque snapshot_id that changes whenever
its content changes. We store it on the mirror row and only re-fetch the tracks when it
differs. Most syncs therefore cost ONE paginated /me/playlists walk and nothing else.

Order per playlist matters:
1. metadata upsert + commit (always, names/descriptions change without new snapshots too)
2. compare tokens → equal means "skipped", done
3. fetch + ingest tracks
4. ONLY THEN store the new token - a failed fetch must be retried on the next run
"""

import logging
from collections.abc import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from soundshelf.config.settings import SyncSettings
from soundshelf.domain.dtos import RemotePlaylist
from soundshelf.domain.entities import PlaylistSyncResult, SourceType
from soundshelf.domain.exceptions import AuthenticationError
from soundshelf.domain.ports import IRemoteLibrarySource
from soundshelf.infrastructure.persistence.repositories import (
    RemotePlaylistRepository,
    SmartPlaylistRepository,
)
from soundshelf.infrastructure.persistence.retry import execute_with_retry

from .artist_resolution_cache import ArtistResolutionCache
from .batch_processor import LibraryIngestor, StreamingBatchProcessor, iterate
from .entity_reconciler import EntityReconciler

logger = logging.getLogger(__name__)

PlaylistProgressCallback = Callable[[int, int], Awaitable[None]]


class PlaylistSyncService:
    """Mirrors the user's Spotify playlists into the library."""

    def __init__(
        self,
        session: AsyncSession,
        source: IRemoteLibrarySource,
        artist_cache: ArtistResolutionCache,
        settings: SyncSettings,
        reconciler: EntityReconciler | None = None,
        processor: StreamingBatchProcessor | None = None,
    ) -> None:
        """
        Initialize playlist sync.

        Args:
            session: Database session (batches commit on it)
            source: Remote library source
            artist_cache: The run's artist cache (shared with the other phases)
            settings: Sync settings (batch size, inter-batch delay)
            reconciler: Entity reconciler (created from the session if omitted)
            processor: Batch processor (created from settings if omitted)
        """
        self._session = session
        self._source = source
        self._artist_cache = artist_cache
        self._settings = settings
        self._reconciler = reconciler or EntityReconciler(session)
        self._processor = processor or StreamingBatchProcessor(settings.inter_batch_delay_ms)
        self._playlists = RemotePlaylistRepository(session)
        self._smart_playlists = SmartPlaylistRepository(session)
        # Local ids of tracks that became new memberships in the last sync_playlists() call
        self.new_track_ids: list[str] = []

    async def sync_playlists(
        self,
        user_id: str,
        access_token: str,
        *,
        force_refresh: bool = False,
        limit: int | None = None,
        on_progress: PlaylistProgressCallback | None = None,
    ) -> PlaylistSyncResult:
        """Sync all (or the first `limit`) playlists of a user.

        Args:
            user_id: Library owner
            access_token: Spotify token
            force_refresh: Ignore stored snapshot tokens
            limit: Only the first N playlists (quick sync)
            on_progress: Called with (done, total) after every playlist

        Returns:
            PlaylistSyncResult (per-playlist errors inside, never raised)

        Raises:
            AuthenticationError: Token rejected (run-level fatal)
        """
        result = PlaylistSyncResult()
        ingestor = LibraryIngestor(
            self._session, self._reconciler, self._artist_cache, access_token, result.errors
        )

        # Smart playlists we push ourselves would otherwise come back as "playlist" sources
        controlled = await self._smart_playlists.get_controlled_remote_ids(user_id)
        # Don't sit on the write lock during the remote playlist walk
        await self._session.commit()
        remote = await self._source.list_all_playlists(access_token, limit=limit)
        playlists = [p for p in remote if p.remote_id not in controlled]
        if len(playlists) != len(remote):
            logger.debug(f"Excluded {len(remote) - len(playlists)} app-controlled playlists")
        result.total_playlists = len(playlists)

        for index, playlist in enumerate(playlists, start=1):
            try:
                await self._sync_one(
                    user_id, access_token, playlist, ingestor, force_refresh, result
                )
            except AuthenticationError:
                raise
            except Exception as e:
                # Uncommitted leftovers of this playlist only - batches are committed already
                await self._session.rollback()
                message = f"Playlist {playlist.name} ({playlist.remote_id}): {e}"
                result.errors.append(message)
                logger.warning(f"Playlist sync failed, continuing: {message}")
            if on_progress is not None:
                await on_progress(index, len(playlists))

        self.new_track_ids = ingestor.new_track_ids
        logger.info(
            f"Playlists for user {user_id}: {result.total_playlists} total, "
            f"{result.skipped_playlists} unchanged, {result.playlist_tracks} tracks synced "
            f"({result.new_tracks} new)"
        )
        return result

    async def _sync_one(
        self,
        user_id: str,
        access_token: str,
        playlist: RemotePlaylist,
        ingestor: LibraryIngestor,
        force_refresh: bool,
        result: PlaylistSyncResult,
    ) -> None:
        async with self._session.begin_nested():
            mirror, _ = await self._playlists.upsert_metadata(user_id, playlist)
        await execute_with_retry(self._session.commit)

        if (
            not force_refresh
            and mirror.snapshot_token is not None
            and mirror.snapshot_token == playlist.snapshot_token
        ):
            result.skipped_playlists += 1
            logger.debug(f"Playlist {playlist.remote_id} unchanged, skipping track fetch")
            return

        if playlist.total_tracks > 0:
            entries = await self._source.list_playlist_tracks(access_token, playlist.remote_id)
            counts = await self._processor.process_stream(
                user_id,
                iterate(entries),
                self._settings.playlist_batch_size,
                lambda uid, batch: ingestor.ingest_track_batch(
                    uid,
                    batch,
                    SourceType.PLAYLIST,
                    playlist.remote_id,
                    playlist.name,
                    label=f"Playlist {playlist.name} track",
                ),
                estimated_total=len(entries),
                label=f"playlist {playlist.remote_id}",
            )
            result.playlist_tracks += counts.processed
            result.new_tracks += counts.new

        RemotePlaylistRepository.mark_synced(mirror, playlist.snapshot_token)
        await execute_with_retry(self._session.commit)
