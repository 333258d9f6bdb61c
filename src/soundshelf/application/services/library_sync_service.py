"""Library sync orchestrator.

Hey future me - this is THE entry point for pulling a user's Spotify library into the
database. One run walks a strictly linear state machine:

    COUNTING → SYNCING_TRACKS → SYNCING_ALBUMS → SYNCING_PLAYLISTS → AGGREGATING_STATS → DONE
                            (any state) → FAILED

- COUNTING: cheap limit-1 requests for totals (+ summed playlist track totals) for weighting
- SYNCING_*: streamed through StreamingBatchProcessor, one commit per batch
- AGGREGATING_STATS: per-user artist/album stats, ONCE at the end
- then audio features for the new tracks - nice to have, failures are only logged

sync_user_library() NEVER raises. Auth failures and anything unexpected turn into a FAILED
result that still carries the partial counts, plus a final progress update saying so.
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from soundshelf.config.settings import Settings
from soundshelf.domain.dtos import SavedAlbum, SavedTrack
from soundshelf.domain.entities import (
    AlbumSyncResult,
    PlayHistorySyncResult,
    PlaylistSyncResult,
    SourceType,
    StreamCounts,
    SyncItemCounts,
    SyncOptions,
    SyncPhase,
    SyncProgress,
    SyncRunResult,
    SyncState,
)
from soundshelf.domain.ports import IRemoteLibrarySource, ProgressSink, null_progress_sink
from soundshelf.infrastructure.observability import log_operation
from soundshelf.infrastructure.persistence.repositories import ArtistRepository
from soundshelf.infrastructure.persistence.retry import execute_with_retry

from .aggregation_service import AggregationService
from .artist_resolution_cache import ArtistResolutionCache
from .batch_processor import LibraryIngestor, StreamingBatchProcessor, StreamProgress
from .enrichment_service import AudioFeaturesEnrichmentService
from .entity_reconciler import EntityReconciler
from .play_history_service import PlayHistoryService
from .playlist_sync_service import PlaylistSyncService
from .progress import ThrottledProgressSink, WeightedProgressTracker, estimate_counts

logger = logging.getLogger(__name__)

_STATE_PHASES = {
    SyncState.COUNTING: SyncPhase.COUNTING,
    SyncState.SYNCING_TRACKS: SyncPhase.TRACKS,
    SyncState.SYNCING_ALBUMS: SyncPhase.ALBUMS,
    SyncState.SYNCING_PLAYLISTS: SyncPhase.PLAYLISTS,
    SyncState.AGGREGATING_STATS: SyncPhase.STATS,
    SyncState.DONE: SyncPhase.DONE,
}


class _RunReporter:
    """Builds SyncProgress updates for one run and pushes them into the throttled sink."""

    def __init__(
        self, session: AsyncSession, sink: ThrottledProgressSink, result: SyncRunResult
    ) -> None:
        self.session = session
        self.sink = sink
        self.result = result
        self.tracker = WeightedProgressTracker(SyncItemCounts())

    async def emit(
        self,
        phase: SyncPhase,
        current: int,
        total: int,
        message: str,
        stream: StreamProgress | None = None,
        percentage: int | None = None,
    ) -> None:
        # Hey future me - the sink may write the job progress row through ANOTHER connection.
        # Progress points are batch boundaries, so end our transaction (reads only by now)
        # instead of making that write wait for our write lock.
        if self.session.in_transaction():
            await execute_with_retry(self.session.commit)
        await self.sink(
            SyncProgress(
                phase=phase,
                current=current,
                total=total,
                percentage=self.tracker.percentage if percentage is None else percentage,
                message=message,
                errors=list(self.result.errors[-10:]),
                error_count=len(self.result.errors),
                estimated_time_remaining=stream.eta_seconds if stream else None,
                items_per_second=stream.items_per_second if stream else None,
                breakdown=self.tracker.breakdown(),
            )
        )


class LibrarySyncService:
    """Orchestrates a full (or quick) library sync for one user."""

    def __init__(
        self,
        session: AsyncSession,
        source: IRemoteLibrarySource,
        settings: Settings,
        audio_features: AudioFeaturesEnrichmentService | None = None,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            session: Database session for the whole run (batches commit on it)
            source: Remote library source
            settings: Application settings
            audio_features: Optional enrichment run for new tracks after the sync
        """
        self._session = session
        self._source = source
        self._settings = settings
        self._sync = settings.sync
        self._audio_features = audio_features
        self._artist_cache = ArtistResolutionCache(
            source, ArtistRepository(session), settings.spotify.artist_batch_size
        )
        self._reconciler = EntityReconciler(session)
        self._processor = StreamingBatchProcessor(self._sync.inter_batch_delay_ms)
        self._playlist_sync = PlaylistSyncService(
            session,
            source,
            self._artist_cache,
            self._sync,
            reconciler=self._reconciler,
            processor=self._processor,
        )
        self._aggregation = AggregationService(session)
        self._play_history = PlayHistoryService(session, source)

    @property
    def artist_cache(self) -> ArtistResolutionCache:
        """The run-scoped artist cache."""
        return self._artist_cache

    def _throttled(self, on_progress: ProgressSink | None) -> ThrottledProgressSink:
        return ThrottledProgressSink(
            on_progress or null_progress_sink,
            min_interval_ms=self._sync.progress_min_interval_ms,
            min_delta=self._sync.progress_min_delta,
        )

    # =========================================================================
    # COUNTING
    # =========================================================================

    async def count_sync_items(
        self,
        user_id: str,
        access_token: str,
        options: SyncOptions | None = None,
    ) -> SyncItemCounts:
        """Count item totals without downloading the library.

        album_tracks stays 0 (unknown, estimated later). playlist_tracks is the sum of the
        real per-playlist totals.
        """
        options = options or SyncOptions()
        tracks_page = await self._source.list_saved_tracks(access_token, offset=0, limit=1)
        albums_page = await self._source.list_saved_albums(access_token, offset=0, limit=1)
        playlists_page = await self._source.list_playlists(access_token, offset=0, limit=1)

        playlists = await self._source.list_all_playlists(
            access_token, limit=options.playlist_limit
        )
        counts = SyncItemCounts(
            tracks=_capped(tracks_page.total, options.track_limit),
            albums=_capped(albums_page.total, options.album_limit),
            playlists=_capped(playlists_page.total, options.playlist_limit),
            playlist_tracks=sum(p.total_tracks for p in playlists),
        )
        logger.info(
            f"Counted library of user {user_id}: {counts.tracks} tracks, {counts.albums} albums, "
            f"{counts.playlists} playlists ({counts.playlist_tracks} playlist tracks)"
        )
        return counts

    # =========================================================================
    # FULL RUN
    # =========================================================================

    async def sync_user_library(
        self,
        user_id: str,
        access_token: str,
        on_progress: ProgressSink | None = None,
        options: SyncOptions | None = None,
    ) -> SyncRunResult:
        """Run the whole sync state machine.

        Args:
            user_id: Library owner
            access_token: Spotify token
            on_progress: Progress sink (throttled internally)
            options: Phase switches and caps (quick sync)

        Returns:
            SyncRunResult - state DONE or FAILED, never raises
        """
        options = options or SyncOptions()
        result = SyncRunResult()
        reporter = _RunReporter(self._session, self._throttled(on_progress), result)
        ingestor = LibraryIngestor(
            self._session, self._reconciler, self._artist_cache, access_token, result.errors
        )
        self._artist_cache.clear()

        try:
            async with log_operation(
                logger, "library_sync", user_id=user_id, bounded=options.is_bounded
            ) as outcome:
                await self._run(user_id, access_token, options, result, reporter, ingestor)
                outcome.update(
                    new_tracks=result.new_tracks,
                    new_albums=result.new_albums,
                    errors=len(result.errors),
                    artist_cache=self._artist_cache.stats.to_dict(),
                )
        except Exception as e:
            await self._session.rollback()
            failed_phase = _STATE_PHASES.get(result.state, SyncPhase.DONE)
            result.state = SyncState.FAILED
            result.failure_reason = str(e)
            result.errors.append(f"Library sync failed: {e}")
            await reporter.emit(
                failed_phase,
                result.total_tracks,
                reporter.tracker.counts.tracks,
                f"Sync failed: {e} ({result.new_tracks} new tracks, "
                f"{result.new_albums} new albums synced before the failure)",
            )
        finally:
            await reporter.sink.close()
        return result

    async def _run(
        self,
        user_id: str,
        access_token: str,
        options: SyncOptions,
        result: SyncRunResult,
        reporter: _RunReporter,
        ingestor: LibraryIngestor,
    ) -> None:
        tracker = reporter.tracker

        result.state = SyncState.COUNTING
        await reporter.emit(SyncPhase.COUNTING, 0, 0, "Counting library items")
        counts = await self.count_sync_items(user_id, access_token, options)
        if not options.sync_liked_tracks:
            counts.tracks = 0
        if not options.sync_albums:
            counts.albums = 0
        if not options.sync_playlists:
            counts.playlists = 0
            counts.playlist_tracks = 0
        tracker.counts = estimate_counts(
            counts, self._sync.avg_tracks_per_album, self._sync.avg_tracks_per_playlist
        )

        # --- liked tracks ---
        result.state = SyncState.SYNCING_TRACKS
        await reporter.emit(
            SyncPhase.TRACKS, 0, counts.tracks, f"Syncing {counts.tracks} liked tracks"
        )
        if options.sync_liked_tracks:
            await self._sync_liked_tracks(
                user_id, access_token, options.track_limit, result, reporter, ingestor
            )
        tracker.complete_phase(SyncPhase.TRACKS)

        # --- saved albums ---
        result.state = SyncState.SYNCING_ALBUMS
        await reporter.emit(
            SyncPhase.ALBUMS, 0, counts.albums, f"Syncing {counts.albums} saved albums"
        )
        if options.sync_albums:
            await self._sync_albums(
                user_id, access_token, options.album_limit, reporter, ingestor, result
            )
        tracker.complete_phase(SyncPhase.ALBUMS)

        # --- playlists ---
        result.state = SyncState.SYNCING_PLAYLISTS
        await reporter.emit(
            SyncPhase.PLAYLISTS, 0, counts.playlists, f"Syncing {counts.playlists} playlists"
        )
        if options.sync_playlists:
            playlists = await self._sync_playlists(
                user_id,
                access_token,
                options.force_refresh_playlists,
                options.playlist_limit,
                reporter,
            )
            result.total_playlists = playlists.total_playlists
            result.playlist_tracks = playlists.playlist_tracks
            result.skipped_playlists = playlists.skipped_playlists
            result.new_tracks += playlists.new_tracks
            result.errors.extend(playlists.errors)
            ingestor.new_track_ids.extend(self._playlist_sync.new_track_ids)
        tracker.complete_phase(SyncPhase.PLAYLISTS)

        # --- stats ---
        result.state = SyncState.AGGREGATING_STATS
        await reporter.emit(SyncPhase.STATS, 0, 1, "Aggregating library statistics")
        await self._aggregation.update_user_stats(user_id)
        await execute_with_retry(self._session.commit)

        await self._enrich_new_tracks(ingestor.new_track_ids)

        result.state = SyncState.DONE
        await reporter.emit(
            SyncPhase.DONE,
            result.total_tracks,
            counts.tracks,
            f"Sync complete: {result.new_tracks} new tracks, {result.new_albums} new albums",
            percentage=100,
        )

    async def _sync_liked_tracks(
        self,
        user_id: str,
        access_token: str,
        limit: int | None,
        result: SyncRunResult,
        reporter: _RunReporter,
        ingestor: LibraryIngestor,
    ) -> None:
        total = reporter.tracker.counts.tracks

        async def on_batch_progress(progress: StreamProgress) -> None:
            reporter.tracker.set_processed(SyncPhase.TRACKS, progress.current)
            await reporter.emit(
                SyncPhase.TRACKS,
                progress.current,
                progress.total,
                f"Synced {progress.current}/{progress.total} liked tracks",
                stream=progress,
            )

        # Counted per committed batch, a page failing later still leaves them in the result
        async def on_batch(uid: str, batch: list[SavedTrack]) -> StreamCounts:
            counts = await ingestor.ingest_track_batch(
                uid, batch, SourceType.LIKED, None, "Liked Songs"
            )
            result.new_tracks += counts.new
            result.updated_tracks += counts.updated
            result.total_tracks += counts.processed + counts.failed
            return counts

        await self._processor.process_stream(
            user_id,
            self._source.stream_saved_tracks(access_token, limit=limit),
            self._sync.track_batch_size,
            on_batch,
            estimated_total=total,
            on_progress=on_batch_progress,
            label="liked tracks",
        )

    async def _sync_albums(
        self,
        user_id: str,
        access_token: str,
        limit: int | None,
        reporter: _RunReporter,
        ingestor: LibraryIngestor,
        result: SyncRunResult | AlbumSyncResult,
    ) -> None:
        total = reporter.tracker.counts.albums

        async def on_batch_progress(progress: StreamProgress) -> None:
            reporter.tracker.set_processed(SyncPhase.ALBUMS, progress.current)
            await reporter.emit(
                SyncPhase.ALBUMS,
                progress.current,
                progress.total,
                f"Synced {progress.current}/{progress.total} saved albums",
                stream=progress,
            )

        async def on_batch(uid: str, batch: list[SavedAlbum]) -> StreamCounts:
            counts = await ingestor.ingest_album_batch(uid, batch)
            result.new_albums += counts.new
            result.updated_albums += counts.updated
            result.total_albums += counts.processed + counts.failed
            return counts

        await self._processor.process_stream(
            user_id,
            self._source.stream_saved_albums(access_token, limit=limit),
            self._sync.album_batch_size,
            on_batch,
            estimated_total=total,
            on_progress=on_batch_progress,
            label="saved albums",
        )

    async def _sync_playlists(
        self,
        user_id: str,
        access_token: str,
        force_refresh: bool,
        limit: int | None,
        reporter: _RunReporter,
    ) -> PlaylistSyncResult:
        async def on_playlist_done(done: int, total: int) -> None:
            reporter.tracker.set_processed(SyncPhase.PLAYLISTS, done)
            await reporter.emit(
                SyncPhase.PLAYLISTS, done, total, f"Synced {done}/{total} playlists"
            )

        return await self._playlist_sync.sync_playlists(
            user_id,
            access_token,
            force_refresh=force_refresh,
            limit=limit,
            on_progress=on_playlist_done,
        )

    async def _enrich_new_tracks(self, track_ids: list[str]) -> None:
        if self._audio_features is None or not track_ids:
            return
        chunk_size = self._settings.enrichment.audio_features_chunk_size
        unique_ids = list(dict.fromkeys(track_ids))
        try:
            for start in range(0, len(unique_ids), chunk_size):
                chunk = unique_ids[start : start + chunk_size]
                await self._audio_features.enrich_batch(len(chunk), track_ids=chunk)
        except Exception as e:
            # Non-critical - the audio features backfill job picks the rest up
            logger.warning(f"Audio features for new tracks failed: {e}")
            await self._session.rollback()

    # =========================================================================
    # STANDALONE ENTRY POINTS
    # =========================================================================

    async def sync_quick(
        self,
        user_id: str,
        access_token: str,
        on_progress: ProgressSink | None = None,
    ) -> SyncRunResult:
        """Bounded sync for onboarding previews (first N tracks/albums/playlists)."""
        return await self.sync_user_library(
            user_id,
            access_token,
            on_progress,
            SyncOptions(
                track_limit=self._sync.quick_track_limit,
                album_limit=self._sync.quick_album_limit,
                playlist_limit=self._sync.quick_playlist_limit,
            ),
        )

    async def sync_user_albums(
        self,
        user_id: str,
        access_token: str,
        on_progress: ProgressSink | None = None,
    ) -> AlbumSyncResult:
        """Album phase only.

        Unlike sync_user_library() this does NOT turn failures into a result: errors reach the
        caller after the open transaction was rolled back. Batches committed before the
        failure stay in the library.

        Raises:
            AuthenticationError: Token rejected
            RemoteSourceError: Spotify failed while paging saved albums
        """
        self._artist_cache.clear()
        result = AlbumSyncResult()
        reporter = _RunReporter(
            self._session, self._throttled(on_progress), SyncRunResult(errors=result.errors)
        )
        ingestor = LibraryIngestor(
            self._session, self._reconciler, self._artist_cache, access_token, result.errors
        )
        try:
            async with log_operation(logger, "album_sync", user_id=user_id) as outcome:
                first_page = await self._source.list_saved_albums(access_token, offset=0, limit=1)
                reporter.tracker.counts = estimate_counts(
                    SyncItemCounts(albums=first_page.total), self._sync.avg_tracks_per_album
                )
                await reporter.emit(
                    SyncPhase.ALBUMS,
                    0,
                    first_page.total,
                    f"Syncing {first_page.total} saved albums",
                )
                await self._sync_albums(user_id, access_token, None, reporter, ingestor, result)
                reporter.tracker.complete_phase(SyncPhase.ALBUMS)
                await reporter.emit(
                    SyncPhase.DONE,
                    result.total_albums,
                    first_page.total,
                    f"Album sync complete: {result.new_albums} new albums",
                    percentage=100,
                )
                outcome.update(new_albums=result.new_albums, errors=len(result.errors))
        except Exception:
            await self._session.rollback()
            raise
        finally:
            await reporter.sink.close()
        return result

    async def sync_playlist_tracks(
        self,
        user_id: str,
        access_token: str,
        on_progress: ProgressSink | None = None,
        force_refresh: bool = False,
    ) -> PlaylistSyncResult:
        """Playlist phase only.

        Per-playlist errors end up in the result, run-level ones are raised (after a rollback)
        instead of producing a FAILED result like sync_user_library() does.

        Raises:
            AuthenticationError: Token rejected
            RemoteSourceError: Spotify failed while listing playlists
        """
        self._artist_cache.clear()
        reporter = _RunReporter(self._session, self._throttled(on_progress), SyncRunResult())
        try:
            async with log_operation(logger, "playlist_sync", user_id=user_id) as outcome:
                playlists = await self._source.list_playlists(access_token, offset=0, limit=1)
                reporter.tracker.counts = estimate_counts(
                    SyncItemCounts(playlists=playlists.total),
                    avg_tracks_per_playlist=self._sync.avg_tracks_per_playlist,
                )
                await reporter.emit(
                    SyncPhase.PLAYLISTS,
                    0,
                    playlists.total,
                    f"Syncing {playlists.total} playlists",
                )
                result = await self._sync_playlists(
                    user_id, access_token, force_refresh, None, reporter
                )
                reporter.result.errors.extend(result.errors)
                reporter.tracker.complete_phase(SyncPhase.PLAYLISTS)
                await reporter.emit(
                    SyncPhase.DONE,
                    result.total_playlists,
                    result.total_playlists,
                    f"Playlist sync complete: {result.skipped_playlists} unchanged",
                    percentage=100,
                )
                outcome.update(
                    total_playlists=result.total_playlists,
                    skipped_playlists=result.skipped_playlists,
                    new_tracks=result.new_tracks,
                )
        except Exception:
            await self._session.rollback()
            raise
        finally:
            await reporter.sink.close()
        return result

    async def sync_recently_played(
        self, user_id: str, access_token: str
    ) -> PlayHistorySyncResult:
        """Import recently played tracks (idempotent)."""
        return await self._play_history.sync_recently_played(user_id, access_token)


def _capped(total: int, limit: int | None) -> int:
    return total if limit is None else min(total, limit)
