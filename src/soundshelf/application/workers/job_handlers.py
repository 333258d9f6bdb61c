"""Job handlers - what each background job type actually does.

Hey future me - handlers are plain async functions of a claimed Job. They return a JSON-able
dict (stored as the job result) or raise; the JobWorker turns a raise into queue.fail(), which
means at-least-once retry. Every handler opens its OWN session, jobs never share one.

SELF-CHAINING:
Backfills don't loop internally. One job = one bounded chunk. If work remains AND the chunk
made progress, the handler enqueues the next link with the shared "<type>:backfill" dedupe key.
A chunk in which every item failed does NOT chain - otherwise a permanently failing item would
keep the queue busy forever. The next library sync restarts the chain anyway.

LIBRARY_SYNC → (smart playlist sync, play history sync [quick only], genre backfill,
audio features backfill), each only if not already pending.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import asdict
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from soundshelf.application.services import (
    AudioFeaturesEnrichmentService,
    GenreEnrichmentService,
    LibrarySyncService,
    PlayHistoryService,
    SmartPlaylistSyncService,
    ThrottledProgressSink,
)
from soundshelf.application.workers.job_queue import Job, enqueue_backfill_if_absent
from soundshelf.config.settings import Settings
from soundshelf.domain.entities import JobType, SyncOptions, SyncProgress
from soundshelf.domain.exceptions import SyncFailedError, ValidationException
from soundshelf.domain.ports import (
    IAudioFeaturesSource,
    IGenreTagSource,
    IJobScheduler,
    IRemoteLibrarySource,
)

logger = logging.getLogger(__name__)

JobHandler = Callable[[Job], Awaitable[dict[str, Any]]]


def _require(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not value:
        raise ValidationException(f"Job payload is missing '{key}'")
    return str(value)


def user_dedupe_key(job_type: JobType, user_id: str) -> str:
    """Dedupe key for per-user jobs (one waiting job per user and type)."""
    return f"{job_type.value}:{user_id}"


class JobHandlers:
    """Registry of handlers for every JobType."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        scheduler: IJobScheduler,
        source: IRemoteLibrarySource,
        settings: Settings,
        audio_features_source: IAudioFeaturesSource | None = None,
        genre_source: IGenreTagSource | None = None,
    ) -> None:
        """
        Initialize the handlers.

        Args:
            session_factory: Factory for per-job sessions
            scheduler: Queue used for progress updates and follow-up jobs
            source: Remote library source
            settings: Application settings
            audio_features_source: ReccoBeats (None = no audio features backfill)
            genre_source: Last.fm (None = no genre backfill)
        """
        self._session_factory = session_factory
        self._scheduler = scheduler
        self._source = source
        self._settings = settings
        self._audio_source = audio_features_source
        self._genre_source = genre_source

    @property
    def handlers(self) -> dict[JobType, JobHandler]:
        """Handler per job type."""
        return {
            JobType.LIBRARY_SYNC: self.handle_library_sync,
            JobType.AUDIO_FEATURES_BACKFILL: self.handle_audio_features_backfill,
            JobType.GENRE_BACKFILL: self.handle_genre_backfill,
            JobType.SMART_PLAYLIST_SYNC: self.handle_smart_playlist_sync,
            JobType.PLAY_HISTORY_SYNC: self.handle_play_history_sync,
        }

    async def handle(self, job: Job) -> dict[str, Any]:
        """Dispatch a job to its handler."""
        handler = self.handlers.get(job.job_type)
        if handler is None:
            raise ValidationException(f"No handler registered for job type {job.job_type}")
        return await handler(job)

    # =========================================================================
    # LIBRARY SYNC
    # =========================================================================

    async def handle_library_sync(self, job: Job) -> dict[str, Any]:
        """Run a full or quick library sync and chain the follow-up jobs."""
        user_id = _require(job.payload, "user_id")
        access_token = _require(job.payload, "access_token")
        quick = bool(job.payload.get("quick", False))

        async def relay(progress: SyncProgress) -> None:
            try:
                await self._scheduler.update_progress(job.id, progress.to_dict())
            except Exception as e:
                # Progress is informational, a lost update must never fail the sync
                logger.warning(f"Progress update for job {job.id} failed: {e}")

        # Time-based only - the job progress column is polled, bursts are pointless
        sink = ThrottledProgressSink(
            relay, min_interval_ms=self._settings.sync.job_progress_interval_ms, min_delta=None
        )
        try:
            async with self._session_factory() as session:
                audio_features = (
                    AudioFeaturesEnrichmentService(session, self._audio_source)
                    if self._audio_source is not None
                    else None
                )
                service = LibrarySyncService(
                    session, self._source, self._settings, audio_features=audio_features
                )
                if quick:
                    result = await service.sync_quick(user_id, access_token, sink)
                else:
                    options = SyncOptions(
                        force_refresh_playlists=bool(job.payload.get("force_refresh", False))
                    )
                    result = await service.sync_user_library(
                        user_id, access_token, sink, options
                    )
        finally:
            await sink.close()

        if result.failed:
            raise SyncFailedError(result.failure_reason or "Library sync failed")

        await self._enqueue_follow_ups(user_id, access_token, quick)
        return result.to_dict()

    async def _enqueue_follow_ups(self, user_id: str, access_token: str, quick: bool) -> None:
        user_payload = {"user_id": user_id, "access_token": access_token}
        follow_ups: list[tuple[JobType, dict[str, Any] | None, str | None]] = [
            (
                JobType.SMART_PLAYLIST_SYNC,
                user_payload,
                user_dedupe_key(JobType.SMART_PLAYLIST_SYNC, user_id),
            ),
        ]
        # Onboarding wants something in "recently played" right away, full syncs don't care
        if quick:
            follow_ups.append(
                (
                    JobType.PLAY_HISTORY_SYNC,
                    user_payload,
                    user_dedupe_key(JobType.PLAY_HISTORY_SYNC, user_id),
                )
            )
        if self._genre_source is not None:
            follow_ups.append((JobType.GENRE_BACKFILL, None, None))
        if self._audio_source is not None:
            follow_ups.append((JobType.AUDIO_FEATURES_BACKFILL, None, None))

        for job_type, payload, dedupe_key in follow_ups:
            try:
                if dedupe_key is None:
                    job_id = await enqueue_backfill_if_absent(self._scheduler, job_type)
                else:
                    job_id = await self._scheduler.enqueue_if_absent(
                        job_type, payload, dedupe_key=dedupe_key
                    )
            except Exception as e:
                # The sync itself succeeded, a missing follow-up is picked up next time
                logger.warning(f"Failed to enqueue {job_type.value} after library sync: {e}")
                continue
            if job_id is None:
                logger.debug(f"{job_type.value} already pending, not enqueued again")

    # =========================================================================
    # BACKFILLS
    # =========================================================================

    async def handle_audio_features_backfill(self, job: Job) -> dict[str, Any]:
        """Enrich one chunk of tracks with audio features, chain if work remains."""
        if self._audio_source is None:
            return {"processed": 0, "pending": 0, "chained": False}

        async with self._session_factory() as session:
            service = AudioFeaturesEnrichmentService(session, self._audio_source)
            batch = await service.enrich_batch(
                self._settings.enrichment.audio_features_chunk_size
            )
            pending = await service.count_pending()

        chained = await self._chain(JobType.AUDIO_FEATURES_BACKFILL, pending, batch.made_progress)
        return {**asdict(batch), "pending": pending, "chained": chained}

    async def handle_genre_backfill(self, job: Job) -> dict[str, Any]:
        """Tag one chunk of tracks with genres, chain if work remains."""
        if self._genre_source is None:
            return {"processed": 0, "pending": 0, "chained": False}

        enrichment = self._settings.enrichment
        async with self._session_factory() as session:
            service = GenreEnrichmentService(
                session,
                self._genre_source,
                min_tag_weight=enrichment.genre_min_tag_weight,
                max_tags=enrichment.genre_max_tags,
            )
            batch = await service.enrich_batch(enrichment.genre_chunk_size)
            pending = await service.count_pending()

        chained = await self._chain(JobType.GENRE_BACKFILL, pending, batch.made_progress)
        return {**asdict(batch), "pending": pending, "chained": chained}

    async def _chain(self, job_type: JobType, pending: int, made_progress: bool) -> bool:
        if pending <= 0:
            logger.info(f"{job_type.value} finished, nothing pending")
            return False
        if not made_progress:
            logger.warning(
                f"{job_type.value} made no progress ({pending} pending), stopping the chain"
            )
            return False
        return await enqueue_backfill_if_absent(self._scheduler, job_type) is not None

    # =========================================================================
    # PER-USER JOBS
    # =========================================================================

    async def handle_smart_playlist_sync(self, job: Job) -> dict[str, Any]:
        """Push the user's changed smart playlists to Spotify."""
        user_id = _require(job.payload, "user_id")
        access_token = _require(job.payload, "access_token")
        async with self._session_factory() as session:
            service = SmartPlaylistSyncService(
                session, self._source, self._settings.spotify, self._settings.sync
            )
            result = await service.sync_user_playlists(user_id, access_token)
        return asdict(result)

    async def handle_play_history_sync(self, job: Job) -> dict[str, Any]:
        """Import the user's recently played tracks."""
        user_id = _require(job.payload, "user_id")
        access_token = _require(job.payload, "access_token")
        async with self._session_factory() as session:
            result = await PlayHistoryService(session, self._source).sync_recently_played(
                user_id, access_token
            )
        return asdict(result)
