"""Audio-feature and genre enrichment of canonical tracks.

Hey future me - enrichment runs OUTSIDE the sync hot loop, in bounded chunks driven by the
backfill jobs (see workers/job_handlers.py). The pending set is defined by a NULL timestamp:

- audio features: tracks.audio_features_updated_at IS NULL
- genres:         tracks.genres_updated_at IS NULL

A processed track gets its timestamp even when the provider knew nothing about it, otherwise
the backfill would ask for the same unknown tracks forever. A FAILED lookup (network, 5xx)
leaves the track pending and counts as failed - a chunk where everything failed makes no
progress and the backfill job stops chaining itself.
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from soundshelf.domain.dtos import GenreTag
from soundshelf.domain.entities import EnrichmentBatchResult
from soundshelf.domain.exceptions import RemoteSourceError
from soundshelf.domain.ports import IAudioFeaturesSource, IGenreTagSource
from soundshelf.infrastructure.persistence.models import utc_now
from soundshelf.infrastructure.persistence.repositories import TrackRepository
from soundshelf.infrastructure.persistence.retry import execute_with_retry

logger = logging.getLogger(__name__)


class AudioFeaturesEnrichmentService:
    """Stores ReccoBeats audio features on tracks."""

    def __init__(self, session: AsyncSession, source: IAudioFeaturesSource) -> None:
        self._session = session
        self._source = source
        self._tracks = TrackRepository(session)

    async def count_pending(self, track_ids: list[str] | None = None) -> int:
        """Number of tracks still waiting for audio features."""
        return await self._tracks.count_pending_audio_features(track_ids)

    async def enrich_batch(
        self, limit: int, track_ids: list[str] | None = None
    ) -> EnrichmentBatchResult:
        """Enrich up to `limit` pending tracks (optionally only the given local ids)."""
        result = EnrichmentBatchResult()
        tracks = await self._tracks.list_pending_audio_features(limit, track_ids)
        if not tracks:
            return result

        result.processed = len(tracks)
        try:
            features = await self._source.get_audio_features([t.spotify_id for t in tracks])
        except RemoteSourceError as e:
            logger.warning(f"Audio features lookup failed for {len(tracks)} tracks: {e}")
            result.failed = len(tracks)
            return result

        for track in tracks:
            track_features = features.get(track.spotify_id)
            TrackRepository.apply_audio_features(track, track_features)
            if track_features is not None:
                result.updated += 1

        await execute_with_retry(self._session.commit)
        logger.info(
            f"Audio features: {result.updated}/{result.processed} tracks enriched"
        )
        return result


class GenreEnrichmentService:
    """Derives track genres from Last.fm top tags."""

    def __init__(
        self,
        session: AsyncSession,
        source: IGenreTagSource,
        min_tag_weight: int = 5,
        max_tags: int = 5,
    ) -> None:
        self._session = session
        self._source = source
        self._tracks = TrackRepository(session)
        self._min_weight = min_tag_weight
        self._max_tags = max_tags

    async def count_pending(self) -> int:
        """Number of tracks still waiting for genres."""
        return await self._tracks.count_pending_genres()

    def select_genres(self, tags: list[GenreTag]) -> list[str]:
        """Strongest tags above the weight threshold, lower-cased and de-duplicated."""
        genres: list[str] = []
        for tag in sorted(tags, key=lambda t: t.weight, reverse=True):
            if tag.weight < self._min_weight:
                continue
            name = tag.name.strip().lower()
            if name and name not in genres:
                genres.append(name)
            if len(genres) >= self._max_tags:
                break
        return genres

    # Yo, track tags are more precise but sparse for anything that isn't a hit. Artist tags
    # are the fallback when the track has no usable tag at all.
    async def enrich_batch(self, limit: int) -> EnrichmentBatchResult:
        """Tag up to `limit` pending tracks."""
        result = EnrichmentBatchResult()
        for track, artist_name in await self._tracks.list_pending_genres(limit):
            result.processed += 1
            try:
                genres = self.select_genres(
                    await self._source.get_track_tags(artist_name, track.title)
                )
                if not genres:
                    genres = self.select_genres(await self._source.get_artist_tags(artist_name))
            except RemoteSourceError as e:
                result.failed += 1
                logger.debug(f"Genre lookup failed for '{artist_name} - {track.title}': {e}")
                continue

            track.set_genres(genres)
            track.genres_updated_at = utc_now()
            if genres:
                result.updated += 1

        if result.processed:
            await execute_with_retry(self._session.commit)
        logger.info(
            f"Genres: {result.updated}/{result.processed} tracks tagged, {result.failed} failed"
        )
        return result
