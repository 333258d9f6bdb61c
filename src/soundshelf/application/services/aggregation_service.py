"""End-of-run per-user statistics (artists and albums)."""

import logging
from typing import Any

from sqlalchemy import delete, distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from soundshelf.infrastructure.persistence.models import (
    LibraryMembershipModel,
    TrackModel,
    UserAlbumModel,
    UserArtistStatsModel,
)

logger = logging.getLogger(__name__)


def _as_float(value: Any) -> float | None:
    return float(value) if value is not None else None


# Hey future me - stats are recomputed ONCE per sync run from the memberships, not bumped per
# track during ingestion. Two grouped queries (artists, albums) instead of thousands of small
# UPDATEs in the hot loop. Album rows are shared with the album phase: is_saved/saved_at belong
# to it, this service only writes the aggregate columns.
class AggregationService:
    """Recomputes user_artist_stats and user_albums aggregates."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def update_user_stats(self, user_id: str) -> dict[str, int]:
        """Recompute all aggregates of a user.

        Returns:
            Number of artist and album rows written
        """
        artists = await self._update_artist_stats(user_id)
        albums = await self._update_album_stats(user_id)
        await self.session.flush()
        logger.info(
            f"Aggregated stats for user {user_id}: {artists} artists, {albums} albums"
        )
        return {"artists": artists, "albums": albums}

    async def _update_artist_stats(self, user_id: str) -> int:
        stmt = (
            select(
                TrackModel.artist_id,
                func.count(LibraryMembershipModel.id),
                func.count(distinct(TrackModel.album_id)),
                func.coalesce(func.sum(TrackModel.duration_ms), 0),
                func.coalesce(func.sum(LibraryMembershipModel.total_play_count), 0),
                func.count(LibraryMembershipModel.rating),
                func.avg(LibraryMembershipModel.rating),
                func.min(LibraryMembershipModel.added_at),
                func.max(LibraryMembershipModel.last_played_at),
            )
            .join(TrackModel, TrackModel.id == LibraryMembershipModel.track_id)
            .where(LibraryMembershipModel.user_id == user_id)
            .group_by(TrackModel.artist_id)
        )
        rows = (await self.session.execute(stmt)).all()

        existing_result = await self.session.execute(
            select(UserArtistStatsModel).where(UserArtistStatsModel.user_id == user_id)
        )
        existing = {model.artist_id: model for model in existing_result.scalars().all()}

        seen: set[str] = set()
        for (
            artist_id,
            track_count,
            album_count,
            total_duration,
            play_count,
            rated_count,
            avg_rating,
            first_added,
            last_played,
        ) in rows:
            seen.add(artist_id)
            model = existing.get(artist_id)
            if model is None:
                model = UserArtistStatsModel(user_id=user_id, artist_id=artist_id)
                self.session.add(model)
            model.track_count = int(track_count)
            model.album_count = int(album_count)
            model.total_duration_ms = int(total_duration)
            model.total_play_count = int(play_count)
            model.rated_track_count = int(rated_count)
            model.avg_rating = _as_float(avg_rating)
            model.first_added_at = first_added
            model.last_played_at = last_played

        # Artists that left the library entirely
        stale = [artist_id for artist_id in existing if artist_id not in seen]
        if stale:
            await self.session.execute(
                delete(UserArtistStatsModel).where(
                    UserArtistStatsModel.user_id == user_id,
                    UserArtistStatsModel.artist_id.in_(stale),
                )
            )
        return len(rows)

    async def _update_album_stats(self, user_id: str) -> int:
        stmt = (
            select(
                TrackModel.album_id,
                func.count(LibraryMembershipModel.id),
                func.coalesce(func.sum(LibraryMembershipModel.total_play_count), 0),
                func.avg(LibraryMembershipModel.rating),
                func.min(LibraryMembershipModel.added_at),
                func.max(LibraryMembershipModel.last_played_at),
            )
            .join(TrackModel, TrackModel.id == LibraryMembershipModel.track_id)
            .where(LibraryMembershipModel.user_id == user_id)
            .where(TrackModel.album_id.is_not(None))
            .group_by(TrackModel.album_id)
        )
        rows = (await self.session.execute(stmt)).all()

        existing_result = await self.session.execute(
            select(UserAlbumModel).where(UserAlbumModel.user_id == user_id)
        )
        existing = {model.album_id: model for model in existing_result.scalars().all()}

        for album_id, track_count, play_count, avg_rating, first_added, last_played in rows:
            model = existing.get(album_id)
            if model is None:
                # Album known only through liked/playlist tracks - not saved
                model = UserAlbumModel(user_id=user_id, album_id=album_id, is_saved=False)
                self.session.add(model)
            model.track_count = int(track_count)
            model.total_play_count = int(play_count)
            model.avg_rating = _as_float(avg_rating)
            model.first_added_at = first_added
            model.last_played_at = last_played
        return len(rows)

