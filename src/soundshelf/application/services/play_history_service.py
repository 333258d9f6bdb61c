"""Recently-played sync into play_events."""

import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from soundshelf.domain.dtos import PlayedTrack
from soundshelf.domain.entities import PlayHistorySyncResult
from soundshelf.domain.ports import IRemoteLibrarySource
from soundshelf.infrastructure.observability import log_operation
from soundshelf.infrastructure.persistence.models import LibraryMembershipModel, ensure_utc_aware
from soundshelf.infrastructure.persistence.repositories import (
    MembershipRepository,
    PlayEventRepository,
)
from soundshelf.infrastructure.persistence.retry import execute_with_retry, is_unique_violation

logger = logging.getLogger(__name__)

PLAY_EVENT_CONSTRAINT = "uq_play_event_membership_played_at"
PLAY_EVENT_COLUMNS = ("membership_id", "played_at")


class PlayHistoryService:
    """Imports recently played tracks as play events."""

    def __init__(self, session: AsyncSession, source: IRemoteLibrarySource) -> None:
        self._session = session
        self._source = source
        self._memberships = MembershipRepository(session)
        self._plays = PlayEventRepository(session)

    async def sync_recently_played(
        self, user_id: str, access_token: str
    ) -> PlayHistorySyncResult:
        """Fetch plays newer than the latest stored one and record them.

        Idempotent - replaying the same remote response records nothing new. Plays of tracks
        that aren't in the user's library are counted as unmatched and skipped.
        """
        result = PlayHistorySyncResult()
        async with log_operation(logger, "play_history_sync", user_id=user_id) as outcome:
            after = await self._plays.latest_played_at(user_id)
            played = await self._source.list_recently_played(access_token, after=after)
            memberships = await self._memberships.get_map_by_track_spotify_ids(
                user_id, (item.track.canonical_id for item in played)
            )

            for item in played:
                membership = memberships.get(item.track.canonical_id)
                if membership is None:
                    result.unmatched += 1
                    continue
                if await self._record_play(membership, item):
                    result.recorded += 1
                else:
                    result.duplicates += 1

            await execute_with_retry(self._session.commit)
            outcome.update(
                recorded=result.recorded,
                duplicates=result.duplicates,
                unmatched=result.unmatched,
            )
        return result

    # Hey future me - insert FIRST (flush inside the savepoint), counters second. If the
    # insert hits the (membership_id, played_at) unique constraint the play is already stored:
    # the savepoint rolls back before the counters were touched, so a replay never double
    # counts. Any other integrity error is a real problem and propagates.
    async def _record_play(self, membership: LibraryMembershipModel, item: PlayedTrack) -> bool:
        played_at = ensure_utc_aware(item.played_at)
        try:
            async with self._session.begin_nested():
                await self._plays.add(membership.id, played_at, item.track.duration_ms or None)
                last = membership.last_played_at
                if last is None or ensure_utc_aware(last) < played_at:
                    membership.last_played_at = played_at
                membership.total_play_count = (membership.total_play_count or 0) + 1
        except IntegrityError as e:
            if not is_unique_violation(e, PLAY_EVENT_CONSTRAINT, PLAY_EVENT_COLUMNS):
                raise
            logger.debug(
                f"Play of membership {membership.id} at {played_at.isoformat()} already stored"
            )
            return False
        return True
