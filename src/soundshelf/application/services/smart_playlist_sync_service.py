"""Outbound sync: smart playlists → their Spotify mirror playlists."""

import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from soundshelf.config.settings import SpotifySettings, SyncSettings
from soundshelf.domain.entities import SmartPlaylistSyncResult
from soundshelf.domain.exceptions import AuthenticationError
from soundshelf.domain.ports import IRemoteLibrarySource
from soundshelf.domain.value_objects import hash_track_ids
from soundshelf.infrastructure.observability import log_operation
from soundshelf.infrastructure.persistence.models import SmartPlaylistModel
from soundshelf.infrastructure.persistence.repositories import SmartPlaylistRepository
from soundshelf.infrastructure.persistence.retry import execute_with_retry

logger = logging.getLogger(__name__)


# Hey future me - no diffing here! The matching track set is treated as one opaque blob:
# sort, join, sha256. Same hash as last push → nothing to do. Different → replace the WHOLE
# remote track list. The hash is only stored AFTER Spotify accepted the write, so a failed
# push is retried by the next sync.
class SmartPlaylistSyncService:
    """Pushes changed smart playlists to Spotify."""

    def __init__(
        self,
        session: AsyncSession,
        source: IRemoteLibrarySource,
        spotify_settings: SpotifySettings,
        sync_settings: SyncSettings,
    ) -> None:
        self._session = session
        self._source = source
        self._prefix = spotify_settings.app_playlist_prefix
        self._delay = sync_settings.smart_playlist_delay_ms / 1000
        self._playlists = SmartPlaylistRepository(session)

    async def sync_user_playlists(
        self, user_id: str, access_token: str
    ) -> SmartPlaylistSyncResult:
        """Push every auto-sync smart playlist of the user whose track set changed."""
        result = SmartPlaylistSyncResult()
        async with log_operation(logger, "smart_playlist_sync", user_id=user_id) as outcome:
            playlists = await self._playlists.list_auto_sync(user_id)
            for index, playlist in enumerate(playlists):
                try:
                    pushed = await self.sync_playlist(playlist, access_token)
                except AuthenticationError:
                    raise
                except Exception as e:
                    message = f"Smart playlist {playlist.name} ({playlist.id}): {e}"
                    result.errors.append(message)
                    logger.warning(message)
                    continue

                if not pushed:
                    result.skipped += 1
                    continue
                result.synced += 1
                # Space out remote writes
                if self._delay > 0 and index < len(playlists) - 1:
                    await asyncio.sleep(self._delay)

            outcome.update(
                synced=result.synced, skipped=result.skipped, errors=len(result.errors)
            )
        return result

    async def sync_playlist(self, playlist: SmartPlaylistModel, access_token: str) -> bool:
        """Push one smart playlist if its track set changed.

        Returns:
            True if the remote playlist was rewritten, False if unchanged
        """
        if not playlist.remote_playlist_id:
            return False

        criteria = SmartPlaylistRepository.get_criteria(playlist)
        track_ids = list(
            dict.fromkeys(await self._playlists.matching_track_ids(playlist.user_id, criteria))
        )
        digest = hash_track_ids(track_ids)
        if playlist.track_ids_hash == digest:
            logger.debug(f"Smart playlist {playlist.id} unchanged ({len(track_ids)} tracks)")
            return False

        await self._source.update_playlist_details(
            access_token,
            playlist.remote_playlist_id,
            f"{self._prefix} {playlist.name}",
            playlist.description,
        )
        await self._source.replace_playlist_tracks(
            access_token,
            playlist.remote_playlist_id,
            [f"spotify:track:{track_id}" for track_id in track_ids],
        )
        SmartPlaylistRepository.mark_pushed(playlist, digest)
        await execute_with_retry(self._session.commit)
        logger.info(
            f"Pushed smart playlist {playlist.id} → {playlist.remote_playlist_id} "
            f"({len(track_ids)} tracks)"
        )
        return True
