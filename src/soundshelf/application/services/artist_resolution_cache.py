"""Per-run artist metadata resolution with three lookup tiers.

Hey future me - embedded artist refs in track/album payloads have NO genres, popularity or
images. Getting them means one /artists call per 50 ids, and a library with 5000 tracks
mentions the same few hundred artists over and over. So we resolve in tiers:

1. session dict (filled by earlier batches of THIS run)
2. ONE multi-id query against the artists table
3. ONE remote call per artist_batch_size ids for whatever is still missing

Tier 2 and 3 hits are written back into the session dict. The cache belongs to a single sync
run - the orchestrator calls clear() at run start. Don't turn this into a module singleton,
concurrent runs for different users must not share it.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from soundshelf.domain.dtos import ArtistMetadata
from soundshelf.domain.exceptions import AuthenticationError
from soundshelf.domain.ports import IRemoteLibrarySource
from soundshelf.infrastructure.persistence.models import ArtistModel
from soundshelf.infrastructure.persistence.repositories import ArtistRepository

logger = logging.getLogger(__name__)


@dataclass
class ArtistCacheStats:
    """Hit counters (logged at the end of a run)."""

    session_hits: int = 0
    store_hits: int = 0
    remote_hits: int = 0
    remote_calls: int = 0
    misses: int = 0

    def to_dict(self) -> dict[str, int]:
        """Plain dict for log extras."""
        return {
            "session_hits": self.session_hits,
            "store_hits": self.store_hits,
            "remote_hits": self.remote_hits,
            "remote_calls": self.remote_calls,
            "misses": self.misses,
        }


def _metadata_from_model(model: ArtistModel) -> ArtistMetadata:
    return ArtistMetadata(
        remote_id=model.spotify_id,
        name=model.name,
        genres=model.genre_list,
        popularity=model.popularity,
        image_url=model.image_url,
    )


class ArtistResolutionCache:
    """Resolves remote artist ids to ArtistMetadata (session → store → remote)."""

    def __init__(
        self,
        source: IRemoteLibrarySource,
        artist_repository: ArtistRepository,
        batch_size: int = 50,
    ) -> None:
        """
        Initialize the cache.

        Args:
            source: Remote library source (tier 3)
            artist_repository: Artist store (tier 2)
            batch_size: Max ids per remote artist call
        """
        self._source = source
        self._artists = artist_repository
        self._batch_size = max(1, batch_size)
        self._cache: dict[str, ArtistMetadata] = {}
        self.stats = ArtistCacheStats()

    def __len__(self) -> int:
        return len(self._cache)

    def clear(self) -> None:
        """Drop everything. Called at the start of every sync run."""
        self._cache.clear()
        self.stats = ArtistCacheStats()

    async def resolve(
        self, access_token: str, remote_ids: Iterable[str]
    ) -> dict[str, ArtistMetadata]:
        """Resolve artist ids to metadata.

        Ids that can't be resolved (remote failure, unknown id) are simply missing from the
        result - callers fall back to the embedded name.

        Args:
            access_token: Token for tier-3 remote calls
            remote_ids: Remote artist ids

        Returns:
            Mapping remote id → ArtistMetadata for every id we could resolve

        Raises:
            AuthenticationError: The remote rejected the token (run-level fatal)
        """
        wanted = list(dict.fromkeys(rid for rid in remote_ids if rid))
        resolved: dict[str, ArtistMetadata] = {}

        # Tier 1 - session cache
        missing: list[str] = []
        for remote_id in wanted:
            cached = self._cache.get(remote_id)
            if cached is not None:
                resolved[remote_id] = cached
                self.stats.session_hits += 1
            else:
                missing.append(remote_id)
        if not missing:
            return resolved

        # Tier 2 - one query for all of them
        for model in await self._artists.get_many_by_spotify_ids(missing):
            metadata = _metadata_from_model(model)
            resolved[model.spotify_id] = metadata
            self._cache[model.spotify_id] = metadata
            self.stats.store_hits += 1
        missing = [rid for rid in missing if rid not in resolved]
        if not missing:
            return resolved

        # Tier 3 - remote, chunked
        for start in range(0, len(missing), self._batch_size):
            chunk = missing[start : start + self._batch_size]
            self.stats.remote_calls += 1
            try:
                artists = await self._source.get_artists(access_token, chunk)
            except AuthenticationError:
                raise
            except Exception as e:
                logger.warning(
                    f"Artist metadata fetch failed for {len(chunk)} artists, continuing "
                    f"without it: {e}"
                )
                continue
            for metadata in artists:
                resolved[metadata.remote_id] = metadata
                self._cache[metadata.remote_id] = metadata
                self.stats.remote_hits += 1

        self.stats.misses += sum(1 for rid in missing if rid not in resolved)
        return resolved
