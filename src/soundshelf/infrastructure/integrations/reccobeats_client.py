"""ReccoBeats HTTP client (audio features)."""

import asyncio
import logging
import re
from typing import Any

import httpx

from soundshelf.config.settings import EnrichmentSettings
from soundshelf.domain.dtos import AudioFeatures
from soundshelf.domain.ports import IAudioFeaturesSource
from soundshelf.infrastructure.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

# ReccoBeats ids are its own UUIDs - the Spotify id only appears in href
_SPOTIFY_TRACK_HREF = re.compile(r"open\.spotify\.com/track/([a-zA-Z0-9]+)")


class ReccoBeatsClient(IAudioFeaturesSource):
    """HTTP client for the ReccoBeats audio-features endpoint.

    Hey future me - ReccoBeats replaced Spotify's deprecated audio-features API for us.
    A failed chunk is logged and its ids map to None, the caller still marks those tracks
    as processed so the backfill doesn't spin on them forever.
    """

    def __init__(
        self, settings: EnrichmentSettings, rate_limiter: RateLimiter | None = None
    ) -> None:
        """
        Initialize ReccoBeats client.

        Args:
            settings: Enrichment settings (base URL, batch size, chunk delay)
            rate_limiter: Limiter to use
        """
        self.settings = settings
        self._rate_limiter = rate_limiter or RateLimiter.for_reccobeats()
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.settings.reccobeats_base_url,
                timeout=30.0,
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @staticmethod
    def _convert(item: dict[str, Any]) -> AudioFeatures:
        return AudioFeatures(
            acousticness=item.get("acousticness"),
            danceability=item.get("danceability"),
            energy=item.get("energy"),
            instrumentalness=item.get("instrumentalness"),
            key=item.get("key"),
            liveness=item.get("liveness"),
            loudness=item.get("loudness"),
            mode=item.get("mode"),
            speechiness=item.get("speechiness"),
            tempo=item.get("tempo"),
            valence=item.get("valence"),
        )

    async def get_audio_features(
        self, track_ids: list[str]
    ) -> dict[str, AudioFeatures | None]:
        """Get audio features keyed by Spotify track id.

        Args:
            track_ids: Spotify track ids

        Returns:
            Every requested id; None where ReccoBeats had nothing (or the chunk failed)
        """
        result: dict[str, AudioFeatures | None] = {tid: None for tid in track_ids}
        if not track_ids:
            return result

        client = await self._get_client()
        size = self.settings.reccobeats_batch_size
        chunks = [track_ids[i : i + size] for i in range(0, len(track_ids), size)]

        for index, chunk in enumerate(chunks):
            try:
                async with self._rate_limiter:
                    response = await client.get(
                        "/v1/audio-features", params={"ids": ",".join(chunk)}
                    )
                response.raise_for_status()
                content = response.json().get("content") or []
            except (httpx.HTTPError, ValueError) as e:
                logger.error(
                    f"Failed to fetch audio features for {len(chunk)} tracks: {e}"
                )
                continue

            for item in content:
                match = _SPOTIFY_TRACK_HREF.search(item.get("href") or "")
                if match and match.group(1) in result:
                    result[match.group(1)] = self._convert(item)

            if index < len(chunks) - 1 and self.settings.reccobeats_chunk_delay_ms:
                await asyncio.sleep(self.settings.reccobeats_chunk_delay_ms / 1000)

        return result

    async def __aenter__(self) -> "ReccoBeatsClient":
        """Enter async context."""
        return self

    async def __aexit__(self, *args: object) -> None:
        """Close the client on exit."""
        await self.close()
