"""Last.fm HTTP client (top tags for genre enrichment)."""

import logging
from typing import Any, cast

import httpx

from soundshelf.config.settings import EnrichmentSettings
from soundshelf.domain.dtos import GenreTag
from soundshelf.domain.exceptions import RemoteSourceError
from soundshelf.domain.ports import IGenreTagSource
from soundshelf.infrastructure.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

# Last.fm error 6 = artist/track not found - expected for obscure tracks, not worth a log line
LASTFM_NOT_FOUND = 6


class LastFmClient(IGenreTagSource):
    """HTTP client for Last.fm tag lookups."""

    def __init__(
        self, settings: EnrichmentSettings, rate_limiter: RateLimiter | None = None
    ) -> None:
        """
        Initialize Last.fm client.

        Args:
            settings: Enrichment settings (API key, base URL, request interval)
            rate_limiter: Limiter to use (defaults to one honouring lastfm_min_interval_ms)
        """
        self.settings = settings
        self._rate_limiter = rate_limiter or RateLimiter.for_lastfm(
            settings.lastfm_min_interval_ms
        )
        self._client: httpx.AsyncClient | None = None

    @property
    def is_configured(self) -> bool:
        """True when an API key is set."""
        return bool(self.settings.lastfm_api_key)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.settings.lastfm_base_url,
                timeout=30.0,
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _make_request(self, method: str, params: dict[str, Any]) -> dict[str, Any] | None:
        """
        Make a request to Last.fm API.

        Args:
            method: API method name
            params: Request parameters

        Returns:
            Response data or None if Last.fm reported an error (e.g. not found)

        Raises:
            RemoteSourceError: If the request fails
        """
        client = await self._get_client()

        request_params = {
            "method": method,
            "api_key": self.settings.lastfm_api_key,
            "format": "json",
            "autocorrect": 1,
            **params,
        }

        try:
            async with self._rate_limiter:
                response = await client.get("", params=request_params)
            if response.status_code == 404:
                return None
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise RemoteSourceError(f"Last.fm request {method} failed: {e}") from e

        if "error" in data:
            if data.get("error") != LASTFM_NOT_FOUND:
                logger.debug(f"Last.fm API error for {method}: {data.get('message')}")
            return None
        return cast(dict[str, Any], data)

    @staticmethod
    def _parse_tags(data: dict[str, Any] | None) -> list[GenreTag]:
        if not data:
            return []
        raw = (data.get("toptags") or {}).get("tag") or []
        # A single tag comes back as an object, not a list
        if isinstance(raw, dict):
            raw = [raw]
        tags: list[GenreTag] = []
        for tag in raw:
            name = str(tag.get("name", "")).strip()
            if not name:
                continue
            # Hey - Last.fm sometimes sends count as a string
            try:
                weight = int(tag.get("count", 0))
            except (TypeError, ValueError):
                weight = 0
            tags.append(GenreTag(name=name, weight=weight))
        return tags

    async def get_track_tags(self, artist: str, title: str) -> list[GenreTag]:
        """Get top tags of a track (empty when not configured or unknown)."""
        if not self.is_configured:
            return []
        data = await self._make_request("track.getTopTags", {"artist": artist, "track": title})
        return self._parse_tags(data)

    async def get_artist_tags(self, artist: str) -> list[GenreTag]:
        """Get top tags of an artist (empty when not configured or unknown)."""
        if not self.is_configured:
            return []
        data = await self._make_request("artist.getTopTags", {"artist": artist})
        return self._parse_tags(data)

    async def __aenter__(self) -> "LastFmClient":
        """Enter async context."""
        return self

    async def __aexit__(self, *args: object) -> None:
        """Close the client on exit."""
        await self.close()
