"""Spotify Web API HTTP client (library endpoints only)."""

import logging
from typing import Any, cast

import httpx

from soundshelf.config.settings import SpotifySettings
from soundshelf.domain.exceptions import AuthenticationError, RemoteSourceError
from soundshelf.infrastructure.rate_limiter import RateLimiter, get_spotify_limiter

logger = logging.getLogger(__name__)

# Spotify accepts at most 100 URIs per playlist write
PLAYLIST_WRITE_CHUNK = 100


class SpotifyClient:
    """HTTP client for the Spotify Web API.

    Returns raw JSON dicts - conversion to DTOs happens in SpotifyLibrarySource.
    The access token is passed per call, this client never refreshes tokens.
    """

    # Hey future me, we DON'T create the httpx client in __init__ - it gets lazy-loaded in
    # _get_client() so the client binds to the running event loop, not the import-time one.
    def __init__(
        self,
        settings: SpotifySettings,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        """
        Initialize Spotify client.

        Args:
            settings: Spotify configuration settings
            rate_limiter: Limiter to use (defaults to the process-wide Spotify limiter)
        """
        self.settings = settings
        self._rate_limiter = rate_limiter or get_spotify_limiter()
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.settings.request_timeout)
        return self._client

    # Hey, call close() (or use "async with") or you'll leak connections.
    async def close(self) -> None:
        """Close HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "SpotifyClient":
        """Enter async context."""
        return self

    async def __aexit__(self, *args: object) -> None:
        """Close the client on exit."""
        await self.close()

    # Hey future me - CENTRALIZED API REQUEST with rate limiting! Every call goes through here.
    # 429 → wait (Retry-After or adaptive backoff) and retry up to max_retries.
    # 401/403 → AuthenticationError (run-level fatal). Other errors → RemoteSourceError.
    async def _api_request(
        self,
        method: str,
        path: str,
        access_token: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """Make rate-limited API request with automatic retry on 429.

        Args:
            method: HTTP method (GET, POST, PUT)
            path: Path below the API base URL (e.g. "/me/tracks")
            access_token: OAuth access token
            params: Query parameters
            json_body: JSON request body

        Returns:
            Successful httpx.Response

        Raises:
            AuthenticationError: Missing token or 401/403 from Spotify
            RemoteSourceError: Network errors, exhausted 429 retries, other HTTP errors
        """
        if not access_token:
            raise AuthenticationError("No Spotify access token available")

        client = await self._get_client()
        url = f"{self.settings.api_base_url}{path}"
        headers = {"Authorization": f"Bearer {access_token}"}
        max_retries = self.settings.max_retries

        for attempt in range(max_retries + 1):
            try:
                async with self._rate_limiter:
                    response = await client.request(
                        method=method,
                        url=url,
                        params=params,
                        json=json_body,
                        headers=headers,
                    )
            except httpx.HTTPError as e:
                raise RemoteSourceError(f"Spotify request failed: {method} {path}: {e}") from e

            if response.status_code == 429:
                retry_after_str = response.headers.get("Retry-After")
                retry_after = int(retry_after_str) if retry_after_str else None

                if attempt >= max_retries:
                    raise RemoteSourceError(
                        f"Spotify API rate limited (429) after {max_retries} retries: {path}. "
                        f"Retry-After: {retry_after or 'not provided'} seconds.",
                        status_code=429,
                    )

                wait_time = await self._rate_limiter.handle_rate_limit_response(retry_after)
                logger.warning(
                    f"Spotify 429 Rate Limit (attempt {attempt + 1}/{max_retries}): "
                    f"Waited {wait_time:.1f}s, retrying {path}"
                )
                continue

            self._raise_for_status(response, method, path)
            return response

        raise RemoteSourceError(f"Spotify request exhausted retries: {path}")

    @staticmethod
    def _raise_for_status(response: httpx.Response, method: str, path: str) -> None:
        if response.status_code in (401, 403):
            raise AuthenticationError(
                f"Spotify rejected the access token ({response.status_code}) for {path}",
                http_status=response.status_code,
            )
        if response.status_code >= 400:
            raise RemoteSourceError(
                f"Spotify API error {response.status_code} for {method} {path}",
                status_code=response.status_code,
            )

    async def _get_json(
        self, path: str, access_token: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        response = await self._api_request("GET", path, access_token, params=params)
        return cast(dict[str, Any], response.json())

    async def get_saved_tracks(
        self, access_token: str, limit: int = 50, offset: int = 0
    ) -> dict[str, Any]:
        """Get one page of the user's liked tracks (/me/tracks)."""
        return await self._get_json(
            "/me/tracks", access_token, {"limit": limit, "offset": offset}
        )

    async def get_saved_albums(
        self, access_token: str, limit: int = 50, offset: int = 0
    ) -> dict[str, Any]:
        """Get one page of saved albums (/me/albums) including the first track page."""
        return await self._get_json(
            "/me/albums", access_token, {"limit": limit, "offset": offset}
        )

    async def get_album_tracks(
        self, access_token: str, album_id: str, limit: int = 50, offset: int = 0
    ) -> dict[str, Any]:
        """Get one page of an album's tracks (for albums with more than one page)."""
        return await self._get_json(
            f"/albums/{album_id}/tracks", access_token, {"limit": limit, "offset": offset}
        )

    # Hey future me, /me/playlists returns metadata only (incl. snapshot_id and tracks.total).
    # That's all the change detection needs - tracks are fetched per playlist only when the
    # snapshot changed.
    async def get_user_playlists(
        self, access_token: str, limit: int = 50, offset: int = 0
    ) -> dict[str, Any]:
        """Get one page of the current user's playlists."""
        return await self._get_json(
            "/me/playlists", access_token, {"limit": limit, "offset": offset}
        )

    async def get_playlist_items(
        self, access_token: str, playlist_id: str, limit: int = 100, offset: int = 0
    ) -> dict[str, Any]:
        """Get one page of playlist items."""
        return await self._get_json(
            f"/playlists/{playlist_id}/tracks",
            access_token,
            {"limit": limit, "offset": offset},
        )

    async def get_recently_played(
        self, access_token: str, limit: int = 50, after_ms: int | None = None
    ) -> dict[str, Any]:
        """Get recently played tracks (max 50, Spotify keeps no more)."""
        params: dict[str, Any] = {"limit": limit}
        if after_ms is not None:
            params["after"] = after_ms
        return await self._get_json("/me/player/recently-played", access_token, params)

    async def get_several_artists(
        self, access_token: str, artist_ids: list[str]
    ) -> list[dict[str, Any]]:
        """Get full artist objects (max 50 ids per call)."""
        if not artist_ids:
            return []
        data = await self._get_json("/artists", access_token, {"ids": ",".join(artist_ids)})
        return [a for a in data.get("artists", []) if a]

    async def replace_playlist_items(
        self, access_token: str, playlist_id: str, uris: list[str]
    ) -> None:
        """Replace ALL items of a playlist.

        PUT takes at most 100 URIs - the first chunk replaces, the rest are appended.
        """
        first, rest = uris[:PLAYLIST_WRITE_CHUNK], uris[PLAYLIST_WRITE_CHUNK:]
        await self._api_request(
            "PUT", f"/playlists/{playlist_id}/tracks", access_token, json_body={"uris": first}
        )
        for start in range(0, len(rest), PLAYLIST_WRITE_CHUNK):
            await self._api_request(
                "POST",
                f"/playlists/{playlist_id}/tracks",
                access_token,
                json_body={"uris": rest[start : start + PLAYLIST_WRITE_CHUNK]},
            )

    async def update_playlist_details(
        self,
        access_token: str,
        playlist_id: str,
        name: str,
        description: str | None = None,
    ) -> None:
        """Change name/description of a playlist."""
        body: dict[str, Any] = {"name": name}
        if description is not None:
            body["description"] = description
        await self._api_request(
            "PUT", f"/playlists/{playlist_id}", access_token, json_body=body
        )
