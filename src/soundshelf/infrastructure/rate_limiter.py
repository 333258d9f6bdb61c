"""
Rate limiter for external API calls.

Hey future me – this is the ONE rate limiter all HTTP clients share (Spotify, ReccoBeats,
Last.fm). Token bucket plus adaptive backoff on 429.

ALGORITHM: Token Bucket
- Bucket holds max_tokens
- Tokens refill at refill_rate per second
- Every request takes 1 token, an empty bucket means waiting

ADAPTIVE BACKOFF on 429:
- Retry-After header wins if present
- Otherwise 1s, 2s, 4s, ... (capped at max_backoff_seconds)
- A successful request resets the backoff

USAGE:
    limiter = get_spotify_limiter()

    async with limiter:
        response = await client.get(url)

    # On 429:
    await limiter.handle_rate_limit_response(retry_after)
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class RateLimiterConfig:
    """Configuration for rate limiter.

    Hey future me – max_backoff_seconds must stay HIGH. Spotify sends Retry-After values
    of several minutes under heavy use, capping lower just buys another 429.
    """

    max_tokens: int = 10  # Bucket size
    refill_rate: float = 2.0  # Tokens per second
    max_backoff_seconds: float = 600.0
    initial_backoff_seconds: float = 1.0
    backoff_multiplier: float = 2.0


@dataclass
class RateLimiter:
    """Token Bucket Rate Limiter with adaptive backoff."""

    config: RateLimiterConfig = field(default_factory=RateLimiterConfig)
    name: str = "default"

    _tokens: float = field(default=0.0, init=False)
    _last_refill: float = field(default_factory=time.monotonic, init=False)
    _current_backoff: float = field(default=0.0, init=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False)

    def __post_init__(self) -> None:
        """Initialize tokens to max capacity."""
        self._tokens = float(self.config.max_tokens)
        self._current_backoff = self.config.initial_backoff_seconds

    @classmethod
    def for_spotify(cls) -> "RateLimiter":
        """Spotify: roughly 180 requests/minute, bursts allowed. We sustain 2 req/sec."""
        return cls(
            config=RateLimiterConfig(
                max_tokens=10,
                refill_rate=2.0,
                max_backoff_seconds=600.0,
                initial_backoff_seconds=1.0,
            ),
            name="spotify",
        )

    @classmethod
    def for_reccobeats(cls) -> "RateLimiter":
        """ReccoBeats: undocumented limits, stay gentle."""
        return cls(
            config=RateLimiterConfig(
                max_tokens=5,
                refill_rate=5.0,
                max_backoff_seconds=60.0,
                initial_backoff_seconds=1.0,
            ),
            name="reccobeats",
        )

    @classmethod
    def for_lastfm(cls, min_interval_ms: int = 200) -> "RateLimiter":
        """Last.fm: 5 req/sec, no bursts."""
        rate = 1000.0 / min_interval_ms if min_interval_ms > 0 else 5.0
        return cls(
            config=RateLimiterConfig(
                max_tokens=1,
                refill_rate=rate,
                max_backoff_seconds=120.0,
                initial_backoff_seconds=2.0,
            ),
            name="lastfm",
        )

    def _refill_tokens(self) -> None:
        now = time.monotonic()
        elapsed = now - self._last_refill
        self._tokens = min(
            float(self.config.max_tokens), self._tokens + elapsed * self.config.refill_rate
        )
        self._last_refill = now

    async def acquire(self) -> None:
        """Acquire one token, waiting if necessary."""
        async with self._lock:
            self._refill_tokens()

            while self._tokens < 1.0:
                wait_time = (1.0 - self._tokens) / self.config.refill_rate
                logger.debug(
                    f"RateLimiter[{self.name}]: No tokens available, waiting {wait_time:.2f}s"
                )
                # Release lock while waiting
                self._lock.release()
                try:
                    await asyncio.sleep(wait_time)
                finally:
                    await self._lock.acquire()
                self._refill_tokens()

            self._tokens -= 1.0

    async def handle_rate_limit_response(self, retry_after: int | None = None) -> float:
        """Handle a 429 response with adaptive backoff.

        Args:
            retry_after: Retry-After header from API response (seconds)

        Returns:
            The actual wait time used
        """
        async with self._lock:
            wait_time = float(retry_after) if retry_after is not None else self._current_backoff
            wait_time = min(wait_time, self.config.max_backoff_seconds)

            logger.warning(
                f"RateLimiter[{self.name}]: 429 Rate Limited! Waiting {wait_time:.1f}s "
                f"(backoff level: {self._current_backoff:.1f}s)"
            )

            self._current_backoff = min(
                self._current_backoff * self.config.backoff_multiplier,
                self.config.max_backoff_seconds,
            )
            # Force the next request to wait for a fresh token
            self._tokens = 0.0

        await asyncio.sleep(wait_time)
        return wait_time

    def reset_backoff(self) -> None:
        """Reset backoff after a successful request."""
        self._current_backoff = self.config.initial_backoff_seconds

    async def __aenter__(self) -> "RateLimiter":
        """Enter async context - acquire token."""
        await self.acquire()
        return self

    async def __aexit__(
        self, exc_type: type | None, exc_val: BaseException | None, exc_tb: object
    ) -> None:
        """Exit async context."""
        if exc_type is None:
            self.reset_backoff()

    @property
    def available_tokens(self) -> float:
        """Current available tokens (for debugging)."""
        self._refill_tokens()
        return self._tokens


# Module-level limiters - one per remote service, shared by all requests of the process.
_spotify_limiter: RateLimiter | None = None


def get_spotify_limiter() -> RateLimiter:
    """Get the process-wide Spotify rate limiter."""
    global _spotify_limiter
    if _spotify_limiter is None:
        _spotify_limiter = RateLimiter.for_spotify()
    return _spotify_limiter


__all__ = [
    "RateLimiter",
    "RateLimiterConfig",
    "get_spotify_limiter",
]
