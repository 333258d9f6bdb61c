"""Application settings.

Hey future me - every tunable of the sync engine lives here. Sections are plain
pydantic models nested in one BaseSettings, so env vars look like
SOUNDSHELF_SYNC__TRACK_BATCH_SIZE=100. Don't read os.environ anywhere else!
"""

from functools import lru_cache

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseModel):
    """Database connection settings."""

    url: str = "sqlite+aiosqlite:///./soundshelf.db"
    echo: bool = False
    pool_pre_ping: bool = True
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 30
    pool_recycle: int = 3600


class SpotifySettings(BaseModel):
    """Spotify Web API settings."""

    api_base_url: str = "https://api.spotify.com/v1"
    request_timeout: float = 30.0
    max_retries: int = Field(default=3, ge=0)
    page_size: int = Field(default=50, ge=1, le=50)
    artist_batch_size: int = Field(default=50, ge=1, le=50)
    # Pause between page fetches of a stream, keeps us under the rate limit
    inter_page_delay_ms: int = Field(default=100, ge=0)
    app_playlist_prefix: str = "[Soundshelf]"


class SyncSettings(BaseModel):
    """Library sync tuning.

    Hey future me - avg_tracks_per_album and avg_tracks_per_playlist are only
    weighting heuristics for the progress bar. They are NOT invariants, tune them
    freely if the bar jumps around for real libraries.
    """

    track_batch_size: int = Field(default=50, ge=1)
    album_batch_size: int = Field(default=20, ge=1)
    playlist_batch_size: int = Field(default=100, ge=1)
    inter_batch_delay_ms: int = Field(default=0, ge=0)
    avg_tracks_per_album: int = Field(default=11, ge=0)
    avg_tracks_per_playlist: int = Field(default=100, ge=0)
    progress_min_interval_ms: int = Field(default=1000, ge=0)
    progress_min_delta: float | None = Field(default=1.0, ge=0)
    job_progress_interval_ms: int = Field(default=500, ge=0)
    quick_track_limit: int = Field(default=50, ge=1)
    quick_album_limit: int = Field(default=10, ge=0)
    quick_playlist_limit: int = Field(default=3, ge=0)
    smart_playlist_delay_ms: int = Field(default=100, ge=0)


class EnrichmentSettings(BaseModel):
    """Third-party metadata enrichment (ReccoBeats, Last.fm)."""

    audio_features_chunk_size: int = Field(default=500, ge=1)
    genre_chunk_size: int = Field(default=1000, ge=1)
    reccobeats_base_url: str = "https://api.reccobeats.com"
    reccobeats_batch_size: int = Field(default=40, ge=1, le=40)
    reccobeats_chunk_delay_ms: int = Field(default=100, ge=0)
    lastfm_api_key: str | None = None
    lastfm_base_url: str = "https://ws.audioscrobbler.com/2.0/"
    lastfm_min_interval_ms: int = Field(default=200, ge=0)
    genre_min_tag_weight: int = Field(default=5, ge=0)
    genre_max_tags: int = Field(default=5, ge=1)


class JobSettings(BaseModel):
    """Background job queue settings."""

    poll_interval_seconds: float = Field(default=2.0, gt=0)
    max_retries: int = Field(default=3, ge=0)
    worker_id: str = "soundshelf-worker"
    # All-user recurring jobs (see workers/recurring_scheduler.py)
    play_history_interval_minutes: int = Field(default=100, ge=1)
    smart_playlist_interval_hours: int = Field(default=24, ge=1)
    scheduler_check_interval_seconds: float = Field(default=60.0, gt=0)


class ObservabilitySettings(BaseModel):
    """Logging settings."""

    log_level: str = "INFO"
    log_json: bool = False

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Accept only the standard logging level names."""
        upper = value.upper()
        if upper not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid log level: {value}")
        return upper


class Settings(BaseSettings):
    """Root settings object."""

    model_config = SettingsConfigDict(
        env_prefix="SOUNDSHELF_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
    )

    app_name: str = "soundshelf"
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    spotify: SpotifySettings = Field(default_factory=SpotifySettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    enrichment: EnrichmentSettings = Field(default_factory=EnrichmentSettings)
    jobs: JobSettings = Field(default_factory=JobSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
