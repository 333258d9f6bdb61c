"""Configuration package."""

from soundshelf.config.settings import (
    DatabaseSettings,
    EnrichmentSettings,
    JobSettings,
    ObservabilitySettings,
    Settings,
    SpotifySettings,
    SyncSettings,
    get_settings,
)

__all__ = [
    "DatabaseSettings",
    "EnrichmentSettings",
    "JobSettings",
    "ObservabilitySettings",
    "Settings",
    "SpotifySettings",
    "SyncSettings",
    "get_settings",
]
