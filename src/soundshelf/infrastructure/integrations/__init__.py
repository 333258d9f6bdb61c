"""HTTP clients for external services."""

from soundshelf.infrastructure.integrations.lastfm_client import LastFmClient
from soundshelf.infrastructure.integrations.reccobeats_client import ReccoBeatsClient
from soundshelf.infrastructure.integrations.spotify_client import SpotifyClient

__all__ = ["LastFmClient", "ReccoBeatsClient", "SpotifyClient"]
