"""Adapters implementing domain ports on top of the HTTP clients."""

from soundshelf.infrastructure.plugins.spotify_source import SpotifyLibrarySource

__all__ = ["SpotifyLibrarySource"]
