"""Soundshelf - incremental Spotify library synchronization."""

__version__ = "0.4.0"
