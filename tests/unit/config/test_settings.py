"""Tests for environment-driven settings."""

import pytest
from pydantic import ValidationError

from soundshelf.config import ObservabilitySettings, Settings, SyncSettings


class TestSettings:
    """Test Settings loading."""

    def test_defaults(self, monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
        monkeypatch.chdir(tmp_path)
        settings = Settings()

        assert settings.app_name == "soundshelf"
        assert settings.spotify.page_size == 50
        assert settings.sync.progress_min_interval_ms == 1000
        assert settings.sync.progress_min_delta == 1.0
        assert settings.enrichment.lastfm_api_key is None

    def test_nested_env_vars(self, monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("SOUNDSHELF_SYNC__TRACK_BATCH_SIZE", "200")
        monkeypatch.setenv("SOUNDSHELF_ENRICHMENT__LASTFM_API_KEY", "secret")
        monkeypatch.setenv("SOUNDSHELF_OBSERVABILITY__LOG_LEVEL", "debug")

        settings = Settings()

        assert settings.sync.track_batch_size == 200
        assert settings.enrichment.lastfm_api_key == "secret"
        assert settings.observability.log_level == "DEBUG"

    def test_invalid_log_level(self) -> None:
        with pytest.raises(ValidationError):
            ObservabilitySettings(log_level="LOUD")

    def test_batch_size_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            SyncSettings(track_batch_size=0)

    def test_delta_can_be_disabled(self) -> None:
        assert SyncSettings(progress_min_delta=None).progress_min_delta is None
