"""Tests for domain entities and DTOs."""

import pytest

from soundshelf.domain.dtos import Page, RemoteAlbum, RemoteArtistRef, RemoteTrack
from soundshelf.domain.entities import (
    EnrichmentBatchResult,
    PhaseBreakdown,
    StreamCounts,
    SyncOptions,
    SyncPhase,
    SyncProgress,
    SyncRunResult,
    SyncState,
)
from soundshelf.domain.exceptions import AuthenticationError, ValidationException


class TestRemoteTrack:
    """Test RemoteTrack identity."""

    def test_canonical_id_prefers_linked_from(self) -> None:
        """Relinked tracks are keyed by their original id."""
        track = RemoteTrack(
            remote_id="market-id",
            name="Song",
            artists=[RemoteArtistRef("ar1", "Artist")],
            duration_ms=1000,
            linked_from_id="original-id",
        )
        assert track.canonical_id == "original-id"
        assert track.uri == "spotify:track:original-id"

    def test_canonical_id_defaults_to_remote_id(self) -> None:
        track = RemoteTrack(remote_id="t1", name="Song", artists=[], duration_ms=0)
        assert track.canonical_id == "t1"

    def test_empty_id_is_rejected(self) -> None:
        with pytest.raises(ValidationException):
            RemoteTrack(remote_id="", name="Song", artists=[], duration_ms=0)

    def test_empty_album_id_is_rejected(self) -> None:
        with pytest.raises(ValidationException):
            RemoteAlbum(remote_id="", name="Album")


class TestPage:
    """Test Page navigation."""

    def test_has_next(self) -> None:
        assert Page(items=[1], total=2, offset=0, next_offset=1).has_next is True
        assert Page(items=[1], total=1).has_next is False


class TestSyncOptions:
    """Test SyncOptions."""

    def test_default_is_unbounded(self) -> None:
        assert SyncOptions().is_bounded is False

    def test_any_limit_bounds(self) -> None:
        assert SyncOptions(playlist_limit=3).is_bounded is True


class TestResults:
    """Test result containers."""

    def test_run_result_to_dict_serializes_state(self) -> None:
        result = SyncRunResult(new_tracks=2, state=SyncState.DONE)
        data = result.to_dict()
        assert data["state"] == "done"
        assert data["new_tracks"] == 2
        assert data["errors"] == []

    def test_failed_property(self) -> None:
        assert SyncRunResult(state=SyncState.FAILED).failed is True
        assert SyncRunResult(state=SyncState.DONE).failed is False

    def test_stream_counts_merge(self) -> None:
        counts = StreamCounts(processed=1, new=1)
        counts.merge(StreamCounts(processed=2, updated=1, failed=1))
        assert counts == StreamCounts(processed=3, new=1, updated=1, failed=1)

    def test_enrichment_progress_requires_a_success(self) -> None:
        """A chunk where everything failed made no progress."""
        assert EnrichmentBatchResult(processed=3, failed=3).made_progress is False
        assert EnrichmentBatchResult(processed=3, failed=2).made_progress is True
        assert EnrichmentBatchResult().made_progress is False


class TestSyncProgress:
    """Test the progress channel payload."""

    def test_to_dict_contains_camel_case_extras(self) -> None:
        progress = SyncProgress(
            phase=SyncPhase.TRACKS,
            current=5,
            total=10,
            percentage=50,
            message="Synced 5/10 liked tracks",
            errors=[f"e{i}" for i in range(12)],
            error_count=12,
            estimated_time_remaining=3.14159,
            items_per_second=2.5,
            breakdown={"tracks": PhaseBreakdown(processed=5, total=10)},
        )
        data = progress.to_dict()
        assert data["phase"] == "tracks"
        assert data["errorCount"] == 12
        assert data["errors"] == [f"e{i}" for i in range(2, 12)]
        assert data["estimatedTimeRemaining"] == 3.1
        assert data["itemsPerSecond"] == 2.5
        assert data["breakdown"] == {"tracks": {"processed": 5, "total": 10}}

    def test_optional_fields_are_omitted(self) -> None:
        data = SyncProgress(
            phase=SyncPhase.COUNTING, current=0, total=0, percentage=0, message="Counting"
        ).to_dict()
        assert "errors" not in data
        assert "estimatedTimeRemaining" not in data
        assert "itemsPerSecond" not in data


class TestAuthenticationError:
    """Test AuthenticationError."""

    def test_requires_reauth_for_rejected_token(self) -> None:
        assert AuthenticationError(http_status=401).requires_reauth is True
        assert AuthenticationError().requires_reauth is True
