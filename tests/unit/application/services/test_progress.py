"""Tests for weighted progress and the progress throttle."""

import asyncio
import time

import pytest

from soundshelf.application.services.progress import (
    ThrottledProgressSink,
    WeightedProgressTracker,
    estimate_counts,
)
from soundshelf.domain.entities import SyncItemCounts, SyncPhase, SyncProgress


def _progress(percentage: int) -> SyncProgress:
    return SyncProgress(
        phase=SyncPhase.TRACKS,
        current=percentage,
        total=100,
        percentage=percentage,
        message=f"{percentage}%",
    )


class Collector:
    """Progress sink that remembers everything it got."""

    def __init__(self) -> None:
        self.received: list[SyncProgress] = []

    async def __call__(self, progress: SyncProgress) -> None:
        self.received.append(progress)

    @property
    def percentages(self) -> list[int]:
        return [p.percentage for p in self.received]


class TestEstimateCounts:
    """Test filling unknown track totals with averages."""

    def test_unknown_totals_are_estimated(self) -> None:
        counts = estimate_counts(SyncItemCounts(tracks=5, albums=2, playlists=3), 10, 50)
        assert counts.album_tracks == 20
        assert counts.playlist_tracks == 150
        assert counts.tracks == 5

    def test_measured_totals_are_kept(self) -> None:
        counts = estimate_counts(SyncItemCounts(playlists=3, playlist_tracks=42))
        assert counts.playlist_tracks == 42

    def test_nothing_to_estimate_without_items(self) -> None:
        counts = estimate_counts(SyncItemCounts())
        assert counts.album_tracks == 0
        assert counts.playlist_tracks == 0


class TestWeightedProgressTracker:
    """Test the weighted overall percentage."""

    @pytest.fixture
    def tracker(self) -> WeightedProgressTracker:
        # 100 liked + 10 albums (110 tracks) + 2 playlists (200 tracks) = 410 track equivalents
        return WeightedProgressTracker(
            SyncItemCounts(
                tracks=100, albums=10, playlists=2, album_tracks=110, playlist_tracks=200
            )
        )

    def test_starts_at_zero(self, tracker: WeightedProgressTracker) -> None:
        assert tracker.percentage == 0
        assert tracker.total_work == 410

    def test_albums_weigh_more_than_tracks(self, tracker: WeightedProgressTracker) -> None:
        """One album counts as album_tracks / albums track equivalents."""
        tracker.set_processed(SyncPhase.TRACKS, 100)
        assert tracker.percentage == round(100 / 410 * 100)
        tracker.set_processed(SyncPhase.ALBUMS, 5)
        assert tracker.percentage == round(155 / 410 * 100)

    def test_all_phases_complete_is_100(self, tracker: WeightedProgressTracker) -> None:
        for phase in (SyncPhase.TRACKS, SyncPhase.ALBUMS, SyncPhase.PLAYLISTS):
            tracker.complete_phase(phase)
        assert tracker.percentage == 100

    def test_overshoot_is_clamped(self, tracker: WeightedProgressTracker) -> None:
        """A stream yielding more items than counted never pushes past the phase total."""
        tracker.set_processed(SyncPhase.TRACKS, 250)
        assert tracker.processed(SyncPhase.TRACKS) == 100
        assert tracker.percentage <= 100

    def test_never_goes_backwards(self, tracker: WeightedProgressTracker) -> None:
        tracker.set_processed(SyncPhase.TRACKS, 60)
        tracker.set_processed(SyncPhase.TRACKS, 40)
        assert tracker.processed(SyncPhase.TRACKS) == 60

    def test_sequence_is_monotone(self, tracker: WeightedProgressTracker) -> None:
        seen = []
        for done in range(0, 101, 7):
            tracker.set_processed(SyncPhase.TRACKS, done)
            seen.append(tracker.percentage)
        for done in range(0, 11):
            tracker.set_processed(SyncPhase.ALBUMS, done)
            seen.append(tracker.percentage)
        assert seen == sorted(seen)
        assert all(0 <= value <= 100 for value in seen)

    def test_unweighted_phase_is_rejected(self, tracker: WeightedProgressTracker) -> None:
        with pytest.raises(ValueError):
            tracker.set_processed(SyncPhase.STATS, 1)

    def test_no_work_reports_zero(self) -> None:
        assert WeightedProgressTracker(SyncItemCounts()).percentage == 0

    def test_breakdown(self, tracker: WeightedProgressTracker) -> None:
        tracker.set_processed(SyncPhase.ALBUMS, 3)
        breakdown = tracker.breakdown()
        assert breakdown["albums"].processed == 3
        assert breakdown["albums"].total == 10
        assert set(breakdown) == {"tracks", "albums", "playlists"}


class TestThrottledProgressSink:
    """Test the progress throttle."""

    async def test_zero_and_hundred_are_never_throttled(self) -> None:
        collector = Collector()
        sink = ThrottledProgressSink(collector, min_interval_ms=60_000, min_delta=None)

        await sink(_progress(0))
        await sink(_progress(100))

        assert collector.percentages == [0, 100]
        await sink.close()

    async def test_suppressed_update_is_delivered_later(self) -> None:
        """The latest pending update arrives when the window ends, without close()."""
        collector = Collector()
        sink = ThrottledProgressSink(collector, min_interval_ms=50, min_delta=None)

        await sink(_progress(10))
        await sink(_progress(20))
        await sink(_progress(30))
        assert collector.percentages == [10]

        await asyncio.sleep(0.15)
        assert collector.percentages == [10, 30]
        await sink.close()

    async def test_large_jump_bypasses_interval(self) -> None:
        collector = Collector()
        sink = ThrottledProgressSink(collector, min_interval_ms=60_000, min_delta=5)

        await sink(_progress(10))
        await sink(_progress(12))
        await sink(_progress(16))

        assert collector.percentages == [10, 16]
        await sink.close()

    async def test_close_flushes_pending(self) -> None:
        collector = Collector()
        sink = ThrottledProgressSink(collector, min_interval_ms=60_000, min_delta=None)

        await sink(_progress(10))
        await sink(_progress(42))
        await sink.close()

        assert collector.percentages == [10, 42]

    async def test_emission_count_is_bounded_by_interval(self) -> None:
        """~1s of updates every 10ms through a 100ms window: at most duration/interval + 1."""
        collector = Collector()
        sink = ThrottledProgressSink(collector, min_interval_ms=100, min_delta=None)

        started = time.monotonic()
        for step in range(100):
            await sink(_progress(1 + step % 98))
            await asyncio.sleep(0.01)
        elapsed = time.monotonic() - started
        emitted_before_close = len(collector.received)

        assert emitted_before_close <= elapsed / 0.1 + 1
        assert emitted_before_close >= 2

        await sink.close()
        # The very last update is never lost
        assert collector.received[-1].percentage == 1 + 99 % 98
