"""Weighted progress tracking and throttled progress delivery for library syncs.

Hey future me - a liked track, a saved album and a playlist cost VERY different amounts of
work. An album fans out into ~11 track reconciliations, a playlist into ~100. So we convert
every phase into "track equivalents" and compute one overall percentage:

    total_work     = tracks + album_tracks + playlist_tracks
    processed_work = processed_tracks
                   + processed_albums    * (album_tracks    / max(albums, 1))
                   + processed_playlists * (playlist_tracks / max(playlists, 1))

The throttle sits between the orchestrator and whoever listens (job progress column, UI poll).
It NEVER drops the last update - a suppressed update is delivered when its window ends.
"""

import asyncio
import contextlib
import logging
import time

from soundshelf.domain.entities import PhaseBreakdown, SyncItemCounts, SyncPhase, SyncProgress
from soundshelf.domain.ports import ProgressSink

logger = logging.getLogger(__name__)

_WEIGHTED_PHASES = (SyncPhase.TRACKS, SyncPhase.ALBUMS, SyncPhase.PLAYLISTS)


def estimate_counts(
    counts: SyncItemCounts,
    avg_tracks_per_album: int = 11,
    avg_tracks_per_playlist: int = 100,
) -> SyncItemCounts:
    """Fill unknown album/playlist track totals with averages.

    Args:
        counts: Counted totals (album_tracks / playlist_tracks may be 0 = unknown)
        avg_tracks_per_album: Assumed tracks per album
        avg_tracks_per_playlist: Assumed tracks per playlist

    Returns:
        New SyncItemCounts with both track totals filled in
    """
    album_tracks = counts.album_tracks
    if album_tracks <= 0 and counts.albums > 0:
        album_tracks = counts.albums * avg_tracks_per_album
    playlist_tracks = counts.playlist_tracks
    if playlist_tracks <= 0 and counts.playlists > 0:
        playlist_tracks = counts.playlists * avg_tracks_per_playlist
    return SyncItemCounts(
        tracks=counts.tracks,
        albums=counts.albums,
        playlists=counts.playlists,
        album_tracks=album_tracks,
        playlist_tracks=playlist_tracks,
    )


class WeightedProgressTracker:
    """Overall sync percentage weighted by per-phase work."""

    def __init__(self, counts: SyncItemCounts) -> None:
        self.counts = counts
        self._processed: dict[SyncPhase, int] = {phase: 0 for phase in _WEIGHTED_PHASES}

    def _phase_total(self, phase: SyncPhase) -> int:
        if phase == SyncPhase.TRACKS:
            return self.counts.tracks
        if phase == SyncPhase.ALBUMS:
            return self.counts.albums
        if phase == SyncPhase.PLAYLISTS:
            return self.counts.playlists
        raise ValueError(f"Phase {phase.value} carries no weight")

    # Yo, a stream can yield MORE items than the count request said (user liked a track mid-sync).
    # Clamping to the phase total and never going backwards keeps the percentage monotone.
    def set_processed(self, phase: SyncPhase, processed: int) -> None:
        """Record how many items of a phase are done."""
        clamped = max(0, min(processed, self._phase_total(phase)))
        self._processed[phase] = max(self._processed[phase], clamped)

    def complete_phase(self, phase: SyncPhase) -> None:
        """Mark a phase as fully processed, regardless of rounding drift."""
        self._processed[phase] = self._phase_total(phase)

    def processed(self, phase: SyncPhase) -> int:
        """Processed item count of a phase."""
        return self._processed[phase]

    @property
    def total_work(self) -> int:
        """Total work in track equivalents."""
        return self.counts.tracks + self.counts.album_tracks + self.counts.playlist_tracks

    @property
    def processed_work(self) -> float:
        """Processed work in track equivalents."""
        album_weight = self.counts.album_tracks / max(self.counts.albums, 1)
        playlist_weight = self.counts.playlist_tracks / max(self.counts.playlists, 1)
        return (
            self._processed[SyncPhase.TRACKS]
            + self._processed[SyncPhase.ALBUMS] * album_weight
            + self._processed[SyncPhase.PLAYLISTS] * playlist_weight
        )

    @property
    def percentage(self) -> int:
        """Overall percentage in [0, 100]. 0 when there is no work at all."""
        total = self.total_work
        if total <= 0:
            return 0
        value = round(min(self.processed_work / total * 100, 100.0))
        return max(0, min(int(value), 100))

    def breakdown(self) -> dict[str, PhaseBreakdown]:
        """Processed/total per phase for the progress channel."""
        return {
            phase.value: PhaseBreakdown(
                processed=self._processed[phase], total=self._phase_total(phase)
            )
            for phase in _WEIGHTED_PHASES
        }


class ThrottledProgressSink:
    """Rate-limits progress updates without ever losing the latest one.

    An update is forwarded immediately when:
    - its percentage is exactly 0 or 100
    - min_interval_ms passed since the last emission
    - the percentage moved by at least min_delta points (if min_delta is set)

    Everything else is parked as "pending" and a timer delivers it when the window ends.
    A newer update replaces the pending one.
    """

    def __init__(
        self,
        sink: ProgressSink,
        min_interval_ms: int = 1000,
        min_delta: float | None = 1.0,
    ) -> None:
        """
        Initialize the throttle.

        Args:
            sink: Downstream consumer
            min_interval_ms: Minimum time between two emissions
            min_delta: Percentage movement that bypasses the interval (None = time only)
        """
        self._sink = sink
        self._min_interval = min_interval_ms / 1000
        self._min_delta = min_delta
        self._last_emit_at: float | None = None
        self._last_percentage: int | None = None
        self._pending: SyncProgress | None = None
        self._timer: asyncio.Task[None] | None = None
        self.emitted = 0

    async def __call__(self, progress: SyncProgress) -> None:
        """Offer an update to the throttle."""
        now = time.monotonic()
        if self._should_emit(progress, now):
            await self._emit(progress)
            return

        self._pending = progress
        if self._timer is None:
            # _should_emit() always lets the first update through, no emit yet = no wait
            elapsed = now - self._last_emit_at if self._last_emit_at is not None else 0.0
            delay = max(0.0, self._min_interval - elapsed)
            self._timer = asyncio.create_task(self._deferred_emit(delay))

    def _should_emit(self, progress: SyncProgress, now: float) -> bool:
        if progress.percentage in (0, 100):
            return True
        if self._last_emit_at is None or self._last_percentage is None:
            return True
        if now - self._last_emit_at >= self._min_interval:
            return True
        if self._min_delta is not None:
            return abs(progress.percentage - self._last_percentage) >= self._min_delta
        return False

    async def _deferred_emit(self, delay: float) -> None:
        await asyncio.sleep(delay)
        # Detach first - _emit() cancels the running timer otherwise
        self._timer = None
        pending = self._pending
        if pending is not None:
            try:
                await self._emit(pending)
            except Exception:
                # Nobody awaits this task, so log instead of losing the error silently
                logger.exception("Deferred progress emission failed")

    async def _emit(self, progress: SyncProgress) -> None:
        self._pending = None
        self._cancel_timer()
        self._last_emit_at = time.monotonic()
        self._last_percentage = progress.percentage
        self.emitted += 1
        await self._sink(progress)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def flush(self) -> None:
        """Deliver the pending update right now (if any)."""
        if self._pending is not None:
            await self._emit(self._pending)

    async def close(self) -> None:
        """Flush and stop the timer. Call once at the end of a run."""
        await self.flush()
        timer = self._timer
        self._timer = None
        if timer is not None:
            timer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await timer
