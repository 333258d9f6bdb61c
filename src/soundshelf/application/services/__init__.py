"""Application services - library sync, playlist sync, enrichment and statistics."""

from soundshelf.application.services.aggregation_service import AggregationService
from soundshelf.application.services.artist_resolution_cache import (
    ArtistCacheStats,
    ArtistResolutionCache,
)
from soundshelf.application.services.batch_processor import (
    LibraryIngestor,
    StreamingBatchProcessor,
    StreamProgress,
)
from soundshelf.application.services.enrichment_service import (
    AudioFeaturesEnrichmentService,
    GenreEnrichmentService,
)
from soundshelf.application.services.entity_reconciler import EntityReconciler

# Hey future me - LibrarySyncService is THE entry point, everything else is a building block
# it wires together. Jobs (workers/job_handlers.py) only ever talk to the services below.
from soundshelf.application.services.library_sync_service import LibrarySyncService
from soundshelf.application.services.play_history_service import PlayHistoryService
from soundshelf.application.services.playlist_sync_service import PlaylistSyncService
from soundshelf.application.services.progress import (
    ThrottledProgressSink,
    WeightedProgressTracker,
    estimate_counts,
)
from soundshelf.application.services.smart_playlist_sync_service import (
    SmartPlaylistSyncService,
)

__all__ = [
    "AggregationService",
    "ArtistCacheStats",
    "ArtistResolutionCache",
    "AudioFeaturesEnrichmentService",
    "EntityReconciler",
    "GenreEnrichmentService",
    "LibraryIngestor",
    "LibrarySyncService",
    "PlayHistoryService",
    "PlaylistSyncService",
    "SmartPlaylistSyncService",
    "StreamProgress",
    "StreamingBatchProcessor",
    "ThrottledProgressSink",
    "WeightedProgressTracker",
    "estimate_counts",
]
