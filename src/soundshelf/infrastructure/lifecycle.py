"""Application lifecycle - wiring of all components from Settings.

Hey future me - this is the ONLY place that knows which concrete class implements which port.
Services and handlers receive ports, so tests can hand them fakes. Use `lifespan()` for a
long-running process (creates tables, recovers stale jobs, starts worker and scheduler) and
`build_components()` when you only need the objects. The `soundshelf` command (__main__.py)
drives both.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

from sqlalchemy.engine import make_url

from soundshelf.application.workers import (
    JobHandlers,
    JobWorker,
    PersistentJobQueue,
    RecurringJobScheduler,
)
from soundshelf.config import Settings, get_settings
from soundshelf.domain.exceptions import ConfigurationError
from soundshelf.infrastructure.integrations import LastFmClient, ReccoBeatsClient, SpotifyClient
from soundshelf.infrastructure.observability import configure_logging
from soundshelf.infrastructure.persistence import Database
from soundshelf.infrastructure.plugins import SpotifyLibrarySource

logger = logging.getLogger(__name__)


@dataclass
class Components:
    """Everything a running sync engine consists of."""

    settings: Settings
    db: Database
    spotify_client: SpotifyClient
    reccobeats_client: ReccoBeatsClient
    lastfm_client: LastFmClient
    source: SpotifyLibrarySource
    queue: PersistentJobQueue
    handlers: JobHandlers
    worker: JobWorker
    scheduler: RecurringJobScheduler

    async def close(self) -> None:
        """Release HTTP clients and the database engine."""
        await self.spotify_client.close()
        await self.reccobeats_client.close()
        await self.lastfm_client.close()
        await self.db.close()


# Listen future me, SQLite creates -journal/-wal files NEXT to the database file. A missing
# parent directory gives a cryptic "unable to open database file" much later, so fail fast.
def _ensure_sqlite_directory(settings: Settings) -> None:
    url = make_url(settings.database.url)
    if not url.drivername.startswith("sqlite") or not url.database:
        return
    if url.database == ":memory:":
        return

    parent = Path(url.database).parent
    try:
        parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ConfigurationError(
            f"Unable to create SQLite database directory '{parent}': {exc}. "
            "Update SOUNDSHELF_DATABASE__URL or adjust directory permissions."
        ) from exc


def build_components(settings: Settings | None = None) -> Components:
    """Create all components (nothing is started).

    Args:
        settings: Settings to use (cached environment settings if None)

    Returns:
        Components bundle
    """
    settings = settings or get_settings()
    _ensure_sqlite_directory(settings)

    db = Database(settings)
    spotify_client = SpotifyClient(settings.spotify)
    reccobeats_client = ReccoBeatsClient(settings.enrichment)
    lastfm_client = LastFmClient(settings.enrichment)
    source = SpotifyLibrarySource(spotify_client, settings.spotify)
    queue = PersistentJobQueue(db.session_factory, max_retries=settings.jobs.max_retries)

    if not lastfm_client.is_configured:
        logger.info("Last.fm API key not set, genre backfill disabled")

    handlers = JobHandlers(
        db.session_factory,
        queue,
        source,
        settings,
        audio_features_source=reccobeats_client,
        genre_source=lastfm_client if lastfm_client.is_configured else None,
    )
    worker = JobWorker(
        queue,
        handlers,
        poll_interval_seconds=settings.jobs.poll_interval_seconds,
        worker_id=settings.jobs.worker_id,
    )
    scheduler = RecurringJobScheduler(
        queue,
        db.session_factory,
        play_history_interval_seconds=settings.jobs.play_history_interval_minutes * 60,
        smart_playlist_interval_seconds=settings.jobs.smart_playlist_interval_hours * 3600,
        check_interval_seconds=settings.jobs.scheduler_check_interval_seconds,
    )
    return Components(
        settings=settings,
        db=db,
        spotify_client=spotify_client,
        reccobeats_client=reccobeats_client,
        lastfm_client=lastfm_client,
        source=source,
        queue=queue,
        handlers=handlers,
        worker=worker,
        scheduler=scheduler,
    )


@asynccontextmanager
async def lifespan(
    settings: Settings | None = None,
    start_worker: bool = True,
    start_scheduler: bool = True,
) -> AsyncGenerator[Components, None]:
    """Run the sync engine: startup before `yield`, shutdown after.

    Startup configures logging, creates tables, recovers jobs of crashed workers and starts
    the job worker plus the recurring scheduler. Shutdown ALWAYS stops both and closes
    clients, even if startup failed half-way.
    """
    settings = settings or get_settings()
    configure_logging(
        log_level=settings.observability.log_level,
        json_format=settings.observability.log_json,
        app_name=settings.app_name,
    )
    logger.info(f"Starting {settings.app_name}")

    components = build_components(settings)
    try:
        await components.db.create_tables()
        logger.info(f"Database initialized: {make_url(settings.database.url).render_as_string()}")

        recovered = await components.queue.recover_stale()
        if recovered:
            logger.info(f"Recovered {recovered} jobs of crashed workers")

        if start_worker:
            await components.worker.start()
        if start_scheduler:
            await components.scheduler.start()

        yield components
    finally:
        await components.scheduler.stop()
        await components.worker.stop()
        await components.close()
        logger.info(f"{settings.app_name} stopped")
