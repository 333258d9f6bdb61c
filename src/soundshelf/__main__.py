"""Command line entry point.

`soundshelf run` starts the job worker and the recurring scheduler and keeps them running
until SIGINT/SIGTERM. `soundshelf sync USER_ID --token ...` enqueues one library sync (and
with --wait runs the queue dry in-process, handy for cron and debugging).
"""

import asyncio
import signal
from typing import Any

import click

from soundshelf.config import get_settings
from soundshelf.domain.entities import JobType
from soundshelf.infrastructure.lifecycle import lifespan


async def _serve() -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    async with lifespan(get_settings()):
        await stop.wait()


async def _enqueue_sync(payload: dict[str, Any], wait: bool) -> tuple[str, int]:
    async with lifespan(get_settings(), start_worker=False, start_scheduler=False) as components:
        job_id = await components.queue.enqueue(JobType.LIBRARY_SYNC, payload)
        ran = await components.worker.run_until_empty() if wait else 0
        return job_id, ran


@click.group()
def cli() -> None:
    """Incremental Spotify library sync engine."""


@cli.command()
def run() -> None:
    """Run the job worker and the recurring scheduler until interrupted."""
    asyncio.run(_serve())


@cli.command()
@click.argument("user_id")
@click.option("--token", required=True, envvar="SOUNDSHELF_ACCESS_TOKEN", help="Spotify token")
@click.option("--quick", is_flag=True, help="Only the most recent items")
@click.option("--force-refresh", is_flag=True, help="Refetch unchanged playlists too")
@click.option("--wait", is_flag=True, help="Run the queue in this process until it is empty")
def sync(user_id: str, token: str, quick: bool, force_refresh: bool, wait: bool) -> None:
    """Enqueue a library sync for USER_ID."""
    payload = {
        "user_id": user_id,
        "access_token": token,
        "quick": quick,
        "force_refresh": force_refresh,
    }
    job_id, ran = asyncio.run(_enqueue_sync(payload, wait))
    click.echo(f"Enqueued library sync {job_id}")
    if wait:
        click.echo(f"Ran {ran} jobs")


if __name__ == "__main__":
    cli()
