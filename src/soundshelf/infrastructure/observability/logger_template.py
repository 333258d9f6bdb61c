"""Shared logging helpers.

Hey future me - use these instead of hand-rolled "started/finished" log pairs, so every
sync phase and job logs the same event names and fields.

USAGE:
    async with log_operation(logger, "library_sync", user_id="u1"):
        await run_sync()

    log_worker_health(logger, "job_worker", cycles_completed=10, errors_total=1, uptime_seconds=60)
"""

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any


# Yo, this context manager logs start/end with automatic duration tracking. **context becomes
# extra fields on both records. On exception it logs .failed WITH the traceback and re-raises,
# so callers still decide what the error means (item error vs. run failure).
@asynccontextmanager
async def log_operation(
    logger: logging.Logger,
    operation: str,
    **context: Any,
) -> AsyncIterator[dict[str, Any]]:
    """Log operation start/end with automatic timing.

    Logs:
    - {operation}.started with context fields
    - {operation}.completed with context + duration_ms (+ anything added to the yielded dict)
    - {operation}.failed with context + duration_ms + error details (if exception)

    Args:
        logger: Module logger
        operation: Operation name (e.g., "library_sync", "genre_backfill")
        **context: Additional fields to include in logs (e.g., user_id="abc")

    Yields:
        Mutable dict - keys added to it end up in the completion log
    """
    start = time.monotonic()
    outcome: dict[str, Any] = {}
    logger.info(f"{operation}.started", extra=context)

    try:
        yield outcome
    except Exception as e:
        duration_ms = int((time.monotonic() - start) * 1000)
        logger.error(
            f"{operation}.failed",
            extra={
                **context,
                "duration_ms": duration_ms,
                "error": str(e),
                "error_type": type(e).__name__,
            },
            exc_info=True,
        )
        raise

    duration_ms = int((time.monotonic() - start) * 1000)
    logger.info(
        f"{operation}.completed",
        extra={**context, **outcome, "duration_ms": duration_ms},
    )


def log_worker_health(
    logger: logging.Logger,
    worker_name: str,
    cycles_completed: int,
    errors_total: int,
    uptime_seconds: float,
    extra_stats: dict[str, Any] | None = None,
) -> None:
    """Log worker health status in a consistent format.

    Args:
        logger: Logger instance
        worker_name: Worker identifier
        cycles_completed: Total cycles completed since start
        errors_total: Total errors encountered since start
        uptime_seconds: Seconds since worker started
        extra_stats: Optional dict of additional stats to include in log
    """
    log_data = {
        "worker": worker_name,
        "cycles_completed": cycles_completed,
        "errors_total": errors_total,
        "uptime_seconds": int(uptime_seconds),
    }
    if extra_stats:
        log_data.update(extra_stats)

    logger.info("worker.health", extra=log_data)
