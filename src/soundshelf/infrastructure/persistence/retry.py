# Hey future me - two storage signals the sync engine reacts to:
#
# 1. "database is locked" (SQLite, one writer at a time). Temporary - wait and retry.
#    The job worker and the per-batch commits run through execute_with_retry / with_db_retry.
# 2. Unique constraint violations. NOT retried - they mean "the row already exists".
#    Find-or-create re-reads the row, play history treats uq_play_event_membership_played_at
#    as a no-op. Any OTHER violation is a real bug and must propagate.
"""Database retry and integrity-error helpers."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from functools import wraps
from typing import ParamSpec, TypeVar

from sqlalchemy.exc import IntegrityError, OperationalError

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


def is_lock_error(exception: BaseException) -> bool:
    """Check if an exception is a database lock error.

    Args:
        exception: The exception to check

    Returns:
        True if this is a retryable lock error
    """
    if not isinstance(exception, OperationalError):
        return False

    error_msg = str(exception).lower()
    return "locked" in error_msg or "busy" in error_msg


# Yo, SQLite and PostgreSQL word this differently: SQLite says "UNIQUE constraint failed:
# play_events.membership_id, play_events.played_at" (column names, NO constraint name), Postgres
# says 'duplicate key value violates unique constraint "uq_..."'. So we match on the constraint
# name OR on all of its column names.
def is_unique_violation(
    exception: BaseException,
    constraint: str | None = None,
    columns: tuple[str, ...] = (),
) -> bool:
    """Check if an exception is a unique constraint violation.

    Args:
        exception: The exception to check
        constraint: Only match this constraint name (optional)
        columns: Alternatively match when every column name appears in the message

    Returns:
        True if the exception is a (matching) unique violation
    """
    if not isinstance(exception, IntegrityError):
        return False

    error_msg = str(exception.orig if exception.orig is not None else exception).lower()
    if "unique" not in error_msg and "duplicate key" not in error_msg:
        return False
    if constraint is None and not columns:
        return True
    if constraint is not None and constraint.lower() in error_msg:
        return True
    return bool(columns) and all(column.lower() in error_msg for column in columns)


def with_db_retry(
    max_attempts: int = 3,
    initial_delay: float = 0.5,
    max_delay: float = 5.0,
    backoff_factor: float = 2.0,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Decorator for retrying async database operations on lock errors.

    The backoff is exponential: 0.5s → 1s → 2s (capped at max_delay).
    Other OperationalErrors are raised immediately.

    Args:
        max_attempts: Maximum attempts (default: 3)
        initial_delay: Initial delay in seconds (default: 0.5)
        max_delay: Maximum delay cap in seconds (default: 5.0)
        backoff_factor: Multiply delay by this each retry (default: 2.0)

    Returns:
        Decorated function with automatic retry logic.
    """

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            delay = initial_delay
            for attempt in range(max_attempts):
                try:
                    return await func(*args, **kwargs)
                except OperationalError as e:
                    if not is_lock_error(e) or attempt >= max_attempts - 1:
                        raise
                    logger.warning(
                        "Database locked (attempt %d/%d), retrying in %.1fs: %s",
                        attempt + 1,
                        max_attempts,
                        delay,
                        func.__qualname__,
                    )
                    await asyncio.sleep(delay)
                    delay = min(delay * backoff_factor, max_delay)
            raise RuntimeError("Unexpected state in retry decorator")

        return wrapper

    return decorator


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    initial_delay: float = 0.5,
) -> T:
    """Execute an operation with lock retry logic.

    Args:
        operation: Async callable to execute
        max_attempts: Maximum attempts
        initial_delay: Initial delay between retries

    Returns:
        Result of the operation

    Example:
        await execute_with_retry(session.commit)
    """
    delay = initial_delay
    for attempt in range(max_attempts):
        try:
            return await operation()
        except OperationalError as e:
            if not is_lock_error(e) or attempt >= max_attempts - 1:
                raise
            logger.warning(
                "Database locked (attempt %d/%d), retrying in %.1fs",
                attempt + 1,
                max_attempts,
                delay,
            )
            await asyncio.sleep(delay)
            delay *= 2
    raise RuntimeError("Unexpected state in execute_with_retry")
