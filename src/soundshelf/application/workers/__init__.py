"""Worker system - Background job processing."""

from soundshelf.application.workers.job_handlers import JobHandlers, user_dedupe_key
from soundshelf.application.workers.job_queue import (
    Job,
    PersistentJobQueue,
    backfill_dedupe_key,
    enqueue_backfill_if_absent,
)
from soundshelf.application.workers.job_worker import JobWorker
from soundshelf.application.workers.recurring_scheduler import RecurringJobScheduler

__all__ = [
    "Job",
    "JobHandlers",
    "JobWorker",
    "PersistentJobQueue",
    "RecurringJobScheduler",
    "backfill_dedupe_key",
    "enqueue_backfill_if_absent",
    "user_dedupe_key",
]
