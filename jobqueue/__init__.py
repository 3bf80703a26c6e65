"""
Durable Work Queue

A work queue built on a single relational table: push/reserve/ack/fail/release
with lease semantics, stale-lease recovery, tabular backoff and dead-lettering.
"""

__version__ = "1.0.0"

from jobqueue.config import QueueSettings, Settings, get_settings
from jobqueue.constants import JobStatus
from jobqueue.db import Database
from jobqueue.errors import (
    ConfigurationError,
    EncodingError,
    QueueError,
    StorageError,
    ValidationError,
)
from jobqueue.queue import JobQueue, compute_backoff_delay
from jobqueue.types.job import JobContext, JobResult, ReservedJob

__all__ = [
    "__version__",
    "JobQueue",
    "Database",
    "QueueSettings",
    "Settings",
    "get_settings",
    "JobStatus",
    "ReservedJob",
    "JobContext",
    "JobResult",
    "compute_backoff_delay",
    "QueueError",
    "ConfigurationError",
    "ValidationError",
    "EncodingError",
    "StorageError",
]
