"""
Type definitions for the job queue.
"""

from jobqueue.types.job import (
    JobContext,
    JobResult,
    ReservedJob,
)

__all__ = [
    "ReservedJob",
    "JobResult",
    "JobContext",
]
