"""
Application constants.
Centralized location for all constant values used across the queue.
"""

from enum import StrEnum


class JobStatus(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - PENDING -> RESERVED (reserve)
    - RESERVED -> DONE (ack)
    - RESERVED -> PENDING (fail with retry, release, or lease expired)
    - RESERVED -> DEAD (fail without retry, or attempts exhausted)
    - PENDING -> DEAD (hard attempts limit hit at reservation time)

    DONE and DEAD are terminal.
    """

    PENDING = "pending"
    RESERVED = "reserved"
    DONE = "done"
    DEAD = "dead"


# Rows in these states may still be transitioned by ack/fail/release
ACTIVE_STATUSES: tuple[JobStatus, ...] = (JobStatus.PENDING, JobStatus.RESERVED)
TERMINAL_STATUSES: frozenset[JobStatus] = frozenset({JobStatus.DONE, JobStatus.DEAD})

# Retry delay by attempt number; anything past the table waits the ceiling
BACKOFF_SCHEDULE_SECONDS: dict[int, int] = {
    1: 5,
    2: 20,
    3: 60,
    4: 180,
    5: 600,
    6: 1800,
}
BACKOFF_CEILING_SECONDS = 3600

# Default values
DEFAULT_QUEUE = "default"
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RESERVE_TIMEOUT_SECONDS = 120
DEFAULT_SLEEP_WHEN_EMPTY_MS = 500
DEFAULT_DEAD_AFTER_ATTEMPTS = 8

# Column limits
MAX_QUEUE_NAME_LENGTH = 40
MAX_KIND_LENGTH = 120
LAST_ERROR_MAX_LENGTH = 8000
TRUNCATION_MARKER = "...[truncated]"

# Worker pause after a storage error while reserving
RESERVE_ERROR_BACKOFF_SECONDS = 0.5

TABLE_NAME = "jobs_queue"

# Metrics names
METRIC_JOBS_PUSHED = "jobqueue_jobs_pushed_total"
METRIC_JOBS_RESERVED = "jobqueue_jobs_reserved_total"
METRIC_JOBS_ACKED = "jobqueue_jobs_acked_total"
METRIC_JOBS_RELEASED = "jobqueue_jobs_released_total"
METRIC_JOBS_DEAD = "jobqueue_jobs_dead_total"
METRIC_LEASES_REAPED = "jobqueue_leases_reaped_total"
METRIC_JOB_DURATION = "jobqueue_job_duration_seconds"
METRIC_QUEUE_DEPTH = "jobqueue_depth"

# Trace span names
SPAN_PUSH_JOB = "push_job"
SPAN_RESERVE_JOB = "reserve_job"
SPAN_ACK_JOB = "ack_job"
SPAN_FAIL_JOB = "fail_job"
SPAN_RELEASE_JOB = "release_job"
SPAN_REAP_LEASES = "reap_leases"
SPAN_EXECUTE_JOB = "execute_job"
