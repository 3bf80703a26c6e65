"""
Job-related type definitions shared by the queue, handlers and worker.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pydantic import BaseModel


@dataclass(frozen=True)
class ReservedJob:
    """
    A job leased by reserve().

    attempts counts completed failure cycles, not the one in flight.
    """

    id: int
    queue: str
    kind: str
    payload: Any
    attempts: int
    max_attempts: int
    reserved_at: datetime

    @property
    def no_retry(self) -> bool:
        """Producers can opt a job out of retries with payload["no_retry"]."""
        return isinstance(self.payload, dict) and bool(self.payload.get("no_retry", False))


class JobResult(BaseModel):
    """
    Result of job execution.
    Returned by job handlers after processing.

    retry=False asks the worker to dead-letter the job on failure.
    """

    success: bool
    output: dict[str, Any] | None = None
    error: str | None = None
    retry: bool = True
    duration_ms: float | None = None


@dataclass
class JobContext:
    """
    Context passed to job handlers during execution.
    Contains job metadata for the handler.
    """

    job_id: int
    queue: str
    kind: str
    attempt: int
    max_attempts: int
    payload: Any
    worker_id: str
    reserved_at: datetime
    # Queue-wide hard ceiling; a failure at this attempt dead-letters even
    # when max_attempts is higher
    dead_after_attempts: int | None = None

    @classmethod
    def from_reserved(
        cls,
        job: ReservedJob,
        worker_id: str,
        dead_after_attempts: int | None = None,
    ) -> "JobContext":
        """Build the handler context for a freshly reserved job."""
        return cls(
            job_id=job.id,
            queue=job.queue,
            kind=job.kind,
            attempt=job.attempts + 1,
            max_attempts=job.max_attempts,
            payload=job.payload,
            worker_id=worker_id,
            reserved_at=job.reserved_at,
            dead_after_attempts=dead_after_attempts,
        )

    @property
    def attempt_limit(self) -> int:
        """Attempt number whose failure dead-letters the job."""
        if self.dead_after_attempts is None:
            return self.max_attempts
        return min(self.max_attempts, self.dead_after_attempts)

    @property
    def is_last_attempt(self) -> bool:
        """Check if a failure now would dead-letter the job."""
        return self.attempt >= self.attempt_limit

    @property
    def remaining_attempts(self) -> int:
        """Get remaining retry attempts after this one."""
        return max(0, self.attempt_limit - self.attempt)
