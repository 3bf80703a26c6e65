"""
Database-backed work queue.

Producers call push(); workers call reserve() and then ack(), fail() or
release(). Coordination between any number of processes happens only
through row locks and timestamps in the jobs_queue table.

Delivery is at-least-once: a lease that outlives reserve_timeout_sec is
reclaimed and may be handed to a second worker while the first is still
running, so handlers must be idempotent.
"""

import asyncio
import logging
import math
from datetime import timedelta
from typing import Any

from jobqueue.config import QueueSettings, get_settings
from jobqueue.constants import (
    BACKOFF_CEILING_SECONDS,
    BACKOFF_SCHEDULE_SECONDS,
    LAST_ERROR_MAX_LENGTH,
    MAX_KIND_LENGTH,
    MAX_QUEUE_NAME_LENGTH,
    SPAN_ACK_JOB,
    SPAN_FAIL_JOB,
    SPAN_PUSH_JOB,
    SPAN_RELEASE_JOB,
    SPAN_RESERVE_JOB,
    TERMINAL_STATUSES,
    JobStatus,
)
from jobqueue.db import Database, Job, JobRepository
from jobqueue.errors import ConfigurationError, ValidationError
from jobqueue.observability.metrics import MetricsCollector, get_metrics
from jobqueue.observability.tracing import queue_span
from jobqueue.reaper import Reaper
from jobqueue.types.job import ReservedJob
from jobqueue.utils import Clock, decode_payload, encode_payload, truncate, utc_now

logger = logging.getLogger(__name__)


def compute_backoff_delay(attempt: int) -> int:
    """
    Seconds to wait before retrying after the given failed attempt.

    The schedule is a fixed table (5s, 20s, 60s, 180s, 600s, 1800s, then
    3600s) so operators can read delays off without computing them.
    """
    return BACKOFF_SCHEDULE_SECONDS.get(attempt, BACKOFF_CEILING_SECONDS)


class JobQueue:
    """
    Durable work queue on a relational table.

    Every call is a short transaction of its own; no job state is cached
    in process.
    """

    def __init__(
        self,
        database: Database,
        settings: QueueSettings | None = None,
        *,
        clock: Clock | None = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the queue.

        Args:
            database: Database handle owning the engine.
            settings: Queue options. Defaults to the application settings.
            clock: Source of the current naive-UTC time.
            metrics: Metrics collector. Defaults to the process collector.
        """
        self._db = database
        self._settings = settings or get_settings().queue
        self._clock = clock or utc_now
        self._metrics = metrics or get_metrics()
        self._reaper = Reaper(
            database,
            self._settings,
            clock=self._clock,
            metrics=self._metrics,
        )

    @property
    def settings(self) -> QueueSettings:
        return self._settings

    @property
    def is_enabled(self) -> bool:
        return self._settings.enabled

    @property
    def default_queue(self) -> str:
        return self._settings.default_queue

    # ------------------------------------------------------------------
    # Producer
    # ------------------------------------------------------------------

    async def push(
        self,
        kind: str,
        payload: Any = None,
        *,
        queue: str | None = None,
        delay_sec: float = 0,
        max_attempts: int | None = None,
    ) -> int:
        """
        Enqueue a job.

        Args:
            kind: Handler identifier, opaque to the queue.
            payload: JSON-serializable data for the handler. None stores {}.
            queue: Target queue. Empty or None uses the default queue.
            delay_sec: Seconds before the job becomes reservable.
            max_attempts: Soft retry cap; missing or non-positive uses the default.

        Returns:
            The new job id.

        Raises:
            ConfigurationError: If the queue is disabled.
            ValidationError: If kind or options are invalid.
            EncodingError: If the payload cannot be serialized.
            StorageError: If the insert fails.
        """
        self._assert_enabled()

        queue_name = self._resolve_queue(queue)
        if not isinstance(kind, str):
            raise ValidationError(f"Job kind must be a string, got {type(kind).__name__}.")
        if not kind.strip():
            raise ValidationError("Job kind cannot be empty.")
        if len(kind) > MAX_KIND_LENGTH:
            raise ValidationError(f"Job kind exceeds {MAX_KIND_LENGTH} characters.")

        delay = self._normalize_delay(delay_sec)
        attempts_cap = self._normalize_max_attempts(max_attempts)
        payload_json = encode_payload({} if payload is None else payload)

        now = self._clock()
        available_at = now + timedelta(seconds=delay)

        with queue_span(SPAN_PUSH_JOB, queue=queue_name, kind=kind) as span:
            async with self._db.transaction("push") as session:
                job_id = await JobRepository(session).insert_job(
                    queue=queue_name,
                    kind=kind,
                    payload=payload_json,
                    max_attempts=attempts_cap,
                    available_at=available_at,
                    now=now,
                )
            span.set_attribute("job_id", job_id)

        logger.info(
            "Job pushed",
            extra={
                "job_id": job_id,
                "queue": queue_name,
                "kind": kind,
                "delay_sec": delay,
                "max_attempts": attempts_cap,
            },
        )
        self._metrics.record_job_pushed(queue_name, kind)

        return job_id

    # ------------------------------------------------------------------
    # Consumer
    # ------------------------------------------------------------------

    async def reserve(self, queue: str | None = None) -> ReservedJob | None:
        """
        Lease the oldest eligible job in a queue.

        Stale leases are reclaimed first. A candidate that has already
        reached dead_after_attempts is dead-lettered instead, and this call
        returns None.

        Args:
            queue: Queue to poll. Defaults to the default queue.

        Returns:
            The reserved job, or None if nothing is available.

        Raises:
            ConfigurationError: If the queue is disabled.
            StorageError: If the database fails; nothing is changed.
        """
        self._assert_enabled()
        queue_name = self._resolve_queue(queue)

        await self._reaper.run_once()

        dead_after = self._settings.dead_after_attempts
        reserved: ReservedJob | None = None
        hard_limited: Job | None = None

        with queue_span(SPAN_RESERVE_JOB, queue=queue_name) as span:
            now = self._clock()

            async with self._db.transaction("reserve") as session:
                repo = JobRepository(session)
                job = await repo.find_reservable(
                    queue_name,
                    now,
                    skip_locked=self._settings.skip_locked,
                )

                if job is not None and job.attempts >= dead_after:
                    await repo.mark_dead(
                        job.id,
                        f"Exceeded hard attempts limit ({dead_after})",
                        now,
                    )
                    hard_limited = job
                elif job is not None:
                    await repo.mark_reserved(job.id, now)
                    reserved = ReservedJob(
                        id=job.id,
                        queue=job.queue,
                        kind=job.kind,
                        payload=decode_payload(job.payload),
                        attempts=job.attempts,
                        max_attempts=job.max_attempts,
                        reserved_at=now,
                    )

            if reserved is not None:
                span.set_attribute("job_id", reserved.id)

        if hard_limited is not None:
            logger.error(
                "Job dead-lettered",
                extra={
                    "job_id": hard_limited.id,
                    "queue": queue_name,
                    "attempts": hard_limited.attempts,
                    "reason": "hard_limit",
                },
            )
            self._metrics.record_job_dead("hard_limit")
            return None

        if reserved is None:
            return None

        logger.info(
            "Job reserved",
            extra={
                "job_id": reserved.id,
                "queue": queue_name,
                "kind": reserved.kind,
                "attempts": reserved.attempts,
                "max_attempts": reserved.max_attempts,
            },
        )
        self._metrics.record_job_reserved(queue_name)

        return reserved

    async def ack(self, job_id: int) -> bool:
        """
        Mark a job done. Repeated calls are harmless.

        Returns:
            True if this call transitioned the job, False if it was unknown
            or already terminal.
        """
        self._assert_enabled()
        now = self._clock()

        with queue_span(SPAN_ACK_JOB, job_id=job_id):
            async with self._db.transaction("ack") as session:
                updated = await JobRepository(session).mark_done(job_id, now)

        logger.info("Job acknowledged", extra={"job_id": job_id, "updated": updated > 0})
        if updated:
            self._metrics.record_job_acked()

        return updated > 0

    async def fail(
        self,
        job_id: int,
        error: str | BaseException,
        retry: bool = True,
    ) -> JobStatus | None:
        """
        Record a failed attempt, scheduling a retry or dead-lettering.

        The failed attempt is counted first. The job is dead-lettered when
        retry is False or the new count reaches max_attempts or
        dead_after_attempts; otherwise it is released with the backoff
        delay for that attempt number.

        Args:
            job_id: The job id.
            error: Failure diagnostic; stored truncated.
            retry: False dead-letters immediately.

        Returns:
            The job's new status, or None if it was unknown or already terminal.
        """
        self._assert_enabled()
        message = truncate(str(error), LAST_ERROR_MAX_LENGTH)
        dead_after = self._settings.dead_after_attempts

        outcome: JobStatus | None = None
        reason: str | None = None
        delay = 0
        candidate = 0
        queue_name: str | None = None

        with queue_span(SPAN_FAIL_JOB, job_id=job_id, retry=retry) as span:
            now = self._clock()

            async with self._db.transaction("fail") as session:
                repo = JobRepository(session)
                job = await repo.get_job(job_id, for_update=True)

                if job is not None and job.status not in TERMINAL_STATUSES:
                    queue_name = job.queue
                    candidate = job.attempts + 1

                    if not retry:
                        reason = "no_retry"
                    elif candidate >= job.max_attempts or candidate >= dead_after:
                        reason = "exhausted"

                    if reason is not None:
                        await repo.mark_dead(job_id, message, now, attempts=candidate)
                        outcome = JobStatus.DEAD
                    else:
                        delay = compute_backoff_delay(candidate)
                        await repo.release(
                            job_id,
                            available_at=now + timedelta(seconds=delay),
                            now=now,
                            error=message,
                            attempts=candidate,
                        )
                        outcome = JobStatus.PENDING

            if outcome is not None:
                span.set_attribute("outcome", outcome.value)

        if outcome is JobStatus.DEAD:
            logger.error(
                "Job dead-lettered",
                extra={
                    "job_id": job_id,
                    "queue": queue_name,
                    "attempts": candidate,
                    "reason": reason,
                    "error": message,
                },
            )
            self._metrics.record_job_dead(reason or "exhausted")
        elif outcome is JobStatus.PENDING:
            logger.warning(
                "Job released",
                extra={
                    "job_id": job_id,
                    "queue": queue_name,
                    "delay_sec": delay,
                    "attempts": candidate,
                },
            )
            self._metrics.record_job_released("retry")
        else:
            logger.info("Ignored failure for finished or unknown job", extra={"job_id": job_id})

        return outcome

    async def release(
        self,
        job_id: int,
        delay_sec: float = 0,
        error: str | BaseException | None = None,
        attempts: int | None = None,
    ) -> bool:
        """
        Return a job to the queue without treating it as a failure.

        Workers can call this to yield a job they cannot process right now.

        Args:
            job_id: The job id.
            delay_sec: Seconds before the job becomes reservable again.
            error: Optional diagnostic to overwrite last_error.
            attempts: Optional attempts value to store.

        Returns:
            True if the job was released, False if unknown or already terminal.
        """
        self._assert_enabled()
        delay = self._normalize_delay(delay_sec)
        message = None if error is None else truncate(str(error), LAST_ERROR_MAX_LENGTH)
        if attempts is not None:
            try:
                attempts = max(0, int(attempts))
            except (TypeError, ValueError, OverflowError) as e:
                raise ValidationError(f"Invalid attempts: {attempts!r}") from e

        with queue_span(SPAN_RELEASE_JOB, job_id=job_id, delay_sec=delay):
            now = self._clock()
            async with self._db.transaction("release") as session:
                updated = await JobRepository(session).release(
                    job_id,
                    available_at=now + timedelta(seconds=delay),
                    now=now,
                    error=message,
                    attempts=attempts,
                )

        logger.warning(
            "Job released",
            extra={
                "job_id": job_id,
                "delay_sec": delay,
                "attempts": attempts,
                "updated": updated > 0,
            },
        )
        if updated:
            self._metrics.record_job_released("yield")

        return updated > 0

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    async def get(self, job_id: int) -> Job | None:
        """Load a job row for diagnostics."""
        async with self._db.transaction("get") as session:
            return await JobRepository(session).get_job(job_id)

    async def stats(self, queue: str | None = None) -> dict[str, int]:
        """
        Count jobs by status, for one queue or the whole table.

        Also refreshes the queue-depth gauge.
        """
        async with self._db.transaction("stats") as session:
            counts = await JobRepository(session).count_by_status(queue)

        self._metrics.update_queue_depth(queue or "all", counts)
        return counts

    async def sleep_when_empty(self) -> None:
        """Pause for the configured idle interval between empty polls."""
        if self._settings.sleep_when_empty_ms > 0:
            await asyncio.sleep(self._settings.sleep_when_empty_ms / 1000)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _assert_enabled(self) -> None:
        if not self._settings.enabled:
            raise ConfigurationError("Queue is disabled in config.")

    def _resolve_queue(self, queue: str | None) -> str:
        if queue is None:
            return self._settings.default_queue
        if not isinstance(queue, str):
            raise ValidationError(f"Queue name must be a string, got {type(queue).__name__}.")
        if not queue.strip():
            return self._settings.default_queue
        if len(queue) > MAX_QUEUE_NAME_LENGTH:
            raise ValidationError(f"Queue name exceeds {MAX_QUEUE_NAME_LENGTH} characters.")
        return queue

    def _normalize_delay(self, delay_sec: Any) -> float:
        try:
            delay = float(delay_sec or 0)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid delay: {delay_sec!r}") from e
        if not math.isfinite(delay):
            raise ValidationError(f"Invalid delay: {delay_sec!r}")
        return max(0.0, delay)

    def _normalize_max_attempts(self, max_attempts: Any) -> int:
        try:
            value = int(max_attempts)
        except (TypeError, ValueError, OverflowError):
            return self._settings.default_max_attempts
        return value if value > 0 else self._settings.default_max_attempts
