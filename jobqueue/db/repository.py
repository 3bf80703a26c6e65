"""
Job repository for database operations.
Implements the data access statements behind every queue operation.
"""

import logging
from datetime import datetime

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.constants import ACTIVE_STATUSES, JobStatus
from jobqueue.db.models import Job

logger = logging.getLogger(__name__)


class JobRepository:
    """
    Repository for job database operations.

    Statements run inside the caller's session; the caller owns the
    transaction. Outcome updates are conditional on the row still being
    PENDING or RESERVED, so they affect zero rows once a job is terminal.
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
        """
        self._session = session

    async def insert_job(
        self,
        queue: str,
        kind: str,
        payload: str,
        max_attempts: int,
        available_at: datetime,
        now: datetime,
    ) -> int:
        """
        Insert a new PENDING job.

        Args:
            queue: Queue name.
            kind: Handler identifier.
            payload: Serialized JSON payload.
            max_attempts: Soft retry cap.
            available_at: Earliest reservation time.
            now: Current time.

        Returns:
            The id assigned by storage.
        """
        job = Job(
            queue=queue,
            kind=kind,
            payload=payload,
            status=JobStatus.PENDING,
            attempts=0,
            max_attempts=max_attempts,
            reserved_at=None,
            available_at=available_at,
            finished_at=None,
            last_error=None,
            created_at=now,
            updated_at=now,
        )
        self._session.add(job)
        await self._session.flush()
        return job.id

    async def get_job(self, job_id: int, for_update: bool = False) -> Job | None:
        """
        Get a job by ID.

        Args:
            job_id: The job id.
            for_update: Lock the row until the transaction ends.

        Returns:
            The Job or None if not found.
        """
        stmt = select(Job).where(Job.id == job_id).execution_options(populate_existing=True)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_reservable(
        self,
        queue: str,
        now: datetime,
        skip_locked: bool = True,
    ) -> Job | None:
        """
        Lock the oldest PENDING job in a queue whose available_at has passed.

        This is the critical path for job distribution: the row lock keeps
        concurrent reservers from leasing the same row.

        Args:
            queue: Queue name.
            now: Current time.
            skip_locked: Skip rows locked by another reserver instead of waiting.

        Returns:
            The locked Job or None if nothing is eligible.
        """
        stmt = (
            select(Job)
            .where(
                and_(
                    Job.queue == queue,
                    Job.status == JobStatus.PENDING,
                    Job.available_at <= now,
                )
            )
            .order_by(Job.id.asc())
            .limit(1)
            .with_for_update(skip_locked=skip_locked)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def mark_reserved(self, job_id: int, now: datetime) -> int:
        """Transition a locked PENDING job to RESERVED."""
        stmt = (
            update(Job)
            .where(and_(Job.id == job_id, Job.status == JobStatus.PENDING))
            .values(
                status=JobStatus.RESERVED,
                reserved_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount

    async def mark_done(self, job_id: int, now: datetime) -> int:
        """
        Mark a job as successfully completed.

        Returns:
            Number of rows updated (0 if unknown or already terminal).
        """
        stmt = (
            update(Job)
            .where(and_(Job.id == job_id, Job.status.in_(ACTIVE_STATUSES)))
            .values(
                status=JobStatus.DONE,
                finished_at=now,
                last_error=None,
                reserved_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount

    async def mark_dead(
        self,
        job_id: int,
        error: str,
        now: datetime,
        attempts: int | None = None,
    ) -> int:
        """
        Move a job to the dead-letter state.

        Args:
            job_id: The job id.
            error: Diagnostic, already length-bounded.
            now: Current time.
            attempts: New attempts value, if it changes.

        Returns:
            Number of rows updated.
        """
        values: dict = {
            "status": JobStatus.DEAD,
            "last_error": error,
            "reserved_at": None,
            "finished_at": now,
            "updated_at": now,
        }
        if attempts is not None:
            values["attempts"] = attempts

        stmt = (
            update(Job)
            .where(and_(Job.id == job_id, Job.status.in_(ACTIVE_STATUSES)))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount

    async def release(
        self,
        job_id: int,
        available_at: datetime,
        now: datetime,
        error: str | None = None,
        attempts: int | None = None,
    ) -> int:
        """
        Return a job to PENDING, clearing its lease.

        Args:
            job_id: The job id.
            available_at: When the job becomes reservable again.
            now: Current time.
            error: Overwrites last_error when given.
            attempts: Overwrites attempts when given.

        Returns:
            Number of rows updated.
        """
        values: dict = {
            "status": JobStatus.PENDING,
            "reserved_at": None,
            "available_at": available_at,
            "updated_at": now,
        }
        if error is not None:
            values["last_error"] = error
        if attempts is not None:
            values["attempts"] = attempts

        stmt = (
            update(Job)
            .where(and_(Job.id == job_id, Job.status.in_(ACTIVE_STATUSES)))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount

    async def reclaim_stale_leases(
        self,
        cutoff: datetime,
        now: datetime,
        count_attempt: bool = False,
        dead_after_attempts: int | None = None,
        error: str | None = None,
    ) -> tuple[int, int]:
        """
        Reset RESERVED jobs leased at or before cutoff.

        When count_attempt is set, every reclaimed job spends one attempt,
        and jobs that exhaust max_attempts or dead_after_attempts are
        dead-lettered instead of returned to the queue.

        Args:
            cutoff: Leases taken at or before this time are stale.
            now: Current time.
            count_attempt: Whether reclaiming consumes an attempt.
            dead_after_attempts: Hard attempts ceiling.
            error: Diagnostic stored on counted reclaims.

        Returns:
            Tuple of (returned_to_queue, dead_lettered).
        """
        stale = and_(
            Job.status == JobStatus.RESERVED,
            Job.reserved_at.is_not(None),
            Job.reserved_at <= cutoff,
        )

        dead = 0
        if count_attempt:
            exhausted = [Job.attempts + 1 >= Job.max_attempts]
            if dead_after_attempts is not None:
                exhausted.append(Job.attempts + 1 >= dead_after_attempts)

            dead_stmt = (
                update(Job)
                .where(and_(stale, or_(*exhausted)))
                .values(
                    status=JobStatus.DEAD,
                    attempts=Job.attempts + 1,
                    last_error=error,
                    reserved_at=None,
                    finished_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            dead = (await self._session.execute(dead_stmt)).rowcount

        values: dict = {
            "status": JobStatus.PENDING,
            "reserved_at": None,
            "updated_at": now,
        }
        if count_attempt:
            values["attempts"] = Job.attempts + 1
            values["last_error"] = error

        stmt = (
            update(Job)
            .where(stale)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        returned = (await self._session.execute(stmt)).rowcount

        return returned, dead

    async def count_by_status(self, queue: str | None = None) -> dict[str, int]:
        """
        Get job counts by status.

        Args:
            queue: Optional queue filter.

        Returns:
            Dictionary of status -> count, with every status present.
        """
        stmt = select(Job.status, func.count()).group_by(Job.status)
        if queue is not None:
            stmt = stmt.where(Job.queue == queue)

        result = await self._session.execute(stmt)
        counts = {status.value: 0 for status in JobStatus}
        for status, count in result.all():
            counts[JobStatus(status).value] = count
        return counts
