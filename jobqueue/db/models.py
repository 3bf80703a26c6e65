"""
SQLAlchemy database models.
Defines the queue's job table.
"""

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Enum, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from jobqueue.constants import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_QUEUE,
    MAX_KIND_LENGTH,
    MAX_QUEUE_NAME_LENGTH,
    TABLE_NAME,
    TERMINAL_STATUSES,
    JobStatus,
)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Job(Base):
    """
    Job model representing a unit of work in the queue.

    This is the authoritative source of truth for job state.
    All lifecycle transitions are conditional updates against this table.

    Key constraints:
    - ids are assigned by storage and increase monotonically; reservation
      order within a queue follows them
    - reserved_at is set only while a lease is held
    - available_at hides delayed and backed-off jobs from reservation
    - all timestamps are naive UTC supplied by the queue's clock
    """

    __tablename__ = TABLE_NAME

    # SQLite only auto-increments INTEGER PRIMARY KEY columns
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )

    queue: Mapped[str] = mapped_column(
        String(MAX_QUEUE_NAME_LENGTH),
        nullable=False,
        default=DEFAULT_QUEUE,
    )
    kind: Mapped[str] = mapped_column(
        String(MAX_KIND_LENGTH),
        nullable=False,
    )

    # JSON text, serialized by the queue before insert
    payload: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )

    status: Mapped[JobStatus] = mapped_column(
        Enum(
            JobStatus,
            name="job_status",
            native_enum=False,
            length=20,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=JobStatus.PENDING,
    )

    # Retry tracking
    attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    max_attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=DEFAULT_MAX_ATTEMPTS,
    )

    # Lease and scheduling
    reserved_at: Mapped[datetime | None] = mapped_column(
        DateTime,
        nullable=True,
    )
    available_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
    )
    finished_at: Mapped[datetime | None] = mapped_column(
        DateTime,
        nullable=True,
    )

    # Error tracking
    last_error: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
    )

    __table_args__ = (
        # Reservation scan
        Index("idx_queue_status_available", "queue", "status", "available_at"),
        # Stale lease scan
        Index("idx_status_reserved", "status", "reserved_at"),
    )

    @property
    def is_terminal(self) -> bool:
        """Check if the job reached DONE or DEAD."""
        return self.status in TERMINAL_STATUSES

    @property
    def remaining_attempts(self) -> int:
        """Get remaining attempts before the soft cap."""
        return max(0, self.max_attempts - self.attempts)

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, queue={self.queue}, kind={self.kind}, "
            f"status={self.status}, attempts={self.attempts}/{self.max_attempts})"
        )
