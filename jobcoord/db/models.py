"""
SQLAlchemy database models.
Defines the job, job queue and distributed lock tables.
"""

from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from jobcoord.constants import (
    LOCK_ID_MAX_LENGTH,
    QUEUE_NAME_MAX_LENGTH,
    STATE_NAME_MAX_LENGTH,
)

# SQLite only autoincrements INTEGER PRIMARY KEY columns
BigIntegerId = BigInteger().with_variant(Integer, "sqlite")


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, matching the stored columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Job(Base):
    """
    A background job known to the storage.

    Only the attributes the coordination layer needs are mapped: the
    serialized invocation, the current state name and the expiration
    timestamp consumed by the expiration manager.
    """

    __tablename__ = "jobs"

    id: Mapped[int] = mapped_column(BigIntegerId, primary_key=True, autoincrement=True)

    invocation_data: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
    )

    state_name: Mapped[str | None] = mapped_column(
        String(STATE_NAME_MAX_LENGTH),
        nullable=True,
        index=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )
    expire_at: Mapped[datetime | None] = mapped_column(
        DateTime,
        nullable=True,
        index=True,
    )

    def __repr__(self) -> str:
        return f"Job(id={self.id}, state={self.state_name}, expire_at={self.expire_at})"


class QueuedJob(Base):
    """
    A job reference waiting in a named queue.

    ``fetched_at`` is NULL while the record is visible to dequeue attempts
    and holds the fetch time while a worker has it leased.
    """

    __tablename__ = "job_queue"

    id: Mapped[int] = mapped_column(BigIntegerId, primary_key=True, autoincrement=True)

    job_id: Mapped[int] = mapped_column(
        BigIntegerId,
        ForeignKey("jobs.id", ondelete="CASCADE", name="fk_job_queue_job_id"),
        nullable=False,
        index=True,
    )

    queue: Mapped[str] = mapped_column(
        String(QUEUE_NAME_MAX_LENGTH),
        nullable=False,
    )

    fetched_at: Mapped[datetime | None] = mapped_column(
        DateTime,
        nullable=True,
    )

    __table_args__ = (
        # Index for dequeue scans
        Index("ix_job_queue_queue_fetched_at", "queue", "fetched_at"),
    )

    def __repr__(self) -> str:
        return (
            f"QueuedJob(id={self.id}, job_id={self.job_id}, "
            f"queue={self.queue}, fetched_at={self.fetched_at})"
        )


class DistributedLock(Base):
    """
    A held distributed lock.

    Key constraints:
    - ``id`` is the resource name; the primary key guarantees a single
      holder per resource
    - ``version`` is the concurrency token for stale-lock takeover
    """

    __tablename__ = "distributed_locks"

    id: Mapped[str] = mapped_column(String(LOCK_ID_MAX_LENGTH), primary_key=True)

    acquired_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
    )

    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    def is_expired(self, lifetime: timedelta, now: datetime | None = None) -> bool:
        """Check if the lock is older than the given lifetime."""
        return self.acquired_at + lifetime < (now or utcnow())

    def __repr__(self) -> str:
        return f"DistributedLock(id={self.id}, acquired_at={self.acquired_at}, version={self.version})"
