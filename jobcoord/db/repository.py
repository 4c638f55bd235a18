"""
Repositories for coordination records.

Each repository wraps one session and exposes the conditional-write
primitives the coordination layer is built on: plain inserts (a duplicate key
surfaces as an integrity error), version- or value-checked updates, deletes by
primary key and single-row lookups. A conditional write that affects zero
rows raises a ``ConcurrencyConflictError`` subclass.
"""

import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from jobcoord.db.models import DistributedLock, Job, QueuedJob, utcnow
from jobcoord.exceptions import RecordGoneError, VersionMismatchError

logger = logging.getLogger(__name__)


class LockRepository:
    """Repository for distributed lock records."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def add(self, resource: str, acquired_at: datetime) -> DistributedLock:
        """
        Insert a new lock record.

        The flush raises ``IntegrityError`` if a record for the resource
        already exists.
        """
        lock = DistributedLock(id=resource, acquired_at=acquired_at, version=0)
        self._session.add(lock)
        await self._session.flush()
        return lock

    async def get(self, resource: str) -> DistributedLock | None:
        """Get the lock record for a resource, if any."""
        stmt = select(DistributedLock).where(DistributedLock.id == resource)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def touch(self, lock: DistributedLock, acquired_at: datetime) -> None:
        """
        Refresh the acquisition timestamp of a lock observed earlier.

        The update only applies while the row still carries the version that
        was read, and bumps the version on success.

        Raises:
            RecordGoneError: The lock was released in the meantime.
            VersionMismatchError: Another caller took the lock over first.
        """
        stmt = (
            update(DistributedLock)
            .where(
                DistributedLock.id == lock.id,
                DistributedLock.version == lock.version,
            )
            .values(
                acquired_at=acquired_at,
                version=DistributedLock.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount == 0:
            await self._raise_conflict(lock.id)

    async def delete(self, resource: str) -> None:
        """
        Delete the lock record for a resource.

        Raises:
            RecordGoneError: No record existed.
        """
        stmt = delete(DistributedLock).where(DistributedLock.id == resource)
        result = await self._session.execute(stmt)
        if result.rowcount == 0:
            raise RecordGoneError("DistributedLock", resource)

    async def _raise_conflict(self, resource: str) -> None:
        exists = await self._session.execute(
            select(DistributedLock.id).where(DistributedLock.id == resource)
        )
        if exists.scalar_one_or_none() is None:
            raise RecordGoneError("DistributedLock", resource)
        raise VersionMismatchError("DistributedLock", resource)


class QueueRepository:
    """Repository for job queue records."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def add(self, queue: str, job_id: int) -> QueuedJob:
        """Insert a visible queue record for a job."""
        item = QueuedJob(queue=queue, job_id=job_id, fetched_at=None)
        self._session.add(item)
        await self._session.flush()
        return item

    async def get(self, item_id: int) -> QueuedJob | None:
        """Get a queue record by ID."""
        stmt = select(QueuedJob).where(QueuedJob.id == item_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_next(
        self,
        queues: Sequence[str],
        fetched_before: datetime,
    ) -> QueuedJob | None:
        """
        Find the oldest visible record in any of the given queues.

        A record is visible if it was never fetched or its fetch is older
        than ``fetched_before`` (the sliding invisibility window has passed).
        """
        stmt = (
            select(QueuedJob)
            .where(
                QueuedJob.queue.in_(queues),
                or_(
                    QueuedJob.fetched_at.is_(None),
                    QueuedJob.fetched_at < fetched_before,
                ),
            )
            .order_by(QueuedJob.id)
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def mark_fetched(self, item: QueuedJob, fetched_at: datetime) -> None:
        """
        Claim a record found by ``find_next``.

        The update only applies if ``fetched_at`` still holds the value that
        was read, so two workers can never claim the same record.

        Raises:
            ConcurrencyConflictError: Another worker claimed or removed it first.
        """
        seen = item.fetched_at
        stmt = (
            update(QueuedJob)
            .where(
                QueuedJob.id == item.id,
                QueuedJob.fetched_at.is_(None)
                if seen is None
                else QueuedJob.fetched_at == seen,
            )
            .values(fetched_at=fetched_at)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount == 0:
            if await self.get(item.id) is None:
                raise RecordGoneError("QueuedJob", item.id)
            raise VersionMismatchError("QueuedJob", item.id)
        set_committed_value(item, "fetched_at", fetched_at)

    async def delete(self, item_id: int) -> None:
        """
        Delete a queue record.

        Raises:
            RecordGoneError: The record no longer exists.
        """
        stmt = delete(QueuedJob).where(QueuedJob.id == item_id)
        result = await self._session.execute(stmt)
        if result.rowcount == 0:
            raise RecordGoneError("QueuedJob", item_id)

    async def requeue(self, item_id: int) -> None:
        """
        Clear the fetch timestamp, making the record visible again.

        Raises:
            RecordGoneError: The record no longer exists.
        """
        stmt = (
            update(QueuedJob)
            .where(QueuedJob.id == item_id)
            .values(fetched_at=None)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount == 0:
            raise RecordGoneError("QueuedJob", item_id)

    async def count(self, queue: str, fetched: bool | None = None) -> int:
        """
        Count records in a queue.

        Args:
            queue: The queue name.
            fetched: If True only leased records, if False only visible ones.
        """
        filters = [QueuedJob.queue == queue]
        if fetched is True:
            filters.append(QueuedJob.fetched_at.is_not(None))
        elif fetched is False:
            filters.append(QueuedJob.fetched_at.is_(None))

        stmt = select(func.count()).select_from(QueuedJob).where(*filters)
        result = await self._session.execute(stmt)
        return result.scalar() or 0


class JobRepository:
    """Repository for job records."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def create_job(
        self,
        invocation_data: dict[str, Any],
        state_name: str | None = None,
        expire_at: datetime | None = None,
    ) -> Job:
        """
        Create a new job.

        Args:
            invocation_data: Serialized job invocation, including ``job_type``.
            state_name: Optional initial state name.
            expire_at: Optional expiration timestamp.

        Returns:
            The created Job with its ID assigned.
        """
        job = Job(
            invocation_data=invocation_data,
            state_name=state_name,
            created_at=utcnow(),
            expire_at=expire_at,
        )
        self._session.add(job)
        await self._session.flush()

        logger.debug("Created job", extra={"job_id": job.id})
        return job

    async def get_job(self, job_id: int) -> Job | None:
        """Get a job by ID."""
        stmt = select(Job).where(Job.id == job_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def set_state(self, job_id: int, state_name: str) -> bool:
        """
        Update a job's state name.

        Returns:
            True if the job exists and was updated.
        """
        stmt = (
            update(Job)
            .where(Job.id == job_id)
            .values(state_name=state_name)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def set_expiration(self, job_id: int, expire_at: datetime | None) -> bool:
        """
        Set or clear a job's expiration timestamp.

        Returns:
            True if the job exists and was updated.
        """
        stmt = (
            update(Job)
            .where(Job.id == job_id)
            .values(expire_at=expire_at)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def delete_expired(self, now: datetime, batch_size: int) -> int:
        """
        Delete up to ``batch_size`` jobs whose expiration has passed.

        Queue records of deleted jobs are removed by the cascading foreign key.

        Returns:
            Number of deleted jobs.
        """
        expired_ids = (
            select(Job.id)
            .where(Job.expire_at.is_not(None), Job.expire_at < now)
            .order_by(Job.id)
            .limit(batch_size)
        )
        ids = (await self._session.execute(expired_ids)).scalars().all()
        if not ids:
            return 0

        # Queue records first so the job delete never trips the foreign key
        await self._session.execute(delete(QueuedJob).where(QueuedJob.job_id.in_(ids)))
        result = await self._session.execute(delete(Job).where(Job.id.in_(ids)))
        count = result.rowcount

        if count > 0:
            logger.info(f"Deleted {count} expired jobs")

        return count
