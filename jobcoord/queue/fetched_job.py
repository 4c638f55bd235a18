"""
Lease over a dequeued job queue record.

A ``FetchedJob`` must be resolved exactly once: either the worker removes the
record after finishing the job, or the record is requeued by clearing its
``fetched_at``. Disposing a lease that was never resolved requeues it, so an
abandoned or exception-unwound lease never leaves a job invisible.

A concurrent delete or update of the record (expiration, another worker
picking it up after the invisibility timeout) means someone else already
resolved it. That outcome is absorbed, never surfaced.
"""

import logging
from types import TracebackType

from sqlalchemy.ext.asyncio import AsyncSession

from jobcoord.constants import LeaseState
from jobcoord.db.models import QueuedJob
from jobcoord.db.repository import QueueRepository
from jobcoord.db.storage import Storage
from jobcoord.exceptions import ConcurrencyConflictError
from jobcoord.observability.metrics import get_metrics

logger = logging.getLogger(__name__)


class FetchedJob:
    """
    A dequeued unit of work.

    Usage:
        async with await queue.dequeue(["default"]) as fetched:
            ...
            await fetched.remove_from_queue()
    """

    def __init__(self, storage: Storage, item: QueuedJob):
        """
        Initialize the lease.

        Args:
            storage: The store handle.
            item: The fetched queue record.

        Raises:
            TypeError: If storage or item is None.
        """
        if storage is None:
            raise TypeError("storage must not be None")
        if item is None:
            raise TypeError("item must not be None")

        self._storage = storage
        self._id = item.id
        self._job_id = item.job_id
        self._queue = item.queue
        self._state = LeaseState.ACTIVE
        self._disposed = False
        self._metrics = get_metrics()

    @property
    def id(self) -> int:
        """Identifier of the queue record."""
        return self._id

    @property
    def job_id(self) -> str:
        """Identifier of the referenced job, as a string."""
        return str(self._job_id)

    @property
    def queue(self) -> str:
        return self._queue

    @property
    def state(self) -> LeaseState:
        return self._state

    @property
    def completed(self) -> bool:
        """True once the lease has been removed or requeued."""
        return self._state is not LeaseState.ACTIVE

    @property
    def disposed(self) -> bool:
        return self._disposed

    async def remove_from_queue(self) -> None:
        """Delete the queue record. A no-op once the lease is resolved."""
        if self._disposed or self.completed:
            return

        item_id = self._id

        async def remove(session: AsyncSession) -> None:
            await QueueRepository(session).delete(item_id)

        await self._resolve(remove, LeaseState.COMPLETED)

    async def requeue(self) -> None:
        """Make the queue record visible again. A no-op once the lease is resolved."""
        if self._disposed or self.completed:
            return

        item_id = self._id

        async def requeue(session: AsyncSession) -> None:
            await QueueRepository(session).requeue(item_id)

        await self._resolve(requeue, LeaseState.REQUEUED)

    async def dispose(self) -> None:
        """
        Release the lease, requeueing the record if it was never resolved.

        Calling this more than once has no further effect.
        """
        if self._disposed:
            return

        try:
            if not self.completed:
                await self.requeue()
        finally:
            self._disposed = True

    async def __aenter__(self) -> "FetchedJob":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.dispose()

    async def _resolve(self, work, outcome: LeaseState) -> None:
        try:
            await self._storage.run_in_transaction(work)
        except ConcurrencyConflictError:
            logger.debug(
                "Queue record already resolved by someone else",
                extra={"queue_item_id": self._id, "job_id": self.job_id},
            )
        else:
            logger.debug(
                f"Fetched job {outcome.value}",
                extra={"queue_item_id": self._id, "job_id": self.job_id, "queue": self._queue},
            )

        self._state = outcome
        self._metrics.record_fetched_job_resolved(self._queue, outcome.value)

    def __repr__(self) -> str:
        return (
            f"FetchedJob(id={self._id}, job_id={self._job_id}, queue={self._queue}, "
            f"state={self._state}, disposed={self._disposed})"
        )
