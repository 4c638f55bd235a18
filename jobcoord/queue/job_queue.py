"""
Job queue over the ``job_queue`` table.

Dequeue claims the oldest visible record with a value-checked update on
``fetched_at``. A record fetched longer ago than the sliding invisibility
timeout counts as visible again, which is how work held by a crashed worker
gets picked up without a separate sweeper.
"""

import asyncio
import logging
from collections.abc import Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from jobcoord.constants import SPAN_DEQUEUE_JOB
from jobcoord.db.models import QueuedJob, utcnow
from jobcoord.db.repository import QueueRepository
from jobcoord.db.storage import Storage
from jobcoord.exceptions import ConcurrencyConflictError
from jobcoord.observability.tracing import get_tracer
from jobcoord.queue.fetched_job import FetchedJob

logger = logging.getLogger(__name__)


class JobQueue:
    """Enqueue and dequeue job references by queue name."""

    def __init__(self, storage: Storage):
        if storage is None:
            raise TypeError("storage must not be None")
        self._storage = storage

    async def enqueue(self, queue: str, job_id: int) -> int:
        """
        Put a job into a queue.

        Args:
            queue: Queue name.
            job_id: The referenced job's ID.

        Returns:
            The new queue record ID.
        """
        if not queue:
            raise ValueError("queue must be a non-empty string")

        async def add(session: AsyncSession) -> int:
            item = await QueueRepository(session).add(queue, job_id)
            return item.id

        item_id = await self._storage.run_in_transaction(add)
        logger.debug("Enqueued job", extra={"job_id": job_id, "queue": queue})
        return item_id

    async def dequeue(
        self,
        queues: Sequence[str],
        timeout: float | None = None,
    ) -> FetchedJob | None:
        """
        Fetch the next visible job from any of the given queues.

        Polls every ``queue_poll_interval_seconds`` while the queues are empty.

        Args:
            queues: Queue names to fetch from.
            timeout: Seconds to keep polling. None waits indefinitely.

        Returns:
            A lease over the fetched record, or None if the timeout elapsed.

        Raises:
            ValueError: If no queues are given.
        """
        if not queues:
            raise ValueError("queues must contain at least one queue name")

        queues = list(queues)
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout

        with get_tracer().start_as_current_span(SPAN_DEQUEUE_JOB) as span:
            span.set_attribute("queues", ",".join(queues))

            while True:
                try:
                    item = await self._storage.run_in_transaction(
                        lambda session: self._fetch_next(session, queues)
                    )
                except ConcurrencyConflictError:
                    # Another worker claimed it first
                    continue

                if item is not None:
                    span.set_attribute("job_id", str(item.job_id))
                    logger.debug(
                        "Fetched job",
                        extra={"job_id": item.job_id, "queue": item.queue, "queue_item_id": item.id},
                    )
                    return FetchedJob(self._storage, item)

                delay = self._storage.queue_poll_interval
                if deadline is not None:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        return None
                    delay = min(delay, remaining)

                await asyncio.sleep(delay)

    async def _fetch_next(self, session: AsyncSession, queues: list[str]) -> QueuedJob | None:
        repo = QueueRepository(session)
        now = utcnow()
        item = await repo.find_next(queues, now - self._storage.sliding_invisibility_timeout)
        if item is None:
            return None
        await repo.mark_fetched(item, now)
        return item

    async def count(self, queue: str) -> tuple[int, int]:
        """
        Count records in a queue.

        Returns:
            Tuple of (enqueued, fetched).
        """

        async def counts(session: AsyncSession) -> tuple[int, int]:
            repo = QueueRepository(session)
            return (
                await repo.count(queue, fetched=False),
                await repo.count(queue, fetched=True),
            )

        return await self._storage.run_in_transaction(counts)
