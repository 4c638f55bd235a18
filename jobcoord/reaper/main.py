"""
Expiration manager for deleting expired jobs.

Runs periodically, holding the expiration manager's distributed lock so
that only one process sweeps at a time. Deleting a job also removes its
queue records; any worker still holding a lease over such a record finds it
gone and treats that as already resolved.
"""

import asyncio
import logging
import signal
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from jobcoord.config import get_settings
from jobcoord.constants import EXPIRATION_MANAGER_LOCK, SPAN_EXPIRE_JOBS
from jobcoord.db import Storage, close_db, get_engine, get_session_factory, init_db
from jobcoord.db.models import utcnow
from jobcoord.db.repository import JobRepository
from jobcoord.exceptions import DistributedLockTimeoutError
from jobcoord.observability.logging import setup_logging
from jobcoord.observability.metrics import get_metrics, setup_metrics
from jobcoord.observability.tracing import get_tracer, instrument_sqlalchemy, setup_tracing

logger = logging.getLogger(__name__)

LOCK_TIMEOUT = timedelta(minutes=5)


class ExpirationManager:
    """
    Sweeper that deletes jobs whose ``expire_at`` has passed.

    Each run:
    1. Acquires the ``locks:expirationmanager`` distributed lock
    2. Deletes expired jobs in batches until none are left
    3. Releases the lock and records metrics
    """

    def __init__(
        self,
        storage: Storage,
        interval_seconds: float | None = None,
        batch_size: int | None = None,
        lock_timeout: timedelta = LOCK_TIMEOUT,
    ):
        """
        Initialize the expiration manager.

        Args:
            storage: The store handle.
            interval_seconds: Seconds between runs.
            batch_size: Maximum jobs deleted per transaction.
            lock_timeout: How long to wait for the sweep lock.
        """
        settings = storage.settings
        self.storage = storage
        self.interval = interval_seconds or settings.job_expiration_check_interval_seconds
        self.batch_size = batch_size or settings.job_expiration_batch_size
        self.lock_timeout = lock_timeout
        self._locks = storage.get_lock_provider()
        self._running = False
        self._metrics = get_metrics()

    async def start(self) -> None:
        """Start the expiration loop."""
        logger.info(f"Expiration manager starting with interval {self.interval}s")
        self._running = True

        while self._running:
            try:
                await self.run_once()
            except DistributedLockTimeoutError:
                logger.info("Another process is expiring jobs, skipping this run")
            except Exception as e:
                logger.exception(f"Error in expiration loop: {e}")

            await asyncio.sleep(self.interval)

        logger.info("Expiration manager stopped")

    async def stop(self) -> None:
        """Stop the expiration manager."""
        logger.info("Expiration manager stopping")
        self._running = False

    async def run_once(self) -> int:
        """
        Run a single sweep.

        Returns:
            Number of jobs deleted.

        Raises:
            DistributedLockTimeoutError: If another process holds the sweep lock.
        """
        total = 0

        async with self._locks.lock(EXPIRATION_MANAGER_LOCK, self.lock_timeout):
            with get_tracer().start_as_current_span(SPAN_EXPIRE_JOBS) as span:
                while True:
                    deleted = await self.storage.run_in_transaction(self._delete_batch)
                    total += deleted
                    if deleted < self.batch_size:
                        break
                span.set_attribute("jobs_deleted", total)

        if total > 0:
            self._metrics.record_jobs_expired(total)
            logger.info(f"Deleted {total} expired jobs")

        return total

    async def _delete_batch(self, session: AsyncSession) -> int:
        return await JobRepository(session).delete_expired(utcnow(), self.batch_size)


async def run_async() -> None:
    """Run the expiration manager asynchronously."""
    settings = get_settings()
    setup_logging()
    setup_metrics()
    setup_tracing()
    await init_db()
    instrument_sqlalchemy(get_engine())

    manager = ExpirationManager(Storage(get_session_factory(), settings))

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(manager.stop()))

    try:
        await manager.start()
    finally:
        await close_db()


def run() -> None:
    """Run the expiration manager."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
