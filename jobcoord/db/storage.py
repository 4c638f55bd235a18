"""
Transactional storage executor.

Every coordination step runs as one short unit of work through
``Storage.run_in_transaction``. This is the single seam where driver-level
integrity errors are translated into the coordination layer's conflict types.
"""

import logging
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobcoord.config import Settings, get_settings
from jobcoord.constants import UNIQUE_VIOLATION_SQLSTATE
from jobcoord.exceptions import UniqueViolationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

UnitOfWork = Callable[[AsyncSession], Awaitable[T]]


def is_unique_violation(error: IntegrityError) -> bool:
    """
    Tell duplicate-key errors apart from other integrity errors.

    asyncpg reports the SQLSTATE on the adapted driver error; SQLite only
    reports it in the message.
    """
    orig = error.orig
    if getattr(orig, "sqlstate", None) == UNIQUE_VIOLATION_SQLSTATE:
        return True
    return "UNIQUE constraint failed" in str(orig)


class Storage:
    """
    Store handle shared by the lock provider, job queue and fetched jobs.

    Wraps a session factory together with the coordination options that
    depend on it.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
        lock_lifetime: timedelta | None = None,
    ):
        """
        Initialize the storage.

        Args:
            session_factory: Factory producing async sessions bound to the store.
            settings: Application settings. Uses cached settings if not provided.
            lock_lifetime: Maximum distributed lock age before takeover.
                Defaults to the configured ``distributed_lock_lifetime_seconds``.

        Raises:
            TypeError: If session_factory is None.
            ValueError: If lock_lifetime is not strictly positive.
        """
        if session_factory is None:
            raise TypeError("session_factory must not be None")

        self._session_factory = session_factory
        self.settings = settings or get_settings()

        if lock_lifetime is None:
            lock_lifetime = self.settings.distributed_lock_lifetime
        if lock_lifetime <= timedelta(0):
            raise ValueError(f"lock_lifetime must be positive, got {lock_lifetime}")
        self.lock_lifetime = lock_lifetime

    @property
    def sliding_invisibility_timeout(self) -> timedelta:
        return self.settings.sliding_invisibility_timeout

    @property
    def queue_poll_interval(self) -> float:
        return self.settings.queue_poll_interval_seconds

    async def run_in_transaction(self, work: UnitOfWork[T]) -> T:
        """
        Run a unit of work in its own session and transaction.

        Commits on success and rolls back on any error. Duplicate-key
        violations are re-raised as ``UniqueViolationError``; everything else,
        foreign-key and NOT NULL violations included, propagates unchanged.

        Args:
            work: Coroutine function receiving the session.

        Returns:
            Whatever ``work`` returns.
        """
        async with self._session_factory() as session:
            try:
                result = await work(session)
                await session.commit()
                return result
            except IntegrityError as e:
                await session.rollback()
                if is_unique_violation(e):
                    raise UniqueViolationError(str(e.orig)) from e
                raise
            except Exception:
                await session.rollback()
                raise

    def get_lock_provider(self):
        """Create a distributed lock provider bound to this storage."""
        from jobcoord.locks.provider import DistributedLockProvider

        return DistributedLockProvider(self)

    def get_job_queue(self):
        """Create a job queue bound to this storage."""
        from jobcoord.queue.job_queue import JobQueue

        return JobQueue(self)
