"""
Distributed lock provider backed by the ``distributed_locks`` table.

Acquisition is a bounded polling loop over three store primitives:

1. Insert a lock record. A duplicate key means somebody holds the lock.
2. On contention, read the holder's record. If it vanished, insert again
   right away. If it is older than the configured lock lifetime, the holder
   is presumed dead and the record is taken over with a version-checked
   update. Losing that race also retries right away.
3. Otherwise back off for at most one second and try again until the
   deadline passes.

There is no queue of waiters and no fairness: whoever wins the next insert or
takeover gets the lock.
"""

import asyncio
import logging
import math
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from jobcoord.constants import MAX_LOCK_POLL_INTERVAL, SPAN_ACQUIRE_LOCK, SPAN_RELEASE_LOCK, LockPath
from jobcoord.db.models import utcnow
from jobcoord.db.repository import LockRepository
from jobcoord.db.storage import Storage
from jobcoord.exceptions import (
    DistributedLockTimeoutError,
    RecordGoneError,
    UniqueViolationError,
    VersionMismatchError,
)
from jobcoord.observability.metrics import get_metrics
from jobcoord.observability.tracing import get_tracer

logger = logging.getLogger(__name__)

Timeout = timedelta | float


def _validate_resource(resource: str) -> None:
    if resource is None:
        raise TypeError("resource must not be None")
    if not resource:
        raise ValueError("resource must be a non-empty string")


def _to_seconds(timeout: Timeout) -> float:
    if isinstance(timeout, timedelta):
        return timeout.total_seconds()
    return float(timeout)


class DistributedLockProvider:
    """
    Mutual exclusion on named resources across processes sharing one database.

    Usage:
        provider = DistributedLockProvider(storage)
        async with provider.lock("job:42", timeout=timedelta(seconds=10)):
            ...
    """

    def __init__(self, storage: Storage):
        """
        Initialize the provider.

        Args:
            storage: The store handle. Its ``lock_lifetime`` decides when a
                held lock is considered abandoned.

        Raises:
            TypeError: If storage is None.
        """
        if storage is None:
            raise TypeError("storage must not be None")
        self._storage = storage
        self._metrics = get_metrics()

    @property
    def lock_lifetime(self) -> timedelta:
        return self._storage.lock_lifetime

    async def acquire(self, resource: str, timeout: Timeout) -> None:
        """
        Wait until the lock for ``resource`` is held by the caller.

        Args:
            resource: Lock name.
            timeout: Maximum time to wait, as a timedelta or seconds.

        Raises:
            ValueError: If resource is empty or timeout is not a positive,
                finite duration.
            DistributedLockTimeoutError: If the deadline passed first.
        """
        _validate_resource(resource)
        seconds = _to_seconds(timeout)
        if not math.isfinite(seconds) or seconds <= 0:
            raise ValueError(f"timeout must be positive and finite, got {timeout!r}")

        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + seconds
        max_sleep = MAX_LOCK_POLL_INTERVAL.total_seconds()

        with get_tracer().start_as_current_span(SPAN_ACQUIRE_LOCK) as span:
            span.set_attribute("lock.resource", resource)

            while True:
                if await self._try_insert(resource):
                    self._acquired(resource, LockPath.INSERT, loop.time() - started)
                    return

                taken = await self._try_take_over(resource)
                if taken is True:
                    self._acquired(resource, LockPath.TAKEOVER, loop.time() - started)
                    return
                if taken is False:
                    continue

                remaining = deadline - loop.time()
                if remaining <= 0:
                    break

                logger.debug(
                    "Distributed lock is busy, backing off",
                    extra={"resource": resource, "remaining": round(remaining, 3)},
                )
                await asyncio.sleep(min(remaining, max_sleep))

            span.set_attribute("lock.timed_out", True)

        self._metrics.record_lock_timeout(loop.time() - started)
        logger.warning(
            "Timed out acquiring distributed lock",
            extra={"resource": resource, "timeout": seconds},
        )
        raise DistributedLockTimeoutError(resource)

    async def release(self, resource: str) -> None:
        """
        Release the lock for ``resource``.

        Releasing a lock that does not exist (never taken, already released,
        or removed by someone else) is not an error.

        Raises:
            ValueError: If resource is empty.
        """
        _validate_resource(resource)

        async def remove(session: AsyncSession) -> None:
            await LockRepository(session).delete(resource)

        with get_tracer().start_as_current_span(SPAN_RELEASE_LOCK) as span:
            span.set_attribute("lock.resource", resource)
            try:
                await self._storage.run_in_transaction(remove)
            except RecordGoneError:
                # Someone else already deleted this record. Database wins.
                logger.debug("Distributed lock already released", extra={"resource": resource})
                return

        logger.debug("Released distributed lock", extra={"resource": resource})

    @asynccontextmanager
    async def lock(self, resource: str, timeout: Timeout) -> AsyncIterator[None]:
        """Hold the lock for the duration of the ``async with`` block."""
        await self.acquire(resource, timeout)
        try:
            yield
        finally:
            await self.release(resource)

    async def _try_insert(self, resource: str) -> bool:
        async def insert(session: AsyncSession) -> None:
            await LockRepository(session).add(resource, utcnow())

        try:
            await self._storage.run_in_transaction(insert)
        except UniqueViolationError:
            self._metrics.record_lock_conflict("unique")
            return False
        return True

    async def _try_take_over(self, resource: str) -> bool | None:
        """
        Inspect the current holder after a failed insert.

        Returns:
            True if a stale lock was taken over, False if the caller should
            retry the insert immediately, None if the lock is legitimately held.
        """
        lifetime = self._storage.lock_lifetime

        async def take_over(session: AsyncSession) -> bool | None:
            repo = LockRepository(session)
            lock = await repo.get(resource)
            if lock is None:
                return False

            now = utcnow()
            if not lock.is_expired(lifetime, now):
                return None

            await repo.touch(lock, now)
            logger.info(
                "Took over expired distributed lock",
                extra={"resource": resource, "acquired_at": lock.acquired_at.isoformat()},
            )
            return True

        try:
            return await self._storage.run_in_transaction(take_over)
        except RecordGoneError:
            self._metrics.record_lock_conflict("gone")
            return False
        except VersionMismatchError:
            self._metrics.record_lock_conflict("version")
            logger.warning(
                "Lost expired distributed lock takeover to another caller",
                extra={"resource": resource},
            )
            return False

    def _acquired(self, resource: str, path: LockPath, waited: float) -> None:
        self._metrics.record_lock_acquired(path.value, waited)
        logger.debug(
            "Acquired distributed lock",
            extra={"resource": resource, "path": path.value, "waited": round(waited, 3)},
        )
