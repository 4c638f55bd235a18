"""
Unit tests for the storage executor and repositories.
"""

import sqlite3
from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy.exc import IntegrityError, OperationalError

from jobcoord.db import DistributedLock, Storage, utcnow
from jobcoord.db.repository import JobRepository, LockRepository, QueueRepository
from jobcoord.db.storage import is_unique_violation
from jobcoord.exceptions import (
    ConcurrencyConflictError,
    RecordGoneError,
    StoreConflictError,
    UniqueViolationError,
    VersionMismatchError,
)


class TestStorage:
    """Tests for Storage.run_in_transaction."""

    def test_ctor_throws_when_session_factory_is_none(self, test_settings):
        with pytest.raises(TypeError):
            Storage(None, test_settings)

    @pytest.mark.parametrize("lifetime", [timedelta(0), timedelta(seconds=-1)])
    def test_ctor_throws_when_lock_lifetime_is_not_positive(
        self,
        session_factory,
        test_settings,
        lifetime,
    ):
        with pytest.raises(ValueError):
            Storage(session_factory, test_settings, lock_lifetime=lifetime)

    def test_lock_lifetime_defaults_to_settings(self, session_factory, test_settings):
        storage = Storage(session_factory, test_settings)

        assert storage.lock_lifetime == timedelta(minutes=10)
        assert storage.sliding_invisibility_timeout == timedelta(minutes=5)

    async def test_commits_on_success(self, storage, store):
        async def insert(session):
            await LockRepository(session).add("resource", utcnow())
            return "done"

        assert await storage.run_in_transaction(insert) == "done"
        assert [lock.id for lock in await store.locks()] == ["resource"]

    async def test_translates_integrity_error(self, storage, store):
        await store.add(DistributedLock(id="resource", acquired_at=utcnow(), version=0))

        async def insert(session):
            await LockRepository(session).add("resource", utcnow())

        with pytest.raises(UniqueViolationError):
            await storage.run_in_transaction(insert)

    async def test_foreign_key_violation_propagates_unchanged(self, storage, store):
        """Only duplicate keys become conflicts; other integrity errors pass through."""

        async def insert(session):
            await QueueRepository(session).add("default", 999999)

        with pytest.raises(IntegrityError) as exc_info:
            await storage.run_in_transaction(insert)

        assert not isinstance(exc_info.value, StoreConflictError)
        assert await store.queue() == []

    @pytest.mark.parametrize(
        ("orig", "expected"),
        [
            (sqlite3.IntegrityError("UNIQUE constraint failed: distributed_locks.id"), True),
            (sqlite3.IntegrityError("FOREIGN KEY constraint failed"), False),
            (sqlite3.IntegrityError("NOT NULL constraint failed: job_queue.queue"), False),
        ],
    )
    def test_is_unique_violation_for_sqlite(self, orig, expected):
        error = IntegrityError("INSERT", {}, orig)

        assert is_unique_violation(error) is expected

    @pytest.mark.parametrize(("sqlstate", "expected"), [("23505", True), ("23503", False)])
    def test_is_unique_violation_for_postgres(self, sqlstate, expected):
        orig = Exception("duplicate key value violates unique constraint")
        orig.sqlstate = sqlstate
        error = IntegrityError("INSERT", {}, orig)

        assert is_unique_violation(error) is expected

    async def test_rolls_back_and_propagates_other_errors(self, storage, store):
        async def failing(session):
            await LockRepository(session).add("resource", utcnow())
            raise OperationalError("SELECT 1", {}, Exception("connection lost"))

        with pytest.raises(OperationalError):
            await storage.run_in_transaction(failing)

        assert await store.locks() == []


class TestLockRepository:
    """Tests for the lock conditional-write primitives."""

    @pytest_asyncio.fixture
    async def held_lock(self, store) -> DistributedLock:
        lock = DistributedLock(id="resource", acquired_at=utcnow() - timedelta(hours=1), version=0)
        await store.add(lock)
        return lock

    async def test_touch_bumps_version(self, storage, store, held_lock):
        now = utcnow()

        async def touch(session):
            repo = LockRepository(session)
            await repo.touch(await repo.get("resource"), now)

        await storage.run_in_transaction(touch)

        locks = await store.locks()
        assert locks[0].acquired_at == now
        assert locks[0].version == 1

    async def test_touch_with_outdated_version_raises_version_mismatch(self, storage, store, held_lock):
        """A takeover based on an old read loses to the writer that got there first."""

        async def touch(session):
            await LockRepository(session).touch(held_lock, utcnow())

        await storage.run_in_transaction(touch)

        with pytest.raises(VersionMismatchError):
            await storage.run_in_transaction(touch)

        assert (await store.locks())[0].version == 1

    async def test_touch_when_lock_released_raises_record_gone(self, storage, held_lock):
        async def release(session):
            await LockRepository(session).delete("resource")

        async def touch(session):
            await LockRepository(session).touch(held_lock, utcnow())

        await storage.run_in_transaction(release)

        with pytest.raises(RecordGoneError):
            await storage.run_in_transaction(touch)

    async def test_delete_missing_lock_raises_record_gone(self, storage):
        async def release(session):
            await LockRepository(session).delete("missing")

        with pytest.raises(RecordGoneError) as exc_info:
            await storage.run_in_transaction(release)

        assert exc_info.value.key == "missing"
        assert isinstance(exc_info.value, ConcurrencyConflictError)

    def test_is_expired(self):
        lock = DistributedLock(id="r", acquired_at=utcnow() - timedelta(minutes=11), version=0)

        assert lock.is_expired(timedelta(minutes=10)) is True
        assert lock.is_expired(timedelta(minutes=12)) is False


class TestQueueRepository:
    """Tests for the queue conditional-write primitives."""

    async def test_mark_fetched_twice_raises_version_mismatch(self, storage, store):
        job = await store.add_job()
        await store.add_queued_job(job)

        async def find(session):
            return await QueueRepository(session).find_next(["default"], utcnow())

        item = await storage.run_in_transaction(find)
        seen = await storage.run_in_transaction(find)

        async def claim(session, candidate):
            await QueueRepository(session).mark_fetched(candidate, utcnow())

        await storage.run_in_transaction(lambda session: claim(session, item))

        with pytest.raises(VersionMismatchError):
            await storage.run_in_transaction(lambda session: claim(session, seen))

    async def test_requeue_missing_record_raises_record_gone(self, storage):
        async def requeue(session):
            await QueueRepository(session).requeue(12345)

        with pytest.raises(RecordGoneError):
            await storage.run_in_transaction(requeue)

    async def test_find_next_skips_fetched_records(self, storage, store):
        job = await store.add_job()
        await store.add_queued_job(job, fetched_at=utcnow())
        visible = await store.add_queued_job(job)

        async def find(session):
            return await QueueRepository(session).find_next(
                ["default"], utcnow() - timedelta(minutes=5)
            )

        item = await storage.run_in_transaction(find)

        assert item.id == visible.id

    async def test_count(self, storage, store):
        job = await store.add_job()
        await store.add_queued_job(job)
        await store.add_queued_job(job)
        await store.add_queued_job(job, fetched_at=utcnow())
        await store.add_queued_job(job, queue="other")

        async def counts(session):
            repo = QueueRepository(session)
            return (
                await repo.count("default"),
                await repo.count("default", fetched=False),
                await repo.count("default", fetched=True),
            )

        assert await storage.run_in_transaction(counts) == (3, 2, 1)


class TestJobRepository:
    """Tests for JobRepository."""

    async def test_create_and_get_job(self, storage):
        async def create(session):
            return await JobRepository(session).create_job({"job_type": "echo"})

        job = await storage.run_in_transaction(create)
        fetched = await storage.run_in_transaction(lambda s: JobRepository(s).get_job(job.id))

        assert fetched is not None
        assert fetched.invocation_data == {"job_type": "echo"}
        assert fetched.expire_at is None

    async def test_get_job_not_found(self, storage):
        assert await storage.run_in_transaction(lambda s: JobRepository(s).get_job(999)) is None

    async def test_set_state_and_expiration(self, storage, store):
        job = await store.add_job()
        expire_at = utcnow() + timedelta(days=1)

        async def update(session):
            repo = JobRepository(session)
            return (
                await repo.set_state(job.id, "Succeeded"),
                await repo.set_expiration(job.id, expire_at),
                await repo.set_state(999, "Succeeded"),
            )

        assert await storage.run_in_transaction(update) == (True, True, False)

        [stored] = await store.jobs()
        assert stored.state_name == "Succeeded"
        assert stored.expire_at == expire_at

    async def test_delete_expired_removes_queue_records(self, storage, store):
        expired = await store.add_job(expire_at=utcnow() - timedelta(minutes=1))
        alive = await store.add_job(expire_at=utcnow() + timedelta(days=1))
        await store.add_queued_job(expired)
        await store.add_queued_job(alive)

        deleted = await storage.run_in_transaction(
            lambda s: JobRepository(s).delete_expired(utcnow(), batch_size=10)
        )

        assert deleted == 1
        assert [job.id for job in await store.jobs()] == [alive.id]
        assert [item.job_id for item in await store.queue()] == [alive.id]
