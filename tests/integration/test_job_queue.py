"""
Integration tests for enqueue, dequeue and the fetched job lease.
"""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from jobcoord.db import utcnow
from jobcoord.exceptions import StoreConflictError
from jobcoord.queue import FetchedJob, JobQueue


class TestJobQueue:
    """Tests for JobQueue against a real database."""

    @pytest.fixture
    def queue(self, storage) -> JobQueue:
        return JobQueue(storage)

    def test_ctor_throws_when_storage_is_none(self):
        with pytest.raises(TypeError):
            JobQueue(None)

    async def test_enqueue_rejects_empty_queue_name(self, queue, store):
        job = await store.add_job()

        with pytest.raises(ValueError):
            await queue.enqueue("", job.id)

    async def test_enqueue_for_missing_job_raises_integrity_error(self, queue, store):
        with pytest.raises(IntegrityError) as exc_info:
            await queue.enqueue("default", 999999)

        assert not isinstance(exc_info.value, StoreConflictError)
        assert await store.queue() == []

    async def test_dequeue_rejects_empty_queue_list(self, queue):
        with pytest.raises(ValueError):
            await queue.dequeue([], timeout=0.1)

    async def test_dequeue_marks_record_fetched(self, queue, store):
        job = await store.add_job()
        item_id = await queue.enqueue("default", job.id)
        before = utcnow()

        fetched = await queue.dequeue(["default"], timeout=1)

        assert isinstance(fetched, FetchedJob)
        assert fetched.id == item_id
        assert fetched.job_id == str(job.id)
        assert fetched.queue == "default"

        [item] = await store.queue()
        assert item.fetched_at is not None
        assert item.fetched_at >= before

    async def test_dequeue_returns_none_on_timeout(self, queue):
        assert await queue.dequeue(["default"], timeout=0.1) is None

    async def test_fetched_record_is_invisible(self, queue, store):
        job = await store.add_job()
        await queue.enqueue("default", job.id)

        first = await queue.dequeue(["default"], timeout=1)
        second = await queue.dequeue(["default"], timeout=0.1)

        assert first is not None
        assert second is None

    async def test_requeued_record_is_visible_again(self, queue, store):
        job = await store.add_job()
        await queue.enqueue("default", job.id)

        async with await queue.dequeue(["default"], timeout=1) as fetched:
            first_id = fetched.id

        again = await queue.dequeue(["default"], timeout=1)

        assert again is not None
        assert again.id == first_id

    async def test_completed_record_is_gone(self, queue, store):
        job = await store.add_job()
        await queue.enqueue("default", job.id)

        async with await queue.dequeue(["default"], timeout=1) as fetched:
            await fetched.remove_from_queue()

        assert await store.queue() == []
        assert await queue.dequeue(["default"], timeout=0.1) is None

    async def test_stale_fetched_record_becomes_visible(self, queue, store):
        """A record held longer than the invisibility timeout can be fetched again."""
        job = await store.add_job()
        stale = await store.add_queued_job(job, fetched_at=utcnow() - timedelta(minutes=6))

        fetched = await queue.dequeue(["default"], timeout=1)

        assert fetched is not None
        assert fetched.id == stale.id

    async def test_dequeue_only_from_requested_queues(self, queue, store):
        job = await store.add_job()
        await queue.enqueue("other", job.id)
        wanted = await queue.enqueue("critical", job.id)

        fetched = await queue.dequeue(["critical", "default"], timeout=1)

        assert fetched.id == wanted
        assert await queue.dequeue(["default"], timeout=0.1) is None

    async def test_dequeue_waits_for_enqueue(self, queue, store):
        job = await store.add_job()

        waiter = asyncio.create_task(queue.dequeue(["default"], timeout=5))
        await asyncio.sleep(0.1)
        assert not waiter.done()

        await queue.enqueue("default", job.id)
        fetched = await asyncio.wait_for(waiter, timeout=2)

        assert fetched is not None

    async def test_concurrent_dequeue_hands_out_record_once(self, queue, store):
        job = await store.add_job()
        await queue.enqueue("default", job.id)

        results = await asyncio.gather(
            queue.dequeue(["default"], timeout=0.3),
            queue.dequeue(["default"], timeout=0.3),
        )

        assert len([r for r in results if r is not None]) == 1

    async def test_count(self, queue, store):
        job = await store.add_job()
        await queue.enqueue("default", job.id)
        await queue.enqueue("default", job.id)
        await queue.dequeue(["default"], timeout=1)

        assert await queue.count("default") == (1, 1)

    async def test_storage_factory(self, storage):
        assert isinstance(storage.get_job_queue(), JobQueue)
