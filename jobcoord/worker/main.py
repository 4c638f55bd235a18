"""
Worker process for executing jobs.

The worker fetches jobs from its queues, runs them inside a fetched job
lease and removes the queue record once the job reached a final state. If
the worker is interrupted mid-job, leaving the ``async with`` block requeues
the record for another worker.
"""

import asyncio
import logging
import os
import signal

from pydantic import ValidationError

from jobcoord.config import get_settings
from jobcoord.constants import SPAN_EXECUTE_JOB
from jobcoord.db import Storage, close_db, get_engine, get_session_factory, init_db
from jobcoord.db.repository import JobRepository
from jobcoord.observability.logging import bind_context, lease_context, setup_logging
from jobcoord.observability.metrics import setup_metrics
from jobcoord.observability.tracing import get_tracer, instrument_sqlalchemy, setup_tracing
from jobcoord.queue import FetchedJob, JobQueue
from jobcoord.types.job import JobContext, JobPayload, JobResult
from jobcoord.worker.handlers import execute_job

logger = logging.getLogger(__name__)

SUCCEEDED_STATE = "Succeeded"
FAILED_STATE = "Failed"


class Worker:
    """
    Job worker that fetches and executes jobs one at a time.

    Features:
    - Lease-based fetching with requeue on interruption
    - Graceful shutdown on SIGTERM/SIGINT
    """

    def __init__(
        self,
        storage: Storage,
        worker_id: str | None = None,
        queues: list[str] | None = None,
    ):
        """
        Initialize the worker.

        Args:
            storage: The store handle.
            worker_id: Unique worker identifier. Defaults to hostname + PID.
            queues: Queues to fetch from, in priority order.
        """
        settings = storage.settings

        self.storage = storage
        self.worker_id = worker_id or f"{os.uname().nodename}-{os.getpid()}"
        self.queues = queues or settings.worker_queues
        self.poll_interval = settings.queue_poll_interval_seconds

        self._queue = JobQueue(storage)
        self._running = False

    async def start(self) -> None:
        """Start the worker loop."""
        bind_context(worker_id=self.worker_id)
        logger.info("Worker starting", extra={"queues": self.queues})

        self._running = True

        while self._running:
            try:
                await self.process_next(timeout=self.poll_interval)
            except Exception as e:
                logger.exception(f"Error in worker loop: {e}")
                await asyncio.sleep(self.poll_interval)

        logger.info("Worker stopped")

    async def stop(self) -> None:
        """Stop the worker after the current job."""
        logger.info("Worker stopping")
        self._running = False

    async def process_next(self, timeout: float | None = None) -> bool:
        """
        Fetch and process a single job.

        Args:
            timeout: Seconds to wait for a job. None waits indefinitely.

        Returns:
            True if a job was fetched.
        """
        fetched = await self._queue.dequeue(self.queues, timeout=timeout)
        if fetched is None:
            return False

        with lease_context(fetched):
            async with fetched:
                await self._process(fetched)

        return True

    async def _process(self, fetched: FetchedJob) -> None:
        job_id = int(fetched.job_id)

        job = await self.storage.run_in_transaction(
            lambda session: JobRepository(session).get_job(job_id)
        )
        if job is None:
            logger.warning("Fetched job no longer exists", extra={"job_id": job_id})
            await fetched.remove_from_queue()
            return

        try:
            payload = JobPayload.model_validate(job.invocation_data)
        except ValidationError as e:
            result = JobResult(success=False, error=f"Invalid invocation data: {e}")
        else:
            context = JobContext(
                job_id=fetched.job_id,
                queue=fetched.queue,
                queue_item_id=fetched.id,
                worker_id=self.worker_id,
                payload=payload,
            )
            logger.info(
                "Executing job",
                extra={"job_id": job_id, "queue": fetched.queue, "job_type": payload.job_type},
            )
            with get_tracer().start_as_current_span(SPAN_EXECUTE_JOB) as span:
                span.set_attribute("job_id", fetched.job_id)
                span.set_attribute("queue", fetched.queue)
                result = await execute_job(context)

        state = SUCCEEDED_STATE if result.success else FAILED_STATE

        async def finish(session) -> None:
            await JobRepository(session).set_state(job_id, state)

        await self.storage.run_in_transaction(finish)
        await fetched.remove_from_queue()

        if result.success:
            logger.info("Job succeeded", extra={"job_id": job_id, "duration_ms": result.duration_ms})
        else:
            logger.warning("Job failed", extra={"job_id": job_id, "error": result.error})


async def run_async() -> None:
    """Run the worker asynchronously."""
    settings = get_settings()
    setup_logging()
    setup_metrics(settings.prometheus_port)
    setup_tracing()
    await init_db()
    instrument_sqlalchemy(get_engine())

    worker = Worker(Storage(get_session_factory(), settings), worker_id=settings.worker_id)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(worker.stop()))

    try:
        await worker.start()
    finally:
        await close_db()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
