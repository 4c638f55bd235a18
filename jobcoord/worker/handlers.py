"""
Job handlers registry and built-in handlers.

A handler may run more than once for the same job: a lease that is requeued,
or whose record becomes visible again after the invisibility timeout, is
picked up by another worker. Handlers must be idempotent.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from jobcoord.types.job import JobContext, JobResult

logger = logging.getLogger(__name__)

JobHandler = Callable[[JobContext], Awaitable[JobResult]]

_handlers: dict[str, JobHandler] = {}


def register_handler(job_type: str) -> Callable[[JobHandler], JobHandler]:
    """
    Decorator to register a job handler.

    Example:
        @register_handler("send_email")
        async def handle_send_email(context: JobContext) -> JobResult:
            ...
    """

    def decorator(handler: JobHandler) -> JobHandler:
        _handlers[job_type] = handler
        logger.debug(f"Registered handler for job type: {job_type}")
        return handler

    return decorator


def get_handler(job_type: str) -> JobHandler | None:
    return _handlers.get(job_type)


def list_handlers() -> list[str]:
    return list(_handlers.keys())


@register_handler("echo")
async def handle_echo(context: JobContext) -> JobResult:
    """Return the job data unchanged."""
    return JobResult(success=True, output={"echo": context.payload.data})


@register_handler("sleep")
async def handle_sleep(context: JobContext) -> JobResult:
    """Sleep for ``data.duration_seconds`` (default 1)."""
    duration = context.payload.data.get("duration_seconds", 1)
    await asyncio.sleep(duration)
    return JobResult(success=True, output={"slept_for": duration})


@register_handler("failing_job")
async def handle_failing_job(context: JobContext) -> JobResult:
    """Always fails. The worker marks the job Failed and removes it from the queue."""
    return JobResult(success=False, error=f"Intentional failure of job {context.job_id}")


async def execute_job(context: JobContext) -> JobResult:
    """
    Execute a job using the handler registered for its type.

    Handler exceptions are converted into a failed result.

    Args:
        context: The job context.

    Returns:
        JobResult from the handler.
    """
    job_type = context.payload.job_type
    handler = get_handler(job_type)

    if handler is None:
        logger.error(
            f"No handler for job type: {job_type}",
            extra={"job_id": context.job_id},
        )
        return JobResult(
            success=False,
            error=f"No handler registered for job type: {job_type}",
        )

    started = time.perf_counter()
    try:
        result = await handler(context)
    except Exception as e:
        logger.exception(
            "Handler raised exception",
            extra={"job_id": context.job_id, "job_type": job_type},
        )
        result = JobResult(success=False, error=f"Handler exception: {e}")

    result.duration_ms = (time.perf_counter() - started) * 1000
    return result
