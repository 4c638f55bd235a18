"""
Job-related type definitions for internal use.
"""

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel


class JobPayload(BaseModel):
    """
    Invocation data stored with a job.
    Names the handler and carries its arguments.
    """

    job_type: str
    data: dict[str, Any] = {}
    metadata: dict[str, Any] | None = None


class JobResult(BaseModel):
    """
    Result of job execution.
    Returned by job handlers after processing.
    """

    success: bool
    output: dict[str, Any] | None = None
    error: str | None = None
    duration_ms: float | None = None


@dataclass
class JobContext:
    """
    Context passed to job handlers during execution.
    """

    job_id: str
    queue: str
    queue_item_id: int
    worker_id: str
    payload: JobPayload
