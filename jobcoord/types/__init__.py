"""
Type definitions shared by the worker and its handlers.
"""

from jobcoord.types.job import JobContext, JobPayload, JobResult

__all__ = [
    "JobPayload",
    "JobResult",
    "JobContext",
]
