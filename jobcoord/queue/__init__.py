"""
Job queue and fetched job leases.
"""

from jobcoord.queue.fetched_job import FetchedJob
from jobcoord.queue.job_queue import JobQueue

__all__ = ["FetchedJob", "JobQueue"]
