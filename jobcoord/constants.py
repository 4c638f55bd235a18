"""
Application constants.
Centralized location for all constant values used across the application.
"""

from datetime import timedelta
from enum import StrEnum


class LeaseState(StrEnum):
    """
    Fetched job lease states.

    State transitions:
    - ACTIVE -> COMPLETED (record removed from the queue)
    - ACTIVE -> REQUEUED (fetched_at cleared, explicitly or on disposal)

    Both terminal states forbid further store mutation.
    """

    ACTIVE = "active"
    COMPLETED = "completed"
    REQUEUED = "requeued"


class LockPath(StrEnum):
    """How a distributed lock was obtained."""

    INSERT = "insert"
    TAKEOVER = "takeover"


# Default values
DEFAULT_QUEUE = "default"
MAX_LOCK_POLL_INTERVAL = timedelta(seconds=1)

# SQLSTATE raised by PostgreSQL for duplicate keys
UNIQUE_VIOLATION_SQLSTATE = "23505"

# Column sizes
LOCK_ID_MAX_LENGTH = 100
QUEUE_NAME_MAX_LENGTH = 50
STATE_NAME_MAX_LENGTH = 20

# Well-known lock resources
EXPIRATION_MANAGER_LOCK = "locks:expirationmanager"

# Metrics names
METRIC_LOCK_ACQUIRED = "distributed_lock_acquired_total"
METRIC_LOCK_TIMEOUTS = "distributed_lock_timeouts_total"
METRIC_LOCK_TAKEOVERS = "distributed_lock_takeovers_total"
METRIC_LOCK_CONFLICTS = "distributed_lock_conflicts_total"
METRIC_LOCK_WAIT = "distributed_lock_wait_seconds"
METRIC_FETCHED_JOB_RESOLVED = "fetched_job_resolved_total"
METRIC_JOBS_EXPIRED = "jobs_expired_total"

# Trace span names
SPAN_ACQUIRE_LOCK = "acquire_distributed_lock"
SPAN_RELEASE_LOCK = "release_distributed_lock"
SPAN_DEQUEUE_JOB = "dequeue_job"
SPAN_EXECUTE_JOB = "execute_job"
SPAN_EXPIRE_JOBS = "expire_jobs"
