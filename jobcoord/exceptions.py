"""
Exception hierarchy for the coordination layer.

Only ``DistributedLockTimeoutError`` ever reaches callers of the lock provider
and fetched job lease. The ``StoreConflictError`` family is raised by the
storage seam and consumed internally as "lost the race".
"""


class CoordinationError(Exception):
    """Base class for all jobcoord errors."""


class DistributedLockTimeoutError(CoordinationError):
    """Raised when a distributed lock could not be acquired before the deadline."""

    def __init__(self, resource: str):
        self.resource = resource
        super().__init__(
            f"Timeout expired while acquiring distributed lock for resource '{resource}'"
        )


class StoreConflictError(CoordinationError):
    """A store operation lost a race against another writer."""


class UniqueViolationError(StoreConflictError):
    """An insert violated a uniqueness constraint."""


class ConcurrencyConflictError(StoreConflictError):
    """A conditional update or delete affected zero rows."""

    def __init__(self, entity: str, key: object):
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} {key!r} was concurrently modified or removed")


class RecordGoneError(ConcurrencyConflictError):
    """The target row no longer exists."""


class VersionMismatchError(ConcurrencyConflictError):
    """The target row exists but carries a different concurrency token."""
