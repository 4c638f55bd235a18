"""
Database module.
Contains database connection, models, storage executor and repositories.
"""

from jobcoord.db.connection import (
    close_db,
    create_session_factory,
    get_engine,
    get_session_factory,
    init_db,
)
from jobcoord.db.models import Base, DistributedLock, Job, QueuedJob, utcnow
from jobcoord.db.storage import Storage

__all__ = [
    "get_engine",
    "get_session_factory",
    "create_session_factory",
    "init_db",
    "close_db",
    "Storage",
    "Base",
    "Job",
    "QueuedJob",
    "DistributedLock",
    "utcnow",
]
