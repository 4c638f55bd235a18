"""
Distributed locks.
"""

from jobcoord.locks.provider import DistributedLockProvider

__all__ = ["DistributedLockProvider"]
