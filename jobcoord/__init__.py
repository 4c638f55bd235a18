"""
Relational-store job coordination

Distributed locks and fetched-job leases for a background-job framework,
built on unique-key inserts, version-checked updates and row deletes in a
shared SQL database.
"""

__version__ = "1.0.0"
