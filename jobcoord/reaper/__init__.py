"""
Expiration manager process.
"""
