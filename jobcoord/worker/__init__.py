"""
Worker process.
"""
