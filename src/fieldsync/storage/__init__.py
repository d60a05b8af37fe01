"""
Storage components for fieldsync.

This package provides:
- An async SQLite wrapper
- The local store for entity snapshots and the pending-operation queue
"""

from .database import Database
from .local_store import LocalStore

__all__ = [
    'Database',
    'LocalStore',
]
