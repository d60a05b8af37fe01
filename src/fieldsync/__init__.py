"""
fieldsync - offline sync and conflict-resolution engine.

Local edits are cached in SQLite, queued, and pushed to a remote server
when connectivity allows, with field-level conflict detection and
automatic or manual resolution.
"""

__version__ = "0.1.0"
__author__ = "fieldsync Team"

from .engine import SyncEngine, create_engine

__all__ = [
    'SyncEngine',
    'create_engine',
    '__version__',
]
