"""
Collection migration utilities.

Moves data that existed only in the local cache into the remote store the
first time a collection is loaded against an empty remote.
"""

from .manager import MigrationManager
from .types import MigrationResult, MigrationStatus

__all__ = [
    "MigrationManager",
    "MigrationResult",
    "MigrationStatus",
]
