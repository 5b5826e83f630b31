"""
Local file-based cache.

Provides the always-available copy of every collection. Uses one JSON file
per key with atomic writes for data integrity.
"""

from .cache import MIGRATED_SUFFIX, LocalCache, migration_marker_key
from .file_ops import read_json, remove_file, write_json_atomic

__all__ = [
    "LocalCache",
    "MIGRATED_SUFFIX",
    "migration_marker_key",
    # Low-level file operations
    "read_json",
    "write_json_atomic",
    "remove_file",
]
