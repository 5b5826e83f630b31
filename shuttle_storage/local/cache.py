"""
Local key/value cache for collection snapshots.

Each key is stored as one JSON file under the cache directory:

    {cache_dir}/{key}.json              - serialized snapshot (JSON array)
    {cache_dir}/{key}_migrated.json     - migration marker (JSON true)

The cache is the always-available copy of every collection. It never
raises for corrupt content: a snapshot that cannot be parsed is logged,
removed, and read back as an empty collection.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any

from ..exceptions import MalformedCacheError
from .file_ops import file_exists, read_json, remove_file, write_json_atomic

logger = logging.getLogger(__name__)

MIGRATED_SUFFIX = "_migrated"

_KEY_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


def migration_marker_key(key: str) -> str:
    """Key of the companion migration marker for a collection key."""
    return f"{key}{MIGRATED_SUFFIX}"


class LocalCache:
    """Durable string-keyed store holding one serialized value per key."""

    def __init__(self, cache_dir: str | Path) -> None:
        self.cache_dir = Path(cache_dir).expanduser()

    def _path(self, key: str) -> Path:
        if not _KEY_RE.match(key):
            raise ValueError(f"Invalid cache key: {key!r}")
        return self.cache_dir / f"{key}.json"

    async def get(self, key: str) -> Any:
        """Read a raw value.

        Returns:
            The stored value, or None when the key is absent

        Raises:
            MalformedCacheError: If the stored content is not valid UTF-8 JSON
        """
        path = self._path(key)
        try:
            return await read_json(path)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MalformedCacheError(key, e) from e

    async def set(self, key: str, value: Any) -> None:
        """Write a raw value atomically."""
        await write_json_atomic(self._path(key), value)

    async def delete(self, key: str) -> bool:
        """Remove a key. Returns True if it existed."""
        return await remove_file(self._path(key))

    async def has(self, key: str) -> bool:
        return await file_exists(self._path(key))

    # Snapshot helpers

    async def load_snapshot(self, key: str) -> list[dict[str, Any]]:
        """Load a collection snapshot.

        Malformed content resets the collection to empty. Null entries are
        dropped. A non-list value is treated as an empty collection.
        """
        try:
            value = await self.get(key)
        except MalformedCacheError as e:
            logger.error(
                f"Clearing corrupted cache entry {key}: {e.cause}",
                extra={"collection": key},
            )
            await self.delete(key)
            return []

        if value is None:
            return []
        if not isinstance(value, list):
            logger.warning(
                f"Cache entry {key} is not a collection, using empty snapshot",
                extra={"collection": key},
            )
            return []

        items = [item for item in value if isinstance(item, dict)]
        if len(items) != len(value):
            logger.warning(
                f"Dropped {len(value) - len(items)} null or invalid entries from {key}",
                extra={"collection": key},
            )
        return items

    async def save_snapshot(self, key: str, items: list[dict[str, Any]]) -> None:
        """Persist a collection snapshot, dropping null entries."""
        await self.set(key, [item for item in items if item is not None])

    # Migration markers

    async def is_migrated(self, key: str) -> bool:
        """True once a migration was attempted. A corrupt marker still counts."""
        marker = migration_marker_key(key)
        try:
            return await self.get(marker) is True
        except MalformedCacheError as e:
            logger.warning(
                f"Unreadable migration marker for {key}, treating as migrated: {e.cause}",
                extra={"collection": key},
            )
            return True

    async def mark_migrated(self, key: str) -> None:
        await self.set(migration_marker_key(key), True)

    async def reset_migration_flag(self, key: str) -> bool:
        """Clear the migration marker so the next load may migrate again."""
        removed = await self.delete(migration_marker_key(key))
        if removed:
            logger.info(f"Reset migration flag for {key}", extra={"collection": key})
        return removed
