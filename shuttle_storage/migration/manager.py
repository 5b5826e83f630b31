"""
One-time migration of local data into an empty remote collection.

A collection migrates at most once. All three must hold:

- the remote collection is empty
- the ``<key>_migrated`` marker is absent from the local cache
- the local cache holds data for the collection

The marker is written after every attempt, including partial failures, so
a collection is never migrated twice. The remote collection is re-read
afterwards and becomes the new source of truth.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from ..exceptions import RemoteUnavailableError, StorageIOError, SyncStorageError
from ..id_utils import is_canonical_id
from ..local.cache import LocalCache
from ..registry import CollectionSpec
from ..sync.engine import DifferentialSyncEngine, bulk_insert
from ..transform import Lookup
from .types import MigrationResult, MigrationStatus

logger = logging.getLogger(__name__)


class MigrationManager:
    """Moves pre-existing cached collections into the remote store.

    Example:
        >>> manager = MigrationManager(cache, engine)
        >>> result = await manager.migrate(spec, remote_rows=[])
        >>> if result.snapshot is not None:
        ...     items = result.snapshot
    """

    def __init__(self, cache: LocalCache, engine: DifferentialSyncEngine) -> None:
        """Initialize the manager.

        Args:
            cache: Local cache holding the data and the migration markers
            engine: Sync engine providing the remote client and transformer
        """
        self.cache = cache
        self.engine = engine

    async def check(
        self,
        spec: CollectionSpec,
        remote_rows: list[dict[str, Any]],
        local_items: list[dict[str, Any]],
    ) -> str | None:
        """Return why migration must not run, or None if it should."""
        if not spec.remote_capable:
            return "collection is local-only"
        if remote_rows:
            return "remote collection is not empty"
        if await self.cache.is_migrated(spec.name):
            return "already migrated"
        if not local_items:
            return "no local data"
        return None

    async def migrate(
        self,
        spec: CollectionSpec,
        remote_rows: list[dict[str, Any]],
        local_items: list[dict[str, Any]] | None = None,
    ) -> MigrationResult:
        """Migrate the cached collection if the gate allows it.

        Args:
            spec: Collection to migrate
            remote_rows: Current remote rows of the collection
            local_items: Cached items (default: read from the cache)

        Returns:
            MigrationResult; SKIPPED when the gate is closed
        """
        result = MigrationResult(collection=spec.name, started_at=datetime.now(UTC))
        if local_items is None:
            local_items = await self.cache.load_snapshot(spec.name)

        reason = await self.check(spec, remote_rows, local_items)
        if reason is not None:
            result.status = MigrationStatus.SKIPPED
            result.reason = reason
            result.completed_at = datetime.now(UTC)
            logger.debug(f"Skipping migration of {spec.name}: {reason}")
            return result

        result.status = MigrationStatus.IN_PROGRESS
        result.total = len(local_items)
        logger.info(
            f"Migrating {result.total} cached items of {spec.name} to remote",
            extra={"collection": spec.name},
        )

        try:
            await self._insert_items(spec, local_items, result)
        except RemoteUnavailableError as e:
            result.status = MigrationStatus.FAILED
            result.error_message = e.message
            result.error_details = e.details
        finally:
            await self._mark_migrated(spec)

        if result.status == MigrationStatus.IN_PROGRESS:
            failed_all = bool(result.failed_ids) and result.migrated + result.duplicates == 0
            result.status = MigrationStatus.FAILED if failed_all else MigrationStatus.COMPLETED

        try:
            result.snapshot = await self.engine.fetch_snapshot(spec)
        except SyncStorageError as e:
            logger.warning(
                f"Could not re-read {spec.name} after migration: {e}",
                extra={"collection": spec.name},
            )

        result.completed_at = datetime.now(UTC)
        logger.info(
            f"Migration of {spec.name} {result.status.value}: "
            f"{result.migrated} migrated, {result.duplicates} already present, "
            f"{len(result.failed_ids)} failed",
            extra={"collection": spec.name},
        )
        return result

    async def _insert_items(
        self,
        spec: CollectionSpec,
        local_items: list[dict[str, Any]],
        result: MigrationResult,
    ) -> None:
        lookup = Lookup.empty()
        if spec.needs_lookup:
            try:
                lookup = await self.engine.client.execute(
                    lambda store: self.engine.transformer.fetch_lookup(spec, store)
                )
            except RemoteUnavailableError:
                raise
            except SyncStorageError as e:
                logger.warning(f"Name lookup failed during migration of {spec.name}: {e}")

        batch = self.engine.transformer.to_remote_batch(spec, local_items, lookup)
        result.skipped = len(batch.rejected)
        result.failed_ids |= {str(item.get("id")) for item, _ in batch.rejected}

        ids: list[str] = []
        rows: list[dict[str, Any]] = []
        for item, row in batch.rows:
            item_id = str(item.get("id"))
            ids.append(item_id)
            if not is_canonical_id(row.get("id")):
                row = {k: v for k, v in row.items() if k != "id"}
            rows.append(row)

        try:
            outcome = await bulk_insert(self.engine.client, spec.table, rows)
        except RemoteUnavailableError:
            result.failed_ids |= set(ids)
            raise

        result.migrated = len(outcome.inserted)
        for index in outcome.inserted:
            stored_id = outcome.rows.get(index, {}).get("id")
            if stored_id is not None and not is_canonical_id(ids[index]):
                result.assigned_ids[ids[index]] = str(stored_id)
        result.duplicates = len(outcome.duplicates)
        for index, error in outcome.failed:
            result.failed_ids.add(ids[index])
            logger.warning(f"Failed to migrate {spec.name} item {ids[index]}: {error}")

    async def _mark_migrated(self, spec: CollectionSpec) -> None:
        try:
            await self.cache.mark_migrated(spec.name)
        except StorageIOError as e:
            logger.error(f"Could not persist migration marker for {spec.name}: {e}")

    async def reset(self, spec: CollectionSpec) -> bool:
        """Clear the migration marker so the collection may migrate again."""
        return await self.cache.reset_migration_flag(spec.name)
