"""
Per-collection coordinator between the local cache and the remote store.

Architecture:
- Writes go to the LOCAL cache first (immediate, always available)
- A background worker mirrors each write to the remote through the
  differential sync engine, one write at a time, in write order
- Reads return the in-memory snapshot and never touch storage
- Remote failures never roll back a local commit; they are reported
  through health() and the observer

The coordinator tracks a baseline: the snapshot the remote is believed to
hold. Every sync computes its diff against the baseline and replaces it
with the settled result, so operations that failed are retried by the
next write or by resync().

Items created offline carry a local id until the remote stores them. The
canonical id the remote assigns then replaces the local one in memory, in
the cache and in later writes that still name the local id.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

from ..exceptions import StorageIOError, SyncStorageError
from ..id_utils import generate_local_id
from ..local.cache import LocalCache
from ..logging_utils import CollectionLoggerAdapter
from ..migration import MigrationManager, MigrationResult
from ..models import Record
from ..observability import SyncObserver, notify
from ..registry import CollectionSpec
from ..remote.client import RemoteClient
from ..sync.diff import compute_diff
from ..sync.engine import DifferentialSyncEngine, SyncResult
from .base import HealthStatus

logger = logging.getLogger(__name__)

Snapshot = list[dict[str, Any]]
Updater = Callable[[Snapshot], list[Any]]
IdListener = Callable[[CollectionSpec, dict[str, str]], Awaitable[None]]


class StorageCoordinator:
    """Keeps one collection consistent between the cache and the remote.

    Example:
        >>> players = StorageCoordinator(spec, cache, client)
        >>> await players.initialize()
        >>> await players.write(lambda items: items + [{"name": "Ana"}])
        >>> players.read()
    """

    def __init__(
        self,
        spec: CollectionSpec,
        cache: LocalCache,
        client: RemoteClient | None = None,
        engine: DifferentialSyncEngine | None = None,
        migrations: MigrationManager | None = None,
        observer: SyncObserver | None = None,
    ) -> None:
        """Initialize the coordinator.

        Args:
            spec: Collection to coordinate
            cache: Local cache shared by all collections
            client: Remote client (None keeps the collection local-only)
            engine: Sync engine (default: built on the client)
            migrations: Migration manager (default: built on cache and engine)
            observer: Sink for sync results and swallowed errors
        """
        self.spec = spec
        self.cache = cache
        self.client = client
        self.engine = engine
        if self.engine is None and client is not None:
            self.engine = DifferentialSyncEngine(client)
        self.migrations = migrations
        if self.migrations is None and self.engine is not None:
            self.migrations = MigrationManager(cache, self.engine)
        self.observer = observer
        self.log = CollectionLoggerAdapter(logger, {"collection": spec.name})

        self._items: Snapshot = []
        self._baseline: Snapshot = []
        self._initialized = False
        self._remote_active = False
        self._last_error: str | None = None
        self._last_sync_at: datetime | None = None
        self.last_result: SyncResult | None = None
        self.last_migration: MigrationResult | None = None

        self._write_lock = asyncio.Lock()
        self._sync_lock = asyncio.Lock()
        self._sync_queue: asyncio.Queue[Snapshot] = asyncio.Queue()
        self._sync_task: asyncio.Task[None] | None = None
        self._pending = 0

        self._id_map: dict[str, str] = {}
        self._reference_map: dict[str, dict[str, str]] = {}
        self._id_listeners: list[IdListener] = []

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def remote_capable(self) -> bool:
        """Whether writes are currently mirrored to the remote."""
        return (
            self.spec.remote_capable
            and self.client is not None
            and self.engine is not None
            and not self.client.is_disabled
        )

    @property
    def initialized(self) -> bool:
        return self._initialized

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(self) -> Snapshot:
        """Load the initial snapshot.

        Prefers the remote when it is reachable and the collection loads
        from it; runs the one-time migration when the remote is empty.
        Any remote failure falls back to the cache. Never raises for
        remote or cache content problems.

        Returns:
            The loaded snapshot
        """
        if self._initialized:
            return self.read()

        try:
            local_items = self._translate(await self.cache.load_snapshot(self.name))
        except StorageIOError as e:
            self.log.error(f"Could not read cached {self.name}, starting empty: {e}")
            notify(self.observer, "on_error", self.name, e)
            local_items = []
        self._items = local_items
        self._baseline = list(local_items)

        available = False
        if self.client is not None and self.spec.remote_capable:
            available = await self.client.initialize()

        if available and self.remote_capable and self.spec.load_on_initialize:
            try:
                await self._load_remote(local_items)
                self._remote_active = True
            except SyncStorageError as e:
                self._record_error(e)
                self.log.warning(f"Loading {self.name} from remote failed, using cache: {e}")
        elif self.client is not None and self.remote_capable:
            self._remote_active = available
            if not available:
                self._last_error = self.client.last_error

        self._initialized = True
        self.log.info(
            f"Initialized {self.name} with {len(self._items)} items "
            f"({'remote' if self._remote_active else 'cache-only'})"
        )
        return self.read()

    async def _load_remote(self, local_items: Snapshot) -> None:
        assert self.engine is not None and self.migrations is not None
        rows = await self.engine.fetch_rows(self.spec)
        migration = await self.migrations.migrate(self.spec, rows, local_items)
        self.last_migration = migration
        notify(self.observer, "on_migration", migration)

        if not migration.ran:
            snapshot = await self.engine.fetch_snapshot(self.spec, rows)
            self._items = snapshot
            self._baseline = list(snapshot)
        elif migration.snapshot is not None:
            # Items the remote rejected stay local and are retried on the next write
            unmigrated = [
                item for item in local_items if str(item.get("id")) in migration.failed_ids
            ]
            self._items = migration.snapshot + unmigrated
            self._baseline = list(migration.snapshot)
        else:
            self._baseline = [
                item for item in local_items if str(item.get("id")) not in migration.failed_ids
            ]

        try:
            await self.cache.save_snapshot(self.name, self._items)
        except StorageIOError as e:
            self.log.error(f"Could not cache remote snapshot of {self.name}: {e}")

        if migration.assigned_ids:
            await self._adopt_ids(migration.assigned_ids)

    async def close(self) -> None:
        """Stop the sync worker. Queued writes that did not sync stay in the cache."""
        if self._sync_task:
            self._sync_task.cancel()
            try:
                await self._sync_task
            except asyncio.CancelledError:
                pass
            self._sync_task = None

        abandoned = 0
        while not self._sync_queue.empty():
            try:
                self._sync_queue.get_nowait()
                self._sync_queue.task_done()
                abandoned += 1
            except asyncio.QueueEmpty:
                break
        self._pending = 0
        if abandoned:
            self.log.info(f"Abandoned {abandoned} queued syncs of {self.name}; cache is kept")

    # =========================================================================
    # Read / write
    # =========================================================================

    def read(self) -> Snapshot:
        """Return the current in-memory snapshot."""
        return list(self._items)

    async def write(self, value: list[Any] | Updater) -> Snapshot:
        """Replace the collection.

        Args:
            value: The full new snapshot, or a function computing it from
                the current one. Null entries are dropped; records are
                converted to dicts; items without an id get a local id.

        Returns:
            The committed snapshot

        Raises:
            StorageIOError: If the cache cannot be written
        """
        async with self._write_lock:
            new = value(self.read()) if callable(value) else value
            items = self._translate(self._prepare(new))
            await self.cache.save_snapshot(self.name, items)
            self._items = items
            self._enqueue(items)
        return self.read()

    def _prepare(self, items: list[Any]) -> Snapshot:
        prepared: Snapshot = []
        for item in items:
            if item is None:
                continue
            if isinstance(item, Record):
                item = item.to_dict()
            elif isinstance(item, dict):
                item = dict(item)
            else:
                raise TypeError(f"{self.name} items must be dicts or records, got {type(item)}")
            if item.get("id") is None:
                item["id"] = generate_local_id()
            prepared.append(item)
        return prepared

    def _enqueue(self, snapshot: Snapshot) -> None:
        if not self.remote_capable:
            return
        self._sync_queue.put_nowait(snapshot)
        self._pending += 1
        if self._sync_task is None or self._sync_task.done():
            self._sync_task = asyncio.create_task(self._sync_loop())

    # Item helpers

    async def add_item(self, item: dict[str, Any] | Record) -> dict[str, Any]:
        """Append one item, assigning a local id when it has none."""
        added = self._prepare([item])[0]
        await self.write(lambda items: items + [added])
        return added

    async def update_item(self, item_id: str, changes: dict[str, Any]) -> dict[str, Any] | None:
        """Merge ``changes`` into the item with ``item_id``.

        A local id the remote has since replaced still finds the item.

        Returns:
            The updated item, or None if no item has that id
        """
        updated: dict[str, Any] | None = None

        def apply(items: Snapshot) -> Snapshot:
            nonlocal updated
            targets = self._known_ids(item_id)
            result = []
            for item in items:
                if str(item.get("id")) in targets:
                    item = {**item, **changes, "id": item["id"]}
                    updated = item
                result.append(item)
            return result

        await self.write(apply)
        return updated

    async def remove_item(self, item_id: str) -> bool:
        """Remove the item with ``item_id``. Returns True if it existed."""
        removed = False

        def apply(items: Snapshot) -> Snapshot:
            nonlocal removed
            targets = self._known_ids(item_id)
            kept = [item for item in items if str(item.get("id")) not in targets]
            removed = len(kept) != len(items)
            return kept

        await self.write(apply)
        return removed

    # =========================================================================
    # Sync
    # =========================================================================

    async def _sync_loop(self) -> None:
        """Background worker mirroring queued snapshots in write order."""
        while True:
            snapshot = await self._sync_queue.get()
            try:
                async with self._sync_lock:
                    await self._apply(snapshot)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.log.exception(f"Sync worker error for {self.name}: {e}")
                self._record_error(e)
            finally:
                self._pending -= 1
                self._sync_queue.task_done()

    async def _apply(self, snapshot: Snapshot) -> SyncResult:
        assert self.engine is not None
        result = await self.engine.apply(self.spec, self._baseline, self._translate(snapshot))
        self._baseline = result.baseline
        self._remote_active = result.remote_available
        self.last_result = result
        if result.success:
            self._last_sync_at = datetime.now(UTC)
        elif result.errors:
            self._last_error = result.errors[-1]
        if result.assigned_ids:
            await self._adopt_ids(result.assigned_ids)
        notify(self.observer, "on_sync_result", result)
        return result

    async def flush(self) -> None:
        """Wait until every queued write has been mirrored (or failed to be)."""
        if self._sync_task is None or self._sync_task.done():
            return
        await self._sync_queue.join()

    async def resync(self) -> SyncResult | None:
        """Retry whatever the remote is not believed to hold yet.

        Returns:
            The sync result, or None when the collection is not remote-capable
        """
        if not self.remote_capable:
            return None
        await self.flush()
        async with self._sync_lock:
            return await self._apply(self.read())

    async def refresh(self) -> bool:
        """Re-pull the collection from the remote.

        Only runs when nothing is pending, so local changes are never
        overwritten before they were mirrored.

        Returns:
            True if the snapshot was replaced by the remote copy
        """
        if not self.remote_capable or not self.spec.load_on_initialize:
            return False
        assert self.engine is not None

        await self.flush()
        async with self._write_lock:
            if self._pending or self.unsynced_ids():
                self.log.info(f"Not refreshing {self.name}: local changes are pending")
                return False
            try:
                snapshot = await self.engine.fetch_snapshot(self.spec)
            except SyncStorageError as e:
                self._record_error(e)
                return False
            await self.cache.save_snapshot(self.name, snapshot)
            self._items = snapshot
            self._baseline = list(snapshot)
            self._remote_active = True
        return True

    def unsynced_ids(self) -> set[str]:
        """Ids whose current state differs from the believed remote state."""
        return compute_diff(self._baseline, self._items).all_ids

    # =========================================================================
    # Id adoption
    # =========================================================================

    def on_ids_assigned(self, listener: IdListener) -> Callable[[], None]:
        """Register a coroutine awaited with every batch of adopted ids.

        Returns:
            A callable that unregisters the listener
        """
        if listener not in self._id_listeners:
            self._id_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._id_listeners:
                self._id_listeners.remove(listener)

        return unsubscribe

    def _known_ids(self, item_id: Any) -> set[str]:
        """The id as given plus the canonical id it was replaced by, if any."""
        return {str(item_id), self._id_map.get(str(item_id), str(item_id))}

    def _translate(self, items: Snapshot) -> Snapshot:
        """Swap adopted local ids, own and referenced, for canonical ones."""
        if not self._id_map and not self._reference_map:
            return items
        translated: Snapshot = []
        for item in items:
            changes: dict[str, Any] = {}
            item_id = item.get("id")
            if item_id is not None and str(item_id) in self._id_map:
                changes["id"] = self._id_map[str(item_id)]
            for field_name, mapping in self._reference_map.items():
                value = item.get(field_name)
                if value is not None and str(value) in mapping:
                    changes[field_name] = mapping[str(value)]
            translated.append({**item, **changes} if changes else item)
        return translated

    async def _adopt_ids(self, assigned: dict[str, str]) -> None:
        """Replace local ids the remote just assigned canonical ids to."""
        self._id_map.update(assigned)
        self._baseline = self._translate(self._baseline)
        async with self._write_lock:
            self._items = self._translate(self._items)
            try:
                await self.cache.save_snapshot(self.name, self._items)
            except StorageIOError as e:
                self.log.error(f"Could not cache adopted ids of {self.name}: {e}")
        self.log.debug(f"Adopted {len(assigned)} canonical ids for {self.name}")

        for listener in list(self._id_listeners):
            try:
                await listener(self.spec, dict(assigned))
            except Exception:
                self.log.exception(f"Id listener of {self.name} failed")

    async def adopt_references(
        self,
        field_names: Iterable[str],
        assigned: Mapping[str, str],
    ) -> None:
        """Point references at canonical ids another collection adopted.

        Items whose references changed are mirrored again, which retries
        rows the remote rejected while the reference was still local.

        Args:
            field_names: Fields holding ids of the other collection
            assigned: Local id -> canonical id
        """
        record_fields = {f.name for f in dataclasses.fields(self.spec.record_type)}
        names = [name for name in field_names if name in record_fields]
        if not names or not assigned:
            return
        for name in names:
            self._reference_map.setdefault(name, {}).update(assigned)

        async with self._write_lock:
            self._baseline = self._translate(self._baseline)
            items = self._translate(self._items)
            if items == self._items:
                return
            self._items = items
            try:
                await self.cache.save_snapshot(self.name, items)
            except StorageIOError as e:
                self.log.error(f"Could not cache updated references of {self.name}: {e}")
            self._enqueue(items)

    # =========================================================================
    # Diagnostics
    # =========================================================================

    def _record_error(self, error: Exception) -> None:
        self._last_error = str(error)
        self._remote_active = False
        notify(self.observer, "on_error", self.name, error)

    def health(self) -> HealthStatus:
        last_error = self._last_error
        if last_error is None and self.client is not None and self.client.is_disabled:
            last_error = self.client.last_error
        return HealthStatus(
            collection=self.name,
            initialized=self._initialized,
            remote_capable=self.remote_capable,
            remote_active=self.remote_capable and self._remote_active,
            client_state=self.client.state if self.client else None,
            last_error=last_error,
            pending_writes=self._pending,
            unsynced=len(self.unsynced_ids()) if self.spec.remote_capable else 0,
            last_sync_at=self._last_sync_at,
        )
