"""
Hybrid storage facade over every registered collection.

Builds one StorageCoordinator per collection on a shared local cache and a
shared remote client, initializes them in registry order (players and
sessions before the collections that reference them) and reports their
health together.

When the remote assigns canonical ids to players, sessions or matches that
were created offline, references to them held by the other collections
are rewritten and mirrored again.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from typing import Any

from ..local.cache import LocalCache
from ..migration import MigrationManager
from ..observability import LoggingObserver, SyncObserver, notify
from ..registry import DEFAULT_REGISTRY, CollectionKey, CollectionRegistry, CollectionSpec
from ..remote.client import ClientState, RemoteClient, StoreFactory
from ..sync.engine import DifferentialSyncEngine, SyncResult
from .base import HealthStatus, StorageConfig
from .coordinator import StorageCoordinator

logger = logging.getLogger(__name__)


class HybridStorage:
    """Cache-first storage for all collections with background remote sync.

    Example:
        >>> async with await HybridStorage.create(StorageConfig.from_environment()) as storage:
        ...     players = storage.collection(CollectionKey.PLAYERS)
        ...     await players.add_item({"name": "Ana"})
    """

    def __init__(
        self,
        config: StorageConfig | None = None,
        registry: CollectionRegistry | None = None,
        observer: SyncObserver | None = None,
        client: RemoteClient | None = None,
        store_factory: StoreFactory | None = None,
    ) -> None:
        """Initialize without touching storage.

        Args:
            config: Storage configuration (default: from environment)
            registry: Collections to coordinate (default: all known collections)
            observer: Diagnostics sink (default: LoggingObserver)
            client: Remote client to share (default: built from config)
            store_factory: Remote store factory passed to the default client
        """
        self.config = config or StorageConfig.from_environment()
        self.registry = registry or DEFAULT_REGISTRY
        self.registry.validate()
        self.observer = observer or LoggingObserver()
        self.cache = LocalCache(self.config.cache_path)

        self.client: RemoteClient | None = None
        if self.config.enable_sync:
            self.client = client or RemoteClient(self.config.remote, store_factory)
        self._unsubscribe = None
        if self.client is not None:
            self._unsubscribe = self.client.subscribe(self._on_client_state)

        engine = DifferentialSyncEngine(self.client) if self.client else None
        migrations = MigrationManager(self.cache, engine) if engine else None
        self._coordinators: dict[CollectionKey, StorageCoordinator] = {
            spec.key: StorageCoordinator(
                spec,
                self.cache,
                client=self.client,
                engine=engine,
                migrations=migrations,
                observer=self.observer,
            )
            for spec in self.registry
        }
        for coordinator in self._coordinators.values():
            if coordinator.spec.referenced_by:
                coordinator.on_ids_assigned(self._propagate_ids)
        self._initialized = False

    @classmethod
    async def create(
        cls,
        config: StorageConfig | None = None,
        registry: CollectionRegistry | None = None,
        observer: SyncObserver | None = None,
    ) -> HybridStorage:
        """Create and initialize hybrid storage."""
        storage = cls(config, registry, observer)
        await storage.initialize()
        return storage

    def _on_client_state(self, state: ClientState) -> None:
        notify(self.observer, "on_client_state", state)

    async def _propagate_ids(self, spec: CollectionSpec, assigned: dict[str, str]) -> None:
        for coordinator in self._coordinators.values():
            if coordinator.spec.key is not spec.key:
                await coordinator.adopt_references(spec.referenced_by, assigned)

    def collection(self, key: CollectionKey | str) -> StorageCoordinator:
        """Return the coordinator of a collection.

        Raises:
            UnknownCollectionError: If the key is not registered
        """
        return self._coordinators[self.registry.get(key).key]

    def __iter__(self) -> Iterator[StorageCoordinator]:
        return iter(self._coordinators.values())

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(self) -> None:
        """Initialize every collection, one after another in registry order."""
        if self._initialized:
            return
        for coordinator in self._coordinators.values():
            await coordinator.initialize()
        self._initialized = True
        logger.info(
            f"Hybrid storage ready with {len(self._coordinators)} collections "
            f"(remote: {self.client.state.value if self.client else 'disabled'})"
        )

    async def flush(self) -> None:
        """Wait for every collection's queued writes to be mirrored."""
        for coordinator in self._coordinators.values():
            await coordinator.flush()

    async def resync(self) -> dict[str, SyncResult | None]:
        """Retry unsynced changes of every collection."""
        return {c.name: await c.resync() for c in self._coordinators.values()}

    async def reset_remote(self) -> bool:
        """Drop the remote handle, clear a disabled client and reconnect.

        Returns:
            True if the remote is reachable again
        """
        if self.client is None:
            return False
        await self.client.reset()
        return await self.client.initialize()

    async def close(self) -> None:
        for coordinator in self._coordinators.values():
            await coordinator.close()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self.client is not None:
            await self.client.close()
        self._initialized = False

    async def __aenter__(self) -> HybridStorage:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        await self.close()

    # =========================================================================
    # Diagnostics
    # =========================================================================

    def health(self) -> dict[str, HealthStatus]:
        return {c.name: c.health() for c in self._coordinators.values()}

    def health_summary(self) -> dict[str, Any]:
        statuses = self.health()
        return {
            "healthy": all(status.healthy for status in statuses.values()),
            "client_state": self.client.state.value if self.client else None,
            "collections": {name: status.to_dict() for name, status in statuses.items()},
        }
