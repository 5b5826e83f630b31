"""
Observability sink for sync activity.

The coordinator reports every sync result, migration outcome, client
state change and swallowed error to a SyncObserver. The default
LoggingObserver writes them through the structured storage logger;
applications can supply their own (metrics, UI status) or combine
several with CompositeObserver.

Observer failures are logged and never reach storage callers.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable

from .logging_utils import get_storage_logger
from .migration.types import MigrationResult, MigrationStatus
from .remote.client import ClientState
from .sync.engine import SyncResult

logger = logging.getLogger(__name__)


class SyncObserver(ABC):
    """Receives sync diagnostics from the storage layer."""

    @abstractmethod
    def on_sync_result(self, result: SyncResult) -> None:
        """Called after every write has been mirrored (or failed to be)."""
        ...

    @abstractmethod
    def on_migration(self, result: MigrationResult) -> None:
        """Called after a migration attempt, including skipped ones."""
        ...

    @abstractmethod
    def on_client_state(self, state: ClientState) -> None:
        """Called when the remote client changes state."""
        ...

    @abstractmethod
    def on_error(self, collection: str, error: Exception) -> None:
        """Called for errors the storage layer handled without raising."""
        ...


class LoggingObserver(SyncObserver):
    """Writes diagnostics to the ``shuttle_storage.sync`` logger."""

    def __init__(self, log: logging.Logger | None = None) -> None:
        self.log = log or get_storage_logger("sync")

    def on_sync_result(self, result: SyncResult) -> None:
        extra = {"collection": result.collection, **result.to_dict()}
        if result.success:
            if result.operations or result.already_synced:
                self.log.info(
                    f"Synced {result.collection}: {result.inserted} inserted, "
                    f"{result.updated} updated, {result.deleted} deleted",
                    extra=extra,
                )
            return
        self.log.warning(
            f"Sync of {result.collection} incomplete: {len(result.failed_ids)} pending",
            extra=extra,
        )

    def on_migration(self, result: MigrationResult) -> None:
        if result.status == MigrationStatus.SKIPPED:
            self.log.debug(f"Migration of {result.collection} skipped: {result.reason}")
            return
        self.log.info(
            f"Migration of {result.collection}: {result.status.value}",
            extra={"collection": result.collection, **result.to_dict()},
        )

    def on_client_state(self, state: ClientState) -> None:
        self.log.info(f"Remote client {state.value}", extra={"client_state": state.value})

    def on_error(self, collection: str, error: Exception) -> None:
        self.log.warning(
            f"{collection}: {error}",
            extra={"collection": collection, "error_type": type(error).__name__},
        )


class CompositeObserver(SyncObserver):
    """Fans out to several observers; one failing observer does not stop the rest."""

    def __init__(self, observers: Iterable[SyncObserver]) -> None:
        self.observers = list(observers)

    def _each(self, method: str, *args: object) -> None:
        for observer in self.observers:
            try:
                getattr(observer, method)(*args)
            except Exception:
                logger.exception(f"Observer {type(observer).__name__}.{method} failed")

    def on_sync_result(self, result: SyncResult) -> None:
        self._each("on_sync_result", result)

    def on_migration(self, result: MigrationResult) -> None:
        self._each("on_migration", result)

    def on_client_state(self, state: ClientState) -> None:
        self._each("on_client_state", state)

    def on_error(self, collection: str, error: Exception) -> None:
        self._each("on_error", collection, error)


def notify(observer: SyncObserver | None, method: str, *args: object) -> None:
    """Call an observer hook, logging instead of raising on failure."""
    if observer is None:
        return
    try:
        getattr(observer, method)(*args)
    except Exception:
        logger.exception(f"Observer {type(observer).__name__}.{method} failed")
