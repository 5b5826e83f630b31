"""
Shared test configuration and fixtures.

Provides an in-memory FakeRemoteStore that behaves like the hosted
relational store (canonical ids, server defaults, unique constraints),
records every call it receives and can be told to fail specific
operations.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import AsyncIterator, Mapping, Sequence
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from shuttle_storage.exceptions import ConstraintViolation
from shuttle_storage.id_utils import new_canonical_id
from shuttle_storage.local import LocalCache
from shuttle_storage.migration import MigrationResult
from shuttle_storage.observability import SyncObserver
from shuttle_storage.remote import ClientState, RemoteClient, RemoteConfig, RemoteStore
from shuttle_storage.sync import DifferentialSyncEngine, SyncResult

logger = logging.getLogger(__name__)

TABLES = (
    "players",
    "sessions",
    "session_players",
    "matches",
    "elo_history",
    "courts",
    "match_events",
    "session_settings",
)

UNIQUE_KEYS: dict[str, list[tuple[str, ...]]] = {
    "players": [("name",), ("email",)],
    "session_players": [("session_id", "player_id")],
    "courts": [("session_id", "court_number")],
    "session_settings": [("session_id",)],
}

SERVER_DEFAULTS: dict[str, str] = {
    "players": "created_at",
    "sessions": "created_at",
    "session_players": "joined_at",
    "matches": "started_at",
    "elo_history": "created_at",
    "courts": "created_at",
    "match_events": "created_at",
    "session_settings": "created_at",
}

_EPOCH = datetime(2025, 1, 1, tzinfo=UTC)


class FakeRemoteStore(RemoteStore):
    """
    In-memory remote store for testing without a server.

    Inserts are atomic per call, like a single INSERT statement.
    """

    endpoint = "fake://remote"

    def __init__(self) -> None:
        self.tables: dict[str, list[dict[str, Any]]] = {table: [] for table in TABLES}
        self.calls: list[tuple[str, str]] = []
        self.closed = False
        self._failures: dict[str, list[Exception | None]] = {}
        self._sticky: dict[str, Exception] = {}
        self._clock = 0

    # Test helpers

    def fail(self, operation: str, error: Exception, times: int | None = 1) -> None:
        """Make the next ``times`` calls of an operation raise (None: until cleared)."""
        if times is None:
            self._sticky[operation] = error
        else:
            self._failures.setdefault(operation, []).extend([error] * times)

    def clear_failures(self) -> None:
        self._failures.clear()
        self._sticky.clear()

    def count(self, operation: str | None = None, table: str | None = None) -> int:
        return sum(
            1
            for op, tbl in self.calls
            if (operation is None or op == operation) and (table is None or tbl == table)
        )

    def seed(self, table: str, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Insert rows directly, bypassing call tracking and failures."""
        stored = [self._stored(table, row) for row in rows]
        self.tables[table].extend(stored)
        return copy.deepcopy(stored)

    def _record(self, operation: str, table: str) -> None:
        self.calls.append((operation, table))
        if operation in self._sticky:
            raise self._sticky[operation]
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)

    def _stored(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        stored = dict(row)
        if not stored.get("id"):
            stored["id"] = new_canonical_id()
        default_column = SERVER_DEFAULTS[table]
        if stored.get(default_column) is None:
            self._clock += 1
            stored[default_column] = (_EPOCH + timedelta(seconds=self._clock)).isoformat()
        return stored

    def _check_unique(
        self, table: str, row: dict[str, Any], existing: list[dict[str, Any]]
    ) -> None:
        for other in existing:
            if other["id"] == row["id"]:
                raise ConstraintViolation(table, f"duplicate id {row['id']}")
            for columns in UNIQUE_KEYS.get(table, []):
                values = [row.get(c) for c in columns]
                if any(v is None for v in values):
                    continue
                if values == [other.get(c) for c in columns]:
                    raise ConstraintViolation(table, f"duplicate {', '.join(columns)}")

    # RemoteStore

    async def ping(self) -> None:
        self._record("ping", "players")

    async def select(
        self,
        table: str,
        *,
        columns: Sequence[str] | None = None,
        filters: Mapping[str, Any] | None = None,
        null_columns: Sequence[str] = (),
        order_by: str | None = None,
        ascending: bool = True,
    ) -> list[dict[str, Any]]:
        self._record("select", table)
        rows = [
            row
            for row in self.tables[table]
            if all(row.get(k) == v for k, v in (filters or {}).items())
            and all(row.get(c) is None for c in null_columns)
        ]
        if order_by:
            rows = sorted(
                rows,
                key=lambda r: (r.get(order_by) is None, r.get(order_by) or ""),
                reverse=not ascending,
            )
        if columns:
            return [{c: row.get(c) for c in columns} for row in rows]
        return copy.deepcopy(rows)

    async def insert(self, table: str, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        self._record("insert", table)
        staged: list[dict[str, Any]] = []
        for row in rows:
            stored = self._stored(table, row)
            self._check_unique(table, stored, self.tables[table] + staged)
            staged.append(stored)
        self.tables[table].extend(staged)
        return copy.deepcopy(staged)

    async def update(
        self,
        table: str,
        values: dict[str, Any],
        filters: Mapping[str, Any],
    ) -> list[dict[str, Any]]:
        self._record("update", table)
        updated = []
        for row in self.tables[table]:
            if all(row.get(k) == v for k, v in filters.items()):
                row.update(values)
                updated.append(copy.deepcopy(row))
        return updated

    async def delete(self, table: str, ids: list[str]) -> int:
        self._record("delete", table)
        before = len(self.tables[table])
        self.tables[table] = [row for row in self.tables[table] if row["id"] not in ids]
        return before - len(self.tables[table])

    async def close(self) -> None:
        self.closed = True


class RecordingObserver(SyncObserver):
    """Observer that keeps everything it is told."""

    def __init__(self) -> None:
        self.results: list[SyncResult] = []
        self.migrations: list[MigrationResult] = []
        self.states: list[ClientState] = []
        self.errors: list[tuple[str, Exception]] = []

    def on_sync_result(self, result: SyncResult) -> None:
        self.results.append(result)

    def on_migration(self, result: MigrationResult) -> None:
        self.migrations.append(result)

    def on_client_state(self, state: ClientState) -> None:
        self.states.append(state)

    def on_error(self, collection: str, error: Exception) -> None:
        self.errors.append((collection, error))


def store_factory_for(store: RemoteStore):
    """Build a RemoteClient store factory that always hands out ``store``."""

    async def factory(config: RemoteConfig) -> RemoteStore:
        return store

    return factory


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def fake_store() -> FakeRemoteStore:
    return FakeRemoteStore()


@pytest.fixture
def remote_config() -> RemoteConfig:
    return RemoteConfig(url="https://test.supabase.co", api_key="test-key")


@pytest.fixture
async def client(
    fake_store: FakeRemoteStore, remote_config: RemoteConfig
) -> AsyncIterator[RemoteClient]:
    """RemoteClient wired to the fake store."""
    client = RemoteClient(remote_config, store_factory=store_factory_for(fake_store))
    yield client
    await client.close()


@pytest.fixture
def engine(client: RemoteClient) -> DifferentialSyncEngine:
    return DifferentialSyncEngine(client)


@pytest.fixture
def observer() -> RecordingObserver:
    return RecordingObserver()


@pytest.fixture
def cache_dir(tmp_path: Path) -> Path:
    return tmp_path / "cache"


@pytest.fixture
def cache(cache_dir: Path) -> LocalCache:
    return LocalCache(cache_dir)
