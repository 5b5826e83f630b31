"""Tests for the one-time migration of cached collections."""

from __future__ import annotations

from datetime import datetime

import pytest

from shuttle_storage.exceptions import RemoteQueryError
from shuttle_storage.id_utils import is_canonical_id
from shuttle_storage.local import LocalCache
from shuttle_storage.migration import MigrationManager, MigrationResult, MigrationStatus
from shuttle_storage.registry import DEFAULT_REGISTRY, CollectionKey
from shuttle_storage.remote import RemoteClient, RemoteConfig
from shuttle_storage.sync import DifferentialSyncEngine

from .conftest import FakeRemoteStore

PLAYERS = DEFAULT_REGISTRY.get(CollectionKey.PLAYERS)

LOCAL_PLAYERS = [
    {"id": "1711000000aaa111", "name": "Ana", "elo": 120},
    {"id": "1711000000bbb222", "name": "Ben", "elo": 95},
]


@pytest.fixture
def manager(cache: LocalCache, engine: DifferentialSyncEngine) -> MigrationManager:
    return MigrationManager(cache, engine)


class TestMigrationResult:
    """Tests for MigrationResult."""

    def test_duration_calculation(self) -> None:
        result = MigrationResult(collection="badminton-sessions")
        result.started_at = datetime(2025, 1, 1, 12, 0, 0)
        result.completed_at = datetime(2025, 1, 1, 12, 0, 5)

        assert result.duration_seconds == 5.0

    def test_duration_none_when_incomplete(self) -> None:
        result = MigrationResult(
            collection="badminton-sessions", status=MigrationStatus.IN_PROGRESS
        )

        assert result.duration_seconds is None

    def test_to_dict(self) -> None:
        result = MigrationResult(
            collection="badminton-sessions",
            status=MigrationStatus.COMPLETED,
            total=3,
            migrated=2,
            duplicates=1,
        )

        data = result.to_dict()

        assert data["collection"] == "badminton-sessions"
        assert data["status"] == "completed"
        assert data["migrated"] == 2
        assert result.ran


class TestGate:
    """Migration runs only when the remote is empty, data exists and no marker is set."""

    async def test_remote_not_empty(
        self, manager: MigrationManager, fake_store: FakeRemoteStore
    ) -> None:
        rows = fake_store.seed("players", [{"name": "Zed"}])

        result = await manager.migrate(PLAYERS, rows, LOCAL_PLAYERS)

        assert result.status == MigrationStatus.SKIPPED
        assert result.reason == "remote collection is not empty"
        assert fake_store.count("insert") == 0

    async def test_no_local_data(
        self, manager: MigrationManager, fake_store: FakeRemoteStore
    ) -> None:
        result = await manager.migrate(PLAYERS, [], [])

        assert result.status == MigrationStatus.SKIPPED
        assert result.reason == "no local data"

    async def test_already_migrated(
        self, manager: MigrationManager, cache: LocalCache, fake_store: FakeRemoteStore
    ) -> None:
        await cache.mark_migrated(PLAYERS.name)

        result = await manager.migrate(PLAYERS, [], LOCAL_PLAYERS)

        assert result.status == MigrationStatus.SKIPPED
        assert result.reason == "already migrated"
        assert fake_store.count("insert") == 0


class TestMigrate:
    """Tests for running the migration."""

    async def test_inserts_and_rereads_remote(
        self, manager: MigrationManager, cache: LocalCache, fake_store: FakeRemoteStore
    ) -> None:
        result = await manager.migrate(PLAYERS, [], LOCAL_PLAYERS)

        assert result.status == MigrationStatus.COMPLETED
        assert result.migrated == 2
        assert await cache.is_migrated(PLAYERS.name)

        assert result.snapshot is not None
        assert [p["name"] for p in result.snapshot] == ["Ana", "Ben"]
        assert all(is_canonical_id(p["id"]) for p in result.snapshot)
        assert result.snapshot[0]["elo"] == 120

    async def test_reports_assigned_ids(
        self, manager: MigrationManager, fake_store: FakeRemoteStore
    ) -> None:
        result = await manager.migrate(PLAYERS, [], LOCAL_PLAYERS)

        stored = {row["name"]: row["id"] for row in fake_store.tables["players"]}
        assert result.assigned_ids == {
            "1711000000aaa111": stored["Ana"],
            "1711000000bbb222": stored["Ben"],
        }

    async def test_reads_cache_when_items_not_given(
        self, manager: MigrationManager, cache: LocalCache, fake_store: FakeRemoteStore
    ) -> None:
        await cache.save_snapshot(PLAYERS.name, LOCAL_PLAYERS)

        result = await manager.migrate(PLAYERS, [])

        assert result.migrated == 2
        assert len(fake_store.tables["players"]) == 2

    async def test_runs_at_most_once(
        self, manager: MigrationManager, fake_store: FakeRemoteStore
    ) -> None:
        await manager.migrate(PLAYERS, [], LOCAL_PLAYERS)
        fake_store.tables["players"].clear()

        second = await manager.migrate(PLAYERS, [], LOCAL_PLAYERS)

        assert second.status == MigrationStatus.SKIPPED
        assert fake_store.tables["players"] == []

    async def test_duplicates_tolerated(
        self, manager: MigrationManager, fake_store: FakeRemoteStore
    ) -> None:
        fake_store.seed("players", [{"name": "Ben"}])

        # Gate sees an empty remote; the insert then meets the existing row
        result = await manager.migrate(PLAYERS, [], LOCAL_PLAYERS)

        assert result.status == MigrationStatus.COMPLETED
        assert result.migrated == 1
        assert result.duplicates == 1
        assert len(fake_store.tables["players"]) == 2

    async def test_marker_set_even_when_all_rows_fail(
        self, manager: MigrationManager, cache: LocalCache, fake_store: FakeRemoteStore
    ) -> None:
        fake_store.fail("insert", RemoteQueryError("players", "insert", "500"), times=None)

        result = await manager.migrate(PLAYERS, [], LOCAL_PLAYERS)

        assert result.status == MigrationStatus.FAILED
        assert result.failed_ids == {item["id"] for item in LOCAL_PLAYERS}
        assert await cache.is_migrated(PLAYERS.name)
        assert result.snapshot == []

    async def test_invalid_items_are_skipped(
        self, manager: MigrationManager, fake_store: FakeRemoteStore
    ) -> None:
        items = LOCAL_PLAYERS + [{"id": "local-blank", "name": ""}]

        result = await manager.migrate(PLAYERS, [], items)

        assert result.skipped == 1
        assert "local-blank" in result.failed_ids
        assert result.migrated == 2

    async def test_unavailable_remote_marks_failed(self, cache: LocalCache) -> None:
        engine = DifferentialSyncEngine(RemoteClient(RemoteConfig()))
        manager = MigrationManager(cache, engine)

        result = await manager.migrate(PLAYERS, [], LOCAL_PLAYERS)

        assert result.status == MigrationStatus.FAILED
        assert result.snapshot is None
        assert await cache.is_migrated(PLAYERS.name)

    async def test_reset_allows_another_run(
        self, manager: MigrationManager, cache: LocalCache, fake_store: FakeRemoteStore
    ) -> None:
        await manager.migrate(PLAYERS, [], LOCAL_PLAYERS)
        fake_store.tables["players"].clear()

        assert await manager.reset(PLAYERS) is True
        result = await manager.migrate(PLAYERS, [], LOCAL_PLAYERS)

        assert result.status == MigrationStatus.COMPLETED
        assert len(fake_store.tables["players"]) == 2
