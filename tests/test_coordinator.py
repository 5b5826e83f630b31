"""
Tests for the per-collection storage coordinator.

Covers cache-first writes, background mirroring in write order, fallback
to the cache when the remote is unavailable, and migration on first load.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import replace
from pathlib import Path

import pytest

from shuttle_storage.exceptions import RemoteQueryError, TransportError
from shuttle_storage.id_utils import is_canonical_id
from shuttle_storage.local import LocalCache
from shuttle_storage.migration import MigrationStatus
from shuttle_storage.models import Player
from shuttle_storage.registry import DEFAULT_REGISTRY, CollectionKey
from shuttle_storage.remote import ClientState, RemoteClient, RemoteConfig
from shuttle_storage.storage import StorageCoordinator

from .conftest import FakeRemoteStore, RecordingObserver

PLAYERS = DEFAULT_REGISTRY.get(CollectionKey.PLAYERS)
ELO_HISTORY = DEFAULT_REGISTRY.get(CollectionKey.ELO_HISTORY)
MATCH_EVENTS = DEFAULT_REGISTRY.get(CollectionKey.MATCH_EVENTS)


@pytest.fixture
async def players(
    cache: LocalCache, client: RemoteClient, observer: RecordingObserver
) -> AsyncIterator[StorageCoordinator]:
    coordinator = StorageCoordinator(PLAYERS, cache, client, observer=observer)
    yield coordinator
    await coordinator.close()


def writes(store: FakeRemoteStore) -> list[str]:
    """Remote write operations in the order they were received."""
    return [op for op, _ in store.calls if op in ("insert", "update", "delete")]


class TestInitialize:
    """Tests for loading the initial snapshot."""

    async def test_local_only_without_client(self, cache: LocalCache) -> None:
        await cache.save_snapshot(PLAYERS.name, [{"id": "local-1", "name": "Ana"}])
        coordinator = StorageCoordinator(PLAYERS, cache)

        items = await coordinator.initialize()

        assert items == [{"id": "local-1", "name": "Ana"}]
        health = coordinator.health()
        assert health.initialized
        assert not health.remote_capable
        assert health.healthy

    async def test_malformed_cache_starts_empty(self, cache: LocalCache, cache_dir: Path) -> None:
        cache_dir.mkdir(parents=True)
        (cache_dir / f"{PLAYERS.name}.json").write_text("[{broken")
        coordinator = StorageCoordinator(PLAYERS, cache)

        assert await coordinator.initialize() == []

    async def test_undecodable_cache_starts_empty(
        self, cache: LocalCache, cache_dir: Path
    ) -> None:
        cache_dir.mkdir(parents=True)
        (cache_dir / f"{PLAYERS.name}.json").write_bytes(b'[{"id": "x", "name": "\xff\xfe"}]')
        coordinator = StorageCoordinator(PLAYERS, cache)

        assert await coordinator.initialize() == []
        assert not await cache.has(PLAYERS.name)

    async def test_loads_remote_and_refreshes_cache(
        self, players: StorageCoordinator, cache: LocalCache, fake_store: FakeRemoteStore
    ) -> None:
        fake_store.seed("players", [{"name": "Ana", "current_elo": 130}])
        await cache.save_snapshot(PLAYERS.name, [{"id": "stale", "name": "Old"}])

        items = await players.initialize()

        assert [p["name"] for p in items] == ["Ana"]
        assert items[0]["elo"] == 130
        assert await cache.load_snapshot(PLAYERS.name) == items
        assert players.health().remote_active

    async def test_migrates_cache_into_empty_remote(
        self,
        players: StorageCoordinator,
        cache: LocalCache,
        fake_store: FakeRemoteStore,
        observer: RecordingObserver,
    ) -> None:
        await cache.save_snapshot(
            PLAYERS.name,
            [{"id": "local-1", "name": "Ana"}, {"id": "local-2", "name": "Ben"}],
        )

        items = await players.initialize()

        assert len(fake_store.tables["players"]) == 2
        assert all(is_canonical_id(p["id"]) for p in items)
        assert observer.migrations[-1].status == MigrationStatus.COMPLETED
        assert players.unsynced_ids() == set()

    async def test_unmigrated_items_stay_pending(
        self, players: StorageCoordinator, cache: LocalCache
    ) -> None:
        await cache.save_snapshot(
            PLAYERS.name,
            [{"id": "local-1", "name": "Ana"}, {"id": "local-blank", "name": ""}],
        )

        items = await players.initialize()

        assert [p["id"] for p in items][-1] == "local-blank"
        assert players.unsynced_ids() == {"local-blank"}

    async def test_falls_back_to_cache_when_remote_read_fails(
        self, players: StorageCoordinator, cache: LocalCache, fake_store: FakeRemoteStore
    ) -> None:
        await cache.save_snapshot(PLAYERS.name, [{"id": "local-1", "name": "Ana"}])
        fake_store.fail("select", RemoteQueryError("players", "select", "500"))

        items = await players.initialize()

        assert items == [{"id": "local-1", "name": "Ana"}]
        health = players.health()
        assert not health.remote_active
        assert health.last_error

    async def test_falls_back_to_cache_when_unreachable(
        self, players: StorageCoordinator, cache: LocalCache, fake_store: FakeRemoteStore
    ) -> None:
        await cache.save_snapshot(PLAYERS.name, [{"id": "local-1", "name": "Ana"}])
        fake_store.fail("ping", TransportError("fake://remote"), times=None)

        items = await players.initialize()

        assert items == [{"id": "local-1", "name": "Ana"}]
        assert players.client is not None
        assert players.client.state == ClientState.UNINITIALIZED
        assert not players.health().remote_active

    async def test_unconfigured_remote_is_cache_only(self, cache: LocalCache) -> None:
        coordinator = StorageCoordinator(PLAYERS, cache, RemoteClient(RemoteConfig()))

        await coordinator.initialize()
        await coordinator.write([{"name": "Ana"}])

        health = coordinator.health()
        assert not health.remote_capable
        assert health.pending_writes == 0
        assert health.healthy

    async def test_disabled_client_reports_its_error(self, cache: LocalCache) -> None:
        coordinator = StorageCoordinator(PLAYERS, cache, RemoteClient(RemoteConfig()))

        await coordinator.initialize()

        last_error = coordinator.health().last_error
        assert last_error is not None
        assert "SHUTTLE_REMOTE_URL" in last_error

    async def test_cache_loaded_collection_ignores_remote_rows(
        self, cache: LocalCache, client: RemoteClient, fake_store: FakeRemoteStore
    ) -> None:
        player = fake_store.seed("players", [{"name": "Ana"}])[0]
        session = fake_store.seed("sessions", [{"name": "Club"}])[0]
        fake_store.seed("elo_history", [{"player_id": player["id"], "session_id": session["id"]}])
        cached = [{"id": "local-elo", "player_id": player["id"], "elo_change": 5}]
        await cache.save_snapshot(ELO_HISTORY.name, cached)
        coordinator = StorageCoordinator(ELO_HISTORY, cache, client)

        assert await coordinator.initialize() == cached
        assert coordinator.health().remote_active
        await coordinator.close()


class TestWrite:
    """Tests for cache-first writes."""

    async def test_write_commits_to_cache_before_sync(
        self, players: StorageCoordinator, cache: LocalCache, fake_store: FakeRemoteStore
    ) -> None:
        await players.initialize()

        committed = await players.write([{"id": "local-1", "name": "Ana"}])

        assert committed == [{"id": "local-1", "name": "Ana"}]
        assert players.read() == committed
        assert [p["name"] for p in await cache.load_snapshot(PLAYERS.name)] == ["Ana"]

        await players.flush()
        assert [p["name"] for p in fake_store.tables["players"]] == ["Ana"]

    async def test_updater_receives_current_snapshot(self, players: StorageCoordinator) -> None:
        await players.initialize()
        await players.write([{"id": "a", "name": "Ana"}])

        await players.write(lambda items: items + [{"id": "b", "name": "Ben"}])

        assert [p["name"] for p in players.read()] == ["Ana", "Ben"]

    async def test_items_are_normalized(self, players: StorageCoordinator) -> None:
        await players.initialize()

        items = await players.write([None, Player(name="Ana"), {"name": "Ben"}])

        assert [p["name"] for p in items] == ["Ana", "Ben"]
        assert all(p["id"] for p in items)
        assert items[0]["elo"] == 100

    async def test_read_returns_a_copy(self, players: StorageCoordinator) -> None:
        await players.initialize()
        await players.write([{"id": "a", "name": "Ana"}])

        players.read().clear()

        assert len(players.read()) == 1

    async def test_writes_sync_in_order(
        self, players: StorageCoordinator, fake_store: FakeRemoteStore
    ) -> None:
        await players.initialize()

        await players.write([{"id": "local-1", "name": "Ana", "elo": 100}])
        await players.write([{"id": "local-1", "name": "Ana", "elo": 130}])
        await players.write([])
        await players.flush()

        assert writes(fake_store) == ["insert", "update", "delete"]
        assert fake_store.tables["players"] == []
        assert players.health().unsynced == 0

    async def test_unchanged_write_makes_no_remote_calls(
        self, players: StorageCoordinator, fake_store: FakeRemoteStore
    ) -> None:
        fake_store.seed("players", [{"name": "Ana"}])
        items = await players.initialize()
        fake_store.calls.clear()

        await players.write([dict(item) for item in items])
        await players.flush()

        assert fake_store.calls == []

    async def test_remote_failure_keeps_local_commit(
        self,
        players: StorageCoordinator,
        cache: LocalCache,
        fake_store: FakeRemoteStore,
        observer: RecordingObserver,
    ) -> None:
        await players.initialize()
        fake_store.fail("insert", RemoteQueryError("players", "insert", "500"))

        await players.write([{"id": "local-1", "name": "Ana"}])
        await players.flush()

        assert players.read() == [{"id": "local-1", "name": "Ana"}]
        assert await cache.load_snapshot(PLAYERS.name) == players.read()
        health = players.health()
        assert health.unsynced == 1
        assert health.last_error
        assert not health.healthy
        assert not observer.results[-1].success

    async def test_next_write_retries_failed_items(
        self, players: StorageCoordinator, fake_store: FakeRemoteStore
    ) -> None:
        await players.initialize()
        fake_store.fail("insert", RemoteQueryError("players", "insert", "500"))
        await players.write([{"id": "local-1", "name": "Ana"}])
        await players.flush()

        await players.write(lambda items: items + [{"id": "local-2", "name": "Ben"}])
        await players.flush()

        assert {p["name"] for p in fake_store.tables["players"]} == {"Ana", "Ben"}
        assert players.health().unsynced == 0

    async def test_unreachable_remote_never_reaches_caller(
        self, players: StorageCoordinator, fake_store: FakeRemoteStore
    ) -> None:
        fake_store.fail("ping", TransportError("fake://remote"), times=None)
        await players.initialize()

        await players.write([{"id": "local-1", "name": "Ana"}])
        await players.flush()

        assert players.read() == [{"id": "local-1", "name": "Ana"}]
        assert players.last_result is not None
        assert not players.last_result.remote_available
        assert players.health().unsynced == 1


class TestItemHelpers:
    """Tests for add_item, update_item and remove_item."""

    async def test_add_assigns_local_id(self, players: StorageCoordinator) -> None:
        await players.initialize()

        added = await players.add_item({"name": "Ana"})

        assert added["id"]
        assert not is_canonical_id(added["id"])
        assert players.read() == [added]

    async def test_update_merges_changes(self, players: StorageCoordinator) -> None:
        await players.initialize()
        added = await players.add_item({"name": "Ana", "elo": 100})

        updated = await players.update_item(added["id"], {"elo": 115, "id": "ignored"})

        assert updated == {"id": added["id"], "name": "Ana", "elo": 115}
        assert players.read() == [updated]

    async def test_update_missing_item(self, players: StorageCoordinator) -> None:
        await players.initialize()

        assert await players.update_item("nope", {"elo": 1}) is None

    async def test_remove(self, players: StorageCoordinator) -> None:
        await players.initialize()
        added = await players.add_item({"name": "Ana"})

        assert await players.remove_item(added["id"]) is True
        assert await players.remove_item(added["id"]) is False
        assert players.read() == []


class TestIdAdoption:
    """Items created offline take over the canonical id the remote assigns."""

    @pytest.fixture
    async def events(
        self, cache: LocalCache, client: RemoteClient
    ) -> AsyncIterator[StorageCoordinator]:
        coordinator = StorageCoordinator(MATCH_EVENTS, cache, client)
        await coordinator.initialize()
        yield coordinator
        await coordinator.close()

    @pytest.fixture
    def match_id(self, fake_store: FakeRemoteStore) -> str:
        return fake_store.seed("matches", [{"court_number": 1}])[0]["id"]

    async def test_inserted_item_adopts_canonical_id(
        self, players: StorageCoordinator, cache: LocalCache, fake_store: FakeRemoteStore
    ) -> None:
        await players.initialize()

        added = await players.add_item({"name": "Ana"})
        await players.flush()

        [item] = players.read()
        assert item["id"] != added["id"]
        assert item["id"] == fake_store.tables["players"][0]["id"]
        assert await cache.load_snapshot(PLAYERS.name) == [item]
        assert players.unsynced_ids() == set()

    async def test_update_after_sync_reaches_remote(
        self, events: StorageCoordinator, fake_store: FakeRemoteStore, match_id: str
    ) -> None:
        added = await events.add_item({"match_id": match_id, "event_type": "started"})
        await events.flush()

        updated = await events.update_item(added["id"], {"event_type": "completed"})
        await events.flush()

        assert updated is not None
        assert is_canonical_id(updated["id"])
        [row] = fake_store.tables["match_events"]
        assert row["id"] == updated["id"]
        assert row["event_type"] == "completed"
        assert events.unsynced_ids() == set()

    async def test_queued_update_follows_adopted_id(
        self, events: StorageCoordinator, fake_store: FakeRemoteStore, match_id: str
    ) -> None:
        added = await events.add_item({"match_id": match_id, "event_type": "started"})
        await events.update_item(added["id"], {"event_type": "completed"})
        await events.flush()

        assert fake_store.count("insert", "match_events") == 1
        [row] = fake_store.tables["match_events"]
        assert row["event_type"] == "completed"
        assert events.health().healthy

    async def test_remove_by_local_id_after_sync(
        self, events: StorageCoordinator, fake_store: FakeRemoteStore, match_id: str
    ) -> None:
        added = await events.add_item({"match_id": match_id, "event_type": "started"})
        await events.flush()

        assert await events.remove_item(added["id"]) is True
        await events.flush()

        assert fake_store.tables["match_events"] == []

    async def test_listener_receives_assigned_ids(
        self, players: StorageCoordinator, fake_store: FakeRemoteStore
    ) -> None:
        received: list[dict[str, str]] = []

        async def listener(spec: object, assigned: dict[str, str]) -> None:
            received.append(assigned)

        players.on_ids_assigned(listener)
        await players.initialize()
        added = await players.add_item({"name": "Ana"})
        await players.flush()

        assert received == [{added["id"]: fake_store.tables["players"][0]["id"]}]

    async def test_references_rewritten_and_retried(
        self, cache: LocalCache, client: RemoteClient, fake_store: FakeRemoteStore
    ) -> None:
        courts = StorageCoordinator(DEFAULT_REGISTRY.get(CollectionKey.COURTS), cache, client)
        await courts.initialize()
        await courts.add_item({"session_id": "local-session", "court_number": 1})
        await courts.flush()
        assert fake_store.tables["courts"] == []

        session = fake_store.seed("sessions", [{"name": "Tuesday Club"}])[0]
        await courts.adopt_references(("session_id",), {"local-session": session["id"]})
        await courts.flush()

        [row] = fake_store.tables["courts"]
        assert row["session_id"] == session["id"]
        assert courts.read()[0]["session_id"] == session["id"]
        assert courts.unsynced_ids() == set()
        await courts.close()


class TestResyncAndRefresh:
    """Tests for explicit resync and refresh."""

    async def test_resync_retries_unsynced(
        self, players: StorageCoordinator, fake_store: FakeRemoteStore
    ) -> None:
        await players.initialize()
        fake_store.fail("insert", RemoteQueryError("players", "insert", "500"))
        await players.write([{"id": "local-1", "name": "Ana"}])
        await players.flush()

        result = await players.resync()

        assert result is not None
        assert result.success
        assert result.inserted == 1
        assert players.health().healthy

    async def test_resync_without_remote(self, cache: LocalCache) -> None:
        coordinator = StorageCoordinator(PLAYERS, cache)
        await coordinator.initialize()

        assert await coordinator.resync() is None

    async def test_refresh_pulls_remote_changes(
        self, players: StorageCoordinator, fake_store: FakeRemoteStore
    ) -> None:
        await players.initialize()
        fake_store.seed("players", [{"name": "Ana"}])

        assert await players.refresh() is True
        assert [p["name"] for p in players.read()] == ["Ana"]

    async def test_refresh_refused_with_pending_changes(
        self, players: StorageCoordinator, fake_store: FakeRemoteStore
    ) -> None:
        await players.initialize()
        fake_store.fail("insert", RemoteQueryError("players", "insert", "500"))
        await players.write([{"id": "local-1", "name": "Ana"}])
        await players.flush()

        assert await players.refresh() is False
        assert players.read() == [{"id": "local-1", "name": "Ana"}]


class TestLocalOnlyCollection:
    """A collection flagged local-only never reaches the remote."""

    async def test_writes_stay_local(
        self, cache: LocalCache, client: RemoteClient, fake_store: FakeRemoteStore
    ) -> None:
        spec = replace(PLAYERS, remote_capable=False)
        coordinator = StorageCoordinator(spec, cache, client)

        await coordinator.initialize()
        await coordinator.write([{"name": "Ana"}])
        await coordinator.flush()

        assert fake_store.calls == []
        assert coordinator.health().healthy
        await coordinator.close()


class TestClose:
    """Tests for shutting a coordinator down."""

    async def test_close_keeps_cache(
        self, players: StorageCoordinator, cache: LocalCache
    ) -> None:
        await players.initialize()
        await players.write([{"id": "local-1", "name": "Ana"}])

        await players.close()

        assert await cache.load_snapshot(PLAYERS.name) == [{"id": "local-1", "name": "Ana"}]
        assert players.health().pending_writes == 0
