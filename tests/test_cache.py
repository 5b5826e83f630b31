"""Tests for the local cache."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

import pytest

from shuttle_storage.exceptions import MalformedCacheError
from shuttle_storage.local import LocalCache, migration_marker_key


class TestRawValues:
    """Tests for get/set/delete/has."""

    async def test_missing_key_reads_none(self, cache: LocalCache) -> None:
        assert await cache.get("badminton_courts") is None
        assert not await cache.has("badminton_courts")

    async def test_set_then_get(self, cache: LocalCache, cache_dir: Path) -> None:
        await cache.set("badminton_courts", [{"id": "c1", "court_number": 1}])

        assert await cache.get("badminton_courts") == [{"id": "c1", "court_number": 1}]
        assert (cache_dir / "badminton_courts.json").exists()
        assert not list(cache_dir.glob(".tmp_*"))

    async def test_datetimes_serialized_as_iso(self, cache: LocalCache) -> None:
        moment = datetime(2025, 1, 1, 9, 30, tzinfo=UTC)

        await cache.set("badminton_matches", [{"id": "m1", "started_at": moment}])

        [match] = await cache.get("badminton_matches")
        assert match["started_at"] == moment.isoformat()

    async def test_delete(self, cache: LocalCache) -> None:
        await cache.set("badminton_courts", [])

        assert await cache.delete("badminton_courts") is True
        assert await cache.delete("badminton_courts") is False

    async def test_invalid_json_raises(self, cache: LocalCache, cache_dir: Path) -> None:
        cache_dir.mkdir(parents=True)
        (cache_dir / "badminton_courts.json").write_text("{not json")

        with pytest.raises(MalformedCacheError):
            await cache.get("badminton_courts")

    async def test_invalid_utf8_raises(self, cache: LocalCache, cache_dir: Path) -> None:
        cache_dir.mkdir(parents=True)
        (cache_dir / "badminton_courts.json").write_bytes(b'[{"id": "c1", "name": "\xff\xfe"}]')

        with pytest.raises(MalformedCacheError) as exc_info:
            await cache.get("badminton_courts")
        assert isinstance(exc_info.value.cause, UnicodeDecodeError)

    async def test_key_validation(self, cache: LocalCache) -> None:
        with pytest.raises(ValueError):
            await cache.get("../escape")


class TestSnapshots:
    """Tests for collection snapshots."""

    async def test_absent_collection_is_empty(self, cache: LocalCache) -> None:
        assert await cache.load_snapshot("badminton-global-players") == []

    async def test_malformed_snapshot_resets_to_empty(
        self, cache: LocalCache, cache_dir: Path
    ) -> None:
        cache_dir.mkdir(parents=True)
        path = cache_dir / "badminton-global-players.json"
        path.write_text('[{"id": "1", "name": "Ana"')

        assert await cache.load_snapshot("badminton-global-players") == []
        assert not path.exists()

    async def test_undecodable_snapshot_resets_to_empty(
        self, cache: LocalCache, cache_dir: Path
    ) -> None:
        cache_dir.mkdir(parents=True)
        path = cache_dir / "badminton-global-players.json"
        path.write_bytes(b'[{"id": "x", "name": "\xff\xfe"}]')

        assert await cache.load_snapshot("badminton-global-players") == []
        assert not path.exists()

    async def test_non_list_value_is_empty(self, cache: LocalCache) -> None:
        await cache.set("badminton-sessions", {"id": "1"})

        assert await cache.load_snapshot("badminton-sessions") == []

    async def test_null_entries_dropped_on_load(self, cache: LocalCache, cache_dir: Path) -> None:
        cache_dir.mkdir(parents=True)
        (cache_dir / "badminton-sessions.json").write_text(
            json.dumps([None, {"id": "1", "name": "Club"}, None])
        )

        assert await cache.load_snapshot("badminton-sessions") == [{"id": "1", "name": "Club"}]

    async def test_null_entries_dropped_on_save(self, cache: LocalCache) -> None:
        await cache.save_snapshot("badminton-sessions", [{"id": "1"}, None])

        assert await cache.get("badminton-sessions") == [{"id": "1"}]


class TestMigrationMarkers:
    """Tests for the per-collection migration markers."""

    async def test_marker_lifecycle(self, cache: LocalCache) -> None:
        key = "badminton-global-players"
        assert not await cache.is_migrated(key)

        await cache.mark_migrated(key)

        assert await cache.is_migrated(key)
        assert await cache.get(migration_marker_key(key)) is True

        assert await cache.reset_migration_flag(key) is True
        assert not await cache.is_migrated(key)
        assert await cache.reset_migration_flag(key) is False

    def test_marker_key_format(self) -> None:
        assert migration_marker_key("badminton_matches") == "badminton_matches_migrated"

    async def test_corrupt_marker_counts_as_migrated(
        self, cache: LocalCache, cache_dir: Path
    ) -> None:
        cache_dir.mkdir(parents=True)
        (cache_dir / "badminton_matches_migrated.json").write_text("tru")

        assert await cache.is_migrated("badminton_matches")

    async def test_undecodable_marker_counts_as_migrated(
        self, cache: LocalCache, cache_dir: Path
    ) -> None:
        cache_dir.mkdir(parents=True)
        (cache_dir / "badminton_matches_migrated.json").write_bytes(b"\xfftrue")

        assert await cache.is_migrated("badminton_matches")
