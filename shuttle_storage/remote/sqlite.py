"""
SQLite remote store.

Implements the relational schema of the hosted database in a single SQLite
file. Used for self-hosted deployments and for exercising the sync engine
against a real relational store in tests.

Differences from the hosted database are kept invisible to callers:
- canonical ids are generated on insert when a row has none
- booleans are stored as INTEGER and decoded back to bool
- JSON columns are stored as TEXT and decoded back to objects
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import aiosqlite

from ..exceptions import ConstraintViolation, RemoteQueryError, TransportError
from ..id_utils import new_canonical_id
from .base import RemoteConfig, RemoteStore

logger = logging.getLogger(__name__)

_NOW = "(strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))"

# =============================================================================
# Schema
# =============================================================================

_SCHEMA_STATEMENTS = (
    f"""
    CREATE TABLE IF NOT EXISTS players (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        email TEXT UNIQUE,
        created_at TEXT DEFAULT {_NOW},
        updated_at TEXT DEFAULT {_NOW},
        total_matches INTEGER DEFAULT 0,
        total_wins INTEGER DEFAULT 0,
        total_losses INTEGER DEFAULT 0,
        current_elo INTEGER DEFAULT 100,
        highest_elo INTEGER DEFAULT 100,
        lowest_elo INTEGER DEFAULT 100,
        is_active INTEGER DEFAULT 1,
        last_match_at TEXT,
        avatar_url TEXT
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS sessions (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        description TEXT,
        created_at TEXT DEFAULT {_NOW},
        updated_at TEXT DEFAULT {_NOW},
        ended_at TEXT,
        court_count INTEGER DEFAULT 4,
        max_players INTEGER,
        total_matches_played INTEGER DEFAULT 0,
        session_duration_minutes INTEGER DEFAULT 0,
        is_active INTEGER DEFAULT 1
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS session_players (
        id TEXT PRIMARY KEY,
        session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
        player_id TEXT NOT NULL REFERENCES players(id) ON DELETE CASCADE,
        joined_at TEXT DEFAULT {_NOW},
        left_at TEXT,
        session_matches INTEGER DEFAULT 0,
        session_wins INTEGER DEFAULT 0,
        session_losses INTEGER DEFAULT 0,
        session_elo_start INTEGER DEFAULT 100,
        session_elo_current INTEGER DEFAULT 100,
        session_elo_peak INTEGER DEFAULT 100,
        is_active_in_session INTEGER DEFAULT 1,
        UNIQUE(session_id, player_id)
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS matches (
        id TEXT PRIMARY KEY,
        session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
        court_number INTEGER NOT NULL,
        started_at TEXT DEFAULT {_NOW},
        completed_at TEXT,
        cancelled_at TEXT,
        team1_player1_id TEXT NOT NULL REFERENCES players(id),
        team1_player2_id TEXT NOT NULL REFERENCES players(id),
        team2_player1_id TEXT NOT NULL REFERENCES players(id),
        team2_player2_id TEXT NOT NULL REFERENCES players(id),
        winning_team INTEGER CHECK (winning_team IN (1, 2)),
        score_team1 INTEGER,
        score_team2 INTEGER,
        match_duration_minutes INTEGER,
        match_type TEXT DEFAULT 'doubles',
        notes TEXT
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS elo_history (
        id TEXT PRIMARY KEY,
        player_id TEXT NOT NULL REFERENCES players(id) ON DELETE CASCADE,
        match_id TEXT REFERENCES matches(id) ON DELETE CASCADE,
        session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
        elo_before INTEGER NOT NULL,
        elo_after INTEGER NOT NULL,
        elo_change INTEGER NOT NULL,
        was_winner INTEGER NOT NULL,
        opponent_elo INTEGER NOT NULL,
        created_at TEXT DEFAULT {_NOW}
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS courts (
        id TEXT PRIMARY KEY,
        session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
        court_number INTEGER NOT NULL,
        name TEXT,
        is_available INTEGER DEFAULT 1,
        current_match_id TEXT REFERENCES matches(id),
        created_at TEXT DEFAULT {_NOW},
        notes TEXT,
        UNIQUE(session_id, court_number)
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS match_events (
        id TEXT PRIMARY KEY,
        match_id TEXT NOT NULL REFERENCES matches(id) ON DELETE CASCADE,
        event_type TEXT NOT NULL,
        event_data TEXT,
        created_at TEXT DEFAULT {_NOW},
        player_id TEXT REFERENCES players(id),
        created_by TEXT REFERENCES players(id)
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS session_settings (
        id TEXT PRIMARY KEY,
        session_id TEXT NOT NULL UNIQUE REFERENCES sessions(id) ON DELETE CASCADE,
        starting_elo INTEGER DEFAULT 100,
        win_points INTEGER DEFAULT 25,
        loss_points INTEGER DEFAULT 23,
        min_elo INTEGER DEFAULT 1,
        match_duration_minutes INTEGER DEFAULT 30,
        auto_generate_matches INTEGER DEFAULT 0,
        require_score_entry INTEGER DEFAULT 0,
        notify_on_match_completion INTEGER DEFAULT 1,
        notify_on_player_join INTEGER DEFAULT 1,
        created_at TEXT DEFAULT {_NOW},
        updated_at TEXT DEFAULT {_NOW}
    )
    """,
)

# Columns decoded back from their SQLite storage class
BOOLEAN_COLUMNS: dict[str, frozenset[str]] = {
    "players": frozenset({"is_active"}),
    "sessions": frozenset({"is_active"}),
    "session_players": frozenset({"is_active_in_session"}),
    "elo_history": frozenset({"was_winner"}),
    "courts": frozenset({"is_available"}),
    "session_settings": frozenset(
        {
            "auto_generate_matches",
            "require_score_entry",
            "notify_on_match_completion",
            "notify_on_player_join",
        }
    ),
}

JSON_COLUMNS: dict[str, frozenset[str]] = {
    "match_events": frozenset({"event_data"}),
}

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


@dataclass
class SQLiteRemoteConfig:
    """Configuration for the SQLite remote store."""

    db_path: str | Path = ":memory:"
    foreign_keys: bool = True

    @classmethod
    def from_remote_config(cls, config: RemoteConfig) -> SQLiteRemoteConfig:
        return cls(db_path=config.url or ":memory:")


class SQLiteRemoteStore(RemoteStore):
    """
    RemoteStore backed by an aiosqlite connection.

    Features:
    - Same tables, unique constraints and defaults as the hosted schema
    - Bulk inserts are atomic: one failing row rolls back the batch
    - UNIQUE violations surface as ConstraintViolation
    """

    def __init__(self, config: SQLiteRemoteConfig) -> None:
        self.config = config
        self.endpoint = str(config.db_path)
        self.conn: aiosqlite.Connection | None = None
        self._initialized = False

    @classmethod
    async def create(cls, config: SQLiteRemoteConfig | None = None) -> SQLiteRemoteStore:
        """Create and initialize the store."""
        store = cls(config or SQLiteRemoteConfig())
        await store.initialize()
        return store

    async def initialize(self) -> None:
        """Open the connection and create the schema."""
        if self._initialized:
            return

        try:
            self.conn = await aiosqlite.connect(str(self.config.db_path))
            self.conn.row_factory = aiosqlite.Row
            if self.config.foreign_keys:
                await self.conn.execute("PRAGMA foreign_keys = ON")
            for statement in _SCHEMA_STATEMENTS:
                await self.conn.execute(statement)
            await self.conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_matches_session_court "
                "ON matches(session_id, court_number)"
            )
            await self.conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_elo_history_player ON elo_history(player_id)"
            )
            await self.conn.commit()
            self._initialized = True
            logger.info(f"SQLite remote store initialized: {self.config.db_path}")
        except (sqlite3.Error, OSError) as e:
            raise TransportError(self.endpoint, e) from e

    def _connection(self) -> aiosqlite.Connection:
        if self.conn is None or not self._initialized:
            raise TransportError(self.endpoint, RuntimeError("Store not initialized"))
        return self.conn

    async def close(self) -> None:
        if self.conn:
            await self.conn.close()
            self.conn = None
        self._initialized = False

    # =========================================================================
    # Encoding
    # =========================================================================

    @staticmethod
    def _check_table(table: str) -> None:
        if table not in TABLES:
            raise RemoteQueryError(table, "resolve", "unknown table")

    def _encode(self, table: str, row: Mapping[str, Any]) -> dict[str, Any]:
        encoded: dict[str, Any] = {}
        json_columns = JSON_COLUMNS.get(table, frozenset())
        for column, value in row.items():
            if column in json_columns and value is not None:
                encoded[column] = json.dumps(value)
            elif isinstance(value, bool):
                encoded[column] = int(value)
            else:
                encoded[column] = value
        return encoded

    def _decode(self, table: str, row: aiosqlite.Row) -> dict[str, Any]:
        decoded = dict(row)
        for column in BOOLEAN_COLUMNS.get(table, frozenset()):
            if decoded.get(column) is not None:
                decoded[column] = bool(decoded[column])
        for column in JSON_COLUMNS.get(table, frozenset()):
            value = decoded.get(column)
            if isinstance(value, str):
                decoded[column] = json.loads(value)
        return decoded

    @staticmethod
    def _where(
        filters: Mapping[str, Any] | None,
        null_columns: Sequence[str] = (),
    ) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        for column, value in (filters or {}).items():
            if value is None:
                clauses.append(f"{column} IS NULL")
            else:
                clauses.append(f"{column} = ?")
                params.append(int(value) if isinstance(value, bool) else value)
        for column in null_columns:
            clauses.append(f"{column} IS NULL")
        if not clauses:
            return "", params
        return " WHERE " + " AND ".join(clauses), params

    def _translate(self, table: str, operation: str, error: sqlite3.Error) -> Exception:
        if isinstance(error, sqlite3.IntegrityError) and "UNIQUE" in str(error):
            return ConstraintViolation(table, str(error))
        if isinstance(error, sqlite3.IntegrityError) and "PRIMARY KEY" in str(error):
            return ConstraintViolation(table, str(error))
        return RemoteQueryError(table, operation, str(error))

    # =========================================================================
    # RemoteStore operations
    # =========================================================================

    async def ping(self) -> None:
        conn = self._connection()
        try:
            async with conn.execute("SELECT id FROM players LIMIT 1") as cursor:
                await cursor.fetchone()
        except sqlite3.Error as e:
            raise TransportError(self.endpoint, e) from e

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
        self._check_table(table)
        conn = self._connection()
        where, params = self._where(filters, null_columns)
        sql = f"SELECT {', '.join(columns) if columns else '*'} FROM {table}{where}"
        if order_by:
            # rowid keeps insertion order stable for equal sort keys
            sql += f" ORDER BY {order_by} {'ASC' if ascending else 'DESC'}, rowid ASC"
        try:
            async with conn.execute(sql, params) as cursor:
                rows = await cursor.fetchall()
        except sqlite3.Error as e:
            raise self._translate(table, "select", e) from e
        return [self._decode(table, row) for row in rows]

    async def insert(self, table: str, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        self._check_table(table)
        if not rows:
            return []
        conn = self._connection()
        ids: list[str] = []
        try:
            for row in rows:
                encoded = self._encode(table, row)
                if not encoded.get("id"):
                    encoded["id"] = new_canonical_id()
                ids.append(encoded["id"])
                column_list = ", ".join(encoded)
                placeholders = ", ".join("?" for _ in encoded)
                await conn.execute(
                    f"INSERT INTO {table} ({column_list}) VALUES ({placeholders})",
                    list(encoded.values()),
                )
            await conn.commit()
        except sqlite3.Error as e:
            await conn.rollback()
            raise self._translate(table, "insert", e) from e

        inserted: list[dict[str, Any]] = []
        for row_id in ids:
            inserted.extend(await self.select(table, filters={"id": row_id}))
        return inserted

    async def update(
        self,
        table: str,
        values: dict[str, Any],
        filters: Mapping[str, Any],
    ) -> list[dict[str, Any]]:
        self._check_table(table)
        if not filters:
            raise RemoteQueryError(table, "update", "refusing to update without filters")
        conn = self._connection()
        matched = await self.select(table, columns=["id"], filters=filters)
        if not matched or not values:
            return []

        encoded = self._encode(table, values)
        assignments = ", ".join(f"{column} = ?" for column in encoded)
        where, params = self._where(filters)
        try:
            await conn.execute(
                f"UPDATE {table} SET {assignments}{where}",
                list(encoded.values()) + params,
            )
            await conn.commit()
        except sqlite3.Error as e:
            await conn.rollback()
            raise self._translate(table, "update", e) from e

        updated: list[dict[str, Any]] = []
        for row in matched:
            updated.extend(await self.select(table, filters={"id": row["id"]}))
        return updated

    async def delete(self, table: str, ids: list[str]) -> int:
        self._check_table(table)
        if not ids:
            return 0
        conn = self._connection()
        placeholders = ", ".join("?" for _ in ids)
        try:
            cursor = await conn.execute(f"DELETE FROM {table} WHERE id IN ({placeholders})", ids)
            await conn.commit()
        except sqlite3.Error as e:
            await conn.rollback()
            raise self._translate(table, "delete", e) from e
        return cursor.rowcount
