"""
Closed registry of synchronized collections.

Maps each collection key to its remote table, load ordering, record type
and transform pair. The registry is validated once at construction: every
CollectionKey must be registered exactly once, tables must be unique, and
secondary keys must name real record fields.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass, fields
from enum import Enum
from typing import Any

from .exceptions import RegistryError, UnknownCollectionError
from .models import (
    Court,
    EloHistory,
    Match,
    MatchEvent,
    Player,
    Record,
    Session,
    SessionPlayer,
    SessionSetting,
)
from .transform import mappers
from .transform.lookup import Lookup

ToLocal = Callable[[Mapping[str, Any], Lookup], dict[str, Any]]
ToRemote = Callable[[Mapping[str, Any], Lookup], dict[str, Any]]


class CollectionKey(Enum):
    """Storage keys of the synchronized collections."""

    PLAYERS = "badminton-global-players"
    SESSIONS = "badminton-sessions"
    SESSION_PLAYERS = "badminton_session_players"
    MATCHES = "badminton_matches"
    ELO_HISTORY = "badminton_elo_history"
    COURTS = "badminton_courts"
    MATCH_EVENTS = "badminton_match_events"
    SESSION_SETTINGS = "badminton_session_settings"


@dataclass(frozen=True)
class SecondaryKey:
    """Natural key used to find a remote row for a record with a local id.

    Attributes:
        columns: Remote columns that identify the row
        open_columns: Columns that must be NULL for a row to match (open lifecycle)
        order_by: Tie-break when several rows match; the first in ascending order wins
    """

    columns: tuple[str, ...]
    open_columns: tuple[str, ...] = ()
    order_by: str | None = None

    def filters(self, row: Mapping[str, Any]) -> dict[str, Any] | None:
        """Equality filters for a remote row, or None if a key column is missing."""
        values = {column: row.get(column) for column in self.columns}
        if any(value is None for value in values.values()):
            return None
        return values

    def is_closed(self, row: Mapping[str, Any]) -> bool:
        """True if any lifecycle column of the row is set."""
        return any(row.get(column) is not None for column in self.open_columns)


@dataclass(frozen=True)
class CollectionSpec:
    """Everything the engine needs to mirror one collection.

    Attributes:
        key: Local storage key
        table: Remote table name
        order_by: Column used to order rows on load
        record_type: Local record dataclass
        to_local: Remote row -> local dict
        to_remote: Local dict -> remote row
        remote_capable: False keeps the collection local-only
        load_on_initialize: False initializes from the cache even when remote is up
        append_only: Only inserts are mirrored; updates and deletes are ignored
        needs_lookup: Transforms need the player/session name lookup
        secondary_key: Natural key for records that have no canonical id yet
        referenced_by: Fields of other collections that hold this collection's ids
    """

    key: CollectionKey
    table: str
    order_by: str
    record_type: type[Record]
    to_local: ToLocal
    to_remote: ToRemote
    remote_capable: bool = True
    load_on_initialize: bool = True
    append_only: bool = False
    needs_lookup: bool = False
    secondary_key: SecondaryKey | None = None
    referenced_by: tuple[str, ...] = ()

    @property
    def name(self) -> str:
        return self.key.value


DEFAULT_SPECS: tuple[CollectionSpec, ...] = (
    CollectionSpec(
        key=CollectionKey.PLAYERS,
        table="players",
        order_by="created_at",
        record_type=Player,
        to_local=mappers.player_to_local,
        to_remote=mappers.player_to_remote,
        secondary_key=SecondaryKey(("name",)),
        referenced_by=(
            "player_id",
            "team1_player1_id",
            "team1_player2_id",
            "team2_player1_id",
            "team2_player2_id",
            "created_by",
        ),
    ),
    CollectionSpec(
        key=CollectionKey.SESSIONS,
        table="sessions",
        order_by="created_at",
        record_type=Session,
        to_local=mappers.session_to_local,
        to_remote=mappers.session_to_remote,
        secondary_key=SecondaryKey(("name",), order_by="created_at"),
        referenced_by=("session_id",),
    ),
    CollectionSpec(
        key=CollectionKey.SESSION_PLAYERS,
        table="session_players",
        order_by="joined_at",
        record_type=SessionPlayer,
        to_local=mappers.session_player_to_local,
        to_remote=mappers.session_player_to_remote,
        needs_lookup=True,
        secondary_key=SecondaryKey(("session_id", "player_id")),
    ),
    CollectionSpec(
        key=CollectionKey.MATCHES,
        table="matches",
        order_by="started_at",
        record_type=Match,
        to_local=mappers.match_to_local,
        to_remote=mappers.match_to_remote,
        needs_lookup=True,
        secondary_key=SecondaryKey(
            ("session_id", "court_number"),
            open_columns=("completed_at", "cancelled_at"),
            order_by="started_at",
        ),
        referenced_by=("match_id", "current_match_id"),
    ),
    CollectionSpec(
        key=CollectionKey.ELO_HISTORY,
        table="elo_history",
        order_by="created_at",
        record_type=EloHistory,
        to_local=mappers.elo_history_to_local,
        to_remote=mappers.elo_history_to_remote,
        load_on_initialize=False,
        append_only=True,
        needs_lookup=True,
    ),
    CollectionSpec(
        key=CollectionKey.COURTS,
        table="courts",
        order_by="created_at",
        record_type=Court,
        to_local=mappers.court_to_local,
        to_remote=mappers.court_to_remote,
        secondary_key=SecondaryKey(("session_id", "court_number")),
    ),
    CollectionSpec(
        key=CollectionKey.MATCH_EVENTS,
        table="match_events",
        order_by="created_at",
        record_type=MatchEvent,
        to_local=mappers.match_event_to_local,
        to_remote=mappers.match_event_to_remote,
    ),
    CollectionSpec(
        key=CollectionKey.SESSION_SETTINGS,
        table="session_settings",
        order_by="created_at",
        record_type=SessionSetting,
        to_local=mappers.session_setting_to_local,
        to_remote=mappers.session_setting_to_remote,
        secondary_key=SecondaryKey(("session_id",)),
    ),
)


class CollectionRegistry:
    """Validated mapping of CollectionKey to CollectionSpec."""

    def __init__(self, specs: Iterable[CollectionSpec] = DEFAULT_SPECS) -> None:
        self._specs: dict[CollectionKey, CollectionSpec] = {}
        for spec in specs:
            if spec.key in self._specs:
                raise RegistryError(f"{spec.key.value} registered twice")
            self._specs[spec.key] = spec
        self.validate()

    def validate(self) -> None:
        """Check the registry is complete and consistent.

        Raises:
            RegistryError: On the first problem found
        """
        missing = [key.value for key in CollectionKey if key not in self._specs]
        if missing:
            raise RegistryError(f"missing collections: {', '.join(missing)}")

        tables: dict[str, CollectionKey] = {}
        for spec in self._specs.values():
            if not spec.table or not spec.order_by:
                raise RegistryError(f"{spec.name} needs a table and an order column")
            if spec.table in tables:
                raise RegistryError(
                    f"table {spec.table} used by {tables[spec.table].value} and {spec.name}"
                )
            tables[spec.table] = spec.key
            if not callable(spec.to_local) or not callable(spec.to_remote):
                raise RegistryError(f"{spec.name} transforms must be callable")

            if spec.secondary_key is not None:
                record_fields = {f.name for f in fields(spec.record_type)}
                unknown = [
                    column
                    for column in spec.secondary_key.columns + spec.secondary_key.open_columns
                    if column not in record_fields
                ]
                if unknown:
                    raise RegistryError(
                        f"{spec.name} secondary key names unknown fields: {', '.join(unknown)}"
                    )

    def get(self, key: CollectionKey | str) -> CollectionSpec:
        """Look up a collection by enum member or storage key string.

        Raises:
            UnknownCollectionError: If the key is not registered
        """
        if isinstance(key, str):
            try:
                key = CollectionKey(key)
            except ValueError:
                raise UnknownCollectionError(key) from None
        try:
            return self._specs[key]
        except KeyError:
            raise UnknownCollectionError(key.value) from None

    def __iter__(self) -> Iterator[CollectionSpec]:
        return iter(self._specs.values())

    def __len__(self) -> int:
        return len(self._specs)

    def __contains__(self, key: object) -> bool:
        if isinstance(key, str):
            return key in {k.value for k in self._specs}
        return key in self._specs


DEFAULT_REGISTRY = CollectionRegistry()
