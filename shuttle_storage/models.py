"""
Local record types for every synchronized collection.

Each collection has one dataclass describing the application-facing shape
of its entities. Every field has a default, so a record built from a
partial or loosely shaped dict is always fully populated.

Timestamps are kept as ISO 8601 strings exactly as they were received, so
a row read from the remote and written back is unchanged.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import asdict, dataclass, field, fields
from typing import Any, TypeVar

R = TypeVar("R", bound="Record")

DEFAULT_ELO = 100
DEFAULT_COURT_COUNT = 4
DEFAULT_MATCH_TYPE = "doubles"

UNKNOWN_PLAYER = "Unknown Player"
UNKNOWN_SESSION = "Unknown Session"


@dataclass
class Record:
    """Base for local records. ``id`` may be canonical or local."""

    id: str | None = None

    @classmethod
    def from_dict(cls: type[R], data: Mapping[str, Any]) -> R:
        """Build a record, ignoring unknown keys.

        A missing or null value takes the field default.
        """
        values: dict[str, Any] = {}
        for f in fields(cls):
            value = data.get(f.name)
            if value is not None:
                values[f.name] = value
        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Player(Record):
    """A player in the global roster.

    ``wins``/``losses``/``match_count``/``elo`` are lifetime figures; the
    remote stores them as total_* and current_elo.
    """

    name: str = ""
    email: str | None = None
    wins: int = 0
    losses: int = 0
    match_count: int = 0
    elo: int = DEFAULT_ELO
    highest_elo: int = DEFAULT_ELO
    lowest_elo: int = DEFAULT_ELO
    is_active: bool = True
    last_match_time: str | None = None
    created_at: str | None = None
    avatar_url: str | None = None
    session_stats: dict[str, Any] = field(default_factory=dict)


@dataclass
class Session(Record):
    """A play session.

    ``player_ids``, ``court_states`` and ``current_matches`` exist only
    locally; they are rebuilt by the application from the related
    collections.
    """

    name: str = ""
    description: str | None = None
    created_at: str | None = None
    ended_at: str | None = None
    court_count: int = DEFAULT_COURT_COUNT
    max_players: int | None = None
    total_matches_played: int = 0
    is_active: bool = True
    player_ids: list[str] = field(default_factory=list)
    court_states: list[Any] = field(default_factory=list)
    current_matches: list[Any] = field(default_factory=list)


@dataclass
class SessionPlayer(Record):
    """Membership of a player in a session with session-scoped stats."""

    session_id: str | None = None
    player_id: str | None = None
    session_name: str = UNKNOWN_SESSION
    player_name: str = UNKNOWN_PLAYER
    joined_at: str | None = None
    left_at: str | None = None
    session_matches: int = 0
    session_wins: int = 0
    session_losses: int = 0
    session_elo_start: int = DEFAULT_ELO
    session_elo_current: int = DEFAULT_ELO
    session_elo_peak: int = DEFAULT_ELO
    is_active_in_session: bool = True


@dataclass
class Match(Record):
    """A match on one court: two teams of two players.

    Open while neither ``completed_at`` nor ``cancelled_at`` is set.
    """

    session_id: str | None = None
    session_name: str = UNKNOWN_SESSION
    court_number: int = 0
    started_at: str | None = None
    completed_at: str | None = None
    cancelled_at: str | None = None
    team1_player1_id: str | None = None
    team1_player2_id: str | None = None
    team2_player1_id: str | None = None
    team2_player2_id: str | None = None
    team1_player1_name: str = UNKNOWN_PLAYER
    team1_player2_name: str = UNKNOWN_PLAYER
    team2_player1_name: str = UNKNOWN_PLAYER
    team2_player2_name: str = UNKNOWN_PLAYER
    winning_team: int | None = None
    score_team1: int | None = None
    score_team2: int | None = None
    match_duration_minutes: int | None = None
    match_type: str = DEFAULT_MATCH_TYPE
    notes: str | None = None

    @property
    def is_open(self) -> bool:
        return self.completed_at is None and self.cancelled_at is None


# Player slots of a match, as (id field, name field)
MATCH_PLAYER_SLOTS: tuple[tuple[str, str], ...] = (
    ("team1_player1_id", "team1_player1_name"),
    ("team1_player2_id", "team1_player2_name"),
    ("team2_player1_id", "team2_player1_name"),
    ("team2_player2_id", "team2_player2_name"),
)


@dataclass
class EloHistory(Record):
    """One rating change of one player. Never modified once written."""

    player_id: str | None = None
    player_name: str = UNKNOWN_PLAYER
    match_id: str | None = None
    session_id: str | None = None
    session_name: str = UNKNOWN_SESSION
    elo_before: int = DEFAULT_ELO
    elo_after: int = DEFAULT_ELO
    elo_change: int = 0
    was_winner: bool = False
    opponent_elo: int = DEFAULT_ELO
    created_at: str | None = None


@dataclass
class Court(Record):
    session_id: str | None = None
    court_number: int = 0
    name: str | None = None
    is_available: bool = True
    current_match_id: str | None = None
    created_at: str | None = None
    notes: str | None = None


@dataclass
class MatchEvent(Record):
    match_id: str | None = None
    event_type: str = ""
    event_data: dict[str, Any] | None = None
    created_at: str | None = None
    player_id: str | None = None
    created_by: str | None = None


@dataclass
class SessionSetting(Record):
    """Per-session rating and match settings."""

    session_id: str | None = None
    starting_elo: int = DEFAULT_ELO
    win_points: int = 25
    loss_points: int = 23
    min_elo: int = 1
    match_duration_minutes: int = 30
    auto_generate_matches: bool = False
    require_score_entry: bool = False
    notify_on_match_completion: bool = True
    notify_on_player_join: bool = True
    created_at: str | None = None
    updated_at: str | None = None
