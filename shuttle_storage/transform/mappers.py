"""
Per-collection mappings between remote rows and local records.

Each collection has a pair of pure functions:

    <entity>_to_local(row, lookup)  -> fully populated local dict
    <entity>_to_remote(item, lookup) -> remote row

to_local never raises: unknown references become sentinel names.
to_remote raises ResolutionError when a reference cannot be turned into a
canonical id, and ValidationError when the record breaks an invariant.
Rows carry ``id`` only when the record has one; callers decide whether it
is sent.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from ..exceptions import ResolutionError, ValidationError
from ..id_utils import is_canonical_id
from ..models import (
    MATCH_PLAYER_SLOTS,
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
from .lookup import Lookup

# Columns the remote fills in when omitted
SERVER_DEFAULT_COLUMNS = frozenset({"created_at", "joined_at", "started_at", "updated_at"})


def _with_id(record: Record, row: dict[str, Any]) -> dict[str, Any]:
    if record.id is not None:
        return {"id": record.id, **row}
    return row


def _drop_server_defaults(row: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in row.items() if not (v is None and k in SERVER_DEFAULT_COLUMNS)}


def _canonical_or_none(value: Any) -> str | None:
    return str(value) if is_canonical_id(value) else None


def _require_canonical(collection: str, field_name: str, value: Any) -> str:
    if not is_canonical_id(value):
        raise ResolutionError(collection, field_name, value)
    return str(value)


# =============================================================================
# Players
# =============================================================================


def player_to_local(row: Mapping[str, Any], lookup: Lookup) -> dict[str, Any]:
    return Player.from_dict(
        {
            "id": row.get("id"),
            "name": row.get("name"),
            "email": row.get("email"),
            "wins": row.get("total_wins"),
            "losses": row.get("total_losses"),
            "match_count": row.get("total_matches"),
            "elo": row.get("current_elo"),
            "highest_elo": row.get("highest_elo"),
            "lowest_elo": row.get("lowest_elo"),
            "is_active": row.get("is_active"),
            "last_match_time": row.get("last_match_at"),
            "created_at": row.get("created_at"),
            "avatar_url": row.get("avatar_url"),
        }
    ).to_dict()


def player_to_remote(item: Mapping[str, Any], lookup: Lookup) -> dict[str, Any]:
    player = Player.from_dict(item)
    if not player.name:
        raise ValidationError("name", "player name is required")
    row = {
        "name": player.name,
        "email": player.email,
        "total_matches": player.match_count,
        "total_wins": player.wins,
        "total_losses": player.losses,
        "current_elo": player.elo,
        # Bounds always bracket the current rating
        "highest_elo": max(player.elo, player.highest_elo),
        "lowest_elo": min(player.elo, player.lowest_elo),
        "is_active": player.is_active,
        "last_match_at": player.last_match_time,
        "avatar_url": player.avatar_url,
        "created_at": player.created_at,
    }
    return _with_id(player, _drop_server_defaults(row))


# =============================================================================
# Sessions
# =============================================================================


def session_to_local(row: Mapping[str, Any], lookup: Lookup) -> dict[str, Any]:
    return Session.from_dict(
        {
            "id": row.get("id"),
            "name": row.get("name"),
            "description": row.get("description"),
            "created_at": row.get("created_at"),
            "ended_at": row.get("ended_at"),
            "court_count": row.get("court_count"),
            "max_players": row.get("max_players"),
            "total_matches_played": row.get("total_matches_played"),
            "is_active": row.get("is_active"),
        }
    ).to_dict()


def session_to_remote(item: Mapping[str, Any], lookup: Lookup) -> dict[str, Any]:
    session = Session.from_dict(item)
    if not session.name:
        raise ValidationError("name", "session name is required")
    if session.court_count < 1:
        raise ValidationError("court_count", "must be positive", session.court_count)
    row = {
        "name": session.name,
        "description": session.description,
        "created_at": session.created_at,
        "ended_at": session.ended_at,
        "court_count": session.court_count,
        "max_players": session.max_players,
        "total_matches_played": session.total_matches_played,
        "is_active": session.is_active,
    }
    return _with_id(session, _drop_server_defaults(row))


# =============================================================================
# Session players
# =============================================================================


def session_player_to_local(row: Mapping[str, Any], lookup: Lookup) -> dict[str, Any]:
    data = dict(row)
    data["session_name"] = lookup.session_name(row.get("session_id"))
    data["player_name"] = lookup.player_name(row.get("player_id"))
    return SessionPlayer.from_dict(data).to_dict()


def session_player_to_remote(item: Mapping[str, Any], lookup: Lookup) -> dict[str, Any]:
    sp = SessionPlayer.from_dict(item)
    collection = "session_players"
    row = {
        "session_id": lookup.resolve_session(
            collection, "session_id", sp.session_id, sp.session_name
        ),
        "player_id": lookup.resolve_player(collection, "player_id", sp.player_id, sp.player_name),
        "joined_at": sp.joined_at,
        "left_at": sp.left_at,
        "session_matches": sp.session_matches,
        "session_wins": sp.session_wins,
        "session_losses": sp.session_losses,
        "session_elo_start": sp.session_elo_start,
        "session_elo_current": sp.session_elo_current,
        "session_elo_peak": sp.session_elo_peak,
        "is_active_in_session": sp.is_active_in_session,
    }
    return _with_id(sp, _drop_server_defaults(row))


# =============================================================================
# Matches
# =============================================================================


def match_to_local(row: Mapping[str, Any], lookup: Lookup) -> dict[str, Any]:
    data = dict(row)
    data["session_name"] = lookup.session_name(row.get("session_id"))
    for id_field, name_field in MATCH_PLAYER_SLOTS:
        data[name_field] = lookup.player_name(row.get(id_field))
    return Match.from_dict(data).to_dict()


def match_to_remote(item: Mapping[str, Any], lookup: Lookup) -> dict[str, Any]:
    match = Match.from_dict(item)
    collection = "matches"
    row: dict[str, Any] = {
        "session_id": lookup.resolve_session(
            collection, "session_id", match.session_id, match.session_name
        ),
        "court_number": match.court_number,
        "started_at": match.started_at,
        "completed_at": match.completed_at,
        "cancelled_at": match.cancelled_at,
    }
    for id_field, name_field in MATCH_PLAYER_SLOTS:
        row[id_field] = lookup.resolve_player(
            collection, id_field, getattr(match, id_field), getattr(match, name_field)
        )

    player_ids = [row[id_field] for id_field, _ in MATCH_PLAYER_SLOTS]
    if len(set(player_ids)) != len(player_ids):
        raise ValidationError("players", "a match needs four distinct players", player_ids)
    if match.winning_team not in (None, 1, 2):
        raise ValidationError("winning_team", "must be 1 or 2", match.winning_team)

    row.update(
        {
            "winning_team": match.winning_team,
            "score_team1": match.score_team1,
            "score_team2": match.score_team2,
            "match_duration_minutes": match.match_duration_minutes,
            "match_type": match.match_type,
            "notes": match.notes,
        }
    )
    return _with_id(match, _drop_server_defaults(row))


# =============================================================================
# ELO history
# =============================================================================


def elo_history_to_local(row: Mapping[str, Any], lookup: Lookup) -> dict[str, Any]:
    data = dict(row)
    data["player_name"] = lookup.player_name(row.get("player_id"))
    data["session_name"] = lookup.session_name(row.get("session_id"))
    return EloHistory.from_dict(data).to_dict()


def elo_history_to_remote(item: Mapping[str, Any], lookup: Lookup) -> dict[str, Any]:
    entry = EloHistory.from_dict(item)
    collection = "elo_history"
    row = {
        "player_id": lookup.resolve_player(
            collection, "player_id", entry.player_id, entry.player_name
        ),
        # Local match ids are never sent; the link is optional remotely
        "match_id": _canonical_or_none(entry.match_id),
        "session_id": lookup.resolve_session(
            collection, "session_id", entry.session_id, entry.session_name
        ),
        "elo_before": entry.elo_before,
        "elo_after": entry.elo_after,
        "elo_change": entry.elo_change,
        "was_winner": entry.was_winner,
        "opponent_elo": entry.opponent_elo,
        "created_at": entry.created_at,
    }
    return _with_id(entry, _drop_server_defaults(row))


# =============================================================================
# Courts, match events, session settings
# =============================================================================


def court_to_local(row: Mapping[str, Any], lookup: Lookup) -> dict[str, Any]:
    return Court.from_dict(row).to_dict()


def court_to_remote(item: Mapping[str, Any], lookup: Lookup) -> dict[str, Any]:
    court = Court.from_dict(item)
    row = {
        "session_id": _require_canonical("courts", "session_id", court.session_id),
        "court_number": court.court_number,
        "name": court.name,
        "is_available": court.is_available,
        "current_match_id": _canonical_or_none(court.current_match_id),
        "created_at": court.created_at,
        "notes": court.notes,
    }
    return _with_id(court, _drop_server_defaults(row))


def match_event_to_local(row: Mapping[str, Any], lookup: Lookup) -> dict[str, Any]:
    return MatchEvent.from_dict(row).to_dict()


def match_event_to_remote(item: Mapping[str, Any], lookup: Lookup) -> dict[str, Any]:
    event = MatchEvent.from_dict(item)
    if not event.event_type:
        raise ValidationError("event_type", "event type is required")
    row = {
        "match_id": _require_canonical("match_events", "match_id", event.match_id),
        "event_type": event.event_type,
        "event_data": event.event_data,
        "created_at": event.created_at,
        "player_id": _canonical_or_none(event.player_id),
        "created_by": _canonical_or_none(event.created_by),
    }
    return _with_id(event, _drop_server_defaults(row))


def session_setting_to_local(row: Mapping[str, Any], lookup: Lookup) -> dict[str, Any]:
    return SessionSetting.from_dict(row).to_dict()


def session_setting_to_remote(item: Mapping[str, Any], lookup: Lookup) -> dict[str, Any]:
    setting = SessionSetting.from_dict(item)
    for name in ("starting_elo", "win_points", "loss_points", "min_elo"):
        if getattr(setting, name) <= 0:
            raise ValidationError(name, "must be positive", getattr(setting, name))
    row = {
        "session_id": _require_canonical("session_settings", "session_id", setting.session_id),
        "starting_elo": setting.starting_elo,
        "win_points": setting.win_points,
        "loss_points": setting.loss_points,
        "min_elo": setting.min_elo,
        "match_duration_minutes": setting.match_duration_minutes,
        "auto_generate_matches": setting.auto_generate_matches,
        "require_score_entry": setting.require_score_entry,
        "notify_on_match_completion": setting.notify_on_match_completion,
        "notify_on_player_join": setting.notify_on_player_join,
        "created_at": setting.created_at,
        "updated_at": setting.updated_at,
    }
    return _with_id(setting, _drop_server_defaults(row))
