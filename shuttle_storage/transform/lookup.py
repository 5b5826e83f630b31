"""
Name lookup for relationship collections.

Relationship rows reference players and sessions by canonical id; local
records also carry their display names. One Lookup is fetched per batch
and used in both directions.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ..exceptions import ResolutionError
from ..id_utils import is_canonical_id
from ..models import UNKNOWN_PLAYER, UNKNOWN_SESSION
from ..remote.base import RemoteStore

logger = logging.getLogger(__name__)

PLAYERS_TABLE = "players"
SESSIONS_TABLE = "sessions"


@dataclass
class Lookup:
    """id <-> name maps for players and sessions.

    Attributes:
        player_names: Canonical player id to name
        session_names: Canonical session id to name
    """

    player_names: dict[str, str] = field(default_factory=dict)
    session_names: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self._player_ids = {name: pid for pid, name in self.player_names.items()}
        self._session_ids = {name: sid for sid, name in self.session_names.items()}

    @classmethod
    def empty(cls) -> Lookup:
        return cls()

    @classmethod
    async def fetch(cls, store: RemoteStore) -> Lookup:
        """Read the id/name pairs of all players and sessions."""
        players = await store.select(PLAYERS_TABLE, columns=["id", "name"])
        sessions = await store.select(SESSIONS_TABLE, columns=["id", "name"])
        lookup = cls(
            player_names={str(p["id"]): p["name"] for p in players if p.get("id")},
            session_names={str(s["id"]): s["name"] for s in sessions if s.get("id")},
        )
        logger.debug(
            f"Fetched lookup: {len(lookup.player_names)} players, "
            f"{len(lookup.session_names)} sessions"
        )
        return lookup

    # Remote -> local

    def player_name(self, player_id: str | None) -> str:
        if player_id is None:
            return UNKNOWN_PLAYER
        return self.player_names.get(str(player_id), UNKNOWN_PLAYER)

    def session_name(self, session_id: str | None) -> str:
        if session_id is None:
            return UNKNOWN_SESSION
        return self.session_names.get(str(session_id), UNKNOWN_SESSION)

    # Local -> remote

    def resolve_player(
        self,
        collection: str,
        field_name: str,
        player_id: str | None,
        player_name: str | None,
    ) -> str:
        """Return a canonical player id from an id or a display name.

        Raises:
            ResolutionError: If neither resolves
        """
        return self._resolve(
            collection, field_name, player_id, player_name, self._player_ids, UNKNOWN_PLAYER
        )

    def resolve_session(
        self,
        collection: str,
        field_name: str,
        session_id: str | None,
        session_name: str | None,
    ) -> str:
        """Return a canonical session id from an id or a display name.

        Raises:
            ResolutionError: If neither resolves
        """
        return self._resolve(
            collection, field_name, session_id, session_name, self._session_ids, UNKNOWN_SESSION
        )

    @staticmethod
    def _resolve(
        collection: str,
        field_name: str,
        entity_id: str | None,
        name: str | None,
        ids_by_name: dict[str, str],
        sentinel: str,
    ) -> str:
        if is_canonical_id(entity_id):
            return str(entity_id)
        if name and name != sentinel and name in ids_by_name:
            return ids_by_name[name]
        raise ResolutionError(collection, field_name, name or entity_id)
