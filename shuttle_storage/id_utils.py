"""ID utilities for entities mirrored between the cache and the remote.

Centralizes the id format knowledge so callers never need to inspect
ids directly.

Canonical ids: 36-character hyphenated hex strings assigned by the remote.
Local ids: opaque strings generated on-device, used only until the first
successful remote insert.
"""

from __future__ import annotations

import re
import time
import uuid
from typing import Any

_CANONICAL_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


def is_canonical_id(value: Any) -> bool:
    """Return True if value is a remote-assigned hyphenated hex id."""
    return isinstance(value, str) and bool(_CANONICAL_RE.match(value))


def new_canonical_id() -> str:
    """Generate a canonical id (used by stores that assign ids themselves)."""
    return str(uuid.uuid4())


def generate_local_id() -> str:
    """Generate an opaque local id.

    Millisecond timestamp plus a short random suffix; never matches the
    canonical format.
    """
    return f"{int(time.time() * 1000)}{uuid.uuid4().hex[:6]}"


def index_by_id(items: list[dict[str, Any]]) -> dict[str, dict[str, Any]]:
    """Key a snapshot by id, dropping entries without one.

    Later duplicates win, matching how a full replacement is read back.
    """
    indexed: dict[str, dict[str, Any]] = {}
    for item in items:
        item_id = item.get("id") if isinstance(item, dict) else None
        if item_id is None:
            continue
        indexed[str(item_id)] = item
    return indexed
