"""
Snapshot differencing.

Compares two snapshots of one collection keyed by id and produces the
minimal set of inserts, updates and deletes. Equality is structural:
dict key order never produces an update.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any

from ..id_utils import index_by_id


def normalize(value: Any) -> Any:
    """Reduce a value to plain comparable data.

    Mappings compare by content, sequences element-wise, datetimes by
    ISO text and enums by value.
    """
    if isinstance(value, dict):
        return {str(k): normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [normalize(v) for v in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return normalize(value.value)
    return value


def items_equal(a: Any, b: Any) -> bool:
    return normalize(a) == normalize(b)


@dataclass
class SyncPlan:
    """Operations needed to move the remote from one snapshot to the next.

    Attributes:
        inserts: Items whose id is new
        updates: (previous, new) pairs whose content changed
        deletes: Previous items whose id disappeared
    """

    inserts: list[dict[str, Any]] = field(default_factory=list)
    updates: list[tuple[dict[str, Any], dict[str, Any]]] = field(default_factory=list)
    deletes: list[dict[str, Any]] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.inserts or self.updates or self.deletes)

    @property
    def insert_ids(self) -> list[str]:
        return [str(item["id"]) for item in self.inserts]

    @property
    def update_ids(self) -> list[str]:
        return [str(new["id"]) for _, new in self.updates]

    @property
    def delete_ids(self) -> list[str]:
        return [str(item["id"]) for item in self.deletes]

    @property
    def all_ids(self) -> set[str]:
        return set(self.insert_ids) | set(self.update_ids) | set(self.delete_ids)

    def settle(
        self,
        new: list[dict[str, Any]],
        failed_ids: Iterable[str] = (),
    ) -> list[dict[str, Any]]:
        """Snapshot the remote is believed to hold after applying this plan.

        Failed inserts are left out, failed updates keep their previous
        version and failed deletes stay in place, so the next diff against
        this baseline retries exactly the unresolved operations.
        """
        failed = set(failed_ids)
        if not failed:
            return list(new)

        failed_inserts = failed & set(self.insert_ids)
        previous_versions = {
            str(prev["id"]): prev for prev, _ in self.updates if str(prev["id"]) in failed
        }

        settled: list[dict[str, Any]] = []
        for item in new:
            item_id = str(item.get("id"))
            if item_id in failed_inserts:
                continue
            settled.append(previous_versions.get(item_id, item))
        settled.extend(item for item in self.deletes if str(item["id"]) in failed)
        return settled

    def summary(self) -> str:
        return f"+{len(self.inserts)} ~{len(self.updates)} -{len(self.deletes)}"


def compute_diff(
    previous: list[dict[str, Any]],
    new: list[dict[str, Any]],
) -> SyncPlan:
    """Compute the plan turning ``previous`` into ``new``.

    Items without an id are not tracked.
    """
    prev_by_id = index_by_id(previous)
    new_by_id = index_by_id(new)

    plan = SyncPlan()
    for item_id, item in new_by_id.items():
        prev = prev_by_id.get(item_id)
        if prev is None:
            plan.inserts.append(item)
        elif not items_equal(prev, item):
            plan.updates.append((prev, item))

    plan.deletes = [item for item_id, item in prev_by_id.items() if item_id not in new_by_id]
    return plan
