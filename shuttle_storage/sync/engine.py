"""
Differential sync engine.

Mirrors the change between two snapshots of a collection to the remote:

- Inserts: one bulk insert; on a constraint violation the batch is retried
  row by row and duplicates count as already synced.
- Updates: one call per item, targeted by canonical id, or by the
  collection's secondary key for items that still carry a local id.
- Deletes: one bulk delete for canonical ids; local ids are located by
  secondary key first.

Each remote call is caught independently. A failed item stays unresolved
until the next write computes a fresh diff; nothing is retried here.
The engine never modifies the items it is given.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

from ..exceptions import (
    ConstraintViolation,
    RemoteUnavailableError,
    ResolutionError,
    SyncStorageError,
    ValidationError,
)
from ..id_utils import is_canonical_id
from ..registry import CollectionSpec
from ..remote.client import RemoteClient
from ..transform import EntityTransformer, Lookup
from .diff import SyncPlan, compute_diff

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    """Outcome of mirroring one write to the remote.

    Attributes:
        collection: Collection key
        inserted: Rows inserted
        updated: Rows updated
        deleted: Rows deleted
        already_synced: Inserts rejected as duplicates
        skipped: Items that cannot be sent (unresolvable or invalid)
        ignored: Updates/deletes dropped for append-only collections
        failed_ids: Ids left unresolved, retried by the next diff
        errors: Error messages
        remote_available: False if the remote became unavailable mid-batch
        duration_ms: Time spent
        assigned_ids: Local id -> canonical id for items the remote now holds
        baseline: Snapshot the remote is believed to hold afterwards
    """

    collection: str
    inserted: int = 0
    updated: int = 0
    deleted: int = 0
    already_synced: int = 0
    skipped: int = 0
    ignored: int = 0
    failed_ids: set[str] = field(default_factory=set)
    errors: list[str] = field(default_factory=list)
    remote_available: bool = True
    duration_ms: int = 0
    assigned_ids: dict[str, str] = field(default_factory=dict)
    plan: SyncPlan = field(default_factory=SyncPlan, repr=False)
    baseline: list[dict[str, Any]] = field(default_factory=list, repr=False)

    @property
    def success(self) -> bool:
        return self.remote_available and not self.failed_ids and not self.errors

    @property
    def operations(self) -> int:
        return self.inserted + self.updated + self.deleted

    def to_dict(self) -> dict[str, Any]:
        return {
            "collection": self.collection,
            "success": self.success,
            "inserted": self.inserted,
            "updated": self.updated,
            "deleted": self.deleted,
            "already_synced": self.already_synced,
            "skipped": self.skipped,
            "ignored": self.ignored,
            "failed": sorted(self.failed_ids),
            "errors": self.errors,
            "remote_available": self.remote_available,
            "duration_ms": self.duration_ms,
            "assigned": len(self.assigned_ids),
        }


@dataclass
class BulkInsertOutcome:
    """Per-row outcome of an insert that tolerates duplicates.

    Indexes refer to positions in the submitted row list. ``rows`` holds
    the stored version of each inserted row the remote returned.
    """

    inserted: list[int] = field(default_factory=list)
    rows: dict[int, dict[str, Any]] = field(default_factory=dict)
    duplicates: list[int] = field(default_factory=list)
    failed: list[tuple[int, Exception]] = field(default_factory=list)


async def bulk_insert(
    client: RemoteClient,
    table: str,
    rows: list[dict[str, Any]],
) -> BulkInsertOutcome:
    """Insert rows in one call, falling back to row-by-row on a duplicate key.

    Raises:
        RemoteUnavailableError: If the remote is unavailable
    """
    outcome = BulkInsertOutcome()
    if not rows:
        return outcome

    try:
        stored = await client.execute(lambda store: store.insert(table, rows))
        outcome.inserted = list(range(len(rows)))
        if len(stored) == len(rows):
            outcome.rows = dict(enumerate(stored))
        return outcome
    except ConstraintViolation:
        logger.debug(f"Bulk insert into {table} hit a duplicate, retrying row by row")
    except RemoteUnavailableError:
        raise
    except SyncStorageError as e:
        outcome.failed = [(i, e) for i in range(len(rows))]
        return outcome

    for index, row in enumerate(rows):
        try:
            stored = await client.execute(lambda store, row=row: store.insert(table, [row]))
            outcome.inserted.append(index)
            if stored:
                outcome.rows[index] = stored[0]
        except ConstraintViolation:
            outcome.duplicates.append(index)
        except RemoteUnavailableError:
            raise
        except SyncStorageError as e:
            outcome.failed.append((index, e))
    return outcome


def _without_id(row: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in row.items() if k != "id"}


class _BatchAborted(Exception):
    """Internal: the remote went away; remaining operations stay pending."""


class DifferentialSyncEngine:
    """Apply snapshot differences to the remote store."""

    def __init__(
        self,
        client: RemoteClient,
        transformer: EntityTransformer | None = None,
    ) -> None:
        self.client = client
        self.transformer = transformer or EntityTransformer()

    async def apply(
        self,
        spec: CollectionSpec,
        previous: list[dict[str, Any]],
        new: list[dict[str, Any]],
    ) -> SyncResult:
        """Mirror the change from ``previous`` to ``new``.

        Never raises for remote failures; they are reported in the result.
        An unchanged snapshot makes no remote calls.
        """
        start = time.monotonic()
        plan = compute_diff(previous, new)
        result = SyncResult(collection=spec.name, plan=plan)

        if plan.is_empty:
            result.baseline = list(new)
            return result

        logger.debug(f"Syncing {spec.name}: {plan.summary()}", extra={"collection": spec.name})
        resolved: set[str] = set()
        try:
            lookup = await self._fetch_lookup(spec, plan)
            await self._apply_inserts(spec, plan, lookup, result, resolved)
            await self._apply_updates(spec, plan, lookup, result, resolved)
            await self._apply_deletes(spec, plan, lookup, result, resolved)
        except _BatchAborted as e:
            result.remote_available = False
            result.errors.append(str(e))
            pending = plan.all_ids - resolved
            result.failed_ids |= pending
            logger.warning(
                f"Remote unavailable while syncing {spec.name}, "
                f"{len(pending)} operations left pending: {e}",
                extra={"collection": spec.name},
            )

        result.baseline = plan.settle(new, result.failed_ids)
        result.duration_ms = int((time.monotonic() - start) * 1000)
        return result

    async def fetch_rows(self, spec: CollectionSpec) -> list[dict[str, Any]]:
        """Read all remote rows of a collection in load order.

        Raises:
            RemoteUnavailableError: If no remote handle is available
            SyncStorageError: If the remote read fails
        """
        return await self.client.execute(
            lambda store: store.select(spec.table, order_by=spec.order_by, ascending=True)
        )

    async def fetch_snapshot(
        self,
        spec: CollectionSpec,
        rows: list[dict[str, Any]] | None = None,
    ) -> list[dict[str, Any]]:
        """Read a collection from the remote and transform it to local shape.

        Args:
            spec: Collection to read
            rows: Already fetched rows, to skip the select
        """
        if rows is None:
            rows = await self.fetch_rows(spec)
        lookup = Lookup.empty()
        if rows and spec.needs_lookup:
            lookup = await self.client.execute(
                lambda store: self.transformer.fetch_lookup(spec, store)
            )
        return self.transformer.to_local(spec, rows, lookup)

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _call(self, operation: Any) -> Any:
        try:
            return await self.client.execute(operation)
        except RemoteUnavailableError as e:
            raise _BatchAborted(e.message) from e

    async def _fetch_lookup(self, spec: CollectionSpec, plan: SyncPlan) -> Lookup:
        if not spec.needs_lookup:
            return Lookup.empty()
        try:
            return await self._call(lambda store: self.transformer.fetch_lookup(spec, store))
        except SyncStorageError as e:
            logger.warning(
                f"Name lookup failed for {spec.name}, resolving by id only: {e}",
                extra={"collection": spec.name},
            )
            return Lookup.empty()

    def _fail(self, result: SyncResult, item_id: str, operation: str, error: Exception) -> None:
        result.failed_ids.add(item_id)
        result.errors.append(f"{operation} {item_id}: {error}")
        logger.warning(
            f"Failed to {operation} {result.collection} item {item_id}: {error}",
            extra={"collection": result.collection, "operation": operation},
        )

    def _skip(self, result: SyncResult, item_id: str, error: Exception) -> None:
        result.skipped += 1
        result.failed_ids.add(item_id)
        result.errors.append(f"skip {item_id}: {error}")

    async def _locate(self, spec: CollectionSpec, row: dict[str, Any]) -> str | None:
        """Find the remote id of a row by the collection's secondary key.

        Several matches resolve to the first in ascending ``order_by``.
        """
        key = spec.secondary_key
        if key is None:
            return None
        filters = key.filters(row)
        if filters is None:
            return None
        matches = await self._call(
            lambda store: store.select(
                spec.table,
                columns=["id"],
                filters=filters,
                null_columns=key.open_columns,
                order_by=key.order_by,
                ascending=True,
            )
        )
        if not matches:
            return None
        if len(matches) > 1:
            logger.info(
                f"{len(matches)} rows match {filters} in {spec.table}, using the first",
                extra={"collection": spec.name},
            )
        return str(matches[0]["id"])

    async def _update_by_id(
        self,
        spec: CollectionSpec,
        remote_id: str,
        values: dict[str, Any],
    ) -> bool:
        updated = await self._call(
            lambda store: store.update(spec.table, values, {"id": remote_id})
        )
        return bool(updated)

    async def _insert(
        self,
        spec: CollectionSpec,
        entries: list[tuple[str, dict[str, Any]]],
        result: SyncResult,
        resolved: set[str],
    ) -> None:
        if not entries:
            return
        try:
            outcome = await bulk_insert(self.client, spec.table, [row for _, row in entries])
        except RemoteUnavailableError as e:
            raise _BatchAborted(e.message) from e

        for index in outcome.inserted:
            item_id = entries[index][0]
            resolved.add(item_id)
            stored_id = outcome.rows.get(index, {}).get("id")
            if stored_id is not None and not is_canonical_id(item_id):
                result.assigned_ids[item_id] = str(stored_id)
        for index in outcome.duplicates:
            resolved.add(entries[index][0])
        result.inserted += len(outcome.inserted)
        result.already_synced += len(outcome.duplicates)
        for index, error in outcome.failed:
            item_id = entries[index][0]
            resolved.add(item_id)
            self._fail(result, item_id, "insert", error)

    # =========================================================================
    # Operations
    # =========================================================================

    async def _apply_inserts(
        self,
        spec: CollectionSpec,
        plan: SyncPlan,
        lookup: Lookup,
        result: SyncResult,
        resolved: set[str],
    ) -> None:
        if not plan.inserts:
            return
        batch = self.transformer.to_remote_batch(spec, plan.inserts, lookup)
        for item, error in batch.rejected:
            item_id = str(item["id"])
            resolved.add(item_id)
            self._skip(result, item_id, error)

        entries: list[tuple[str, dict[str, Any]]] = []
        for item, row in batch.rows:
            item_id = str(item["id"])
            if is_canonical_id(item_id):
                entries.append((item_id, row))
                continue

            # Local ids are never sent; the remote assigns the canonical one
            row = _without_id(row)
            key = spec.secondary_key
            if key is not None and key.open_columns and key.is_closed(row):
                try:
                    target = await self._locate(spec, row)
                    if target is not None and await self._update_by_id(spec, target, row):
                        result.updated += 1
                        result.assigned_ids[item_id] = target
                        resolved.add(item_id)
                        continue
                except SyncStorageError as e:
                    resolved.add(item_id)
                    self._fail(result, item_id, "update", e)
                    continue
            entries.append((item_id, row))

        await self._insert(spec, entries, result, resolved)

    async def _apply_updates(
        self,
        spec: CollectionSpec,
        plan: SyncPlan,
        lookup: Lookup,
        result: SyncResult,
        resolved: set[str],
    ) -> None:
        if not plan.updates:
            return
        if spec.append_only:
            result.ignored += len(plan.updates)
            resolved.update(plan.update_ids)
            logger.warning(
                f"Ignoring {len(plan.updates)} updates to append-only {spec.name}",
                extra={"collection": spec.name},
            )
            return

        for prev, new in plan.updates:
            item_id = str(new["id"])
            resolved.add(item_id)
            try:
                row = self.transformer.to_remote(spec, new, lookup)
            except (ResolutionError, ValidationError) as e:
                self._skip(result, item_id, e)
                continue

            values = _without_id(row)
            try:
                if is_canonical_id(item_id):
                    if await self._update_by_id(spec, item_id, values):
                        result.updated += 1
                    else:
                        # Row vanished remotely; recreate it under the same id
                        await self._insert(spec, [(item_id, row)], result, resolved)
                    continue

                if spec.secondary_key is None:
                    logger.warning(
                        f"Cannot target {spec.name} item {item_id} without a canonical id",
                        extra={"collection": spec.name},
                    )
                    self._skip(result, item_id, ResolutionError(spec.name, "id", item_id))
                    continue

                target = await self._locate(spec, self._previous_row(spec, prev, lookup, values))
                if target is not None and await self._update_by_id(spec, target, values):
                    result.updated += 1
                    result.assigned_ids[item_id] = target
                else:
                    await self._insert(spec, [(item_id, values)], result, resolved)
            except _BatchAborted:
                resolved.discard(item_id)
                raise
            except SyncStorageError as e:
                self._fail(result, item_id, "update", e)

    def _previous_row(
        self,
        spec: CollectionSpec,
        prev: dict[str, Any],
        lookup: Lookup,
        fallback: dict[str, Any],
    ) -> dict[str, Any]:
        """Remote shape of the previous version, used to find the row it was written as."""
        try:
            return self.transformer.to_remote(spec, prev, lookup)
        except (ResolutionError, ValidationError):
            return fallback

    async def _apply_deletes(
        self,
        spec: CollectionSpec,
        plan: SyncPlan,
        lookup: Lookup,
        result: SyncResult,
        resolved: set[str],
    ) -> None:
        if not plan.deletes:
            return
        if spec.append_only:
            result.ignored += len(plan.deletes)
            resolved.update(plan.delete_ids)
            logger.warning(
                f"Ignoring {len(plan.deletes)} deletes from append-only {spec.name}",
                extra={"collection": spec.name},
            )
            return

        canonical = [i for i in plan.delete_ids if is_canonical_id(i)]
        if canonical:
            try:
                await self._call(lambda store: store.delete(spec.table, canonical))
                result.deleted += len(canonical)
            except SyncStorageError as e:
                for item_id in canonical:
                    self._fail(result, item_id, "delete", e)
            resolved.update(canonical)

        for prev in plan.deletes:
            item_id = str(prev["id"])
            if is_canonical_id(item_id):
                continue
            try:
                row = self.transformer.to_remote(spec, prev, lookup)
            except (ResolutionError, ValidationError):
                # Never reached the remote in a resolvable form
                resolved.add(item_id)
                continue
            try:
                target = await self._locate(spec, row)
                if target is not None:
                    await self._call(lambda store, target=target: store.delete(spec.table, [target]))
                    result.deleted += 1
                resolved.add(item_id)
            except SyncStorageError as e:
                resolved.add(item_id)
                self._fail(result, item_id, "delete", e)
