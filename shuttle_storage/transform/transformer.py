"""
Bidirectional entity transformer.

Dispatches to the per-collection mappers registered in the collection
registry and applies the batch rules:

- remote -> local is total: every row yields a fully populated record
- local -> remote reports unresolvable items instead of raising for the batch
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from ..exceptions import ResolutionError, ValidationError
from .lookup import Lookup

if TYPE_CHECKING:
    from ..registry import CollectionKey, CollectionRegistry, CollectionSpec
    from ..remote.base import RemoteStore

logger = logging.getLogger(__name__)


@dataclass
class RemoteBatch:
    """Result of transforming local items for a remote write.

    Attributes:
        rows: (local item, remote row) pairs ready to send
        rejected: (local item, error) pairs that cannot be sent
    """

    rows: list[tuple[dict[str, Any], dict[str, Any]]] = field(default_factory=list)
    rejected: list[tuple[dict[str, Any], Exception]] = field(default_factory=list)


class EntityTransformer:
    """Translate between remote rows and local records per collection."""

    def __init__(self, registry: CollectionRegistry | None = None) -> None:
        if registry is None:
            from ..registry import DEFAULT_REGISTRY

            registry = DEFAULT_REGISTRY
        self.registry = registry

    def _spec(self, key: CollectionKey | str | CollectionSpec) -> CollectionSpec:
        if isinstance(key, (str, Enum)):
            return self.registry.get(key)  # type: ignore[arg-type]
        return key

    async def fetch_lookup(
        self,
        key: CollectionKey | str | CollectionSpec,
        store: RemoteStore,
    ) -> Lookup:
        """Fetch the name lookup if the collection needs one."""
        spec = self._spec(key)
        if not spec.needs_lookup:
            return Lookup.empty()
        return await Lookup.fetch(store)

    def to_local(
        self,
        key: CollectionKey | str | CollectionSpec,
        rows: Sequence[Mapping[str, Any]],
        lookup: Lookup | None = None,
    ) -> list[dict[str, Any]]:
        """Transform remote rows to local records, preserving order."""
        spec = self._spec(key)
        lookup = lookup or Lookup.empty()
        return [spec.to_local(row, lookup) for row in rows if isinstance(row, Mapping)]

    def to_remote(
        self,
        key: CollectionKey | str | CollectionSpec,
        item: Mapping[str, Any],
        lookup: Lookup | None = None,
    ) -> dict[str, Any]:
        """Transform one local record to a remote row.

        Raises:
            ResolutionError: If a reference cannot be resolved to a canonical id
            ValidationError: If the record breaks an entity invariant
        """
        spec = self._spec(key)
        return spec.to_remote(item, lookup or Lookup.empty())

    def to_remote_batch(
        self,
        key: CollectionKey | str | CollectionSpec,
        items: Sequence[dict[str, Any]],
        lookup: Lookup | None = None,
    ) -> RemoteBatch:
        """Transform many records, collecting failures per item."""
        spec = self._spec(key)
        lookup = lookup or Lookup.empty()
        batch = RemoteBatch()
        for item in items:
            try:
                batch.rows.append((item, spec.to_remote(item, lookup)))
            except (ResolutionError, ValidationError) as e:
                logger.warning(
                    f"Skipping {spec.name} item {item.get('id')}: {e.message}",
                    extra={"collection": spec.name},
                )
                batch.rejected.append((item, e))
        return batch
