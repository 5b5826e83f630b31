"""
Migration types and data structures.

Defines the result of moving pre-existing local data into an empty
remote collection.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class MigrationStatus(Enum):
    """Status of a migration operation."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class MigrationResult:
    """Result of migrating a single collection.

    ``snapshot`` holds the remote collection re-read after the migration,
    already in local shape; it is None when the migration was skipped or
    the re-read failed.
    """

    collection: str
    status: MigrationStatus = MigrationStatus.PENDING
    total: int = 0
    migrated: int = 0
    duplicates: int = 0
    skipped: int = 0
    failed_ids: set[str] = field(default_factory=set)

    # Local id -> canonical id of migrated items
    assigned_ids: dict[str, str] = field(default_factory=dict)

    # Why the migration was skipped
    reason: str | None = None

    # Timing
    started_at: datetime | None = None
    completed_at: datetime | None = None

    # Error info (if failed)
    error_message: str | None = None
    error_details: dict[str, Any] = field(default_factory=dict)

    snapshot: list[dict[str, Any]] | None = field(default=None, repr=False)

    @property
    def ran(self) -> bool:
        """True if rows were submitted to the remote."""
        return self.status in (MigrationStatus.COMPLETED, MigrationStatus.FAILED)

    @property
    def duration_seconds(self) -> float | None:
        """Calculate migration duration."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "collection": self.collection,
            "status": self.status.value,
            "total": self.total,
            "migrated": self.migrated,
            "duplicates": self.duplicates,
            "skipped": self.skipped,
            "failed": sorted(self.failed_ids),
            "reason": self.reason,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "error_message": self.error_message,
            "error_details": self.error_details,
        }
