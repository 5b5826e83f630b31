"""
Differential synchronization.

Computes snapshot differences and mirrors them to the remote store.
"""

from .diff import SyncPlan, compute_diff, items_equal, normalize
from .engine import BulkInsertOutcome, DifferentialSyncEngine, SyncResult, bulk_insert

__all__ = [
    "BulkInsertOutcome",
    "DifferentialSyncEngine",
    "SyncPlan",
    "SyncResult",
    "bulk_insert",
    "compute_diff",
    "items_equal",
    "normalize",
]
