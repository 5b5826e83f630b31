"""
Cache-first collection storage.

Provides the per-collection StorageCoordinator and the HybridStorage facade
that runs one coordinator per registered collection over a shared cache
and remote client.

Example:
    >>> from shuttle_storage.storage import HybridStorage, StorageConfig
    >>> config = StorageConfig.from_file()
    >>> async with HybridStorage(config) as storage:
    ...     matches = storage.collection("badminton_matches")
    ...     current = matches.read()
"""

from .base import HealthStatus, StorageConfig
from .coordinator import StorageCoordinator
from .hybrid import HybridStorage

__all__ = [
    # Configuration
    "StorageConfig",
    # Storage
    "StorageCoordinator",
    "HybridStorage",
    # Diagnostics
    "HealthStatus",
]
