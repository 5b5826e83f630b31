"""
Shuttle Storage

Cache-first persistence with differential remote sync for badminton
session and pairing data.

Provides:
- An always-available local JSON cache per collection
- Differential sync of every write to a PostgREST (Supabase) or SQLite store
- One-time migration of cached data into an empty remote
- Bidirectional transforms between remote rows and local records

Usage:

    >>> from shuttle_storage import HybridStorage, StorageConfig, CollectionKey
    >>> async with HybridStorage(StorageConfig.from_environment()) as storage:
    ...     players = storage.collection(CollectionKey.PLAYERS)
    ...     await players.add_item({"name": "Ana", "elo": 120})
    ...     await storage.flush()
    ...     print(storage.health_summary())

Remote Selection:

    # Hosted Supabase / PostgREST
    SHUTTLE_REMOTE_URL=https://project.supabase.co SHUTTLE_REMOTE_KEY=...

    # Self-hosted SQLite file
    SHUTTLE_REMOTE_BACKEND=sqlite SHUTTLE_REMOTE_URL=/var/lib/shuttle/remote.db
"""

# Exceptions
from .exceptions import (
    ConfigurationError,
    ConstraintViolation,
    MalformedCacheError,
    RegistryError,
    RemoteQueryError,
    RemoteUnavailableError,
    ResolutionError,
    StorageIOError,
    SyncStorageError,
    TransportError,
    UnknownCollectionError,
    ValidationError,
)

# Local cache
from .local import LocalCache

# Migration
from .migration import MigrationManager, MigrationResult, MigrationStatus

# Records
from .models import (
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

# Observability
from .observability import CompositeObserver, LoggingObserver, SyncObserver

# Registry
from .registry import (
    DEFAULT_REGISTRY,
    CollectionKey,
    CollectionRegistry,
    CollectionSpec,
    SecondaryKey,
)

# Remote access
from .remote import (
    ClientState,
    PostgrestRemoteStore,
    RemoteBackend,
    RemoteClient,
    RemoteConfig,
    RemoteStore,
    SQLiteRemoteStore,
)

# Storage
from .storage import HealthStatus, HybridStorage, StorageConfig, StorageCoordinator

# Sync
from .sync import DifferentialSyncEngine, SyncPlan, SyncResult, compute_diff

# Transforms
from .transform import EntityTransformer, Lookup

__all__ = [
    # Storage
    "HybridStorage",
    "StorageCoordinator",
    "StorageConfig",
    "HealthStatus",
    "LocalCache",
    # Registry
    "CollectionKey",
    "CollectionRegistry",
    "CollectionSpec",
    "SecondaryKey",
    "DEFAULT_REGISTRY",
    # Records
    "Record",
    "Player",
    "Session",
    "SessionPlayer",
    "Match",
    "EloHistory",
    "Court",
    "MatchEvent",
    "SessionSetting",
    # Remote
    "RemoteClient",
    "RemoteConfig",
    "RemoteBackend",
    "RemoteStore",
    "ClientState",
    "PostgrestRemoteStore",
    "SQLiteRemoteStore",
    # Sync
    "DifferentialSyncEngine",
    "SyncPlan",
    "SyncResult",
    "compute_diff",
    "EntityTransformer",
    "Lookup",
    # Migration
    "MigrationManager",
    "MigrationResult",
    "MigrationStatus",
    # Observability
    "SyncObserver",
    "LoggingObserver",
    "CompositeObserver",
    # Exceptions
    "SyncStorageError",
    "TransportError",
    "ConstraintViolation",
    "ResolutionError",
    "MalformedCacheError",
    "ConfigurationError",
    "RemoteQueryError",
    "RemoteUnavailableError",
    "StorageIOError",
    "UnknownCollectionError",
    "RegistryError",
    "ValidationError",
]

__version__ = "0.1.0"
