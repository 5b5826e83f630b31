"""
Remote relational store access.

Provides the RemoteStore adapters (PostgREST over HTTP, SQLite file) and
the RemoteClient lifecycle wrapper shared by every collection.
"""

from __future__ import annotations

from .base import RemoteBackend, RemoteConfig, RemoteStore
from .client import ClientState, RemoteClient
from .postgrest import PostgrestRemoteStore
from .sqlite import SQLiteRemoteConfig, SQLiteRemoteStore


async def open_remote_store(config: RemoteConfig) -> RemoteStore:
    """Build the adapter selected by config.backend.

    Raises:
        ConfigurationError: If required settings are missing
        TransportError: If the SQLite file cannot be opened
    """
    config.require()
    if config.backend == RemoteBackend.SQLITE:
        return await SQLiteRemoteStore.create(SQLiteRemoteConfig.from_remote_config(config))
    return PostgrestRemoteStore(config)


__all__ = [
    "ClientState",
    "PostgrestRemoteStore",
    "RemoteBackend",
    "RemoteClient",
    "RemoteConfig",
    "RemoteStore",
    "SQLiteRemoteConfig",
    "SQLiteRemoteStore",
    "open_remote_store",
]
