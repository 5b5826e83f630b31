"""
Abstract remote store interface and its configuration.

Defines the contract every remote relational backend adapter must
implement. Adapters translate driver failures into the storage error
taxonomy:

- TransportError: network, certificate or timeout failure
- ConstraintViolation: uniqueness violation (duplicate key)
- ConfigurationError: missing or rejected credentials
- RemoteQueryError: anything else the remote rejects
"""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..exceptions import ConfigurationError

DEFAULT_TIMEOUT = 10.0  # seconds
DEFAULT_MAX_CLIENT_AGE = 3600.0  # seconds
DEFAULT_TRANSPORT_ERROR_THRESHOLD = 3


class RemoteBackend(Enum):
    """Which adapter talks to the remote store.

    POSTGREST: Supabase / PostgREST HTTP API (recommended)
    SQLITE: SQLite database file with the same relational schema
    """

    POSTGREST = "postgrest"
    SQLITE = "sqlite"


@dataclass
class RemoteConfig:
    """Configuration for the remote store connection.

    Environment Variables:
        SHUTTLE_REMOTE_URL: Remote URL (PostgREST base URL or SQLite path)
        SHUTTLE_REMOTE_KEY: API key (PostgREST only)
        SHUTTLE_REMOTE_BACKEND: postgrest | sqlite (default: postgrest)
        SHUTTLE_REMOTE_SCHEMA: Database schema (default: public)
        SHUTTLE_REMOTE_TIMEOUT: Request timeout in seconds
        SHUTTLE_REMOTE_MAX_AGE: Seconds before a connected client goes stale
        SHUTTLE_REMOTE_ERROR_THRESHOLD: Consecutive transport errors before stale

    SUPABASE_URL / SUPABASE_ANON_KEY are accepted as fallbacks.

    Attributes:
        url: Remote URL or database path
        api_key: API key sent with every request
        backend: Adapter to use
        schema: Database schema for PostgREST profile headers
        timeout: Per-request timeout (seconds)
        max_client_age: Client age after which the handle is recycled (seconds)
        transport_error_threshold: Consecutive transport errors before recycling
    """

    url: str | None = None
    api_key: str | None = None
    backend: RemoteBackend = RemoteBackend.POSTGREST
    schema: str = "public"
    timeout: float = DEFAULT_TIMEOUT
    max_client_age: float = DEFAULT_MAX_CLIENT_AGE
    transport_error_threshold: int = DEFAULT_TRANSPORT_ERROR_THRESHOLD

    @classmethod
    def from_env(cls) -> RemoteConfig:
        """Create config from environment variables.

        Never raises for missing credentials; call require() to check.
        """
        backend_str = os.environ.get("SHUTTLE_REMOTE_BACKEND", "postgrest")
        try:
            backend = RemoteBackend(backend_str.lower())
        except ValueError:
            backend = RemoteBackend.POSTGREST

        return cls(
            url=os.environ.get("SHUTTLE_REMOTE_URL") or os.environ.get("SUPABASE_URL"),
            api_key=os.environ.get("SHUTTLE_REMOTE_KEY") or os.environ.get("SUPABASE_ANON_KEY"),
            backend=backend,
            schema=os.environ.get("SHUTTLE_REMOTE_SCHEMA", "public"),
            timeout=float(os.environ.get("SHUTTLE_REMOTE_TIMEOUT", DEFAULT_TIMEOUT)),
            max_client_age=float(os.environ.get("SHUTTLE_REMOTE_MAX_AGE", DEFAULT_MAX_CLIENT_AGE)),
            transport_error_threshold=int(
                os.environ.get("SHUTTLE_REMOTE_ERROR_THRESHOLD", DEFAULT_TRANSPORT_ERROR_THRESHOLD)
            ),
        )

    @property
    def is_configured(self) -> bool:
        """True when the settings needed to connect are present."""
        if not self.url:
            return False
        if self.backend == RemoteBackend.POSTGREST and not self.api_key:
            return False
        return True

    def require(self) -> None:
        """Raise ConfigurationError if required settings are missing."""
        if not self.url:
            raise ConfigurationError("url", "SHUTTLE_REMOTE_URL not set")
        if self.backend == RemoteBackend.POSTGREST and not self.api_key:
            raise ConfigurationError("api_key", "SHUTTLE_REMOTE_KEY not set")


class RemoteStore(ABC):
    """Abstract interface for a remote relational store.

    All operations are table-scoped. Filters are column equality matches;
    ``null_columns`` adds ``IS NULL`` conditions.
    """

    endpoint: str = "remote"

    @abstractmethod
    async def ping(self) -> None:
        """Verify the store is reachable.

        Raises:
            TransportError: If the store cannot be reached
            ConfigurationError: If credentials are rejected
        """
        ...

    @abstractmethod
    async def select(
        self,
        table: str,
        *,
        columns: Sequence[str] | None = None,
        filters: Mapping[str, Any] | None = None,
        null_columns: Sequence[str] = (),
        order_by: str | None = None,
        ascending: bool = True,
    ) -> list[dict[str, Any]]:
        """Select rows from a table.

        Args:
            table: Table name
            columns: Columns to return (default: all)
            filters: Column equality conditions
            null_columns: Columns that must be NULL
            order_by: Column to order by
            ascending: Sort direction

        Returns:
            Matching rows
        """
        ...

    @abstractmethod
    async def insert(self, table: str, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Insert rows in one statement.

        Rows without an ``id`` get a remote-assigned canonical id.

        Returns:
            Inserted rows as stored

        Raises:
            ConstraintViolation: If any row violates a uniqueness constraint
        """
        ...

    @abstractmethod
    async def update(
        self,
        table: str,
        values: dict[str, Any],
        filters: Mapping[str, Any],
    ) -> list[dict[str, Any]]:
        """Update rows matching filters.

        Returns:
            Updated rows
        """
        ...

    @abstractmethod
    async def delete(self, table: str, ids: list[str]) -> int:
        """Delete rows by id.

        Returns:
            Number of rows deleted
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release connections held by the adapter."""
        ...
