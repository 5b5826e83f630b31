"""
Storage configuration and health reporting types.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import yaml

from ..exceptions import ConfigurationError
from ..remote.base import RemoteBackend, RemoteConfig
from ..remote.client import ClientState

DEFAULT_CACHE_DIR = Path.home() / ".shuttle" / "cache"
DEFAULT_SETTINGS_FILE = Path.home() / ".shuttle" / "settings.yaml"


@dataclass
class StorageConfig:
    """Configuration for hybrid storage.

    Configuration can be provided directly, via environment variables or
    via the ``storage`` section of a YAML settings file.

    Environment Variables:
        SHUTTLE_CACHE_DIR: Directory for the local cache (default: ~/.shuttle/cache)
        SHUTTLE_ENABLE_SYNC: "false" keeps every collection local-only
        SHUTTLE_REMOTE_*: Remote settings, see RemoteConfig

    Attributes:
        cache_dir: Directory holding one JSON file per collection
        remote: Remote store settings
        enable_sync: Whether to mirror collections to the remote
        options: Additional options
    """

    cache_dir: str | None = None
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    enable_sync: bool = True
    options: dict[str, Any] = field(default_factory=dict)

    @property
    def cache_path(self) -> Path:
        return Path(self.cache_dir).expanduser() if self.cache_dir else DEFAULT_CACHE_DIR

    @classmethod
    def from_environment(cls) -> StorageConfig:
        """Create configuration from environment variables."""
        return cls(
            cache_dir=os.environ.get("SHUTTLE_CACHE_DIR"),
            remote=RemoteConfig.from_env(),
            enable_sync=os.environ.get("SHUTTLE_ENABLE_SYNC", "true").lower() != "false",
        )

    @classmethod
    def from_file(cls, path: Path | None = None) -> StorageConfig:
        """Create configuration from a YAML settings file.

        ```yaml
        storage:
          cache_dir: ~/.shuttle/cache
          enable_sync: true
          remote:
            backend: postgrest
            url: https://project.supabase.co
            api_key: "..."
            timeout: 10
        ```

        A missing file or section yields the defaults.

        Raises:
            ConfigurationError: If the file cannot be read or parsed
        """
        path = path or DEFAULT_SETTINGS_FILE
        if not path.exists():
            return cls()

        try:
            content = yaml.safe_load(path.read_text()) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError("settings_file", f"{path}: {e}") from e

        section = content.get("storage") or {}
        if not isinstance(section, dict):
            raise ConfigurationError("storage", f"{path}: 'storage' must be a mapping")

        remote_section = section.get("remote") or {}
        remote = RemoteConfig()
        for key in (
            "url",
            "api_key",
            "schema",
            "timeout",
            "max_client_age",
            "transport_error_threshold",
        ):
            if remote_section.get(key) is not None:
                setattr(remote, key, remote_section[key])
        if remote_section.get("backend"):
            try:
                remote.backend = RemoteBackend(str(remote_section["backend"]).lower())
            except ValueError as e:
                raise ConfigurationError(
                    "backend", f"unknown backend {remote_section['backend']!r}"
                ) from e

        return cls(
            cache_dir=section.get("cache_dir"),
            remote=remote,
            enable_sync=bool(section.get("enable_sync", True)),
            options=dict(section.get("options") or {}),
        )


@dataclass
class HealthStatus:
    """Coarse diagnostic signal for one collection.

    Attributes:
        collection: Collection key
        initialized: Whether initialize() has completed
        remote_capable: Whether the collection is mirrored at all
        remote_active: Whether the last remote interaction succeeded
        client_state: State of the shared remote client
        last_error: Most recent swallowed error
        pending_writes: Writes queued but not yet mirrored
        unsynced: Items differing from what the remote is believed to hold
        last_sync_at: When a write was last mirrored completely
    """

    collection: str
    initialized: bool = False
    remote_capable: bool = False
    remote_active: bool = False
    client_state: ClientState | None = None
    last_error: str | None = None
    pending_writes: int = 0
    unsynced: int = 0
    last_sync_at: datetime | None = None

    @property
    def healthy(self) -> bool:
        if not self.remote_capable:
            return True
        return self.remote_active and self.unsynced == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "collection": self.collection,
            "initialized": self.initialized,
            "remote_capable": self.remote_capable,
            "remote_active": self.remote_active,
            "client_state": self.client_state.value if self.client_state else None,
            "last_error": self.last_error,
            "pending_writes": self.pending_writes,
            "unsynced": self.unsynced,
            "last_sync_at": self.last_sync_at.isoformat() if self.last_sync_at else None,
            "healthy": self.healthy,
        }
