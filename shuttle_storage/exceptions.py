"""
Custom exceptions for hybrid storage.

Remote adapters translate driver failures into these types so the
sync engine and coordinator can apply one error policy regardless of
which backend is configured.
"""


class SyncStorageError(Exception):
    """Base exception for all storage and sync errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class TransportError(SyncStorageError):
    """Raised on network, certificate or timeout failures talking to the remote.

    Non-fatal: callers fall back to the local cache and the client counts
    the failure towards going stale.
    """

    def __init__(self, endpoint: str, cause: Exception | None = None):
        details = {"endpoint": endpoint}
        if cause:
            details["cause"] = str(cause)
        super().__init__(f"Transport failure talking to {endpoint}", details)
        self.endpoint = endpoint
        self.cause = cause


class ConstraintViolation(SyncStorageError):
    """Raised when the remote rejects a write on a uniqueness constraint."""

    def __init__(self, table: str, reason: str | None = None):
        details = {"table": table}
        if reason:
            details["reason"] = reason
        super().__init__(f"Constraint violation on {table}", details)
        self.table = table
        self.reason = reason


class ResolutionError(SyncStorageError):
    """Raised when a referenced entity cannot be resolved during a transform."""

    def __init__(self, collection: str, field: str, value: str | None = None):
        details = {"collection": collection, "field": field}
        if value is not None:
            details["value"] = value
        super().__init__(f"Cannot resolve {field} for {collection}: {value!r}", details)
        self.collection = collection
        self.field = field
        self.value = value


class MalformedCacheError(SyncStorageError):
    """Raised when a cached snapshot cannot be parsed."""

    def __init__(self, key: str, cause: Exception | None = None):
        details = {"key": key}
        if cause:
            details["cause"] = str(cause)
        super().__init__(f"Malformed cache content for {key}", details)
        self.key = key
        self.cause = cause


class ConfigurationError(SyncStorageError):
    """Raised when remote configuration or credentials are missing or rejected."""

    def __init__(self, setting: str, reason: str | None = None):
        details = {"setting": setting}
        if reason:
            details["reason"] = reason
        super().__init__(f"Remote configuration problem: {setting}", details)
        self.setting = setting
        self.reason = reason


class RemoteQueryError(SyncStorageError):
    """Raised when the remote answers with a non-transport, non-constraint error."""

    def __init__(self, table: str, operation: str, reason: str | None = None):
        details = {"table": table, "operation": operation}
        if reason:
            details["reason"] = reason
        super().__init__(f"Remote {operation} failed on {table}", details)
        self.table = table
        self.operation = operation
        self.reason = reason


class StorageIOError(SyncStorageError):
    """Raised when a local storage I/O operation fails."""

    def __init__(self, operation: str, path: str | None = None, cause: Exception | None = None):
        details = {"operation": operation}
        if path:
            details["path"] = path
        if cause:
            details["cause"] = str(cause)
        message = f"Storage I/O error during {operation}"
        if path:
            message += f": {path}"
        super().__init__(message, details)
        self.operation = operation
        self.path = path
        self.cause = cause


class UnknownCollectionError(SyncStorageError):
    """Raised when a collection key is not present in the registry."""

    def __init__(self, key: str):
        super().__init__(f"Unknown collection: {key}", {"key": key})
        self.key = key


class RegistryError(SyncStorageError):
    """Raised when the collection registry fails startup validation."""

    def __init__(self, reason: str):
        super().__init__(f"Invalid collection registry: {reason}", {"reason": reason})
        self.reason = reason


class RemoteUnavailableError(SyncStorageError):
    """Raised when no remote handle is available for an operation.

    Covers a client that never connected, one that is permanently
    disabled by configuration, and one reset while the operation ran.
    """

    def __init__(self, reason: str):
        super().__init__(f"Remote store unavailable: {reason}", {"reason": reason})
        self.reason = reason


class ValidationError(SyncStorageError):
    """Raised when a record fails validation before being written remotely."""

    def __init__(self, field: str, reason: str, value: object = None):
        details = {"field": field, "reason": reason}
        if value is not None:
            details["value"] = str(value)
        super().__init__(f"Validation failed for {field}: {reason}", details)
        self.field = field
        self.reason = reason
        self.value = value
