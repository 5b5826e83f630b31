"""
Logging setup for sync diagnostics.

Records emitted by the storage layer carry their context as ``extra``
fields (collection, operation, client_state, error_type and the counters
of a sync result). Two formatters render them:

- StructuredJsonFormatter: one JSON object per line, context fields first,
  for log collectors that filter by collection and outcome
- CollectionTextFormatter: a readable line prefixed with the collection,
  for terminals and scripts

Environment variables read by configure_from_environment():
- SHUTTLE_LOG_LEVEL: Level name (default: INFO)
- SHUTTLE_LOG_FORMAT: "json" or "text" (default: json)
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, TextIO

PACKAGE_LOGGER = "shuttle_storage"

# Context fields rendered ahead of any other extra field, in this order
CONTEXT_FIELDS = ("collection", "operation", "client_state", "error_type")

_STANDARD_ATTRS = {
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "taskName", "message",
}


def _json_value(value: Any) -> Any:
    # Id sets (failed_ids, pending ids) render as sorted lists
    if isinstance(value, (set, frozenset)):
        return sorted(str(v) for v in value)
    try:
        json.dumps(value)
        return value
    except (TypeError, ValueError):
        return str(value)


def record_context(record: logging.LogRecord) -> dict[str, Any]:
    """Extra fields of a record, known context fields first."""
    extra = {
        key: value
        for key, value in record.__dict__.items()
        if key not in _STANDARD_ATTRS and not key.startswith("_")
    }
    ordered = {key: extra.pop(key) for key in CONTEXT_FIELDS if key in extra}
    ordered.update(extra)
    return ordered


class StructuredJsonFormatter(logging.Formatter):
    """
    JSON formatter for sync diagnostics.

    Outputs single-line JSON objects with consistent fields:
    - timestamp: ISO 8601 format in UTC
    - level: Log level (INFO, WARNING, ERROR, etc.)
    - logger: Logger name
    - message: Log message
    - Context fields (collection, operation, ...) followed by other extras
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_obj: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record_context(record).items():
            log_obj[key] = _json_value(value)

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_obj, default=str)


class CollectionTextFormatter(logging.Formatter):
    """Plain text formatter that prefixes the collection when a record has one."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)-7s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        collection = getattr(record, "collection", None)
        if collection:
            prefix = f"{record.name}: "
            line = line.replace(prefix, f"{prefix}[{collection}] ", 1)
        return line


def configure_structured_logging(
    level: int | str = logging.INFO,
    logger_name: str | None = PACKAGE_LOGGER,
    json_output: bool = True,
    stream: TextIO | None = None,
) -> logging.Logger:
    """
    Route the package's log records to one stream handler.

    Args:
        level: Logging level, as a number or a level name (default: INFO)
        logger_name: Logger to configure (default: the package logger)
        json_output: JSON lines when True, readable text otherwise
        stream: Output stream (default: stdout)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)

    # Remove existing handlers to avoid duplicates
    logger.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(StructuredJsonFormatter() if json_output else CollectionTextFormatter())

    logger.addHandler(handler)
    logger.setLevel(level.upper() if isinstance(level, str) else level)

    return logger


def configure_from_environment(stream: TextIO | None = None) -> logging.Logger:
    """Configure package logging from SHUTTLE_LOG_LEVEL and SHUTTLE_LOG_FORMAT."""
    return configure_structured_logging(
        level=os.environ.get("SHUTTLE_LOG_LEVEL", "INFO"),
        json_output=os.environ.get("SHUTTLE_LOG_FORMAT", "json").lower() != "text",
        stream=stream,
    )


def get_storage_logger(name: str) -> logging.Logger:
    """
    Get a logger for storage components with consistent naming.

    Args:
        name: Component name (e.g., 'sync', 'migration')

    Returns:
        Logger instance with name 'shuttle_storage.{name}'
    """
    return logging.getLogger(f"{PACKAGE_LOGGER}.{name}")


class CollectionLoggerAdapter(logging.LoggerAdapter):
    """
    Logger adapter that stamps the collection key on every record.

    An ``operation`` passed per call is kept next to it.

    Example:
        >>> log = CollectionLoggerAdapter(logger, {"collection": "badminton_matches"})
        >>> log.info("Applied sync plan", extra={"operation": "insert", "inserted": 2})
    """

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        """Merge the adapter's context into the call's extra fields."""
        kwargs["extra"] = {**kwargs.get("extra", {}), **self.extra}
        return msg, kwargs
