"""
JSON file operations for the local cache.

Provides atomic read/write operations for JSON files with:
- Atomic writes using temp file + rename
- fsync before rename so a torn write never replaces a good snapshot
"""

import json
import os
import tempfile
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os

from ..exceptions import StorageIOError


async def ensure_directory(path: Path) -> None:
    """Ensure directory exists, creating if necessary.

    Args:
        path: Directory path to ensure exists
    """
    try:
        await aiofiles.os.makedirs(path, exist_ok=True)
    except OSError as e:
        raise StorageIOError("create_directory", str(path), e) from e


async def read_text(path: Path) -> str | None:
    """Read a text file.

    Args:
        path: Path to the file

    Returns:
        File content or None if the file doesn't exist
    """
    try:
        if not await aiofiles.os.path.exists(path):
            return None
        async with aiofiles.open(path, encoding="utf-8") as f:
            return await f.read()
    except OSError as e:
        raise StorageIOError("read_file", str(path), e) from e


async def read_json(path: Path) -> Any:
    """Read a JSON file.

    Args:
        path: Path to JSON file

    Returns:
        Parsed JSON data or None if file doesn't exist or is empty

    Raises:
        json.JSONDecodeError: If the content is not valid JSON
    """
    content = await read_text(path)
    if content is None or not content.strip():
        return None
    return json.loads(content)


async def write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON file atomically using temp file + rename.

    Args:
        path: Target path for JSON file
        data: Data to serialize as JSON
    """
    await ensure_directory(path.parent)

    fd, temp_path = tempfile.mkstemp(
        dir=path.parent,
        prefix=".tmp_",
        suffix=".json",
    )
    try:
        os.close(fd)
        async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
            await f.write(json.dumps(data, default=_json_serializer))
            await f.flush()
            os.fsync(f.fileno())

        await aiofiles.os.replace(temp_path, path)
    except Exception as e:
        try:
            await aiofiles.os.remove(temp_path)
        except OSError:
            pass
        raise StorageIOError("write_json", str(path), e) from e


async def remove_file(path: Path) -> bool:
    """Remove a file if it exists.

    Args:
        path: Path to remove

    Returns:
        True if file was removed, False if it didn't exist
    """
    try:
        if await aiofiles.os.path.exists(path):
            await aiofiles.os.remove(path)
            return True
        return False
    except OSError as e:
        raise StorageIOError("remove", str(path), e) from e


async def file_exists(path: Path) -> bool:
    """Check if a file exists."""
    try:
        return await aiofiles.os.path.exists(path)
    except OSError:
        return False


def _json_serializer(obj: Any) -> Any:
    """Custom JSON serializer for types not handled by default.

    Args:
        obj: Object to serialize

    Returns:
        JSON-serializable representation
    """
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")
