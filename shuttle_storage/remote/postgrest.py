"""
PostgREST remote store.

Talks to a Supabase / PostgREST HTTP API:

    GET    /rest/v1/{table}?select=*&col=eq.value&order=col.asc
    POST   /rest/v1/{table}                      (bulk insert, JSON array)
    PATCH  /rest/v1/{table}?col=eq.value         (update matching rows)
    DELETE /rest/v1/{table}?id=in.("a","b")

Every request carries the ``apikey`` and bearer token headers and asks for
``return=representation`` so writes echo the stored rows.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from typing import Any

import aiohttp

from ..exceptions import (
    ConfigurationError,
    ConstraintViolation,
    RemoteQueryError,
    TransportError,
)
from .base import RemoteConfig, RemoteStore

logger = logging.getLogger(__name__)

# PostgreSQL / PostgREST error codes
UNIQUE_VIOLATION = "23505"
UNDEFINED_TABLE = "42P01"
MISSING_TABLE_CODES = frozenset({UNDEFINED_TABLE, "PGRST116", "PGRST205"})

PING_TABLE = "players"


def _encode_value(value: Any) -> str:
    if value is True:
        return "true"
    if value is False:
        return "false"
    return str(value)


def _quote(value: Any) -> str:
    text = _encode_value(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{text}"'


def build_filter_params(
    filters: Mapping[str, Any] | None = None,
    null_columns: Sequence[str] = (),
) -> list[tuple[str, str]]:
    """Translate equality filters into PostgREST query parameters."""
    params: list[tuple[str, str]] = []
    for column, value in (filters or {}).items():
        if value is None:
            params.append((column, "is.null"))
        else:
            params.append((column, f"eq.{_encode_value(value)}"))
    for column in null_columns:
        params.append((column, "is.null"))
    return params


class PostgrestRemoteStore(RemoteStore):
    """RemoteStore over the PostgREST HTTP API using aiohttp."""

    def __init__(
        self,
        config: RemoteConfig,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            config: Remote configuration (url and api_key required)
            session: Optional externally managed aiohttp session
        """
        config.require()
        self.config = config
        self.base_url = f"{(config.url or '').rstrip('/')}/rest/v1"
        self.endpoint = config.url or "postgrest"
        self._session = session
        self._owns_session = session is None

    def _headers(self, write: bool = False) -> dict[str, str]:
        headers = {
            "apikey": self.config.api_key or "",
            "Authorization": f"Bearer {self.config.api_key}",
            "Accept": "application/json",
            "Accept-Profile": self.config.schema,
        }
        if write:
            headers["Content-Type"] = "application/json"
            headers["Content-Profile"] = self.config.schema
            headers["Prefer"] = "return=representation"
        return headers

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    async def _request(
        self,
        method: str,
        table: str,
        operation: str,
        params: list[tuple[str, str]] | None = None,
        json_body: Any = None,
        prefer: str | None = None,
    ) -> Any:
        """Send one request and translate failures into storage errors."""
        session = self._get_session()
        headers = self._headers(write=json_body is not None or method == "DELETE")
        if prefer:
            headers["Prefer"] = prefer
        try:
            async with session.request(
                method,
                f"{self.base_url}/{table}",
                params=params or [],
                json=json_body,
                headers=headers,
            ) as response:
                if response.status >= 400:
                    await self._raise_for_response(response, table, operation)
                if response.status == 204:
                    return []
                text = await response.text()
                if not text:
                    return []
                return await response.json(content_type=None)
        except aiohttp.ClientConnectionError as e:
            raise TransportError(self.endpoint, e) from e
        except asyncio.TimeoutError as e:
            raise TransportError(self.endpoint, e) from e

    async def _raise_for_response(
        self,
        response: aiohttp.ClientResponse,
        table: str,
        operation: str,
    ) -> None:
        try:
            payload = await response.json(content_type=None)
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            payload = {"message": await response.text()}

        code = str(payload.get("code") or "")
        message = str(payload.get("message") or response.reason or "")

        if response.status in (401, 403):
            raise ConfigurationError("api_key", f"{response.status}: {message}")
        if code == UNIQUE_VIOLATION or response.status == 409:
            raise ConstraintViolation(table, message)
        raise RemoteQueryError(table, operation, f"{response.status} {code}: {message}".strip())

    async def ping(self) -> None:
        """Check the API by selecting one player row.

        A missing table still proves the API is reachable and is only logged.
        """
        try:
            await self._request(
                "GET",
                PING_TABLE,
                "ping",
                params=[("select", "id"), ("limit", "1")],
            )
        except RemoteQueryError as e:
            reason = e.reason or ""
            if any(code in reason for code in MISSING_TABLE_CODES) or reason.startswith("404"):
                logger.warning(f"Remote reachable but table {PING_TABLE} is missing: {reason}")
                return
            raise

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
        params = [("select", ",".join(columns) if columns else "*")]
        params.extend(build_filter_params(filters, null_columns))
        if order_by:
            params.append(("order", f"{order_by}.{'asc' if ascending else 'desc'}"))
        rows = await self._request("GET", table, "select", params=params)
        return list(rows or [])

    async def insert(self, table: str, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        if not rows:
            return []
        # Union of keys so rows with and without ids share one statement;
        # missing keys take the column default.
        column_names: list[str] = []
        for row in rows:
            for key in row:
                if key not in column_names:
                    column_names.append(key)
        result = await self._request(
            "POST",
            table,
            "insert",
            params=[("columns", ",".join(column_names))],
            json_body=rows,
            prefer="return=representation,missing=default",
        )
        return list(result or [])

    async def update(
        self,
        table: str,
        values: dict[str, Any],
        filters: Mapping[str, Any],
    ) -> list[dict[str, Any]]:
        if not filters:
            raise RemoteQueryError(table, "update", "refusing to update without filters")
        params = build_filter_params(filters)
        rows = await self._request("PATCH", table, "update", params=params, json_body=values)
        return list(rows or [])

    async def delete(self, table: str, ids: list[str]) -> int:
        if not ids:
            return 0
        params = [("id", f"in.({','.join(_quote(i) for i in ids)})")]
        rows = await self._request("DELETE", table, "delete", params=params)
        return len(rows or [])

    async def close(self) -> None:
        """Close the HTTP session if this store created it."""
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None
