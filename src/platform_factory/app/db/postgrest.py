"""Async PostgREST client for the factory's run tables.

The single point of Supabase row access: select, insert, update and
delete with ``column=op.value`` filters, always asking PostgREST to
return the affected rows.
"""

from __future__ import annotations

import json
from typing import Any, Mapping

import httpx

from .errors import SupabaseError, error_class_for

Filters = Mapping[str, Any]
"""``{column: value}`` (eq) or ``{column: (op, value)}``."""

_shared_async_client: httpx.AsyncClient | None = None


def _get_shared_async_client() -> httpx.AsyncClient:
    global _shared_async_client
    if _shared_async_client is None:
        _shared_async_client = httpx.AsyncClient()
    return _shared_async_client


def encode_filter(op: str, value: Any) -> str:
    if value is None:
        if op not in ("is", "eq"):
            raise ValueError(f"{op} does not support None")
        return "is.null"
    if op in ("in", "not.in"):
        items = ",".join(json.dumps(v) if isinstance(v, str) else str(v) for v in value)
        return f"{op}.({items})"
    if isinstance(value, bool):
        value = "true" if value else "false"
    return f"{op}.{value}"


def filters_to_params(filters: Filters | None) -> dict[str, str]:
    params: dict[str, str] = {}
    for column, spec in (filters or {}).items():
        op, value = spec if isinstance(spec, tuple) and len(spec) == 2 else ("eq", spec)
        params[column] = encode_filter(str(op), value)
    return params


class PostgrestClient:
    """Minimal service-role PostgREST client returning plain row dicts."""

    def __init__(
        self,
        *,
        supabase_url: str,
        service_role_key: str,
        schema: str = "public",
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 15.0,
    ) -> None:
        if not supabase_url:
            raise ValueError("supabase_url is required")
        if not service_role_key:
            raise ValueError("service_role_key is required")
        self._rest_url = f"{supabase_url.rstrip('/')}/rest/v1"
        self._key = service_role_key
        self._schema = schema
        self._client = http_client or _get_shared_async_client()
        self._timeout = float(timeout_seconds)

    def _headers(self, method: str, prefer: str | None) -> dict[str, str]:
        # Never log these headers.
        headers = {
            "apikey": self._key,
            "Authorization": f"Bearer {self._key}",
            "Accept-Profile": self._schema,
        }
        if method != "GET":
            headers["Content-Profile"] = self._schema
        if prefer:
            headers["Prefer"] = prefer
        return headers

    async def _request(
        self,
        method: str,
        table: str,
        *,
        params: Mapping[str, str] | None = None,
        json_body: Any | None = None,
        prefer: str | None = "return=representation",
    ) -> list[dict[str, Any]]:
        resp = await self._client.request(
            method,
            f"{self._rest_url}/{table}",
            params=dict(params or {}),
            json=json_body,
            headers=self._headers(method, prefer),
            timeout=self._timeout,
        )
        if resp.status_code >= 400:
            raise self._error(resp)
        if resp.status_code == 204 or not resp.content:
            return []
        payload = resp.json()
        if not isinstance(payload, list):
            raise SupabaseError(status_code=500, message=f"expected list response from {method} {table}")
        return payload

    @staticmethod
    def _error(resp: httpx.Response) -> SupabaseError:
        message, code, details = resp.text, None, None
        try:
            payload = resp.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            message = payload.get("message") or message
            code = payload.get("code")
            details = payload.get("details")
        return error_class_for(resp.status_code)(
            status_code=resp.status_code,
            message=message,
            code=code,
            details=details,
        )

    async def select(
        self,
        table: str,
        filters: Filters | None = None,
        *,
        columns: str = "*",
        order: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        params = filters_to_params(filters)
        params["select"] = columns
        if order:
            params["order"] = order
        if limit is not None:
            params["limit"] = str(int(limit))
        return await self._request("GET", table, params=params, prefer=None)

    async def insert(self, table: str, row: Mapping[str, Any]) -> list[dict[str, Any]]:
        return await self._request("POST", table, json_body=dict(row))

    async def update(
        self,
        table: str,
        filters: Filters,
        values: Mapping[str, Any],
    ) -> list[dict[str, Any]]:
        if not filters:
            raise ValueError("update requires at least one filter")
        return await self._request(
            "PATCH", table, params=filters_to_params(filters), json_body=dict(values),
        )

    async def delete(self, table: str, filters: Filters) -> list[dict[str, Any]]:
        if not filters:
            raise ValueError("delete requires at least one filter")
        return await self._request("DELETE", table, params=filters_to_params(filters))
