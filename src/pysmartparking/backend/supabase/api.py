"""Supabase store over the PostgREST API."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

import aiohttp

from ...exceptions import StoreError, ValidationError
from ..base import BaseStore, ChangeCallback, Subscription
from .const import PREFER_HEADER, REST_URI, RETURN_REPRESENTATION
from .http import SupabaseEndpoint
from .realtime import RealtimeClient

_LOGGER = logging.getLogger(__name__)


def _encode_value(value: Any) -> str:
    if value is None:
        return "is.null"
    if isinstance(value, bool):
        return f"eq.{'true' if value else 'false'}"
    return f"eq.{value}"


def build_params(
    *,
    columns: str | None = None,
    filters: Mapping[str, Any] | None = None,
    order_by: str | None = None,
    ascending: bool = True,
    limit: int | None = None,
) -> dict[str, str]:
    params: dict[str, str] = {}
    if columns:
        params["select"] = columns.replace(" ", "")
    for key, value in (filters or {}).items():
        if not isinstance(key, str) or not key:
            raise ValidationError("filter columns must be non-empty strings.")
        params[key] = _encode_value(value)
    if order_by:
        params["order"] = f"{order_by}.{'asc' if ascending else 'desc'}"
    if limit is not None:
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 0:
            raise ValidationError("limit must be a non-negative integer.")
        params["limit"] = str(limit)
    return params


class SupabaseStore(SupabaseEndpoint, BaseStore):
    """Store backed by a Supabase project's REST and realtime endpoints."""

    api_uri = REST_URI

    def __init__(
        self,
        session: aiohttp.ClientSession,
        base_url: str,
        api_key: str,
        *,
        access_token: Callable[[], Awaitable[str | None]] | None = None,
        realtime: RealtimeClient | None = None,
        timeout: aiohttp.ClientTimeout | None = None,
        retry_count: int = 0,
    ) -> None:
        super().__init__(
            session,
            base_url,
            api_key,
            timeout=timeout,
            retry_count=retry_count,
        )
        self._access_token = access_token
        self._realtime = realtime

    async def select(
        self,
        table: str,
        *,
        columns: str = "*",
        filters: Mapping[str, Any] | None = None,
        order_by: str | None = None,
        ascending: bool = True,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        table = self._require_table(table)
        params = build_params(
            columns=columns,
            filters=filters,
            order_by=order_by,
            ascending=ascending,
            limit=limit,
        )
        data = await self._request_json(
            "GET",
            f"/{table}",
            params=params,
            headers=await self._headers(),
        )
        return self._rows(data)

    async def insert(self, table: str, row: Mapping[str, Any]) -> dict[str, Any]:
        table = self._require_table(table)
        if not isinstance(row, Mapping):
            raise ValidationError("row must be a mapping.")
        data = await self._request_json(
            "POST",
            f"/{table}",
            json=dict(row),
            headers=await self._headers(write=True),
        )
        rows = self._rows(data)
        if len(rows) != 1:
            raise StoreError("Insert did not return the stored row.")
        return rows[0]

    async def update(
        self,
        table: str,
        filters: Mapping[str, Any],
        patch: Mapping[str, Any],
    ) -> list[dict[str, Any]]:
        table = self._require_table(table)
        criteria = self._require_filters(filters)
        if not isinstance(patch, Mapping) or not patch:
            raise ValidationError("patch must be a non-empty mapping.")
        data = await self._request_json(
            "PATCH",
            f"/{table}",
            params=build_params(filters=criteria),
            json=dict(patch),
            headers=await self._headers(write=True),
        )
        return self._rows(data)

    async def delete(self, table: str, filters: Mapping[str, Any]) -> list[dict[str, Any]]:
        table = self._require_table(table)
        criteria = self._require_filters(filters)
        data = await self._request_json(
            "DELETE",
            f"/{table}",
            params=build_params(filters=criteria),
            headers=await self._headers(write=True),
        )
        return self._rows(data)

    async def subscribe(self, table: str, callback: ChangeCallback) -> Subscription:
        table = self._require_table(table)
        if self._realtime is None:
            raise StoreError("Realtime is not configured for this store.")
        return await self._realtime.subscribe(table, callback)

    async def aclose(self) -> None:
        if self._realtime is not None:
            await self._realtime.aclose()

    async def _headers(self, *, write: bool = False) -> dict[str, str]:
        token = await self._access_token() if self._access_token is not None else None
        headers = self._build_headers(token)
        if write:
            headers[PREFER_HEADER] = RETURN_REPRESENTATION
        return headers

    def _rows(self, data: Any) -> list[dict[str, Any]]:
        if data is None:
            return []
        if isinstance(data, dict):
            data = [data]
        if not isinstance(data, list):
            raise StoreError("Store response included invalid rows.")
        rows = [item for item in data if isinstance(item, dict)]
        if len(rows) != len(data):
            _LOGGER.warning("Store response contained %d non-object rows", len(data) - len(rows))
        return rows
