"""Store and identity contracts shared by all backends."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from ..exceptions import ValidationError
from ..models import ChangeEvent, Identity

ChangeCallback = Callable[[ChangeEvent], Awaitable[None]]


class Subscription(ABC):
    """Cancellation handle returned by ``BaseStore.subscribe``."""

    def __init__(self, table: str) -> None:
        self._table = table
        self._active = True

    @property
    def table(self) -> str:
        return self._table

    @property
    def active(self) -> bool:
        return self._active

    async def unsubscribe(self) -> None:
        """Stop delivery to this subscription only; safe to call twice."""
        if not self._active:
            return
        self._active = False
        await self._close()

    @abstractmethod
    async def _close(self) -> None:
        """Release backend resources held by the subscription."""


class BaseStore(ABC):
    """Relational store with change notifications."""

    def _require_table(self, table: str) -> str:
        if not isinstance(table, str) or not table:
            raise ValidationError("table must be a non-empty string.")
        return table

    def _require_filters(self, filters: Mapping[str, Any] | None) -> dict[str, Any]:
        if not filters:
            # Unfiltered update/delete would touch every row.
            raise ValidationError("filters are required for this operation.")
        if not isinstance(filters, Mapping):
            raise ValidationError("filters must be a mapping.")
        return dict(filters)

    @abstractmethod
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
        """Return rows matching the equality filters."""

    @abstractmethod
    async def insert(self, table: str, row: Mapping[str, Any]) -> dict[str, Any]:
        """Insert a row and return it as stored."""

    @abstractmethod
    async def update(
        self,
        table: str,
        filters: Mapping[str, Any],
        patch: Mapping[str, Any],
    ) -> list[dict[str, Any]]:
        """Patch matching rows and return the affected rows."""

    @abstractmethod
    async def delete(self, table: str, filters: Mapping[str, Any]) -> list[dict[str, Any]]:
        """Delete matching rows and return them."""

    @abstractmethod
    async def subscribe(self, table: str, callback: ChangeCallback) -> Subscription:
        """Deliver a ``ChangeEvent`` for every insert, update or delete on ``table``."""

    async def aclose(self) -> None:
        """Release connections held by the store."""
        return None


class BaseIdentity(ABC):
    """Identity provider exposing sign-up, sign-in and session retrieval."""

    @abstractmethod
    async def sign_up(
        self,
        email: str,
        password: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> Identity:
        """Register an account and return its identity."""

    @abstractmethod
    async def sign_in(self, email: str, password: str) -> Identity:
        """Authenticate with email and password."""

    @abstractmethod
    async def sign_out(self) -> None:
        """Drop the current session."""

    @abstractmethod
    async def current_identity(self) -> Identity | None:
        """Return the signed-in identity, restoring a persisted session if any."""
