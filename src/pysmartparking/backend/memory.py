"""In-memory backend with the same contracts as the Supabase backend.

Rows are plain dicts keyed by id. Generated columns (``id``, timestamps, status
defaults) are filled in the way the database defaults would. Every mutation
publishes a ``ChangeEvent`` to the table's subscribers on the running loop, so
delivery is asynchronous exactly like the realtime channel.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import re
import secrets
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

from ..const import (
    BOOKING_ACTIVE,
    BOOKING_RELATIONS,
    BOOKINGS_TABLE,
    PROFILES_TABLE,
    ROLE_USER,
    SLOT_FREE,
    SLOT_TYPE_REGULAR,
    SLOTS_TABLE,
)
from ..exceptions import AuthError, StoreError, ValidationError
from ..models import ChangeEvent, Identity
from ..util import format_utc_timestamp, normalize_email, parse_timestamp, require_text
from .base import BaseIdentity, BaseStore, ChangeCallback, Subscription

_LOGGER = logging.getLogger(__name__)
_EMBED_RE = re.compile(r"(\w+)\(\*\)")
_MIN_PASSWORD_LENGTH = 6


def _row_defaults(table: str, now: str) -> dict[str, Any]:
    if table == SLOTS_TABLE:
        return {
            "slot_type": SLOT_TYPE_REGULAR,
            "status": SLOT_FREE,
            "created_at": now,
            "updated_at": now,
        }
    if table == BOOKINGS_TABLE:
        return {
            "booking_time": now,
            "release_time": None,
            "status": BOOKING_ACTIVE,
            "created_at": now,
        }
    if table == PROFILES_TABLE:
        return {"role": ROLE_USER, "created_at": now}
    return {"created_at": now}


def _sort_value(value: Any) -> tuple[int, Any]:
    if value is None:
        return (0, "")
    if isinstance(value, str):
        try:
            return (1, parse_timestamp(value).isoformat())
        except ValidationError:
            return (1, value)
    return (1, value)


class MemorySubscription(Subscription):
    def __init__(self, store: MemoryStore, table: str, callback: ChangeCallback) -> None:
        super().__init__(table)
        self._store = store
        self.callback = callback

    async def _close(self) -> None:
        self._store._remove_subscription(self)


class MemoryStore(BaseStore):
    """Process-local store; several clients may share one instance."""

    def __init__(self) -> None:
        self._tables: dict[str, dict[str, dict[str, Any]]] = {}
        self._subscriptions: dict[str, list[MemorySubscription]] = {}
        self._pending: set[asyncio.Task[None]] = set()
        self._failures: list[tuple[str, str | None, str]] = []
        self._last_timestamp: datetime | None = None

    def now(self) -> str:
        current = datetime.now(UTC)
        if self._last_timestamp is not None and current <= self._last_timestamp:
            current = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = current
        return format_utc_timestamp(current)

    def fail_next(self, operation: str, table: str | None = None, message: str = "") -> None:
        """Make the next matching operation raise ``StoreError(message)``."""
        self._failures.append((operation, table, message or f"{operation} rejected"))

    def rows(self, table: str) -> list[dict[str, Any]]:
        return [copy.deepcopy(row) for row in self._tables.get(table, {}).values()]

    def subscriber_count(self, table: str) -> int:
        return len(self._subscriptions.get(table, []))

    async def flush(self) -> None:
        """Wait until every published change event has been delivered."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

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
        self._check_failure("select", table)
        matches = self._match(table, dict(filters or {}))
        if order_by:
            matches.sort(key=lambda row: _sort_value(row.get(order_by)), reverse=not ascending)
        if limit is not None:
            matches = matches[: max(0, limit)]
        embeds = _EMBED_RE.findall(columns or "")
        results = []
        for row in matches:
            result = copy.deepcopy(row)
            for relation in embeds:
                result[relation] = self._embed(table, relation, row)
            results.append(result)
        return results

    async def insert(self, table: str, row: Mapping[str, Any]) -> dict[str, Any]:
        table = self._require_table(table)
        if not isinstance(row, Mapping):
            raise ValidationError("row must be a mapping.")
        self._check_failure("insert", table)
        rows = self._tables.setdefault(table, {})
        stored = _row_defaults(table, self.now())
        stored.update(copy.deepcopy(dict(row)))
        row_id = str(stored.get("id") or uuid.uuid4())
        stored["id"] = row_id
        if row_id in rows:
            raise StoreError(f'duplicate key value violates unique constraint "{table}_pkey"')
        if table == PROFILES_TABLE and any(
            existing.get("email") == stored.get("email") for existing in rows.values()
        ):
            raise StoreError('duplicate key value violates unique constraint "profiles_email_key"')
        rows[row_id] = stored
        self._publish(table, "INSERT")
        return copy.deepcopy(stored)

    async def update(
        self,
        table: str,
        filters: Mapping[str, Any],
        patch: Mapping[str, Any],
    ) -> list[dict[str, Any]]:
        table = self._require_table(table)
        criteria = self._require_filters(filters)
        self._check_failure("update", table)
        changes = {key: value for key, value in dict(patch).items() if key != "id"}
        affected = []
        for row in self._match(table, criteria):
            stored = self._tables[table][row["id"]]
            stored.update(copy.deepcopy(changes))
            affected.append(copy.deepcopy(stored))
        if affected:
            self._publish(table, "UPDATE")
        return affected

    async def delete(self, table: str, filters: Mapping[str, Any]) -> list[dict[str, Any]]:
        table = self._require_table(table)
        criteria = self._require_filters(filters)
        self._check_failure("delete", table)
        removed = []
        for row in self._match(table, criteria):
            removed.append(self._tables[table].pop(row["id"]))
        if removed:
            self._publish(table, "DELETE")
        return removed

    async def subscribe(self, table: str, callback: ChangeCallback) -> Subscription:
        table = self._require_table(table)
        if not callable(callback):
            raise ValidationError("callback must be callable.")
        subscription = MemorySubscription(self, table, callback)
        self._subscriptions.setdefault(table, []).append(subscription)
        _LOGGER.debug("Memory subscription opened on %s", table)
        return subscription

    def _remove_subscription(self, subscription: MemorySubscription) -> None:
        subscribers = self._subscriptions.get(subscription.table, [])
        if subscription in subscribers:
            subscribers.remove(subscription)
        _LOGGER.debug("Memory subscription closed on %s", subscription.table)

    def _match(self, table: str, filters: dict[str, Any]) -> list[dict[str, Any]]:
        return [
            row
            for row in self._tables.get(table, {}).values()
            if all(row.get(key) == value for key, value in filters.items())
        ]

    def _embed(self, table: str, relation: str, row: dict[str, Any]) -> dict[str, Any] | None:
        if table != BOOKINGS_TABLE or relation not in BOOKING_RELATIONS:
            raise StoreError(
                f"Could not find a relationship between '{table}' and '{relation}'"
            )
        target = self._tables.get(relation, {}).get(row.get(BOOKING_RELATIONS[relation]))
        return copy.deepcopy(target) if target is not None else None

    def _check_failure(self, operation: str, table: str) -> None:
        for index, (failed_op, failed_table, message) in enumerate(self._failures):
            if failed_op == operation and failed_table in (None, table):
                del self._failures[index]
                raise StoreError(message)

    def _publish(self, table: str, event_type: str) -> None:
        subscribers = list(self._subscriptions.get(table, []))
        if not subscribers:
            return
        event = ChangeEvent(table=table, event_type=event_type, commit_timestamp=self.now())
        loop = asyncio.get_running_loop()
        for subscription in subscribers:
            task = loop.create_task(self._deliver(subscription, event))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _deliver(self, subscription: MemorySubscription, event: ChangeEvent) -> None:
        if not subscription.active:
            return
        try:
            await subscription.callback(event)
        except Exception:
            _LOGGER.exception("Change callback for %s failed", event.table)


class MemoryIdentity(BaseIdentity):
    """Identity provider holding accounts in memory.

    Accounts can be shared between several instances by passing the same
    ``accounts`` dict, which mimics several clients of one project.
    """

    def __init__(self, accounts: dict[str, dict[str, Any]] | None = None) -> None:
        self._accounts = accounts if accounts is not None else {}
        self._current: Identity | None = None

    async def sign_up(
        self,
        email: str,
        password: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> Identity:
        normalized = normalize_email(email)
        password = require_text(password, "password")
        if len(password) < _MIN_PASSWORD_LENGTH:
            raise ValidationError("Password should be at least 6 characters.")
        if normalized in self._accounts:
            raise AuthError("User already registered")
        self._accounts[normalized] = {
            "id": str(uuid.uuid4()),
            "password": password,
            "metadata": dict(metadata or {}),
        }
        return self._start_session(normalized)

    async def sign_in(self, email: str, password: str) -> Identity:
        normalized = normalize_email(email)
        account = self._accounts.get(normalized)
        if account is None or account["password"] != password:
            raise AuthError("Invalid login credentials")
        return self._start_session(normalized)

    async def sign_out(self) -> None:
        self._current = None

    async def current_identity(self) -> Identity | None:
        return self._current

    def _start_session(self, email: str) -> Identity:
        account = self._accounts[email]
        self._current = Identity(
            id=account["id"],
            email=email,
            access_token=secrets.token_urlsafe(16),
            refresh_token=secrets.token_urlsafe(16),
            metadata=dict(account["metadata"]),
        )
        return self._current
