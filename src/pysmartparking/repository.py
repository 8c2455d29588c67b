"""Typed access to profiles, parking slots and bookings."""

from __future__ import annotations

import logging
from typing import Any

from .backend.base import BaseStore, ChangeCallback, Subscription
from .const import (
    BOOKING_ACTIVE,
    BOOKING_COMPLETED,
    BOOKING_DETAIL_COLUMNS,
    BOOKING_STATUSES,
    BOOKINGS_TABLE,
    PROFILES_TABLE,
    ROLES,
    SLOT_EDITABLE_FIELDS,
    SLOT_STATUSES,
    SLOT_TYPES,
    SLOTS_TABLE,
)
from .exceptions import NotFoundError, StoreError, ValidationError
from .models import Booking, BookingWithDetails, ParkingSlot, Profile
from .util import ensure_utc_timestamp, require_choice, require_text, utc_now

_LOGGER = logging.getLogger(__name__)


class ParkingRepository:
    """Maps store rows to models; every method is one store round trip."""

    def __init__(self, store: BaseStore) -> None:
        if store is None:
            raise ValidationError("store is required.")
        self._store = store

    @property
    def store(self) -> BaseStore:
        return self._store

    # Profiles

    async def get_profile(self, profile_id: str) -> Profile | None:
        rows = await self._store.select(
            PROFILES_TABLE,
            filters={"id": require_text(profile_id, "profile_id")},
            limit=1,
        )
        return self._map_profile(rows[0]) if rows else None

    async def list_profiles(self) -> list[Profile]:
        rows = await self._store.select(PROFILES_TABLE, order_by="created_at", ascending=False)
        return [self._map_profile(row) for row in rows]

    async def create_profile(
        self,
        profile_id: str,
        email: str,
        full_name: str,
        role: str,
    ) -> Profile:
        row = await self._store.insert(
            PROFILES_TABLE,
            {
                "id": require_text(profile_id, "profile_id"),
                "email": require_text(email, "email"),
                "full_name": require_text(full_name, "full_name"),
                "role": require_choice(role, "role", ROLES),
            },
        )
        return self._map_profile(row)

    # Slots

    async def list_slots(self) -> list[ParkingSlot]:
        rows = await self._store.select(SLOTS_TABLE, order_by="slot_number")
        return [self._map_slot(row) for row in rows]

    async def get_slot(self, slot_id: str) -> ParkingSlot | None:
        rows = await self._store.select(
            SLOTS_TABLE,
            filters={"id": require_text(slot_id, "slot_id")},
            limit=1,
        )
        return self._map_slot(rows[0]) if rows else None

    async def create_slot(
        self,
        slot_number: str,
        location: str,
        slot_type: str,
        status: str,
    ) -> ParkingSlot:
        row = await self._store.insert(
            SLOTS_TABLE,
            {
                "slot_number": require_text(slot_number, "slot_number"),
                "location": require_text(location, "location"),
                "slot_type": require_choice(slot_type, "slot_type", SLOT_TYPES),
                "status": require_choice(status, "status", SLOT_STATUSES),
            },
        )
        return self._map_slot(row)

    async def update_slot(self, slot_id: str, **changes: Any) -> ParkingSlot:
        patch = self._slot_patch(changes)
        patch["updated_at"] = utc_now()
        rows = await self._store.update(
            SLOTS_TABLE,
            {"id": require_text(slot_id, "slot_id")},
            patch,
        )
        if not rows:
            raise NotFoundError("Parking slot was not found.")
        return self._map_slot(rows[0])

    async def delete_slot(self, slot_id: str) -> None:
        rows = await self._store.delete(SLOTS_TABLE, {"id": require_text(slot_id, "slot_id")})
        if not rows:
            raise NotFoundError("Parking slot was not found.")

    async def set_slot_status(
        self,
        slot_id: str,
        status: str,
        *,
        expected: str | None = None,
    ) -> ParkingSlot | None:
        """Set the status, only where it currently equals ``expected`` if given.

        Returns ``None`` when no row matched.
        """
        filters: dict[str, Any] = {"id": require_text(slot_id, "slot_id")}
        if expected is not None:
            filters["status"] = require_choice(expected, "expected", SLOT_STATUSES)
        rows = await self._store.update(
            SLOTS_TABLE,
            filters,
            {
                "status": require_choice(status, "status", SLOT_STATUSES),
                "updated_at": utc_now(),
            },
        )
        return self._map_slot(rows[0]) if rows else None

    # Bookings

    async def list_bookings(
        self,
        *,
        user_id: str | None = None,
        limit: int | None = None,
    ) -> list[BookingWithDetails]:
        filters = {"user_id": require_text(user_id, "user_id")} if user_id is not None else None
        rows = await self._store.select(
            BOOKINGS_TABLE,
            columns=BOOKING_DETAIL_COLUMNS,
            filters=filters,
            order_by="created_at",
            ascending=False,
            limit=limit,
        )
        return [self._map_booking_details(row) for row in rows]

    async def get_booking(self, booking_id: str) -> Booking | None:
        rows = await self._store.select(
            BOOKINGS_TABLE,
            filters={"id": require_text(booking_id, "booking_id")},
            limit=1,
        )
        return self._map_booking(rows[0]) if rows else None

    async def list_active_bookings(
        self,
        *,
        user_id: str | None = None,
        slot_id: str | None = None,
    ) -> list[Booking]:
        filters: dict[str, Any] = {"status": BOOKING_ACTIVE}
        if user_id is not None:
            filters["user_id"] = require_text(user_id, "user_id")
        if slot_id is not None:
            filters["slot_id"] = require_text(slot_id, "slot_id")
        rows = await self._store.select(BOOKINGS_TABLE, filters=filters, order_by="booking_time")
        return [self._map_booking(row) for row in rows]

    async def insert_booking(self, user_id: str, slot_id: str) -> Booking:
        row = await self._store.insert(
            BOOKINGS_TABLE,
            {
                "user_id": require_text(user_id, "user_id"),
                "slot_id": require_text(slot_id, "slot_id"),
                "status": BOOKING_ACTIVE,
                "booking_time": utc_now(),
            },
        )
        return self._map_booking(row)

    async def complete_booking(self, booking_id: str) -> Booking | None:
        """Complete an active booking; ``None`` when it was not active."""
        rows = await self._store.update(
            BOOKINGS_TABLE,
            {"id": require_text(booking_id, "booking_id"), "status": BOOKING_ACTIVE},
            {"status": BOOKING_COMPLETED, "release_time": utc_now()},
        )
        return self._map_booking(rows[0]) if rows else None

    async def reactivate_booking(self, booking_id: str) -> Booking | None:
        rows = await self._store.update(
            BOOKINGS_TABLE,
            {"id": require_text(booking_id, "booking_id"), "status": BOOKING_COMPLETED},
            {"status": BOOKING_ACTIVE, "release_time": None},
        )
        return self._map_booking(rows[0]) if rows else None

    async def delete_booking(self, booking_id: str) -> bool:
        rows = await self._store.delete(
            BOOKINGS_TABLE,
            {"id": require_text(booking_id, "booking_id")},
        )
        return bool(rows)

    # Change notifications

    async def subscribe_slots(self, callback: ChangeCallback) -> Subscription:
        return await self._store.subscribe(SLOTS_TABLE, callback)

    async def subscribe_bookings(self, callback: ChangeCallback) -> Subscription:
        return await self._store.subscribe(BOOKINGS_TABLE, callback)

    async def subscribe_profiles(self, callback: ChangeCallback) -> Subscription:
        return await self._store.subscribe(PROFILES_TABLE, callback)

    # Row mapping

    def _slot_patch(self, changes: dict[str, Any]) -> dict[str, Any]:
        unknown = sorted(set(changes) - set(SLOT_EDITABLE_FIELDS))
        if unknown:
            raise ValidationError(f"Unknown slot fields: {', '.join(unknown)}.")
        patch: dict[str, Any] = {}
        for key, value in changes.items():
            if value is None:
                continue
            if key == "slot_type":
                patch[key] = require_choice(value, key, SLOT_TYPES)
            elif key == "status":
                patch[key] = require_choice(value, key, SLOT_STATUSES)
            else:
                patch[key] = require_text(value, key)
        if not patch:
            raise ValidationError("At least one slot field is required.")
        return patch

    def _map_profile(self, row: Any) -> Profile:
        if not isinstance(row, dict):
            raise StoreError("Store response included invalid profile data.")
        role = row.get("role")
        if role not in ROLES:
            raise StoreError("Store response included an unknown role.")
        return Profile(
            id=self._coerce_id(row.get("id"), "profile id"),
            email=self._coerce_text(row.get("email")),
            full_name=self._coerce_text(row.get("full_name")),
            role=role,
            created_at=self._coerce_timestamp(row.get("created_at")),
        )

    def _map_slot(self, row: Any) -> ParkingSlot:
        if not isinstance(row, dict):
            raise StoreError("Store response included invalid slot data.")
        slot_type = row.get("slot_type")
        status = row.get("status")
        if slot_type not in SLOT_TYPES or status not in SLOT_STATUSES:
            raise StoreError("Store response included an unknown slot type or status.")
        return ParkingSlot(
            id=self._coerce_id(row.get("id"), "slot id"),
            slot_number=self._coerce_text(row.get("slot_number")),
            location=self._coerce_text(row.get("location")),
            slot_type=slot_type,
            status=status,
            created_at=self._coerce_timestamp(row.get("created_at")),
            updated_at=self._coerce_timestamp(row.get("updated_at")),
        )

    def _map_booking(self, row: Any) -> Booking:
        if not isinstance(row, dict):
            raise StoreError("Store response included invalid booking data.")
        status = row.get("status")
        if status not in BOOKING_STATUSES:
            raise StoreError("Store response included an unknown booking status.")
        release_raw = row.get("release_time")
        return Booking(
            id=self._coerce_id(row.get("id"), "booking id"),
            user_id=self._coerce_id(row.get("user_id"), "booking user id"),
            slot_id=self._coerce_id(row.get("slot_id"), "booking slot id"),
            booking_time=self._coerce_timestamp(row.get("booking_time")),
            release_time=self._coerce_timestamp(release_raw) if release_raw else None,
            status=status,
            created_at=self._coerce_timestamp(row.get("created_at")),
        )

    def _map_booking_details(self, row: Any) -> BookingWithDetails:
        booking = self._map_booking(row)
        slot_raw = row.get(SLOTS_TABLE)
        profile_raw = row.get(PROFILES_TABLE)
        if slot_raw is None:
            _LOGGER.debug("Booking %s references a missing slot", booking.id)
        return BookingWithDetails(
            booking=booking,
            slot=self._map_slot(slot_raw) if slot_raw is not None else None,
            profile=self._map_profile(profile_raw) if profile_raw is not None else None,
        )

    def _coerce_id(self, value: Any, field: str) -> str:
        if value is None:
            raise StoreError(f"Store response missing {field}.")
        text = str(value).strip()
        if not text:
            raise StoreError(f"Store response missing {field}.")
        return text

    def _coerce_text(self, value: Any) -> str:
        if value is None:
            return ""
        return value if isinstance(value, str) else str(value)

    def _coerce_timestamp(self, value: Any) -> str:
        if not isinstance(value, str) or not value:
            raise StoreError("Store response missing a timestamp.")
        try:
            return ensure_utc_timestamp(value)
        except ValidationError as exc:
            raise StoreError("Store returned an invalid timestamp.") from exc
