"""Booking state machine.

A slot and its booking change together. ``book`` inserts an active booking and
then flips the slot from ``free`` to ``occupied`` with a conditional update;
``release`` completes the booking and flips the slot back. The conditional
updates are the compare-and-swap that decides concurrent races: the writer
whose update matches zero rows lost and undoes its first step before the
conflict is raised.
"""

from __future__ import annotations

import logging
from typing import Any

from .const import ROLE_ADMIN, SLOT_FREE, SLOT_OCCUPIED, SLOT_TYPE_REGULAR
from .exceptions import (
    AuthError,
    BookingConflictError,
    InconsistentStateError,
    InvalidTransitionError,
    NotFoundError,
    PySmartParkingError,
    ValidationError,
)
from .models import Booking, ParkingSlot, Profile
from .repository import ParkingRepository
from .util import require_text, sort_key_timestamp

_LOGGER = logging.getLogger(__name__)


def _booking_order(booking: Booking) -> tuple[Any, Any, str]:
    return (
        sort_key_timestamp(booking.booking_time),
        sort_key_timestamp(booking.created_at),
        booking.id,
    )


class BookingService:
    """Book/release protocol plus the administrator's raw slot edits."""

    def __init__(self, repository: ParkingRepository) -> None:
        self._repository = repository

    @property
    def repository(self) -> ParkingRepository:
        return self._repository

    async def book(self, actor: Profile, slot_id: str) -> Booking:
        """Book a free slot for ``actor``."""
        self._require_actor(actor)
        slot_id = require_text(slot_id, "slot_id")
        _LOGGER.debug("Booking slot %s for %s started", slot_id, actor.id)

        if await self._repository.list_active_bookings(user_id=actor.id):
            raise BookingConflictError(
                "You already have an active booking.",
                user_message="Release your current slot first.",
            )
        slot = await self._repository.get_slot(slot_id)
        if slot is None:
            raise NotFoundError("Parking slot was not found.")
        if slot.status != SLOT_FREE:
            raise BookingConflictError(
                f"Parking slot {slot.slot_number} is not available.",
                user_message="This slot is not available.",
            )

        booking = await self._repository.insert_booking(actor.id, slot_id)
        try:
            occupied = await self._repository.set_slot_status(
                slot_id,
                SLOT_OCCUPIED,
                expected=SLOT_FREE,
            )
        except PySmartParkingError:
            await self._undo_booking(booking)
            raise
        if occupied is None:
            _LOGGER.warning("Slot %s was taken concurrently; undoing booking", slot_id)
            await self._undo_booking(booking)
            raise BookingConflictError(
                f"Parking slot {slot.slot_number} was booked by someone else.",
                user_message="This slot is not available.",
            )

        await self._settle_user_race(actor, booking, slot_id)
        _LOGGER.debug("Booking %s for slot %s completed", booking.id, slot_id)
        return booking

    async def release(
        self,
        actor: Profile,
        booking_id: str,
        slot_id: str | None = None,
    ) -> Booking:
        """Complete an active booking and free its slot."""
        self._require_actor(actor)
        booking_id = require_text(booking_id, "booking_id")
        _LOGGER.debug("Release of booking %s started", booking_id)

        booking = await self._repository.get_booking(booking_id)
        if booking is None:
            raise NotFoundError("Booking was not found.")
        if booking.user_id != actor.id and actor.role != ROLE_ADMIN:
            raise AuthError("Only the owner or an administrator can release a booking.")
        if slot_id is not None and require_text(slot_id, "slot_id") != booking.slot_id:
            raise ValidationError("slot_id does not match the booking.")
        if not booking.is_active:
            raise InvalidTransitionError("Booking has already been released.")

        completed = await self._repository.complete_booking(booking_id)
        if completed is None:
            raise InvalidTransitionError("Booking has already been released.")
        try:
            freed = await self._repository.set_slot_status(
                booking.slot_id,
                SLOT_FREE,
                expected=SLOT_OCCUPIED,
            )
        except PySmartParkingError:
            await self._undo_release(completed)
            raise
        if freed is None:
            _LOGGER.warning(
                "Slot %s was not occupied when booking %s was released",
                booking.slot_id,
                booking_id,
            )
        _LOGGER.debug("Release of booking %s completed", booking_id)
        return completed

    async def create_slot(
        self,
        actor: Profile,
        slot_number: str,
        location: str,
        slot_type: str = SLOT_TYPE_REGULAR,
        status: str = SLOT_FREE,
    ) -> ParkingSlot:
        self._require_admin(actor)
        slot = await self._repository.create_slot(slot_number, location, slot_type, status)
        _LOGGER.debug("Slot %s created", slot.id)
        return slot

    async def update_slot(self, actor: Profile, slot_id: str, **changes: Any) -> ParkingSlot:
        """Edit slot attributes directly; bookings are not touched."""
        self._require_admin(actor)
        return await self._repository.update_slot(slot_id, **changes)

    async def delete_slot(self, actor: Profile, slot_id: str) -> None:
        self._require_admin(actor)
        slot_id = require_text(slot_id, "slot_id")
        if await self._repository.list_active_bookings(slot_id=slot_id):
            raise BookingConflictError(
                "Parking slot has an active booking and cannot be deleted.",
                user_message="Release the active booking before deleting this slot.",
            )
        await self._repository.delete_slot(slot_id)
        _LOGGER.debug("Slot %s deleted", slot_id)

    async def reconcile(self, actor: Profile) -> list[str]:
        """Align slot status with active bookings; returns repaired slot ids."""
        self._require_admin(actor)
        active = await self._repository.list_active_bookings()
        active_slots = {booking.slot_id for booking in active}
        repaired: list[str] = []
        for slot in await self._repository.list_slots():
            if slot.status == SLOT_FREE and slot.id in active_slots:
                result = await self._repository.set_slot_status(
                    slot.id, SLOT_OCCUPIED, expected=SLOT_FREE
                )
            elif slot.status == SLOT_OCCUPIED and slot.id not in active_slots:
                result = await self._repository.set_slot_status(
                    slot.id, SLOT_FREE, expected=SLOT_OCCUPIED
                )
            else:
                continue
            if result is not None:
                _LOGGER.warning("Slot %s status repaired to %s", slot.id, result.status)
                repaired.append(slot.id)
        return repaired

    async def _settle_user_race(self, actor: Profile, booking: Booking, slot_id: str) -> None:
        active = await self._repository.list_active_bookings(user_id=actor.id)
        if len(active) <= 1:
            return
        winner = min(active, key=_booking_order)
        if winner.id == booking.id:
            return
        _LOGGER.warning("User %s booked concurrently; undoing booking %s", actor.id, booking.id)
        await self._undo_booking(booking)
        try:
            await self._repository.set_slot_status(slot_id, SLOT_FREE, expected=SLOT_OCCUPIED)
        except PySmartParkingError as exc:
            raise InconsistentStateError(
                f"Slot {slot_id} is occupied without an active booking.",
            ) from exc
        raise BookingConflictError(
            "You already have an active booking.",
            user_message="Release your current slot first.",
        )

    async def _undo_booking(self, booking: Booking) -> None:
        try:
            await self._repository.delete_booking(booking.id)
        except PySmartParkingError as exc:
            _LOGGER.error("Could not undo booking %s", booking.id)
            raise InconsistentStateError(
                f"Booking {booking.id} is active but its slot was not occupied.",
            ) from exc

    async def _undo_release(self, booking: Booking) -> None:
        try:
            await self._repository.reactivate_booking(booking.id)
        except PySmartParkingError as exc:
            _LOGGER.error("Could not undo release of booking %s", booking.id)
            raise InconsistentStateError(
                f"Booking {booking.id} is completed but slot {booking.slot_id} is still occupied.",
            ) from exc

    def _require_actor(self, actor: Profile) -> None:
        if not isinstance(actor, Profile):
            raise AuthError("Authentication required.")

    def _require_admin(self, actor: Profile) -> None:
        self._require_actor(actor)
        if actor.role != ROLE_ADMIN:
            raise AuthError("Administrator role required.")
