"""Public data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .const import BOOKING_ACTIVE, ROLE_ADMIN


@dataclass(frozen=True, slots=True)
class Profile:
    id: str
    email: str
    full_name: str
    role: str
    created_at: str

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


@dataclass(frozen=True, slots=True)
class ParkingSlot:
    id: str
    slot_number: str
    location: str
    slot_type: str
    status: str
    created_at: str
    updated_at: str


@dataclass(frozen=True, slots=True)
class Booking:
    id: str
    user_id: str
    slot_id: str
    booking_time: str
    release_time: str | None
    status: str
    created_at: str

    @property
    def is_active(self) -> bool:
        return self.status == BOOKING_ACTIVE


@dataclass(frozen=True, slots=True)
class BookingWithDetails:
    booking: Booking
    slot: ParkingSlot | None
    profile: Profile | None

    @property
    def id(self) -> str:
        return self.booking.id


@dataclass(frozen=True, slots=True)
class Identity:
    id: str
    email: str
    access_token: str | None = None
    refresh_token: str | None = None
    expires_at: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    """A change notification; consumers only rely on ``table``."""

    table: str
    event_type: str = "*"
    schema: str = "public"
    commit_timestamp: str | None = None


@dataclass(frozen=True, slots=True)
class DashboardStats:
    total_slots: int
    free_slots: int
    occupied_slots: int
    reserved_slots: int
    active_bookings: int
    total_users: int
