"""pySmartParking package."""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

from .booking import BookingService
from .client import Client
from .exceptions import (
    AuthError,
    BookingConflictError,
    ConfigError,
    InconsistentStateError,
    InvalidTransitionError,
    NetworkError,
    NotFoundError,
    PySmartParkingError,
    StoreError,
    ValidationError,
)
from .models import Booking, BookingWithDetails, ChangeEvent, Identity, ParkingSlot, Profile
from .repository import ParkingRepository
from .session import SessionGate, SessionState
from .sync import ViewSynchronizer

try:
    __version__ = version("pysmartparking")
except PackageNotFoundError:  # pragma: no cover - not installed
    __version__ = "0.0.0"

__all__ = [
    "AuthError",
    "Booking",
    "BookingConflictError",
    "BookingService",
    "BookingWithDetails",
    "ChangeEvent",
    "Client",
    "ConfigError",
    "Identity",
    "InconsistentStateError",
    "InvalidTransitionError",
    "NetworkError",
    "NotFoundError",
    "ParkingRepository",
    "ParkingSlot",
    "Profile",
    "PySmartParkingError",
    "SessionGate",
    "SessionState",
    "StoreError",
    "ValidationError",
    "ViewSynchronizer",
    "__version__",
]
