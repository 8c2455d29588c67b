"""Library exceptions."""

from __future__ import annotations


class PySmartParkingError(Exception):
    """Base exception for the library."""

    error_type = "unknown"
    default_code: str | None = None

    def __init__(
        self,
        message: str | None = None,
        *,
        error_code: str | None = None,
        detail: str | None = None,
        user_message: str | None = None,
    ) -> None:
        text = message if message is not None else detail
        super().__init__(text or "")
        self.error_code = error_code if error_code is not None else self.default_code
        self.detail = detail if detail is not None else text
        self.user_message = user_message


class AuthError(PySmartParkingError):
    """Raised when authentication or authorization fails."""

    error_type = "auth"
    default_code = "auth_error"


class NetworkError(PySmartParkingError):
    """Raised when network communication fails."""

    error_type = "network"
    default_code = "network_error"


class ValidationError(PySmartParkingError):
    """Raised when inputs fail validation, before any write."""

    error_type = "validation"
    default_code = "validation_error"


class ConfigError(PySmartParkingError):
    """Raised when the client is misconfigured."""

    error_type = "config"
    default_code = "config_error"


class StoreError(PySmartParkingError):
    """Raised when the store rejects a read or write."""

    error_type = "store"
    default_code = "store_error"


class NotFoundError(StoreError):
    """Raised when a referenced row does not exist."""

    default_code = "not_found"


class InconsistentStateError(StoreError):
    """Raised when a multi-step write failed half way and could not be undone."""

    default_code = "inconsistent_state"


class BookingConflictError(PySmartParkingError):
    """Raised when a booking action no longer matches the stored state."""

    error_type = "conflict"
    default_code = "booking_conflict"


class InvalidTransitionError(BookingConflictError):
    """Raised when a booking is asked to leave a terminal state."""

    default_code = "invalid_transition"
