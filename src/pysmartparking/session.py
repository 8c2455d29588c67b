"""Session/identity gate deciding who is calling and what they may see."""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable, Iterable

from .backend.base import BaseIdentity
from .const import ROLE_ADMIN, ROLE_USER, ROLES
from .exceptions import AuthError, PySmartParkingError
from .models import Identity, Profile
from .repository import ParkingRepository
from .util import normalize_email, require_choice, require_text

_LOGGER = logging.getLogger(__name__)

VIEW_AUTH = "auth"
VIEW_USER = "user"
VIEW_ADMIN = "admin"


class SessionState(enum.Enum):
    RESOLVING = "resolving"
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"


StateListener = Callable[["SessionGate"], None]


class SessionGate:
    """Tracks the signed-in identity and its profile.

    The gate starts in ``RESOLVING`` until ``resolve`` has looked for a
    persisted session. It is ``AUTHENTICATED`` only once both the identity and
    its profile row are known. Failed sign-in or sign-up attempts leave it
    ``UNAUTHENTICATED`` and re-raise the underlying error unchanged.
    """

    def __init__(
        self,
        identity: BaseIdentity,
        repository: ParkingRepository,
        *,
        admin_emails: Iterable[str] | None = None,
    ) -> None:
        self._identity_provider = identity
        self._repository = repository
        self._admin_emails = (
            frozenset(normalize_email(email) for email in admin_emails)
            if admin_emails is not None
            else None
        )
        self._state = SessionState.RESOLVING
        self._identity: Identity | None = None
        self._profile: Profile | None = None
        self._listeners: list[StateListener] = []

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def loading(self) -> bool:
        return self._state is SessionState.RESOLVING

    @property
    def identity(self) -> Identity | None:
        return self._identity

    @property
    def profile(self) -> Profile | None:
        return self._profile

    @property
    def view(self) -> str | None:
        """Which dashboard to show; ``None`` while still resolving."""
        if self._state is SessionState.RESOLVING:
            return None
        if self._profile is None:
            return VIEW_AUTH
        return VIEW_ADMIN if self._profile.role == ROLE_ADMIN else VIEW_USER

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def require_role(self, role: str) -> Profile:
        require_choice(role, "role", ROLES)
        profile = self._profile
        if profile is None:
            raise AuthError("Authentication required.")
        if role == ROLE_ADMIN and profile.role != ROLE_ADMIN:
            raise AuthError("Administrator role required.")
        return profile

    async def resolve(self) -> Profile | None:
        self._set_state(SessionState.RESOLVING)
        try:
            identity = await self._identity_provider.current_identity()
            if identity is None:
                self._set_state(SessionState.UNAUTHENTICATED)
                return None
            return await self._enter(identity)
        except PySmartParkingError:
            self._set_state(SessionState.UNAUTHENTICATED)
            raise

    async def sign_in(self, email: str, password: str) -> Profile | None:
        try:
            identity = await self._identity_provider.sign_in(email, password)
            return await self._enter(identity)
        except PySmartParkingError:
            _LOGGER.debug("Sign-in failed")
            self._set_state(SessionState.UNAUTHENTICATED)
            raise

    async def sign_up(
        self,
        email: str,
        password: str,
        full_name: str,
        role: str = ROLE_USER,
    ) -> Profile | None:
        try:
            email = normalize_email(email)
            full_name = require_text(full_name, "full_name")
            role = self._assign_role(email, role)
            identity = await self._identity_provider.sign_up(
                email,
                password,
                {"full_name": full_name, "role": role},
            )
            try:
                await self._repository.create_profile(
                    identity.id, identity.email, full_name, role
                )
            except PySmartParkingError:
                await self._drop_identity()
                raise
            if not identity.access_token:
                self._set_state(SessionState.UNAUTHENTICATED)
                return None
            return await self._enter(identity)
        except PySmartParkingError:
            _LOGGER.debug("Sign-up failed")
            self._set_state(SessionState.UNAUTHENTICATED)
            raise

    async def sign_out(self) -> None:
        try:
            await self._identity_provider.sign_out()
        finally:
            self._set_state(SessionState.UNAUTHENTICATED)

    def _assign_role(self, email: str, role: str) -> str:
        role = require_choice(role, "role", ROLES)
        if role != ROLE_ADMIN or self._admin_emails is None:
            return role
        if email not in self._admin_emails:
            raise AuthError(
                "Administrator accounts must be approved.",
                user_message="This email is not allowed to register as an administrator.",
            )
        return role

    async def _drop_identity(self) -> None:
        # An identity without a profile must not linger as a signed-in session.
        try:
            await self._identity_provider.sign_out()
        except PySmartParkingError as exc:
            _LOGGER.warning("Could not discard identity after failed sign-up: %s", exc)

    async def _enter(self, identity: Identity) -> Profile | None:
        profile = await self._repository.get_profile(identity.id)
        if profile is None:
            _LOGGER.warning("Identity %s has no profile row", identity.id)
            self._set_state(SessionState.UNAUTHENTICATED, identity=identity)
            return None
        self._set_state(SessionState.AUTHENTICATED, identity=identity, profile=profile)
        return profile

    def _set_state(
        self,
        state: SessionState,
        *,
        identity: Identity | None = None,
        profile: Profile | None = None,
    ) -> None:
        self._state = state
        self._identity = identity
        self._profile = profile
        for listener in list(self._listeners):
            listener(self)
