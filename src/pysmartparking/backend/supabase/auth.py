"""Supabase identity provider over the GoTrue API."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import aiohttp

from ...exceptions import AuthError, ValidationError
from ...models import Identity
from ...util import normalize_email, require_text
from ..base import BaseIdentity
from .const import (
    AUTH_URI,
    EXPIRY_MARGIN,
    GRANT_PASSWORD,
    GRANT_REFRESH_TOKEN,
    LOGOUT_ENDPOINT,
    SIGNUP_ENDPOINT,
    TOKEN_ENDPOINT,
)
from .http import SupabaseEndpoint

_LOGGER = logging.getLogger(__name__)


class SupabaseAuth(SupabaseEndpoint, BaseIdentity):
    """Email/password sessions, optionally persisted to a JSON file."""

    api_uri = AUTH_URI
    rejection_error = AuthError

    def __init__(
        self,
        session: aiohttp.ClientSession,
        base_url: str,
        api_key: str,
        *,
        session_path: str | Path | None = None,
        timeout: aiohttp.ClientTimeout | None = None,
    ) -> None:
        super().__init__(session, base_url, api_key, timeout=timeout)
        self._session_path = Path(session_path) if session_path is not None else None
        self._current: Identity | None = None
        self._restored = False
        self._refresh_lock = asyncio.Lock()

    @property
    def access_token(self) -> str | None:
        return self._current.access_token if self._current is not None else None

    async def get_access_token(self) -> str | None:
        """Token for the next request, refreshed first when it is about to expire."""
        identity = await self.current_identity()
        return identity.access_token if identity is not None else None

    async def sign_up(
        self,
        email: str,
        password: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> Identity:
        _LOGGER.debug("Sign-up started")
        payload = {
            "email": normalize_email(email),
            "password": require_text(password, "password"),
            "data": dict(metadata or {}),
        }
        data = await self._request_json(
            "POST",
            SIGNUP_ENDPOINT,
            json=payload,
            headers=self._build_headers(),
        )
        identity = self._map_identity(data)
        if identity.access_token:
            self._set_current(identity)
        else:
            _LOGGER.debug("Sign-up completed without a session; confirmation pending")
        return identity

    async def sign_in(self, email: str, password: str) -> Identity:
        _LOGGER.debug("Sign-in started")
        payload = {
            "email": normalize_email(email),
            "password": require_text(password, "password"),
        }
        data = await self._request_json(
            "POST",
            TOKEN_ENDPOINT,
            params={"grant_type": GRANT_PASSWORD},
            json=payload,
            headers=self._build_headers(),
        )
        identity = self._map_identity(data)
        if not identity.access_token:
            raise AuthError("Authentication failed.")
        self._set_current(identity)
        _LOGGER.debug("Sign-in completed")
        return identity

    async def sign_out(self) -> None:
        identity = self._current
        self._set_current(None)
        if identity is None or not identity.access_token:
            return
        try:
            await self._request(
                "POST",
                self._build_url(LOGOUT_ENDPOINT),
                expect_json=False,
                headers=self._build_headers(identity.access_token),
            )
        except AuthError:
            # Session already revoked or expired server side.
            _LOGGER.debug("Logout rejected; local session cleared")

    async def current_identity(self) -> Identity | None:
        if self._current is None and not self._restored:
            self._restored = True
            self._current = self._load_session()
        if not self._expiring(self._current):
            return self._current
        # Refresh tokens are single use; concurrent callers share one refresh.
        async with self._refresh_lock:
            identity = self._current
            if not self._expiring(identity):
                return identity
            return await self._refresh(identity)

    @staticmethod
    def _expiring(identity: Identity | None) -> bool:
        if identity is None or identity.expires_at is None:
            return False
        return identity.expires_at - EXPIRY_MARGIN <= time.time()

    async def _refresh(self, identity: Identity) -> Identity | None:
        if not identity.refresh_token:
            self._set_current(None)
            return None
        _LOGGER.debug("Refreshing expired session")
        try:
            data = await self._request_json(
                "POST",
                TOKEN_ENDPOINT,
                params={"grant_type": GRANT_REFRESH_TOKEN},
                json={"refresh_token": identity.refresh_token},
                headers=self._build_headers(),
            )
        except AuthError:
            _LOGGER.warning("Session refresh rejected; signing out locally")
            self._set_current(None)
            return None
        refreshed = self._map_identity(data)
        self._set_current(refreshed)
        return refreshed

    def _set_current(self, identity: Identity | None) -> None:
        self._current = identity
        self._restored = True
        if self._session_path is None:
            return
        if identity is None:
            self._session_path.unlink(missing_ok=True)
            return
        payload = {
            "id": identity.id,
            "email": identity.email,
            "access_token": identity.access_token,
            "refresh_token": identity.refresh_token,
            "expires_at": identity.expires_at,
            "metadata": identity.metadata,
        }
        self._session_path.parent.mkdir(parents=True, exist_ok=True)
        self._session_path.write_text(json.dumps(payload), encoding="utf-8")

    def _load_session(self) -> Identity | None:
        if self._session_path is None or not self._session_path.is_file():
            return None
        try:
            data = json.loads(self._session_path.read_text(encoding="utf-8"))
            return Identity(
                id=require_text(data.get("id"), "id"),
                email=require_text(data.get("email"), "email"),
                access_token=data.get("access_token"),
                refresh_token=data.get("refresh_token"),
                expires_at=data.get("expires_at"),
                metadata=dict(data.get("metadata") or {}),
            )
        except (OSError, ValueError, AttributeError, ValidationError):
            _LOGGER.warning("Stored session at %s is unreadable; ignoring it", self._session_path)
            return None

    def _map_identity(self, data: Any) -> Identity:
        if not isinstance(data, dict):
            raise AuthError("Auth response included invalid data.")
        user = data.get("user") if isinstance(data.get("user"), dict) else data
        user_id = user.get("id")
        email = user.get("email")
        if not isinstance(user_id, str) or not user_id:
            raise AuthError("Auth response missing user id.")
        if not isinstance(email, str) or not email:
            raise AuthError("Auth response missing email.")
        expires_at = data.get("expires_at")
        if expires_at is None and isinstance(data.get("expires_in"), int):
            expires_at = int(time.time()) + data["expires_in"]
        metadata = user.get("user_metadata")
        return Identity(
            id=user_id,
            email=email,
            access_token=data.get("access_token"),
            refresh_token=data.get("refresh_token"),
            expires_at=expires_at if isinstance(expires_at, int) else None,
            metadata=dict(metadata) if isinstance(metadata, dict) else {},
        )
