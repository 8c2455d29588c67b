"""Client facade wiring backends, repository, booking service and session gate."""

from __future__ import annotations

import os
from collections.abc import Iterable, Mapping
from pathlib import Path

import aiohttp

from .backend.base import BaseIdentity, BaseStore
from .backend.memory import MemoryIdentity, MemoryStore
from .backend.supabase import RealtimeClient, SupabaseAuth, SupabaseStore
from .booking import BookingService
from .const import DEFAULT_BOOKING_LIMIT
from .exceptions import ConfigError
from .models import Profile
from .repository import ParkingRepository
from .session import SessionGate
from .sync import ChangeListener, ViewSynchronizer

_DEFAULT_TIMEOUT = aiohttp.ClientTimeout(total=30)

ENV_URL = "SUPABASE_URL"
ENV_API_KEY = "SUPABASE_ANON_KEY"
ENV_SESSION_FILE = "SMARTPARKING_SESSION_FILE"
ENV_ADMIN_EMAILS = "SMARTPARKING_ADMIN_EMAILS"


class Client:
    """Facade for one dashboard process.

    With ``base_url`` and ``api_key`` it talks to a Supabase project; the
    backends are wired when the client is opened (``async with`` or
    ``open()``). ``Client.memory()`` wires the in-memory backend instead.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession | None = None,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: aiohttp.ClientTimeout | None = None,
        retry_count: int = 0,
        session_path: str | Path | None = None,
        admin_emails: Iterable[str] | None = None,
        store: BaseStore | None = None,
        identity: BaseIdentity | None = None,
    ) -> None:
        if (store is None) != (identity is None):
            raise ConfigError("store and identity must be provided together.")
        if store is None and (not base_url or not api_key):
            raise ConfigError("base_url and api_key are required.")
        self._session = session
        self._owns_session = session is None
        self._base_url = base_url
        self._api_key = api_key
        self._timeout = timeout or _DEFAULT_TIMEOUT
        self._retry_count = max(0, retry_count)
        self._session_path = session_path
        self._admin_emails = tuple(admin_emails) if admin_emails is not None else None
        self._store = store
        self._identity = identity
        self._repository: ParkingRepository | None = None
        self._bookings: BookingService | None = None
        self._gate: SessionGate | None = None
        if store is not None and identity is not None:
            self._wire(store, identity)

    @classmethod
    def memory(
        cls,
        store: MemoryStore | None = None,
        identity: MemoryIdentity | None = None,
        *,
        admin_emails: Iterable[str] | None = None,
    ) -> Client:
        """Client on the in-memory backend; share ``store`` to simulate peers."""
        return cls(
            store=store if store is not None else MemoryStore(),
            identity=identity if identity is not None else MemoryIdentity(),
            admin_emails=admin_emails,
        )

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        *,
        session: aiohttp.ClientSession | None = None,
        **kwargs,
    ) -> Client:
        env = os.environ if environ is None else environ
        base_url = env.get(ENV_URL)
        api_key = env.get(ENV_API_KEY)
        if not base_url or not api_key:
            raise ConfigError(f"Missing {ENV_URL} or {ENV_API_KEY} environment variables.")
        admin_raw = env.get(ENV_ADMIN_EMAILS)
        if admin_raw and "admin_emails" not in kwargs:
            kwargs["admin_emails"] = [item.strip() for item in admin_raw.split(",") if item.strip()]
        if env.get(ENV_SESSION_FILE) and "session_path" not in kwargs:
            kwargs["session_path"] = env[ENV_SESSION_FILE]
        return cls(session, base_url=base_url, api_key=api_key, **kwargs)

    async def __aenter__(self) -> Client:
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def open(self) -> None:
        if self._store is not None:
            return
        if self._base_url is None or self._api_key is None:
            raise ConfigError("base_url and api_key are required.")
        session = self._ensure_session()
        auth = SupabaseAuth(
            session,
            self._base_url,
            self._api_key,
            session_path=self._session_path,
            timeout=self._timeout,
        )
        realtime = RealtimeClient(
            session,
            self._base_url,
            self._api_key,
            access_token=auth.get_access_token,
        )
        store = SupabaseStore(
            session,
            self._base_url,
            self._api_key,
            access_token=auth.get_access_token,
            realtime=realtime,
            timeout=self._timeout,
            retry_count=self._retry_count,
        )
        self._wire(store, auth)

    async def aclose(self) -> None:
        if self._store is not None:
            await self._store.aclose()
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    @property
    def store(self) -> BaseStore:
        return self._require(self._store)

    @property
    def identity(self) -> BaseIdentity:
        return self._require(self._identity)

    @property
    def repository(self) -> ParkingRepository:
        return self._require(self._repository)

    @property
    def bookings(self) -> BookingService:
        return self._require(self._bookings)

    @property
    def gate(self) -> SessionGate:
        return self._require(self._gate)

    def synchronizer(
        self,
        profile: Profile,
        *,
        on_change: ChangeListener | None = None,
        booking_limit: int | None = DEFAULT_BOOKING_LIMIT,
    ) -> ViewSynchronizer:
        return ViewSynchronizer(
            self.repository,
            profile,
            on_change=on_change,
            booking_limit=booking_limit,
        )

    def _wire(self, store: BaseStore, identity: BaseIdentity) -> None:
        self._store = store
        self._identity = identity
        self._repository = ParkingRepository(store)
        self._bookings = BookingService(self._repository)
        self._gate = SessionGate(identity, self._repository, admin_emails=self._admin_emails)

    def _require(self, value):
        if value is None:
            raise ConfigError("Client is not open; use 'async with' or call open().")
        return value

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session
