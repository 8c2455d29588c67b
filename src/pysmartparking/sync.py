"""Client-side caches kept in step with the store through change notifications."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from .backend.base import Subscription
from .const import (
    DEFAULT_BOOKING_LIMIT,
    ROLE_ADMIN,
    ROLE_USER,
    SLOT_FREE,
    SLOT_OCCUPIED,
    SLOT_RESERVED,
)
from .exceptions import PySmartParkingError, ValidationError
from .models import BookingWithDetails, ChangeEvent, DashboardStats, ParkingSlot, Profile
from .repository import ParkingRepository

_LOGGER = logging.getLogger(__name__)

SLOTS = "slots"
BOOKINGS = "bookings"
PROFILES = "profiles"

ChangeListener = Callable[[str], None]


class ViewSynchronizer:
    """Cached view of slots and bookings for one dashboard.

    Any change event on a watched collection triggers a full re-fetch of that
    collection; event payloads are never applied. A re-fetch requested while
    one is running is folded into a single follow-up re-fetch. When loads of
    one collection overlap, a result older than the last applied one is
    dropped. Failed re-fetches keep the previous cache until the next event
    succeeds.
    """

    def __init__(
        self,
        repository: ParkingRepository,
        profile: Profile,
        *,
        on_change: ChangeListener | None = None,
        booking_limit: int | None = DEFAULT_BOOKING_LIMIT,
    ) -> None:
        if not isinstance(profile, Profile):
            raise ValidationError("profile is required.")
        self._repository = repository
        self._profile = profile
        self._on_change = on_change
        self._booking_limit = booking_limit
        self._slots: tuple[ParkingSlot, ...] = ()
        self._bookings: tuple[BookingWithDetails, ...] = ()
        self._profiles: tuple[Profile, ...] = ()
        self._subscriptions: list[Subscription] = []
        self._refreshing: dict[str, asyncio.Task[None]] = {}
        self._dirty: set[str] = set()
        self._issued: dict[str, int] = {}
        self._applied: dict[str, int] = {}
        self._loading = True
        self._started = False

    @property
    def profile(self) -> Profile:
        return self._profile

    @property
    def is_admin(self) -> bool:
        return self._profile.role == ROLE_ADMIN

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def slots(self) -> tuple[ParkingSlot, ...]:
        return self._slots

    @property
    def bookings(self) -> tuple[BookingWithDetails, ...]:
        return self._bookings

    @property
    def profiles(self) -> tuple[Profile, ...]:
        return self._profiles

    @property
    def free_slots(self) -> tuple[ParkingSlot, ...]:
        return tuple(slot for slot in self._slots if slot.status == SLOT_FREE)

    @property
    def active_booking(self) -> BookingWithDetails | None:
        for entry in self._bookings:
            if entry.booking.is_active and entry.booking.user_id == self._profile.id:
                return entry
        return None

    @property
    def stats(self) -> DashboardStats:
        statuses = [slot.status for slot in self._slots]
        return DashboardStats(
            total_slots=len(statuses),
            free_slots=statuses.count(SLOT_FREE),
            occupied_slots=statuses.count(SLOT_OCCUPIED),
            reserved_slots=statuses.count(SLOT_RESERVED),
            active_bookings=sum(1 for entry in self._bookings if entry.booking.is_active),
            total_users=sum(1 for profile in self._profiles if profile.role == ROLE_USER),
        )

    def find_slot(self, slot_id: str) -> ParkingSlot | None:
        for slot in self._slots:
            if slot.id == slot_id:
                return slot
        return None

    async def __aenter__(self) -> ViewSynchronizer:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def start(self) -> None:
        """Subscribe to slots and bookings, then fetch everything once."""
        if self._started:
            return
        self._started = True
        _LOGGER.debug("Synchronizer for %s starting", self._profile.id)
        try:
            # Subscribing first means no change can slip between fetch and subscribe.
            self._subscriptions.append(
                await self._repository.subscribe_slots(self._handler(SLOTS))
            )
            self._subscriptions.append(
                await self._repository.subscribe_bookings(self._handler(BOOKINGS))
            )
            await self.refresh()
        except BaseException:
            await self.stop()
            raise
        self._loading = False
        _LOGGER.debug("Synchronizer for %s started", self._profile.id)

    async def stop(self) -> None:
        """Release this synchronizer's subscriptions; other clients are unaffected."""
        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            await subscription.unsubscribe()
        tasks = list(self._refreshing.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._refreshing.clear()
        self._dirty.clear()
        self._started = False

    async def refresh(self) -> None:
        """Fetch every collection in this view; errors propagate."""
        collections = [SLOTS, BOOKINGS]
        if self.is_admin:
            collections.append(PROFILES)
        await asyncio.gather(*(self._load(collection) for collection in collections))

    async def settle(self) -> None:
        """Wait for in-flight re-fetches to finish."""
        while self._refreshing:
            await asyncio.gather(*list(self._refreshing.values()), return_exceptions=True)

    def _handler(self, collection: str) -> Callable[[ChangeEvent], object]:
        async def on_event(event: ChangeEvent) -> None:
            _LOGGER.debug("Change on %s (%s)", event.table, event.event_type)
            self._schedule(collection)

        return on_event

    def _schedule(self, collection: str) -> None:
        if not self._started:
            return
        if collection in self._refreshing:
            self._dirty.add(collection)
            return
        task = asyncio.get_running_loop().create_task(self._refetch(collection))
        self._refreshing[collection] = task

    async def _refetch(self, collection: str) -> None:
        try:
            while True:
                self._dirty.discard(collection)
                try:
                    await self._load(collection)
                except PySmartParkingError as exc:
                    _LOGGER.warning(
                        "Re-fetch of %s failed; keeping cached data: %s", collection, exc
                    )
                if collection not in self._dirty:
                    return
        finally:
            if self._refreshing.get(collection) is asyncio.current_task():
                del self._refreshing[collection]

    async def _load(self, collection: str) -> None:
        # Loads may overlap; a result is applied only if no later load has landed.
        issued = self._issued.get(collection, 0) + 1
        self._issued[collection] = issued
        rows = await self._fetch(collection)
        if issued < self._applied.get(collection, 0):
            _LOGGER.debug("Dropping stale %s fetch", collection)
            return
        self._applied[collection] = issued
        if collection == SLOTS:
            self._slots = rows
        elif collection == BOOKINGS:
            self._bookings = rows
        else:
            self._profiles = rows
        if self._on_change is None:
            return
        try:
            self._on_change(collection)
        except Exception:
            _LOGGER.exception("Change listener for %s failed", collection)

    async def _fetch(self, collection: str) -> tuple:
        if collection == SLOTS:
            return tuple(await self._repository.list_slots())
        if collection == BOOKINGS:
            if self.is_admin:
                bookings = await self._repository.list_bookings(limit=self._booking_limit)
            else:
                bookings = await self._repository.list_bookings(user_id=self._profile.id)
            return tuple(bookings)
        if collection == PROFILES:
            return tuple(await self._repository.list_profiles())
        raise ValidationError(f"Unknown collection: {collection}.")
