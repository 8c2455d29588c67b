from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace

import aiohttp
import pytest

from pysmartparking import Client
from pysmartparking.backend.memory import MemoryIdentity, MemoryStore
from pysmartparking.backend.supabase import RealtimeClient, SupabaseStore
from pysmartparking.const import BOOKINGS_TABLE, SLOTS_TABLE
from pysmartparking.exceptions import StoreError, ValidationError
from pysmartparking.models import Profile
from pysmartparking.repository import ParkingRepository
from pysmartparking.sync import BOOKINGS, PROFILES, SLOTS, ViewSynchronizer


async def _clients(store: MemoryStore | None = None) -> tuple[MemoryStore, Client, Client]:
    store = store if store is not None else MemoryStore()
    accounts: dict = {}
    admin_client = Client.memory(store, MemoryIdentity(accounts))
    user_client = Client.memory(store, MemoryIdentity(accounts))
    await admin_client.gate.sign_up("admin@example.com", "admin-pw", "Admin", "admin")
    await user_client.gate.sign_up("driver@example.com", "driver-pw", "Driver")
    return store, admin_client, user_client


async def _converge(store: MemoryStore, *syncs: ViewSynchronizer) -> None:
    await store.flush()
    for sync in syncs:
        await sync.settle()


class _SlowStore(MemoryStore):
    """Holds the next slots select after it has read its rows."""

    def __init__(self) -> None:
        super().__init__()
        self.hold_next_slots = False
        self.holding = asyncio.Event()
        self.release = asyncio.Event()

    async def select(self, table, **kwargs):
        rows = await super().select(table, **kwargs)
        if table == SLOTS_TABLE and self.hold_next_slots:
            self.hold_next_slots = False
            self.holding.set()
            await self.release.wait()
        return rows


class _RestResponse:
    def __init__(self, rows: list[dict]) -> None:
        self.status = 200
        self._text = json.dumps(rows)

    async def text(self) -> str:
        return self._text

    async def json(self, content_type: str | None = "application/json") -> object:
        return json.loads(self._text)


class _RestContext:
    def __init__(self, rows: list[dict]) -> None:
        self._response = _RestResponse(rows)

    async def __aenter__(self) -> _RestResponse:
        return self._response

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return False


class _RealtimeSocket:
    def __init__(self) -> None:
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue()

    async def send_str(self, data: str) -> None:
        message = json.loads(data)
        if message["event"] == "phx_join":
            self._frame(
                {
                    "topic": message["topic"],
                    "event": "phx_reply",
                    "payload": {"status": "ok", "response": {}},
                    "ref": message["ref"],
                }
            )

    def drop(self) -> None:
        self.closed = True
        self._queue.put_nowait(SimpleNamespace(type=aiohttp.WSMsgType.CLOSED, data=None))

    async def close(self) -> None:
        self.drop()

    def _frame(self, message: dict) -> None:
        frame = SimpleNamespace(type=aiohttp.WSMsgType.TEXT, data=json.dumps(message))
        self._queue.put_nowait(frame)

    def __aiter__(self) -> _RealtimeSocket:
        return self

    async def __anext__(self):
        return await self._queue.get()


class _SupabaseSession:
    """Serves table rows over REST and hands out one realtime socket per connect."""

    def __init__(self, *sockets: _RealtimeSocket) -> None:
        self.tables: dict[str, list[dict]] = {SLOTS_TABLE: [], BOOKINGS_TABLE: []}
        self._sockets = list(sockets)
        self.connects = 0

    def request(self, method: str, url: str, **kwargs) -> _RestContext:
        return _RestContext(self.tables[url.rsplit("/", 1)[-1]])

    async def ws_connect(self, url: str, **kwargs) -> _RealtimeSocket:
        self.connects += 1
        return self._sockets[self.connects - 1]


def _slot_row(status: str) -> dict:
    return {
        "id": "slot-1",
        "slot_number": "A-101",
        "location": "Ground Floor",
        "slot_type": "regular",
        "status": status,
        "created_at": "2024-05-01T10:00:00Z",
        "updated_at": "2024-05-01T10:00:00Z",
    }


@pytest.mark.asyncio
async def test_user_view_follows_bookings() -> None:
    store, admin_client, user_client = await _clients()
    admin = admin_client.gate.profile
    user = user_client.gate.profile
    slot = await admin_client.bookings.create_slot(admin, "A-101", "Ground Floor")

    async with user_client.synchronizer(user) as sync:
        assert sync.loading is False
        assert [item.id for item in sync.free_slots] == [slot.id]
        assert sync.active_booking is None

        new_slot = await admin_client.bookings.create_slot(admin, "A-102", "Ground Floor")
        await _converge(store, sync)
        assert sync.find_slot(new_slot.id) is not None

        booking = await user_client.bookings.book(user, slot.id)
        await _converge(store, sync)
        assert sync.active_booking is not None
        assert sync.active_booking.id == booking.id
        assert sync.active_booking.slot is not None
        assert sync.active_booking.slot.slot_number == "A-101"
        assert sync.find_slot(slot.id).status == "occupied"
        assert [item.id for item in sync.free_slots] == [new_slot.id]

        await user_client.bookings.release(user, booking.id, slot.id)
        await _converge(store, sync)
        assert sync.active_booking is None
        assert sync.bookings[0].booking.status == "completed"
        assert sync.find_slot(slot.id).status == "free"

    assert store.subscriber_count(SLOTS_TABLE) == 0
    assert store.subscriber_count(BOOKINGS_TABLE) == 0


@pytest.mark.asyncio
async def test_user_view_only_contains_own_bookings() -> None:
    store, admin_client, user_client = await _clients()
    admin = admin_client.gate.profile
    user = user_client.gate.profile
    first = await admin_client.bookings.create_slot(admin, "A-101", "Ground Floor")
    second = await admin_client.bookings.create_slot(admin, "A-102", "Ground Floor")
    await admin_client.bookings.book(admin, first.id)
    mine = await user_client.bookings.book(user, second.id)

    async with user_client.synchronizer(user) as sync:
        assert [entry.id for entry in sync.bookings] == [mine.id]
        assert sync.profiles == ()
        assert sync.is_admin is False


@pytest.mark.asyncio
async def test_admin_view_has_all_bookings_profiles_and_stats() -> None:
    store, admin_client, user_client = await _clients()
    admin = admin_client.gate.profile
    user = user_client.gate.profile
    slots = [
        await admin_client.bookings.create_slot(admin, number, "Level 1")
        for number in ("A-101", "A-102", "A-103")
    ]
    await admin_client.bookings.update_slot(admin, slots[2].id, status="reserved")

    async with admin_client.synchronizer(admin) as sync:
        assert sync.is_admin
        assert {profile.id for profile in sync.profiles} == {admin.id, user.id}

        booking = await user_client.bookings.book(user, slots[0].id)
        await _converge(store, sync)

        assert [entry.id for entry in sync.bookings] == [booking.id]
        assert sync.bookings[0].profile is not None
        assert sync.bookings[0].profile.email == "driver@example.com"
        stats = sync.stats
        assert stats.total_slots == 3
        assert stats.free_slots == 1
        assert stats.occupied_slots == 1
        assert stats.reserved_slots == 1
        assert stats.active_bookings == 1
        assert stats.total_users == 1


@pytest.mark.asyncio
async def test_admin_view_caps_booking_history() -> None:
    store, admin_client, user_client = await _clients()
    admin = admin_client.gate.profile
    user = user_client.gate.profile
    slot = await admin_client.bookings.create_slot(admin, "A-101", "Ground Floor")
    booking_ids = []
    for _ in range(3):
        booking = await user_client.bookings.book(user, slot.id)
        await user_client.bookings.release(user, booking.id)
        booking_ids.append(booking.id)

    async with admin_client.synchronizer(admin, booking_limit=2) as sync:
        assert [entry.id for entry in sync.bookings] == booking_ids[:0:-1]


@pytest.mark.asyncio
async def test_subscribes_before_first_fetch(monkeypatch: pytest.MonkeyPatch) -> None:
    store = MemoryStore()
    repo = ParkingRepository(store)
    profile = await repo.create_profile("u1", "u1@example.com", "U One", "user")
    order: list[str] = []
    original_subscribe = repo.subscribe_slots
    original_list = repo.list_slots

    async def _subscribe(callback):
        order.append("subscribe")
        return await original_subscribe(callback)

    async def _list():
        order.append("fetch")
        return await original_list()

    monkeypatch.setattr(repo, "subscribe_slots", _subscribe)
    monkeypatch.setattr(repo, "list_slots", _list)
    sync = ViewSynchronizer(repo, profile)
    await sync.start()
    await sync.stop()

    assert order == ["subscribe", "fetch"]


@pytest.mark.asyncio
async def test_failed_refetch_keeps_cache() -> None:
    store, admin_client, user_client = await _clients()
    admin = admin_client.gate.profile
    user = user_client.gate.profile
    slot = await admin_client.bookings.create_slot(admin, "A-101", "Ground Floor")

    async with user_client.synchronizer(user) as sync:
        store.fail_next("select", SLOTS_TABLE, "connection reset")
        await admin_client.bookings.update_slot(admin, slot.id, location="Level 2")
        await _converge(store, sync)
        assert sync.find_slot(slot.id).location == "Ground Floor"

        await admin_client.bookings.update_slot(admin, slot.id, status="reserved")
        await _converge(store, sync)
        assert sync.find_slot(slot.id).location == "Level 2"
        assert sync.find_slot(slot.id).status == "reserved"


@pytest.mark.asyncio
async def test_initial_fetch_failure_releases_subscriptions() -> None:
    store, _, user_client = await _clients()
    store.fail_next("select", BOOKINGS_TABLE, "permission denied for table bookings")
    sync = user_client.synchronizer(user_client.gate.profile)

    with pytest.raises(StoreError, match="permission denied"):
        await sync.start()

    assert store.subscriber_count(SLOTS_TABLE) == 0
    assert store.subscriber_count(BOOKINGS_TABLE) == 0
    assert sync.loading is True


@pytest.mark.asyncio
async def test_stopping_one_view_leaves_others_live() -> None:
    store, admin_client, user_client = await _clients()
    admin = admin_client.gate.profile
    user = user_client.gate.profile
    first = user_client.synchronizer(user)
    second = admin_client.synchronizer(admin)
    await first.start()
    await second.start()

    await first.stop()
    slot = await admin_client.bookings.create_slot(admin, "A-101", "Ground Floor")
    await _converge(store, first, second)

    assert first.slots == ()
    assert [item.id for item in second.slots] == [slot.id]
    assert store.subscriber_count(SLOTS_TABLE) == 1
    await second.stop()


@pytest.mark.asyncio
async def test_burst_of_events_is_coalesced() -> None:
    store, admin_client, user_client = await _clients()
    admin = admin_client.gate.profile
    loads: list[str] = []

    async with admin_client.synchronizer(admin, on_change=loads.append) as sync:
        loads.clear()
        for number in ("A-101", "A-102", "A-103", "A-104"):
            await admin_client.bookings.create_slot(admin, number, "Level 1")
        await _converge(store, sync)

        assert loads == [SLOTS]
        assert len(sync.slots) == 4


@pytest.mark.asyncio
async def test_events_during_refetch_trigger_one_follow_up(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    store, admin_client, _ = await _clients()
    admin = admin_client.gate.profile
    repo = admin_client.repository
    sync = ViewSynchronizer(repo, admin)
    await sync.start()

    calls: list[int] = []
    release = asyncio.Event()
    original = repo.list_slots

    async def _gated():
        calls.append(1)
        if len(calls) == 1:
            await release.wait()
        return await original()

    monkeypatch.setattr(repo, "list_slots", _gated)
    await admin_client.bookings.create_slot(admin, "A-101", "Level 1")
    await store.flush()
    while not calls:
        await asyncio.sleep(0)

    for number in ("A-102", "A-103", "A-104"):
        await admin_client.bookings.create_slot(admin, number, "Level 1")
    await store.flush()
    release.set()
    await sync.settle()

    assert len(calls) == 2
    assert len(sync.slots) == 4
    await sync.stop()


@pytest.mark.asyncio
async def test_stop_cancels_running_refetch(monkeypatch: pytest.MonkeyPatch) -> None:
    store, admin_client, _ = await _clients()
    admin = admin_client.gate.profile
    repo = admin_client.repository
    sync = ViewSynchronizer(repo, admin)
    await sync.start()
    started = asyncio.Event()

    async def _hang():
        started.set()
        await asyncio.Event().wait()

    monkeypatch.setattr(repo, "list_slots", _hang)
    await admin_client.bookings.create_slot(admin, "A-101", "Level 1")
    await store.flush()
    await started.wait()

    await sync.stop()
    await sync.settle()
    assert sync.slots == ()


@pytest.mark.asyncio
async def test_manual_refresh_notifies_listener() -> None:
    _, admin_client, _ = await _clients()
    admin = admin_client.gate.profile
    seen: list[str] = []
    sync = admin_client.synchronizer(admin, on_change=seen.append)
    await sync.refresh()
    assert sorted(seen) == sorted([SLOTS, BOOKINGS, PROFILES])


def test_synchronizer_requires_profile() -> None:
    with pytest.raises(ValidationError):
        ViewSynchronizer(ParkingRepository(MemoryStore()), None)  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_second_client_sees_book_and_release() -> None:
    store, admin_client, user_client = await _clients()
    admin = admin_client.gate.profile
    user = user_client.gate.profile
    slot = await admin_client.bookings.create_slot(admin, "S1", "Ground Floor")

    async with admin_client.synchronizer(admin) as watcher:
        booking = await user_client.bookings.book(user, slot.id)
        await _converge(store, watcher)
        assert watcher.find_slot(slot.id).status == "occupied"
        assert watcher.stats.active_bookings == 1

        await user_client.bookings.release(user, booking.id, slot.id)
        await _converge(store, watcher)
        assert watcher.find_slot(slot.id).status == "free"
        assert watcher.bookings[0].booking.release_time is not None
        assert watcher.stats.active_bookings == 0


@pytest.mark.asyncio
async def test_admin_slot_edits_reach_subscribed_users() -> None:
    store, admin_client, user_client = await _clients()
    admin = admin_client.gate.profile
    user = user_client.gate.profile

    async with user_client.synchronizer(user) as watcher:
        slot = await admin_client.bookings.create_slot(admin, "S2", "Level 1")
        await _converge(store, watcher)
        assert watcher.find_slot(slot.id).slot_type == "regular"

        await admin_client.bookings.update_slot(admin, slot.id, slot_type="electric")
        await _converge(store, watcher)
        assert watcher.find_slot(slot.id).slot_type == "electric"

        await admin_client.bookings.delete_slot(admin, slot.id)
        await _converge(store, watcher)
        assert watcher.find_slot(slot.id) is None


@pytest.mark.asyncio
async def test_change_during_initial_fetch_is_not_overwritten() -> None:
    store, admin_client, user_client = await _clients(_SlowStore())
    admin = admin_client.gate.profile
    user = user_client.gate.profile
    slot = await admin_client.bookings.create_slot(admin, "A-101", "Ground Floor")
    store.hold_next_slots = True
    sync = user_client.synchronizer(user)

    starting = asyncio.create_task(sync.start())
    await store.holding.wait()
    await admin_client.bookings.update_slot(admin, slot.id, status="reserved")
    await _converge(store, sync)
    assert sync.find_slot(slot.id).status == "reserved"

    store.release.set()
    await starting
    assert sync.loading is False
    assert sync.find_slot(slot.id).status == "reserved"
    await sync.stop()


@pytest.mark.asyncio
async def test_manual_refresh_does_not_undo_newer_refetch() -> None:
    store, admin_client, user_client = await _clients(_SlowStore())
    admin = admin_client.gate.profile
    user = user_client.gate.profile
    slot = await admin_client.bookings.create_slot(admin, "A-101", "Ground Floor")

    async with user_client.synchronizer(user) as sync:
        store.hold_next_slots = True
        refreshing = asyncio.create_task(sync.refresh())
        await store.holding.wait()
        await admin_client.bookings.update_slot(admin, slot.id, location="Level 2")
        await _converge(store, sync)

        store.release.set()
        await refreshing
        assert sync.find_slot(slot.id).location == "Level 2"


@pytest.mark.asyncio
async def test_failing_listener_does_not_stop_refetches() -> None:
    store, admin_client, _ = await _clients()
    admin = admin_client.gate.profile
    seen: list[str] = []

    def _listener(collection: str) -> None:
        seen.append(collection)
        raise RuntimeError("render failed")

    async with admin_client.synchronizer(admin, on_change=_listener) as sync:
        await admin_client.bookings.create_slot(admin, "A-101", "Level 1")
        await _converge(store, sync)
        await admin_client.bookings.create_slot(admin, "A-102", "Level 1")
        await _converge(store, sync)

        assert [item.slot_number for item in sync.slots] == ["A-101", "A-102"]
        assert seen.count(SLOTS) == 3


@pytest.mark.asyncio
async def test_view_recovers_changes_missed_while_socket_was_down() -> None:
    first = _RealtimeSocket()
    second = _RealtimeSocket()
    session = _SupabaseSession(first, second)
    session.tables[SLOTS_TABLE] = [_slot_row("free")]
    base_url = "https://demo.supabase.co"
    realtime = RealtimeClient(
        session,
        base_url,
        "anon-key",
        heartbeat_interval=3600,
        reconnect_delays=(0.0,),
    )
    store = SupabaseStore(session, base_url, "anon-key", realtime=realtime)
    profile = Profile(
        id="user-1",
        email="driver@example.com",
        full_name="Driver",
        role="user",
        created_at="2024-05-01T10:00:00Z",
    )
    loads: list[str] = []
    sync = ViewSynchronizer(ParkingRepository(store), profile, on_change=loads.append)
    await sync.start()
    assert sync.find_slot("slot-1").status == "free"

    # The change lands while no socket is open, so no event is ever sent for it.
    first.drop()
    session.tables[SLOTS_TABLE] = [_slot_row("occupied")]
    for _ in range(200):
        if sync.find_slot("slot-1").status == "occupied":
            break
        await asyncio.sleep(0.01)

    assert session.connects == 2
    assert sync.find_slot("slot-1").status == "occupied"
    await sync.settle()
    assert loads.count(SLOTS) == 2
    await sync.stop()
    await store.aclose()
