from __future__ import annotations

import dataclasses

import pytest

from pysmartparking.backend.memory import MemoryStore
from pysmartparking.booking import BookingService
from pysmartparking.const import BOOKINGS_TABLE, SLOTS_TABLE
from pysmartparking.exceptions import (
    AuthError,
    BookingConflictError,
    InconsistentStateError,
    InvalidTransitionError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from pysmartparking.models import Profile
from pysmartparking.repository import ParkingRepository


async def _setup() -> tuple[MemoryStore, ParkingRepository, BookingService, Profile, Profile]:
    store = MemoryStore()
    repo = ParkingRepository(store)
    service = BookingService(repo)
    admin = await repo.create_profile("admin-1", "admin@example.com", "Admin", "admin")
    user = await repo.create_profile("user-1", "driver@example.com", "Driver", "user")
    return store, repo, service, admin, user


@pytest.mark.asyncio
async def test_book_occupies_slot() -> None:
    _, repo, service, _, user = await _setup()
    slot = await repo.create_slot("A-101", "Ground Floor", "regular", "free")

    booking = await service.book(user, slot.id)

    assert booking.is_active
    assert booking.user_id == user.id
    assert booking.slot_id == slot.id
    assert (await repo.get_slot(slot.id)).status == "occupied"
    assert [item.id for item in await repo.list_active_bookings(user_id=user.id)] == [booking.id]


@pytest.mark.asyncio
async def test_book_rejects_second_active_booking() -> None:
    _, repo, service, _, user = await _setup()
    first = await repo.create_slot("A-101", "Ground Floor", "regular", "free")
    second = await repo.create_slot("A-102", "Ground Floor", "regular", "free")
    await service.book(user, first.id)

    with pytest.raises(BookingConflictError) as excinfo:
        await service.book(user, second.id)

    assert excinfo.value.user_message == "Release your current slot first."
    assert (await repo.get_slot(second.id)).status == "free"


@pytest.mark.asyncio
async def test_book_rejects_unavailable_slot() -> None:
    _, repo, service, admin, user = await _setup()
    reserved = await repo.create_slot("A-101", "Ground Floor", "regular", "reserved")
    taken = await repo.create_slot("A-102", "Ground Floor", "regular", "free")
    await service.book(admin, taken.id)

    with pytest.raises(BookingConflictError):
        await service.book(user, reserved.id)
    with pytest.raises(BookingConflictError):
        await service.book(user, taken.id)
    assert await repo.list_active_bookings(user_id=user.id) == []


@pytest.mark.asyncio
async def test_book_missing_slot() -> None:
    _, _, service, _, user = await _setup()
    with pytest.raises(NotFoundError):
        await service.book(user, "missing")


@pytest.mark.asyncio
async def test_book_requires_profile() -> None:
    _, repo, service, _, _ = await _setup()
    slot = await repo.create_slot("A-101", "Ground Floor", "regular", "free")
    with pytest.raises(AuthError):
        await service.book(None, slot.id)  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_book_lost_slot_race_undoes_booking(monkeypatch: pytest.MonkeyPatch) -> None:
    _, repo, service, admin, user = await _setup()
    slot = await repo.create_slot("A-101", "Ground Floor", "regular", "free")
    stale = await repo.get_slot(slot.id)
    winner = await service.book(admin, slot.id)

    async def _stale_slot(slot_id: str):
        return stale

    monkeypatch.setattr(repo, "get_slot", _stale_slot)
    with pytest.raises(BookingConflictError):
        await service.book(user, slot.id)

    active = await repo.list_active_bookings(slot_id=slot.id)
    assert [item.id for item in active] == [winner.id]
    assert await repo.list_active_bookings(user_id=user.id) == []


@pytest.mark.asyncio
async def test_book_slot_failure_removes_booking() -> None:
    store, repo, service, _, user = await _setup()
    slot = await repo.create_slot("A-101", "Ground Floor", "regular", "free")
    store.fail_next("update", SLOTS_TABLE, "permission denied for table parking_slots")

    with pytest.raises(StoreError, match="permission denied"):
        await service.book(user, slot.id)

    assert store.rows(BOOKINGS_TABLE) == []
    assert (await repo.get_slot(slot.id)).status == "free"


@pytest.mark.asyncio
async def test_book_failed_compensation_is_reported() -> None:
    store, repo, service, _, user = await _setup()
    slot = await repo.create_slot("A-101", "Ground Floor", "regular", "free")
    store.fail_next("update", SLOTS_TABLE)
    store.fail_next("delete", BOOKINGS_TABLE)

    with pytest.raises(InconsistentStateError) as excinfo:
        await service.book(user, slot.id)

    assert isinstance(excinfo.value.__cause__, StoreError)


@pytest.mark.asyncio
async def test_concurrent_bookings_by_one_user_keep_earliest(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _, repo, service, _, user = await _setup()
    first_slot = await repo.create_slot("A-101", "Ground Floor", "regular", "free")
    second_slot = await repo.create_slot("A-102", "Ground Floor", "regular", "free")
    kept = await service.book(user, first_slot.id)

    original = repo.list_active_bookings
    calls = 0

    async def _stale_first_read(**kwargs):
        nonlocal calls
        calls += 1
        if calls == 1:
            return []
        return await original(**kwargs)

    monkeypatch.setattr(repo, "list_active_bookings", _stale_first_read)
    with pytest.raises(BookingConflictError):
        await service.book(user, second_slot.id)

    monkeypatch.setattr(repo, "list_active_bookings", original)
    active = await repo.list_active_bookings(user_id=user.id)
    assert [item.id for item in active] == [kept.id]
    assert (await repo.get_slot(first_slot.id)).status == "occupied"
    assert (await repo.get_slot(second_slot.id)).status == "free"


@pytest.mark.asyncio
async def test_release_frees_slot() -> None:
    _, repo, service, _, user = await _setup()
    slot = await repo.create_slot("A-101", "Ground Floor", "regular", "free")
    booking = await service.book(user, slot.id)

    released = await service.release(user, booking.id, slot.id)

    assert released.status == "completed"
    assert released.release_time is not None
    assert (await repo.get_slot(slot.id)).status == "free"
    assert await repo.list_active_bookings(user_id=user.id) == []


@pytest.mark.asyncio
async def test_release_twice_is_rejected() -> None:
    _, repo, service, _, user = await _setup()
    slot = await repo.create_slot("A-101", "Ground Floor", "regular", "free")
    booking = await service.book(user, slot.id)
    await service.release(user, booking.id)
    rebooked = await service.book(user, slot.id)

    with pytest.raises(InvalidTransitionError):
        await service.release(user, booking.id)

    assert (await repo.get_slot(slot.id)).status == "occupied"
    assert (await repo.get_booking(rebooked.id)).is_active


@pytest.mark.asyncio
async def test_release_checks_owner_and_slot() -> None:
    _, repo, service, admin, user = await _setup()
    other = await repo.create_profile("user-2", "other@example.com", "Other", "user")
    slot = await repo.create_slot("A-101", "Ground Floor", "regular", "free")
    booking = await service.book(user, slot.id)

    with pytest.raises(AuthError):
        await service.release(other, booking.id)
    with pytest.raises(ValidationError):
        await service.release(user, booking.id, "another-slot")
    with pytest.raises(NotFoundError):
        await service.release(user, "missing")

    released = await service.release(admin, booking.id)
    assert released.status == "completed"


@pytest.mark.asyncio
async def test_release_tolerates_slot_not_occupied() -> None:
    _, repo, service, admin, user = await _setup()
    slot = await repo.create_slot("A-101", "Ground Floor", "regular", "free")
    booking = await service.book(user, slot.id)
    await service.update_slot(admin, slot.id, status="reserved")

    released = await service.release(user, booking.id)

    assert released.status == "completed"
    assert (await repo.get_slot(slot.id)).status == "reserved"


@pytest.mark.asyncio
async def test_release_slot_failure_reactivates_booking() -> None:
    store, repo, service, _, user = await _setup()
    slot = await repo.create_slot("A-101", "Ground Floor", "regular", "free")
    booking = await service.book(user, slot.id)
    store.fail_next("update", SLOTS_TABLE)

    with pytest.raises(StoreError):
        await service.release(user, booking.id)

    restored = await repo.get_booking(booking.id)
    assert restored.is_active
    assert restored.release_time is None
    assert (await repo.get_slot(slot.id)).status == "occupied"


@pytest.mark.asyncio
async def test_release_failed_compensation_is_reported(monkeypatch: pytest.MonkeyPatch) -> None:
    store, repo, service, _, user = await _setup()
    slot = await repo.create_slot("A-101", "Ground Floor", "regular", "free")
    booking = await service.book(user, slot.id)
    store.fail_next("update", SLOTS_TABLE)

    async def _reject(booking_id: str):
        raise StoreError("connection reset")

    monkeypatch.setattr(repo, "reactivate_booking", _reject)
    with pytest.raises(InconsistentStateError):
        await service.release(user, booking.id)


@pytest.mark.asyncio
async def test_slot_administration_requires_admin() -> None:
    _, repo, service, admin, user = await _setup()
    with pytest.raises(AuthError):
        await service.create_slot(user, "A-101", "Ground Floor")

    slot = await service.create_slot(admin, "A-101", "Ground Floor")
    assert (slot.slot_type, slot.status) == ("regular", "free")

    with pytest.raises(AuthError):
        await service.update_slot(user, slot.id, location="Level 1")
    with pytest.raises(AuthError):
        await service.delete_slot(user, slot.id)
    with pytest.raises(AuthError):
        await service.reconcile(user)

    updated = await service.update_slot(admin, slot.id, slot_type="electric")
    assert updated.slot_type == "electric"


@pytest.mark.asyncio
async def test_admin_role_is_checked_on_the_profile() -> None:
    _, _, service, _, user = await _setup()
    promoted = dataclasses.replace(user, role="admin")
    slot = await service.create_slot(promoted, "A-101", "Ground Floor", "compact", "reserved")
    assert slot.slot_type == "compact"


@pytest.mark.asyncio
async def test_delete_slot_refused_while_booked() -> None:
    _, repo, service, admin, user = await _setup()
    slot = await service.create_slot(admin, "A-101", "Ground Floor")
    booking = await service.book(user, slot.id)

    with pytest.raises(BookingConflictError):
        await service.delete_slot(admin, slot.id)

    await service.release(user, booking.id)
    await service.delete_slot(admin, slot.id)
    assert await repo.get_slot(slot.id) is None
    with pytest.raises(NotFoundError):
        await service.delete_slot(admin, slot.id)


@pytest.mark.asyncio
async def test_reconcile_repairs_slot_status() -> None:
    _, repo, service, admin, user = await _setup()
    orphaned = await repo.create_slot("A-101", "Ground Floor", "regular", "occupied")
    unmarked = await repo.create_slot("A-102", "Ground Floor", "regular", "free")
    healthy = await repo.create_slot("A-103", "Ground Floor", "regular", "free")
    await repo.insert_booking(user.id, unmarked.id)
    await service.book(admin, healthy.id)

    repaired = await service.reconcile(admin)

    assert sorted(repaired) == sorted([orphaned.id, unmarked.id])
    assert (await repo.get_slot(orphaned.id)).status == "free"
    assert (await repo.get_slot(unmarked.id)).status == "occupied"
    assert (await repo.get_slot(healthy.id)).status == "occupied"
    assert await service.reconcile(admin) == []
