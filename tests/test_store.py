import sqlite3
from datetime import timedelta

import pytest

from conftest import BASE_TIME
from slot_swapper.data_models import SlotStatus, SwapStatus
from slot_swapper.errors import ConflictError


async def test_update_slot_replaces_revision(store, alice):
    slot = await store.insert_slot(alice.id, "Gym", BASE_TIME, BASE_TIME + timedelta(hours=1))

    updated = await store.update_slot(slot, status=SlotStatus.SWAPPABLE)

    assert updated.status == SlotStatus.SWAPPABLE
    assert updated.revision != slot.revision


async def test_update_slot_with_stale_revision_is_refused(store, alice, bob):
    slot = await store.insert_slot(alice.id, "Gym", BASE_TIME, BASE_TIME + timedelta(hours=1))
    await store.update_slot(slot, status=SlotStatus.SWAPPABLE)

    # A second writer still holding the original read loses
    assert await store.update_slot(slot, owner_id=bob.id) is None

    current = await store.get_slot(slot.id)
    assert current.owner_id == alice.id
    assert current.status == SlotStatus.SWAPPABLE


async def test_delete_slot_with_stale_revision_is_refused(store, alice):
    slot = await store.insert_slot(alice.id, "Gym", BASE_TIME, BASE_TIME + timedelta(hours=1))
    await store.update_slot(slot, title="Gym (moved)")

    assert await store.delete_slot(slot) is False
    assert await store.get_slot(slot.id) is not None


async def test_update_swap_with_stale_revision_is_refused(store, alice, bob):
    mine = await store.insert_slot(alice.id, "Mine", BASE_TIME, BASE_TIME + timedelta(hours=1))
    theirs = await store.insert_slot(bob.id, "Theirs", BASE_TIME, BASE_TIME + timedelta(hours=1))
    swap = await store.insert_swap(alice.id, mine.id, bob.id, theirs.id)

    accepted = await store.update_swap(swap, status=SwapStatus.ACCEPTED)
    assert accepted.status == SwapStatus.ACCEPTED

    assert await store.update_swap(swap, status=SwapStatus.REJECTED) is None
    assert (await store.get_swap(swap.id)).status == SwapStatus.ACCEPTED


async def test_transaction_rolls_back_on_error(store, alice):
    slot = await store.insert_slot(alice.id, "Gym", BASE_TIME, BASE_TIME + timedelta(hours=1))

    try:
        async with store.transaction():
            await store.update_slot(slot, status=SlotStatus.SWAPPABLE)
            raise RuntimeError("boom")
    except RuntimeError:
        pass

    assert (await store.get_slot(slot.id)).status == SlotStatus.BUSY


async def test_credentials_lookup(store, alice):
    user, hashed_password = await store.get_credentials("alice@example.com")

    assert user.id == alice.id
    assert hashed_password == "hash"
    assert await store.get_credentials("nobody@example.com") is None


async def test_duplicate_email_is_a_conflict(store, alice):
    with pytest.raises(ConflictError):
        await store.create_user("Alice again", "alice@example.com", "hash")


async def test_lock_contention_becomes_a_conflict(store):
    with pytest.raises(ConflictError):
        async with store.transaction():
            raise sqlite3.OperationalError("database is locked")


async def test_other_operational_errors_propagate(store):
    with pytest.raises(sqlite3.OperationalError):
        async with store.transaction():
            raise sqlite3.OperationalError("no such table: slots")
