import os
import tempfile
from datetime import datetime, timedelta

# The application reads its settings at import time.
_tmpdir = tempfile.mkdtemp(prefix="slot_swapper_tests_")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_tmpdir, 'api.db')}"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["SWAP_POLICY"] = "strict"

import pytest
import sqlalchemy
from databases import Database

from slot_swapper.data_models import SlotStatus, SwapStatus
from slot_swapper.database import metadata
from slot_swapper.models import slots, swap_requests
from slot_swapper.negotiator import SwapNegotiator
from slot_swapper.registry import SlotRegistry
from slot_swapper.store import SwapStore

BASE_TIME = datetime(2025, 11, 1, 9, 0)


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    async def notify(self, user_id, message, kind="notification"):
        self.sent.append((user_id, kind, message))

    def messages_for(self, user_id):
        return [(kind, message) for recipient, kind, message in self.sent if recipient == user_id]


class FailingNotifier:
    async def notify(self, user_id, message, kind="notification"):
        raise ConnectionError("notification channel is down")


@pytest.fixture
async def database(tmp_path):
    url = f"sqlite:///{tmp_path / 'core.db'}"
    engine = sqlalchemy.create_engine(url)
    metadata.create_all(engine)
    db = Database(url)
    await db.connect()
    yield db
    await db.disconnect()
    engine.dispose()


@pytest.fixture
def store(database):
    return SwapStore(database)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def registry(store):
    return SlotRegistry(store)


@pytest.fixture
def negotiator(store, registry, notifier):
    return SwapNegotiator(store, registry, notifier)


@pytest.fixture
async def alice(store):
    return await store.create_user("Alice", "alice@example.com", "hash")


@pytest.fixture
async def bob(store):
    return await store.create_user("Bob", "bob@example.com", "hash")


@pytest.fixture
async def carol(store):
    return await store.create_user("Carol", "carol@example.com", "hash")


@pytest.fixture
def make_slot(registry):
    async def _make_slot(owner, title, day=0, status=SlotStatus.SWAPPABLE):
        start = BASE_TIME + timedelta(days=day)
        return await registry.create_slot(owner.id, title, start, start + timedelta(hours=1), status)
    return _make_slot


@pytest.fixture
def assert_pending_invariant(database):
    """Every slot is SWAP_PENDING exactly when one PENDING request references it."""
    async def _check():
        all_slots = await database.fetch_all(slots.select())
        pending = await database.fetch_all(
            swap_requests.select().where(swap_requests.c.status == SwapStatus.PENDING.value)
        )
        for slot in all_slots:
            holders = [
                swap for swap in pending
                if slot["id"] in (swap["requester_slot_id"], swap["target_slot_id"])
            ]
            if slot["status"] == SlotStatus.SWAP_PENDING.value:
                assert len(holders) == 1, f"slot {slot['title']} is SWAP_PENDING with {len(holders)} requests"
                assert slot["pending_swap_id"] == holders[0]["id"]
            else:
                assert holders == [], f"slot {slot['title']} is {slot['status']} but referenced by a pending request"
    return _check
