# store.py
import sqlite3
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional, Tuple

import sqlalchemy
from databases import Database
from sqlalchemy.exc import IntegrityError, OperationalError

from slot_swapper.data_models import (
    Slot,
    SlotStatus,
    SlotSummary,
    SwappableSlot,
    SwapRequest,
    SwapRequestView,
    SwapStatus,
    User,
)
from slot_swapper.errors import ConflictError
from slot_swapper.models import slots, swap_requests, users


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Aware UTC datetime; naive values are taken to already be UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _is_lock_contention(exc: Exception) -> bool:
    message = str(exc).lower()
    return "locked" in message or "busy" in message


def _user_from_record(record) -> User:
    return User(
        id=record["id"],
        name=record["name"],
        email=record["email"],
        created_at=record["created_at"],
    )


def _slot_from_record(record) -> Slot:
    return Slot(
        id=record["id"],
        owner_id=record["owner_id"],
        title=record["title"],
        start_time=as_utc(record["start_time"]),
        end_time=as_utc(record["end_time"]),
        status=SlotStatus(record["status"]),
        pending_swap_id=record["pending_swap_id"],
        revision=record["revision"],
        created_at=record["created_at"],
    )


def _swap_from_record(record) -> SwapRequest:
    return SwapRequest(
        id=record["id"],
        requester_id=record["requester_id"],
        requester_slot_id=record["requester_slot_id"],
        target_user_id=record["target_user_id"],
        target_slot_id=record["target_slot_id"],
        status=SwapStatus(record["status"]),
        revision=record["revision"],
        created_at=record["created_at"],
        updated_at=record["updated_at"],
    )


class SwapStore:
    """Persistence for users, slots and swap requests.

    Every slot and swap request row carries a ``revision`` token that is
    replaced on each write. Updates go through compare-and-set on that token,
    so a writer that read a row and then lost a race finds out instead of
    silently overwriting. Callers group multi-row changes in ``transaction()``.
    """

    def __init__(self, database: Database):
        self.database = database

    @asynccontextmanager
    async def transaction(self):
        """Database transaction; losing a write lock to another transaction is a ConflictError."""
        try:
            async with self.database.transaction():
                yield
        except (OperationalError, sqlite3.OperationalError) as e:
            if not _is_lock_contention(e):
                raise
            raise ConflictError("Another request is changing the same records, please retry") from e

    async def _compare_and_set(self, table, row_id: str, expected_revision: str, values: dict):
        revision = new_id()
        query = (
            table.update()
            .where(table.c.id == row_id, table.c.revision == expected_revision)
            .values(revision=revision, **values)
        )
        await self.database.execute(query)
        record = await self.database.fetch_one(table.select().where(table.c.id == row_id))
        if record is None or record["revision"] != revision:
            return None
        return record

    # Users

    async def create_user(self, name: str, email: str, hashed_password: str) -> User:
        values = {
            "id": new_id(),
            "name": name,
            "email": email,
            "hashed_password": hashed_password,
            "created_at": utcnow(),
        }
        try:
            await self.database.execute(users.insert().values(**values))
        except (IntegrityError, sqlite3.IntegrityError) as e:
            raise ConflictError("Email already registered") from e
        return User(id=values["id"], name=name, email=email, created_at=values["created_at"])

    async def get_user(self, user_id: str) -> Optional[User]:
        record = await self.database.fetch_one(users.select().where(users.c.id == user_id))
        return _user_from_record(record) if record else None

    async def get_credentials(self, email: str) -> Optional[Tuple[User, str]]:
        record = await self.database.fetch_one(users.select().where(users.c.email == email))
        if record is None:
            return None
        return _user_from_record(record), record["hashed_password"]

    # Slots

    async def insert_slot(self, owner_id: str, title: str, start_time: datetime, end_time: datetime,
                          status: SlotStatus = SlotStatus.BUSY) -> Slot:
        slot = Slot(
            id=new_id(),
            owner_id=owner_id,
            title=title,
            start_time=as_utc(start_time),
            end_time=as_utc(end_time),
            status=status,
            revision=new_id(),
            created_at=utcnow(),
        )
        query = slots.insert().values(
            id=slot.id,
            owner_id=slot.owner_id,
            title=slot.title,
            start_time=slot.start_time,
            end_time=slot.end_time,
            status=slot.status.value,
            pending_swap_id=None,
            revision=slot.revision,
            created_at=slot.created_at,
        )
        await self.database.execute(query)
        return slot

    async def get_slot(self, slot_id: str) -> Optional[Slot]:
        record = await self.database.fetch_one(slots.select().where(slots.c.id == slot_id))
        return _slot_from_record(record) if record else None

    async def get_owned_slot(self, slot_id: str, owner_id: str) -> Optional[Slot]:
        query = slots.select().where(slots.c.id == slot_id, slots.c.owner_id == owner_id)
        record = await self.database.fetch_one(query)
        return _slot_from_record(record) if record else None

    async def list_owned_slots(self, owner_id: str) -> List[Slot]:
        query = slots.select().where(slots.c.owner_id == owner_id).order_by(slots.c.start_time, slots.c.id)
        return [_slot_from_record(record) for record in await self.database.fetch_all(query)]

    async def list_swappable_slots(self, exclude_owner_id: str) -> List[SwappableSlot]:
        query = sqlalchemy.select(
            slots,
            users.c.name.label("owner_name"),
            users.c.email.label("owner_email"),
        ).select_from(
            slots.join(users, slots.c.owner_id == users.c.id)
        ).where(
            slots.c.status == SlotStatus.SWAPPABLE.value,
            slots.c.owner_id != exclude_owner_id,
        ).order_by(slots.c.start_time, slots.c.id)
        records = await self.database.fetch_all(query)
        return [
            SwappableSlot(
                slot=_slot_from_record(record),
                owner_name=record["owner_name"],
                owner_email=record["owner_email"],
            )
            for record in records
        ]

    async def update_slot(self, slot: Slot, **values) -> Optional[Slot]:
        """Apply ``values`` only if the slot still has the revision it was read with."""
        if "status" in values:
            values["status"] = SlotStatus(values["status"]).value
        record = await self._compare_and_set(slots, slot.id, slot.revision, values)
        return _slot_from_record(record) if record else None

    async def delete_slot(self, slot: Slot) -> bool:
        query = slots.delete().where(slots.c.id == slot.id, slots.c.revision == slot.revision)
        await self.database.execute(query)
        return await self.get_slot(slot.id) is None

    async def list_orphaned_pending_slots(self) -> List[Slot]:
        """SWAP_PENDING slots with no PENDING swap request holding them."""
        holder = swap_requests.alias("holder")
        query = sqlalchemy.select(slots).select_from(
            slots.outerjoin(
                holder,
                sqlalchemy.and_(
                    holder.c.id == slots.c.pending_swap_id,
                    holder.c.status == SwapStatus.PENDING.value,
                    sqlalchemy.or_(
                        holder.c.requester_slot_id == slots.c.id,
                        holder.c.target_slot_id == slots.c.id,
                    ),
                ),
            )
        ).where(
            slots.c.status == SlotStatus.SWAP_PENDING.value,
            holder.c.id.is_(None),
        )
        return [_slot_from_record(record) for record in await self.database.fetch_all(query)]

    # Swap requests

    async def insert_swap(self, requester_id: str, requester_slot_id: str, target_user_id: str,
                          target_slot_id: str) -> SwapRequest:
        now = utcnow()
        swap = SwapRequest(
            id=new_id(),
            requester_id=requester_id,
            requester_slot_id=requester_slot_id,
            target_user_id=target_user_id,
            target_slot_id=target_slot_id,
            status=SwapStatus.PENDING,
            revision=new_id(),
            created_at=now,
            updated_at=now,
        )
        query = swap_requests.insert().values(
            id=swap.id,
            requester_id=swap.requester_id,
            requester_slot_id=swap.requester_slot_id,
            target_user_id=swap.target_user_id,
            target_slot_id=swap.target_slot_id,
            status=swap.status.value,
            revision=swap.revision,
            created_at=swap.created_at,
            updated_at=swap.updated_at,
        )
        await self.database.execute(query)
        return swap

    async def get_swap(self, swap_id: str) -> Optional[SwapRequest]:
        record = await self.database.fetch_one(swap_requests.select().where(swap_requests.c.id == swap_id))
        return _swap_from_record(record) if record else None

    async def get_pending_swap_for_target(self, swap_id: str, target_user_id: str) -> Optional[SwapRequest]:
        query = swap_requests.select().where(
            swap_requests.c.id == swap_id,
            swap_requests.c.target_user_id == target_user_id,
            swap_requests.c.status == SwapStatus.PENDING.value,
        )
        record = await self.database.fetch_one(query)
        return _swap_from_record(record) if record else None

    async def find_pending_swap_for_slot(self, slot_id: str) -> Optional[SwapRequest]:
        query = swap_requests.select().where(
            sqlalchemy.or_(
                swap_requests.c.requester_slot_id == slot_id,
                swap_requests.c.target_slot_id == slot_id,
            ),
            swap_requests.c.status == SwapStatus.PENDING.value,
        ).order_by(swap_requests.c.created_at)
        record = await self.database.fetch_one(query)
        return _swap_from_record(record) if record else None

    async def update_swap(self, swap: SwapRequest, **values) -> Optional[SwapRequest]:
        if "status" in values:
            values["status"] = SwapStatus(values["status"]).value
        values.setdefault("updated_at", utcnow())
        record = await self._compare_and_set(swap_requests, swap.id, swap.revision, values)
        return _swap_from_record(record) if record else None

    async def delete_swap(self, swap_id: str):
        await self.database.execute(swap_requests.delete().where(swap_requests.c.id == swap_id))

    async def delete_swaps_for_slot(self, slot_id: str):
        query = swap_requests.delete().where(
            sqlalchemy.or_(
                swap_requests.c.requester_slot_id == slot_id,
                swap_requests.c.target_slot_id == slot_id,
            )
        )
        await self.database.execute(query)

    async def list_swap_views(self, user_id: str, incoming: bool) -> List[SwapRequestView]:
        """Swap requests targeting (incoming) or sent by (outgoing) the user, newest first."""
        requester_slot = slots.alias("requester_slot")
        target_slot = slots.alias("target_slot")
        counterpart = users.alias("counterpart")
        if incoming:
            party_column, counterpart_column = swap_requests.c.target_user_id, swap_requests.c.requester_id
        else:
            party_column, counterpart_column = swap_requests.c.requester_id, swap_requests.c.target_user_id

        query = sqlalchemy.select(
            swap_requests,
            counterpart.c.name.label("counterpart_name"),
            requester_slot.c.title.label("requester_slot_title"),
            requester_slot.c.start_time.label("requester_slot_start_time"),
            requester_slot.c.id.label("requester_slot_found"),
            target_slot.c.title.label("target_slot_title"),
            target_slot.c.start_time.label("target_slot_start_time"),
            target_slot.c.id.label("target_slot_found"),
        ).select_from(
            swap_requests
            .outerjoin(counterpart, counterpart.c.id == counterpart_column)
            .outerjoin(requester_slot, requester_slot.c.id == swap_requests.c.requester_slot_id)
            .outerjoin(target_slot, target_slot.c.id == swap_requests.c.target_slot_id)
        ).where(
            party_column == user_id
        ).order_by(sqlalchemy.desc(swap_requests.c.created_at), swap_requests.c.id)

        views = []
        for record in await self.database.fetch_all(query):
            requester_summary = None
            if record["requester_slot_found"] is not None:
                requester_summary = SlotSummary(
                    id=record["requester_slot_found"],
                    title=record["requester_slot_title"],
                    start_time=as_utc(record["requester_slot_start_time"]),
                )
            target_summary = None
            if record["target_slot_found"] is not None:
                target_summary = SlotSummary(
                    id=record["target_slot_found"],
                    title=record["target_slot_title"],
                    start_time=as_utc(record["target_slot_start_time"]),
                )
            views.append(SwapRequestView(
                request=_swap_from_record(record),
                counterpart_name=record["counterpart_name"],
                requester_slot=requester_summary,
                target_slot=target_summary,
            ))
        return views
