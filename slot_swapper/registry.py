# registry.py
import logging
from datetime import datetime
from typing import Awaitable, Callable, List, Optional

from slot_swapper.data_models import Slot, SlotStatus, SwappableSlot, SwapRequest
from slot_swapper.errors import ConflictError, NotFoundError, ValidationError
from slot_swapper.store import SwapStore, as_utc

logger = logging.getLogger(__name__)

# Called with (owner_id, slot_id) while the slot is SWAP_PENDING, inside the caller's transaction.
Teardown = Callable[[str, str], Awaitable[Optional[SwapRequest]]]


class SlotRegistry:
    """Owns slot records and the status transitions their owners may trigger directly."""

    def __init__(self, store: SwapStore):
        self.store = store
        self._teardown: Optional[Teardown] = None

    def bind_teardown(self, teardown: Teardown):
        """Route cancellations of SWAP_PENDING slots through the negotiator."""
        self._teardown = teardown

    async def create_slot(self, owner_id: str, title: Optional[str], start_time: Optional[datetime],
                          end_time: Optional[datetime], status: Optional[SlotStatus] = None) -> Slot:
        if not title or not start_time or not end_time:
            raise ValidationError("Missing fields")
        # Offsets are dropped by some backends; compare and store in UTC
        start_time, end_time = as_utc(start_time), as_utc(end_time)
        if end_time <= start_time:
            raise ValidationError("end_time must be after start_time")
        status = SlotStatus(status) if status else SlotStatus.BUSY
        if status == SlotStatus.SWAP_PENDING:
            raise ValidationError("A slot cannot be created with a pending swap")

        slot = await self.store.insert_slot(owner_id, title, start_time, end_time, status)
        logger.info(f"Slot {slot.id} created for user {owner_id} ({status.value})")
        return slot

    async def get_owned(self, slot_id: str, owner_id: str) -> Slot:
        slot = await self.store.get_owned_slot(slot_id, owner_id)
        if slot is None:
            raise NotFoundError("Event not found")
        return slot

    async def set_status(self, slot_id: str, owner_id: str, new_status: SlotStatus) -> Slot:
        """Apply an owner-requested status change.

        Requesting the current status is a no-op. Leaving SWAP_PENDING is a
        cancellation: the pending swap is torn down first, in the same
        transaction as the status write.
        """
        new_status = SlotStatus(new_status)
        async with self.store.transaction():
            slot = await self.get_owned(slot_id, owner_id)
            if slot.status == new_status:
                return slot
            if new_status == SlotStatus.SWAP_PENDING:
                raise ConflictError("Slots are only locked by proposing a swap")

            if slot.status == SlotStatus.SWAP_PENDING:
                if self._teardown is None:
                    raise ConflictError("Cannot cancel a pending swap without a negotiator")
                await self._teardown(owner_id, slot.id)

            updated = await self.store.update_slot(slot, status=new_status, pending_swap_id=None)
            if updated is None:
                logger.warning(f"Slot {slot_id} changed while setting status to {new_status.value}")
                raise ConflictError("Event was modified by another request, please retry")

        logger.info(f"Slot {slot_id} status {slot.status.value} -> {new_status.value}")
        return updated

    async def delete_slot(self, slot_id: str, owner_id: str):
        async with self.store.transaction():
            slot = await self.get_owned(slot_id, owner_id)
            if slot.status == SlotStatus.SWAP_PENDING:
                raise ConflictError(
                    "Cannot delete event with a pending swap. Please cancel/reject the swap first."
                )
            await self.store.delete_swaps_for_slot(slot.id)
            if not await self.store.delete_slot(slot):
                raise ConflictError("Event was modified by another request, please retry")

        logger.info(f"Slot {slot_id} deleted by user {owner_id}")

    async def list_owned(self, owner_id: str) -> List[Slot]:
        return await self.store.list_owned_slots(owner_id)

    async def list_swappable(self, exclude_owner_id: str) -> List[SwappableSlot]:
        return await self.store.list_swappable_slots(exclude_owner_id)
