# negotiator.py
import logging
from typing import Optional

from slot_swapper.data_models import (
    Slot,
    SlotStatus,
    SwapRequest,
    SwapRequestListing,
    SwapResolution,
    SwapStatus,
)
from slot_swapper.errors import ConflictError, NotFoundError, StaleSwapError, ValidationError
from slot_swapper.registry import SlotRegistry
from slot_swapper.store import SwapStore

logger = logging.getLogger(__name__)


class SwapNegotiator:
    """Drives swap requests and the slot transitions they imply.

    A PENDING request holds both of its slots in SWAP_PENDING (the slot's
    ``pending_swap_id`` names the request). Every transition below happens in
    a single store transaction built from compare-and-set writes, so a slot is
    never held by two requests and an accepted swap never half-transfers.
    Counterparties are notified after commit; a failed notification is logged
    and otherwise ignored.
    """

    def __init__(self, store: SwapStore, registry: SlotRegistry, notifier, strict: bool = True):
        self.store = store
        self.registry = registry
        self.notifier = notifier
        self.strict = strict
        registry.bind_teardown(self.cancel)

    async def propose(self, requester_id: str, my_slot_id: str, their_slot_id: str) -> SwapRequest:
        if my_slot_id == their_slot_id:
            raise ValidationError("A slot cannot be swapped with itself")

        async with self.store.transaction():
            my_slot = await self.store.get_slot(my_slot_id)
            their_slot = await self.store.get_slot(their_slot_id)
            if my_slot is None or their_slot is None or my_slot.owner_id != requester_id:
                raise NotFoundError("Slots not found")
            if their_slot.owner_id == requester_id:
                raise ValidationError("Both slots belong to you")
            self._check_offerable(my_slot)
            self._check_offerable(their_slot)

            swap = await self.store.insert_swap(
                requester_id=requester_id,
                requester_slot_id=my_slot.id,
                target_user_id=their_slot.owner_id,
                target_slot_id=their_slot.id,
            )
            for slot in (my_slot, their_slot):
                locked = await self.store.update_slot(slot, status=SlotStatus.SWAP_PENDING, pending_swap_id=swap.id)
                if locked is None:
                    logger.warning(f"Lost the race to lock slot {slot.id} for swap {swap.id}")
                    raise ConflictError("Slot was claimed by another request, please retry")

        logger.info(f"Swap {swap.id} proposed: {my_slot.id} <-> {their_slot.id}")
        requester = await self.store.get_user(requester_id)
        name = requester.name if requester and requester.name else "a user"
        await self._notify(swap.target_user_id, f"You have a new swap request from {name}", "new_request")
        return swap

    def _check_offerable(self, slot: Slot):
        if slot.status == SlotStatus.SWAP_PENDING:
            raise ConflictError(f"Slot '{slot.title}' already has a pending swap")
        if self.strict and slot.status != SlotStatus.SWAPPABLE:
            raise ConflictError(f"Slot '{slot.title}' is not available for swapping")

    async def respond(self, target_owner_id: str, request_id: str, accept: bool) -> SwapResolution:
        stale = False
        async with self.store.transaction():
            swap = await self.store.get_pending_swap_for_target(request_id, target_owner_id)
            if swap is None:
                raise NotFoundError("Swap not found")

            requester_slot = await self.store.get_slot(swap.requester_slot_id)
            target_slot = await self.store.get_slot(swap.target_slot_id)

            if accept and (requester_slot is None or target_slot is None):
                for slot in (requester_slot, target_slot):
                    if slot is not None:
                        await self._release(slot, swap)
                await self.store.delete_swap(swap.id)
                stale = True
            elif accept:
                await self._transfer(swap, requester_slot, target_slot)
                swap = await self._resolve(swap, SwapStatus.ACCEPTED)
            else:
                for slot in (requester_slot, target_slot):
                    if slot is not None:
                        await self._release(slot, swap)
                swap = await self._resolve(swap, SwapStatus.REJECTED)

        if stale:
            logger.warning(f"Swap {request_id} is stale: a slot was deleted, request removed")
            raise StaleSwapError("One of the slots no longer exists. Request canceled.")

        logger.info(f"Swap {swap.id} {swap.status.value.lower()} by user {target_owner_id}")
        await self._notify(
            swap.requester_id,
            f"Your swap request was {swap.status.value.lower()}",
            "request_response",
        )
        return SwapResolution(message="Swap accepted" if accept else "Swap rejected", swap=swap)

    async def _transfer(self, swap: SwapRequest, requester_slot: Slot, target_slot: Slot):
        for slot in (requester_slot, target_slot):
            if slot.pending_swap_id != swap.id:
                raise ConflictError(f"Slot '{slot.title}' is no longer held by this swap request")

        new_owners = ((requester_slot, target_slot.owner_id), (target_slot, requester_slot.owner_id))
        for slot, owner_id in new_owners:
            updated = await self.store.update_slot(
                slot, owner_id=owner_id, status=SlotStatus.BUSY, pending_swap_id=None
            )
            if updated is None:
                raise ConflictError("Slot was modified by another request, please retry")

    async def _release(self, slot: Slot, swap: SwapRequest):
        # Leave slots that another request has since locked
        if slot.pending_swap_id not in (None, swap.id):
            logger.warning(f"Slot {slot.id} is held by swap {slot.pending_swap_id}, not {swap.id}")
            return
        released = await self.store.update_slot(slot, status=SlotStatus.SWAPPABLE, pending_swap_id=None)
        if released is None:
            raise ConflictError("Slot was modified by another request, please retry")

    async def _resolve(self, swap: SwapRequest, status: SwapStatus) -> SwapRequest:
        resolved = await self.store.update_swap(swap, status=status)
        if resolved is None:
            raise ConflictError("Swap was answered by another request")
        return resolved

    async def cancel(self, owner_id: str, slot_id: str) -> Optional[SwapRequest]:
        """Tear down the pending swap holding ``slot_id``.

        The other slot goes back to SWAPPABLE and the request is deleted. The
        caller's own slot is left for the registry to update. Returns the
        deleted request, or None when the slot had no backing request.
        """
        async with self.store.transaction():
            slot = await self.store.get_owned_slot(slot_id, owner_id)
            if slot is None:
                raise NotFoundError("Event not found")
            swap = await self.store.find_pending_swap_for_slot(slot_id)
            if swap is None:
                logger.warning(f"Slot {slot_id} is SWAP_PENDING without a pending request")
                return None

            other = await self.store.get_slot(swap.other_slot_id(slot_id))
            if other is not None:
                await self._release(other, swap)
            await self.store.delete_swap(swap.id)

        logger.info(f"Swap {swap.id} cancelled through slot {slot_id}")
        return swap

    async def list_for(self, user_id: str) -> SwapRequestListing:
        return SwapRequestListing(
            incoming=await self.store.list_swap_views(user_id, incoming=True),
            outgoing=await self.store.list_swap_views(user_id, incoming=False),
        )

    async def discard(self, user_id: str, request_id: str):
        """Delete a resolved request from the caller's history."""
        swap = await self.store.get_swap(request_id)
        if swap is None or user_id not in (swap.requester_id, swap.target_user_id):
            raise NotFoundError("Swap not found")
        if swap.status == SwapStatus.PENDING:
            raise ConflictError("Pending swaps must be answered or cancelled, not deleted")
        await self.store.delete_swap(swap.id)
        logger.info(f"Swap {swap.id} removed from history by user {user_id}")

    async def reconcile(self) -> int:
        """Release SWAP_PENDING slots that no pending request holds."""
        released = 0
        for slot in await self.store.list_orphaned_pending_slots():
            if await self.store.update_slot(slot, status=SlotStatus.SWAPPABLE, pending_swap_id=None):
                released += 1
                logger.warning(f"Reconciled orphaned SWAP_PENDING slot {slot.id} back to SWAPPABLE")
        return released

    async def _notify(self, user_id: str, message: str, kind: str):
        try:
            await self.notifier.notify(user_id, message, kind)
        except Exception:
            logger.warning(f"Failed to notify user {user_id} ({kind})", exc_info=True)
