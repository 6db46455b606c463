# services.py
from slot_swapper.config import SWAP_POLICY
from slot_swapper.database import database
from slot_swapper.negotiator import SwapNegotiator
from slot_swapper.notifications import manager
from slot_swapper.registry import SlotRegistry
from slot_swapper.store import SwapStore

store = SwapStore(database)
registry = SlotRegistry(store)
negotiator = SwapNegotiator(store, registry, manager, strict=SWAP_POLICY == "strict")
