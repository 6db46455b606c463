# data_models.py
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional


class SlotStatus(str, Enum):
    BUSY = "BUSY"
    SWAPPABLE = "SWAPPABLE"
    SWAP_PENDING = "SWAP_PENDING"


class SwapStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


@dataclass
class User:
    """A marketplace participant. Credentials never leave the store."""
    id: str
    name: str
    email: str
    created_at: Optional[datetime] = None


@dataclass
class Slot:
    """Represents one schedulable time block owned by exactly one user."""
    id: str
    owner_id: str
    title: str
    start_time: datetime
    end_time: datetime
    status: SlotStatus = SlotStatus.BUSY
    pending_swap_id: Optional[str] = None
    revision: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class SwappableSlot:
    """A SWAPPABLE slot annotated with its owner's details for discovery."""
    slot: Slot
    owner_name: str
    owner_email: str


@dataclass
class SwapRequest:
    """A proposed exchange of ownership between two slots."""
    id: str
    requester_id: str
    requester_slot_id: str
    target_user_id: str
    target_slot_id: str
    status: SwapStatus = SwapStatus.PENDING
    revision: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def other_slot_id(self, slot_id: str) -> str:
        if slot_id == self.requester_slot_id:
            return self.target_slot_id
        return self.requester_slot_id


@dataclass
class SlotSummary:
    id: str
    title: str
    start_time: datetime


@dataclass
class SwapRequestView:
    """A swap request as shown to one of its parties."""
    request: SwapRequest
    counterpart_name: Optional[str]
    # None once the slot has been deleted
    requester_slot: Optional[SlotSummary]
    target_slot: Optional[SlotSummary]


@dataclass
class SwapRequestListing:
    incoming: List[SwapRequestView] = field(default_factory=list)
    outgoing: List[SwapRequestView] = field(default_factory=list)


@dataclass
class SwapResolution:
    message: str
    swap: SwapRequest
