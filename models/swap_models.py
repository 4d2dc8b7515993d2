from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Optional
from datetime import datetime
from enum import Enum

from errors import StateConflictError
from utils import utcnow


class SwapStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class NegotiationAction(str, Enum):
    MESSAGE = "message"
    COUNTER_OFFER = "counter_offer"
    ACCEPT = "accept"
    DECLINE = "decline"
    COMPLETE = "complete"
    CANCEL = "cancel"


class Participant(str, Enum):
    REQUESTER = "requester"
    OWNER = "owner"
    NEITHER = "neither"


class SwapDecision(str, Enum):
    ACCEPT = "accept"
    DECLINE = "decline"


class SwapListFilter(str, Enum):
    SENT = "sent"
    RECEIVED = "received"
    ALL = "all"


ACTIVE_STATUSES = frozenset({SwapStatus.PENDING, SwapStatus.ACCEPTED, SwapStatus.IN_PROGRESS})
TERMINAL_STATUSES = frozenset({SwapStatus.DECLINED, SwapStatus.COMPLETED, SwapStatus.CANCELLED})

# Every status must appear here; terminal statuses have no way out.
ALLOWED_TRANSITIONS = {
    SwapStatus.PENDING: frozenset({SwapStatus.ACCEPTED, SwapStatus.DECLINED, SwapStatus.CANCELLED}),
    SwapStatus.ACCEPTED: frozenset({SwapStatus.IN_PROGRESS, SwapStatus.CANCELLED}),
    SwapStatus.IN_PROGRESS: frozenset({SwapStatus.COMPLETED, SwapStatus.CANCELLED}),
    SwapStatus.DECLINED: frozenset(),
    SwapStatus.COMPLETED: frozenset(),
    SwapStatus.CANCELLED: frozenset(),
}

# The negotiation entry each status change records.
TRANSITION_ACTIONS = {
    SwapStatus.ACCEPTED: NegotiationAction.ACCEPT,
    SwapStatus.DECLINED: NegotiationAction.DECLINE,
    SwapStatus.IN_PROGRESS: NegotiationAction.MESSAGE,
    SwapStatus.COMPLETED: NegotiationAction.COMPLETE,
    SwapStatus.CANCELLED: NegotiationAction.CANCEL,
}

SYSTEM_ACTOR_NAME = "System"


def make_pair_key(user_a: str, user_b: str) -> str:
    """Order-independent key for the two users of a swap."""
    return "|".join(sorted([str(user_a), str(user_b)]))


class BookRef(BaseModel):
    id: str
    title: str = ""
    author: str = ""


class NegotiationEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    actor_id: Optional[str]  # None for system actions
    actor_name: str
    message: str
    action: NegotiationAction
    timestamp: datetime = Field(default_factory=utcnow)


class MeetingDetails(BaseModel):
    location: str
    scheduled_at: datetime
    notes: Optional[str] = None
    confirmed: bool = False


class ReceivedConfirmation(BaseModel):
    requester_confirmed: bool = False
    requester_confirmed_at: Optional[datetime] = None
    owner_confirmed: bool = False
    owner_confirmed_at: Optional[datetime] = None

    def is_confirmed_by(self, role: Participant) -> bool:
        if role == Participant.REQUESTER:
            return self.requester_confirmed
        if role == Participant.OWNER:
            return self.owner_confirmed
        return False

    def confirm(self, role: Participant, at: datetime) -> None:
        if role == Participant.REQUESTER:
            self.requester_confirmed = True
            self.requester_confirmed_at = at
        elif role == Participant.OWNER:
            self.owner_confirmed = True
            self.owner_confirmed_at = at
        else:
            raise ValueError(f"cannot confirm receipt for {role}")

    @property
    def both_confirmed(self) -> bool:
        return self.requester_confirmed and self.owner_confirmed


class SwapRating(BaseModel):
    stars: int = Field(ge=1, le=5)
    comment: str = ""
    timestamp: datetime = Field(default_factory=utcnow)


class SwapRatings(BaseModel):
    requester_rating: Optional[SwapRating] = None
    owner_rating: Optional[SwapRating] = None

    def rating_of(self, role: Participant) -> Optional[SwapRating]:
        if role == Participant.REQUESTER:
            return self.requester_rating
        if role == Participant.OWNER:
            return self.owner_rating
        return None


class Swap(BaseModel):
    """A proposed or running barter between a requester and a book owner."""

    id: Optional[str] = None
    requester_id: str
    requester_name: str
    owner_id: str
    owner_name: str
    requested_book: BookRef
    offered_books: List[BookRef] = []
    status: SwapStatus = SwapStatus.PENDING
    message: str = ""
    negotiation_history: List[NegotiationEvent] = []
    meeting_details: Optional[MeetingDetails] = None
    received_confirmation: ReceivedConfirmation = Field(default_factory=ReceivedConfirmation)
    rating: SwapRatings = Field(default_factory=SwapRatings)
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def pair_key(self) -> str:
        return make_pair_key(self.requester_id, self.owner_id)

    def role_of(self, user_id: str) -> Participant:
        user_id = str(user_id)
        if user_id == self.requester_id:
            return Participant.REQUESTER
        if user_id == self.owner_id:
            return Participant.OWNER
        return Participant.NEITHER

    def name_of(self, role: Participant) -> str:
        if role == Participant.REQUESTER:
            return self.requester_name
        if role == Participant.OWNER:
            return self.owner_name
        return SYSTEM_ACTOR_NAME

    def counterpart_of(self, role: Participant) -> Optional[str]:
        if role == Participant.REQUESTER:
            return self.owner_id
        if role == Participant.OWNER:
            return self.requester_id
        return None

    @property
    def participants(self) -> List[str]:
        return [self.requester_id, self.owner_id]

    def book_ids(self) -> List[str]:
        return [self.requested_book.id] + [book.id for book in self.offered_books]

    def transition_to(self, new_status: SwapStatus, at: datetime) -> None:
        allowed = ALLOWED_TRANSITIONS[self.status]
        if new_status not in allowed:
            raise StateConflictError(
                f"Cannot move swap from {self.status.value} to {new_status.value}",
                current_status=self.status,
                requested_status=new_status,
            )
        self.status = new_status
        self.updated_at = at
        if new_status == SwapStatus.COMPLETED:
            self.completed_at = at

    def append_event(
        self,
        actor_id: Optional[str],
        actor_name: str,
        message: str,
        action: NegotiationAction,
        at: datetime,
    ) -> NegotiationEvent:
        event = NegotiationEvent(
            actor_id=actor_id,
            actor_name=actor_name,
            message=message,
            action=action,
            timestamp=at,
        )
        # Replace the list rather than mutate in place so a copied swap never
        # shares history with the original
        self.negotiation_history = self.negotiation_history + [event]
        self.updated_at = at
        return event

    def to_document(self) -> Dict[str, Any]:
        doc = self.model_dump(exclude={"id"})
        doc["pair_key"] = self.pair_key
        doc["active"] = self.is_active
        return doc

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Swap":
        doc = dict(doc)
        doc["id"] = str(doc.pop("_id"))
        doc.pop("pair_key", None)
        doc.pop("active", None)
        return cls(**doc)


# Request bodies

class SwapProposal(BaseModel):
    requested_book_id: str
    offered_book_ids: List[str] = []
    message: Optional[str] = None


class SwapRespond(BaseModel):
    action: SwapDecision
    message: Optional[str] = None


class NegotiationMessage(BaseModel):
    message: Optional[str] = None
    offered_book_ids: Optional[List[str]] = None


class MeetingRequest(BaseModel):
    location: str
    scheduled_at: datetime
    notes: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class RatingRequest(BaseModel):
    rating: int = Field(ge=1, le=5)
    comment: Optional[str] = None


# Results

class SwapActionResult(BaseModel):
    swap: Swap
    already_confirmed: bool = False
    completed: bool = False


class SwapPage(BaseModel):
    swaps: List[Swap]
    total: int
    skip: int
    limit: int

    @property
    def has_more(self) -> bool:
        return self.skip + len(self.swaps) < self.total
