from pydantic import BaseModel
from typing import Optional
from enum import Enum


class BookAvailability(str, Enum):
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"
    SWAPPED = "swapped"


class ReservationState(str, Enum):
    # A pending hold may be handed over to a swap that gets accepted;
    # a committed one belongs to an accepted swap and stays put.
    PENDING = "pending"
    COMMITTED = "committed"


class BookRecord(BaseModel):
    """What the swap service needs to know about a book it does not own."""
    id: str
    owner_id: str
    title: str = "Unknown Book"
    author: str = "Unknown Author"
    availability: BookAvailability = BookAvailability.AVAILABLE
    reserved_by: Optional[str] = None
    reservation: Optional[ReservationState] = None


class Reservation(BaseModel):
    """A granted hold on a book, with what it replaced so it can be undone."""
    book_id: str
    holder: str
    previous_holder: Optional[str] = None
    previous_state: Optional[ReservationState] = None
