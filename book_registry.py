"""
Client for the book collection.

Books belong to the catalogue service; the swap service only reads them and
flips their ``availability``. A reserved book records the swap holding it in
``reserved_by``, and every write is conditional on that holder, so one swap
can never release or overwrite a reservation that belongs to another.
"""

import logging
from typing import Iterable, Optional

from pymongo import ReturnDocument

from models.book_models import BookAvailability, BookRecord, Reservation, ReservationState
from utils import to_object_id

logger = logging.getLogger(__name__)

AVAILABLE = BookAvailability.AVAILABLE.value
UNAVAILABLE = BookAvailability.UNAVAILABLE.value


def serialize_book(book) -> BookRecord:
    availability = book.get("availability") or AVAILABLE
    reservation = book.get("reservation")
    return BookRecord(
        id=str(book["_id"]),
        owner_id=str(book.get("user_id") or book.get("owner")),
        title=book.get("bookName") or book.get("title") or "Unknown Book",
        author=book.get("authorName") or book.get("author") or "Unknown Author",
        availability=BookAvailability(availability),
        reserved_by=book.get("reserved_by"),
        reservation=ReservationState(reservation) if reservation else None,
    )


class BookRegistry:
    def __init__(self, database):
        self.books = database.books

    async def get_book(self, book_id: str) -> Optional[BookRecord]:
        oid = to_object_id(book_id)
        if oid is None:
            return None
        book = await self.books.find_one({"_id": oid})
        if not book:
            return None
        return serialize_book(book)

    async def reserve(
        self,
        book_id: str,
        swap_id: str,
        state: ReservationState = ReservationState.PENDING,
        take_over_from: Iterable[str] = (),
    ) -> Optional[Reservation]:
        """Hold ``book_id`` for ``swap_id``.

        Granted when the book is available, already held by ``swap_id``, or
        held pending by one of ``take_over_from``. The handover is a single
        write, the book is never available in between. Returns None when
        the hold is refused.
        """
        oid = to_object_id(book_id)
        if oid is None:
            return None

        grantable = [
            # Books created before availability tracking have no field at all
            {"availability": {"$in": [AVAILABLE, None]}},
            {"availability": UNAVAILABLE, "reserved_by": swap_id},
        ]
        take_over_from = [str(holder) for holder in take_over_from]
        if take_over_from:
            grantable.append({
                "availability": UNAVAILABLE,
                "reserved_by": {"$in": take_over_from},
                "reservation": ReservationState.PENDING.value,
            })

        before = await self.books.find_one_and_update(
            {"_id": oid, "$or": grantable},
            {"$set": {
                "availability": UNAVAILABLE,
                "is_taken": True,
                "reserved_by": swap_id,
                "reservation": state.value,
            }},
            return_document=ReturnDocument.BEFORE,
        )
        if before is None:
            logger.debug("Book %s cannot be reserved for swap %s", book_id, swap_id)
            return None

        if before.get("availability") != UNAVAILABLE:
            return Reservation(book_id=book_id, holder=swap_id)
        previous_state = before.get("reservation")
        return Reservation(
            book_id=book_id,
            holder=swap_id,
            previous_holder=before.get("reserved_by"),
            previous_state=ReservationState(previous_state) if previous_state else None,
        )

    async def release(self, book_id: str, swap_id: str) -> bool:
        """Make the book available again if ``swap_id`` still holds it."""
        return await self._update_held(book_id, swap_id, {
            "availability": AVAILABLE,
            "is_taken": False,
            "reserved_by": None,
            "reservation": None,
        })

    async def mark_swapped(self, book_id: str, swap_id: str) -> bool:
        return await self._update_held(book_id, swap_id, {
            "availability": BookAvailability.SWAPPED.value,
            "is_taken": True,
            "reservation": None,
        })

    async def undo(self, reservation: Reservation) -> bool:
        """Put a book back the way it was before ``reservation`` was granted."""
        if reservation.previous_holder is None:
            return await self.release(reservation.book_id, reservation.holder)
        return await self._update_held(reservation.book_id, reservation.holder, {
            "reserved_by": reservation.previous_holder,
            "reservation": reservation.previous_state.value if reservation.previous_state else None,
        })

    async def record_swap_request(self, book_id: str) -> None:
        oid = to_object_id(book_id)
        if oid is None:
            return
        await self.books.update_one({"_id": oid}, {"$inc": {"stats.swapRequests": 1}})

    async def _update_held(self, book_id: str, swap_id: str, changes) -> bool:
        oid = to_object_id(book_id)
        if oid is None:
            return False
        result = await self.books.update_one(
            {"_id": oid, "availability": UNAVAILABLE, "reserved_by": swap_id},
            {"$set": changes},
        )
        return result.matched_count > 0
