r"""
Swap lifecycle engine.

Drives a swap from proposal to completion:

    pending --accept--> accepted --mark in progress--> in_progress --both confirm--> completed
       |  \--decline--> declined
       \------------------ cancel (any active status) ------------------> cancelled

Every mutation of an existing swap runs as a read-modify-write cycle under a
per-swap lock and is persisted with a version check, so two near
simultaneous calls on the same swap behave as if sequenced. Releases,
activity events and notifications run only after the write that produced
them won, which is what keeps completion from firing twice.

Books a swap needs are reserved before the swap is written. A reservation
names the swap holding it (see ``book_registry``); accepting a swap commits
its holds and takes over pending holds of the swaps it is about to cancel in
the same write, so a book can never end up held by two accepted swaps.

Book availability follows the swap:

    pending                  requested book unavailable (pending hold)
    accepted / in_progress   requested and offered books unavailable (committed hold)
    completed                requested and offered books swapped
    declined / cancelled     books this swap still holds are available again
"""

import asyncio
import logging
import weakref
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Iterable, List, Optional

from config import SWAP_WRITE_RETRIES
from errors import (
    AuthorizationError,
    NotFoundError,
    StateConflictError,
    SwapError,
    ValidationError,
)
from models.activity_models import ActivityEvent, ActivityKind
from models.book_models import BookAvailability, Reservation, ReservationState
from models.notification_models import Notification, NotificationType
from models.swap_models import (
    TRANSITION_ACTIONS,
    BookRef,
    MeetingDetails,
    NegotiationAction,
    Participant,
    Swap,
    SwapActionResult,
    SwapDecision,
    SwapListFilter,
    SwapPage,
    SwapRating,
    SwapStatus,
    make_pair_key,
)
from utils import as_utc, utcnow

logger = logging.getLogger(__name__)

AVAILABLE = BookAvailability.AVAILABLE
UNAVAILABLE = BookAvailability.UNAVAILABLE

MAX_PAGE_SIZE = 100


@dataclass
class _Effects:
    """What a change did to books before the write, and what it still has
    to do once the write is committed."""

    reservations: List[Reservation] = field(default_factory=list)
    release: List[str] = field(default_factory=list)
    swapped: List[str] = field(default_factory=list)
    activity: Optional[ActivityKind] = None
    notifications: List[Notification] = field(default_factory=list)
    cancel_swaps: List[str] = field(default_factory=list)
    already_confirmed: bool = False
    completed: bool = False
    persist: bool = True


def _notification(user_id: str, kind: NotificationType, title: str, message: str, swap: Swap) -> Notification:
    return Notification(
        user_id=user_id,
        type=kind,
        title=title,
        message=message,
        data={"swap_id": swap.id, "book_name": swap.requested_book.title},
    )


class SwapEngine:
    def __init__(
        self,
        store,
        books,
        identity,
        sink,
        clock: Callable[[], datetime] = utcnow,
        max_write_retries: int = SWAP_WRITE_RETRIES,
    ):
        self.store = store
        self.books = books
        self.identity = identity
        self.sink = sink
        self._clock = clock
        self.max_write_retries = max(1, max_write_retries)
        self._swap_locks = weakref.WeakValueDictionary()
        self._pair_locks = weakref.WeakValueDictionary()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def propose(
        self,
        acting_user_id: str,
        requested_book_id: str,
        offered_book_ids: Optional[List[str]] = None,
        message: Optional[str] = None,
    ) -> Swap:
        requester = await self.identity.get_user(acting_user_id)
        if requester is None:
            raise NotFoundError("User not found", user_id=acting_user_id)

        book = await self.books.get_book(requested_book_id)
        if book is None:
            raise NotFoundError("Book not found", book_id=requested_book_id)
        if book.owner_id == requester.id:
            raise ValidationError("You cannot request your own book", field="requested_book_id", book_id=book.id)

        owner = await self.identity.get_user(book.owner_id)
        owner_name = owner.display_name if owner else "Unknown Owner"
        offered = await self._check_offered_books(offered_book_ids or [], {requester.id}, "offered_book_ids")

        async with self._lock_for(self._pair_locks, make_pair_key(requester.id, book.owner_id)):
            if await self.store.find_active_for_book(requester.id, book.id):
                raise StateConflictError(
                    "You already have an active request for this book",
                    book_id=book.id,
                )
            existing = await self.store.find_active_between(requester.id, book.owner_id)
            if existing:
                raise StateConflictError(
                    "An active swap between you and this user already exists",
                    swap_id=existing.id,
                    current_status=existing.status,
                )
            if book.availability != AVAILABLE:
                raise ValidationError(
                    "Book not available for swap",
                    field="requested_book_id",
                    book_id=book.id,
                    availability=book.availability,
                )
            swap_id = self.store.new_id()
            if await self.books.reserve(book.id, swap_id) is None:
                raise StateConflictError("Book was just reserved by another request", book_id=book.id)

            now = self._clock()
            swap = Swap(
                id=swap_id,
                requester_id=requester.id,
                requester_name=requester.display_name,
                owner_id=book.owner_id,
                owner_name=owner_name,
                requested_book=BookRef(id=book.id, title=book.title, author=book.author),
                offered_books=offered,
                message=message or "",
                created_at=now,
                updated_at=now,
            )
            swap.append_event(
                requester.id,
                requester.display_name,
                message or "Initial swap request",
                NegotiationAction.MESSAGE,
                now,
            )
            try:
                await self.store.insert(swap)
            except Exception:
                await self.books.release(book.id, swap_id)
                raise

        logger.info("Swap %s proposed by %s for book %s", swap.id, requester.id, book.id)
        try:
            await self.books.record_swap_request(book.id)
        except Exception:
            logger.exception("Could not count swap request on book %s", book.id)

        effects = _Effects(activity=ActivityKind.CREATED)
        effects.notifications.append(_notification(
            swap.owner_id,
            NotificationType.SWAP_REQUEST,
            "New Swap Request",
            f"{swap.requester_name} wants to swap for your book '{book.title}'",
            swap,
        ))
        await self._finish(swap, effects)
        return swap

    async def respond(
        self,
        swap_id: str,
        acting_user_id: str,
        decision,
        message: Optional[str] = None,
    ) -> Swap:
        try:
            decision = SwapDecision(decision)
        except ValueError:
            raise ValidationError("Invalid action, expected accept or decline", field="action")

        async def change(swap: Swap) -> _Effects:
            role = swap.role_of(acting_user_id)
            if role != Participant.OWNER:
                raise AuthorizationError("Only the book owner can respond to this swap", swap_id=swap.id, role=role)
            if swap.status != SwapStatus.PENDING:
                raise StateConflictError("Swap request already processed", swap_id=swap.id, current_status=swap.status)

            now = self._clock()
            if decision == SwapDecision.DECLINE:
                self._transition(swap, SwapStatus.DECLINED, role, message or "Swap request declined", now)
                effects = _Effects(activity=ActivityKind.DECLINED, release=[swap.requested_book.id])
                effects.notifications.append(_notification(
                    swap.requester_id,
                    NotificationType.SWAP_RESPONSE,
                    "Swap Request Declined",
                    f"Your request for '{swap.requested_book.title}' was declined.",
                    swap,
                ))
                return effects

            # Pending swaps competing for the same books lose once this one is accepted
            competing = await self.store.find_pending_involving(swap.book_ids(), exclude_id=swap.id)
            losers = [other.id for other in competing]
            offered_ids = [book.id for book in swap.offered_books]
            await self._check_offered_books(
                offered_ids, set(swap.participants), "offered_books", holders={swap.id, *losers}
            )

            # Commit the hold on the requested book, then take the offered
            # books, straight from the losers where they hold them
            effects = _Effects(activity=ActivityKind.ACCEPTED, cancel_swaps=losers)
            await self._reserve_books(swap, [swap.requested_book.id], effects.reservations)
            await self._reserve_books(swap, offered_ids, effects.reservations, take_over_from=losers)

            self._transition(swap, SwapStatus.ACCEPTED, role, message or "Swap request accepted", now)
            effects.notifications.append(_notification(
                swap.requester_id,
                NotificationType.SWAP_RESPONSE,
                "Swap Request Accepted",
                f"Your request for '{swap.requested_book.title}' has been accepted!",
                swap,
            ))
            return effects

        result = await self._apply(swap_id, change)
        logger.info("Swap %s %sed by %s", swap_id, decision.value, acting_user_id)
        return result.swap

    async def negotiate(
        self,
        swap_id: str,
        acting_user_id: str,
        message: Optional[str] = None,
        offered_book_ids: Optional[List[str]] = None,
    ) -> Swap:
        text = (message or "").strip()
        if offered_book_ids is None and not text:
            raise ValidationError("Message cannot be empty", field="message")

        async def change(swap: Swap) -> _Effects:
            role = self._require_participant(swap, acting_user_id)
            if swap.status in (SwapStatus.COMPLETED, SwapStatus.CANCELLED):
                raise StateConflictError(
                    "Cannot message a completed or cancelled swap",
                    swap_id=swap.id,
                    current_status=swap.status,
                )

            effects = _Effects()
            now = self._clock()
            if offered_book_ids is None:
                swap.append_event(acting_user_id, swap.name_of(role), text, NegotiationAction.MESSAGE, now)
            else:
                if not swap.is_active:
                    raise StateConflictError(
                        "Counter offers are only possible on an active swap",
                        swap_id=swap.id,
                        current_status=swap.status,
                    )
                old_ids = [book.id for book in swap.offered_books]
                offered = await self._check_offered_books(
                    offered_book_ids, {str(acting_user_id)}, "offered_book_ids", holders={swap.id}
                )
                new_ids = [book.id for book in offered]
                if swap.status in (SwapStatus.ACCEPTED, SwapStatus.IN_PROGRESS):
                    added = [book_id for book_id in new_ids if book_id not in old_ids]
                    await self._reserve_books(swap, added, effects.reservations)
                    effects.release = [book_id for book_id in old_ids if book_id not in new_ids]
                swap.offered_books = offered
                swap.append_event(
                    acting_user_id,
                    swap.name_of(role),
                    text or "Counter offer",
                    NegotiationAction.COUNTER_OFFER,
                    now,
                )

            effects.notifications.append(_notification(
                swap.counterpart_of(role),
                NotificationType.SWAP_MESSAGE,
                "New Swap Message",
                f"{swap.name_of(role)}: {swap.negotiation_history[-1].message}",
                swap,
            ))
            return effects

        result = await self._apply(swap_id, change)
        return result.swap

    async def mark_in_progress(self, swap_id: str, acting_user_id: str) -> Swap:
        async def change(swap: Swap) -> _Effects:
            role = self._require_participant(swap, acting_user_id)
            if swap.status != SwapStatus.ACCEPTED:
                raise StateConflictError(
                    "Only accepted swaps can be marked in progress",
                    swap_id=swap.id,
                    current_status=swap.status,
                )
            self._transition(swap, SwapStatus.IN_PROGRESS, role, "Swap marked as in progress", self._clock())
            effects = _Effects(activity=ActivityKind.IN_PROGRESS)
            effects.notifications.append(_notification(
                swap.counterpart_of(role),
                NotificationType.SWAP_MESSAGE,
                "Swap In Progress",
                f"{swap.name_of(role)} marked the swap for '{swap.requested_book.title}' as in progress",
                swap,
            ))
            return effects

        result = await self._apply(swap_id, change)
        logger.info("Swap %s marked in progress by %s", swap_id, acting_user_id)
        return result.swap

    async def schedule_meeting(
        self,
        swap_id: str,
        acting_user_id: str,
        location: str,
        scheduled_at: datetime,
        notes: Optional[str] = None,
    ) -> Swap:
        async def change(swap: Swap) -> _Effects:
            role = self._require_participant(swap, acting_user_id)
            self._require_meeting_status(swap)

            now = self._clock()
            place = (location or "").strip()
            if not place:
                raise ValidationError("Meeting location is required", field="location")
            if scheduled_at is None or as_utc(scheduled_at) <= now:
                raise ValidationError("Meeting time must be in the future", field="scheduled_at")

            when = as_utc(scheduled_at)
            swap.meeting_details = MeetingDetails(location=place, scheduled_at=when, notes=notes, confirmed=False)
            swap.append_event(
                acting_user_id,
                swap.name_of(role),
                f"Meeting scheduled at {place} on {when.isoformat()}",
                NegotiationAction.MESSAGE,
                now,
            )
            effects = _Effects()
            effects.notifications.append(_notification(
                swap.counterpart_of(role),
                NotificationType.MEETING_UPDATE,
                "Meeting Scheduled",
                f"{swap.name_of(role)} proposed meeting at {place}",
                swap,
            ))
            return effects

        result = await self._apply(swap_id, change)
        return result.swap

    async def confirm_meeting(self, swap_id: str, acting_user_id: str) -> SwapActionResult:
        async def change(swap: Swap) -> _Effects:
            role = self._require_participant(swap, acting_user_id)
            self._require_meeting_status(swap)
            if swap.meeting_details is None:
                raise StateConflictError("No meeting has been scheduled", swap_id=swap.id)
            if swap.meeting_details.confirmed:
                return _Effects(persist=False, already_confirmed=True)

            swap.meeting_details = swap.meeting_details.model_copy(update={"confirmed": True})
            swap.append_event(acting_user_id, swap.name_of(role), "Meeting confirmed", NegotiationAction.MESSAGE, self._clock())
            effects = _Effects()
            effects.notifications.append(_notification(
                swap.counterpart_of(role),
                NotificationType.MEETING_UPDATE,
                "Meeting Confirmed",
                f"{swap.name_of(role)} confirmed the meeting at {swap.meeting_details.location}",
                swap,
            ))
            return effects

        return await self._apply(swap_id, change)

    async def confirm_receipt(self, swap_id: str, acting_user_id: str) -> SwapActionResult:
        """Record that the acting party received their book.

        The swap completes when the second party confirms. A party
        confirming twice gets ``already_confirmed`` back and nothing changes.
        """

        async def change(swap: Swap) -> _Effects:
            role = self._require_participant(swap, acting_user_id)
            if swap.status != SwapStatus.IN_PROGRESS:
                raise StateConflictError(
                    "Receipt can only be confirmed while the swap is in progress",
                    swap_id=swap.id,
                    current_status=swap.status,
                )
            confirmation = swap.received_confirmation
            if confirmation.is_confirmed_by(role):
                return _Effects(persist=False, already_confirmed=True)

            now = self._clock()
            confirmation.confirm(role, now)
            if not confirmation.both_confirmed:
                swap.append_event(
                    acting_user_id,
                    swap.name_of(role),
                    f"{swap.name_of(role)} confirmed receipt, waiting for the other party",
                    NegotiationAction.MESSAGE,
                    now,
                )
                effects = _Effects()
                effects.notifications.append(_notification(
                    swap.counterpart_of(role),
                    NotificationType.RECEIPT_CONFIRMATION_REQUESTED,
                    "Please Confirm Receipt",
                    f"{swap.name_of(role)} confirmed receiving their book. Confirm yours to complete the swap.",
                    swap,
                ))
                return effects

            self._transition(swap, SwapStatus.COMPLETED, role, "Swap completed successfully", now)
            effects = _Effects(activity=ActivityKind.COMPLETED, completed=True, swapped=swap.book_ids())
            for user_id in swap.participants:
                effects.notifications.append(_notification(
                    user_id,
                    NotificationType.SWAP_COMPLETED,
                    "Swap Completed",
                    f"The swap for '{swap.requested_book.title}' is complete",
                    swap,
                ))
            return effects

        result = await self._apply(swap_id, change)
        if result.completed:
            logger.info("Swap %s completed", swap_id)
        return result

    async def cancel(self, swap_id: str, acting_user_id: str, reason: Optional[str] = None) -> Swap:
        async def change(swap: Swap) -> _Effects:
            role = self._require_participant(swap, acting_user_id)
            if not swap.is_active:
                raise StateConflictError("Swap already finalized", swap_id=swap.id, current_status=swap.status)

            # Offered books are only held once the swap is accepted
            held = swap.book_ids() if swap.status != SwapStatus.PENDING else [swap.requested_book.id]
            self._transition(swap, SwapStatus.CANCELLED, role, reason or "Swap cancelled", self._clock())
            effects = _Effects(activity=ActivityKind.CANCELLED, release=held)
            effects.notifications.append(_notification(
                swap.counterpart_of(role),
                NotificationType.SWAP_CANCELLED,
                "Swap Cancelled",
                f"{swap.name_of(role)} cancelled the swap for '{swap.requested_book.title}'",
                swap,
            ))
            return effects

        result = await self._apply(swap_id, change)
        logger.info("Swap %s cancelled by %s", swap_id, acting_user_id)
        return result.swap

    async def rate(self, swap_id: str, acting_user_id: str, stars: int, comment: Optional[str] = None) -> Swap:
        if isinstance(stars, bool) or not isinstance(stars, int) or not 1 <= stars <= 5:
            raise ValidationError("Rating must be a whole number between 1 and 5", field="rating")

        async def change(swap: Swap) -> _Effects:
            role = self._require_participant(swap, acting_user_id)
            if swap.status != SwapStatus.COMPLETED:
                raise StateConflictError("Can only rate completed swaps", swap_id=swap.id, current_status=swap.status)
            if swap.rating.rating_of(role) is not None:
                raise StateConflictError("You have already rated this swap", swap_id=swap.id, role=role)

            now = self._clock()
            rating = SwapRating(stars=stars, comment=comment or "", timestamp=now)
            if role == Participant.REQUESTER:
                swap.rating.requester_rating = rating
            else:
                swap.rating.owner_rating = rating
            swap.updated_at = now
            return _Effects()

        result = await self._apply(swap_id, change)
        return result.swap

    async def get_details(self, swap_id: str, acting_user_id: str) -> Swap:
        swap = await self._load(swap_id)
        self._require_participant(swap, acting_user_id)
        return swap

    async def list_for_user(
        self,
        acting_user_id: str,
        filter_by=SwapListFilter.ALL,
        status: Optional[SwapStatus] = None,
        skip: int = 0,
        limit: int = 10,
    ) -> SwapPage:
        try:
            filter_by = SwapListFilter(filter_by)
        except ValueError:
            raise ValidationError("type must be one of sent, received, all", field="type")
        try:
            status = SwapStatus(status) if status else None
        except ValueError:
            raise ValidationError(f"Unknown swap status {status!r}", field="status")
        if skip < 0:
            raise ValidationError("skip must not be negative", field="skip")
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}", field="limit")

        swaps, total = await self.store.list_for_user(str(acting_user_id), filter_by, status, skip, limit)
        return SwapPage(swaps=swaps, total=total, skip=skip, limit=limit)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _lock_for(registry, key: str) -> asyncio.Lock:
        lock = registry.get(key)
        if lock is None:
            lock = asyncio.Lock()
            registry[key] = lock
        return lock

    async def _load(self, swap_id: str) -> Swap:
        swap = await self.store.get(swap_id)
        if swap is None:
            raise NotFoundError("Swap not found", swap_id=swap_id)
        return swap

    @staticmethod
    def _require_participant(swap: Swap, acting_user_id: str) -> Participant:
        role = swap.role_of(acting_user_id)
        if role == Participant.NEITHER:
            raise AuthorizationError("You are not a participant in this swap", swap_id=swap.id)
        return role

    @staticmethod
    def _require_meeting_status(swap: Swap) -> None:
        if swap.status not in (SwapStatus.ACCEPTED, SwapStatus.IN_PROGRESS):
            raise StateConflictError(
                "Meetings can only be arranged for accepted or in-progress swaps",
                swap_id=swap.id,
                current_status=swap.status,
            )

    @staticmethod
    def _transition(swap: Swap, status: SwapStatus, role: Participant, message: str, now: datetime) -> None:
        swap.transition_to(status, now)
        actor_id = None
        if role == Participant.REQUESTER:
            actor_id = swap.requester_id
        elif role == Participant.OWNER:
            actor_id = swap.owner_id
        swap.append_event(actor_id, swap.name_of(role), message, TRANSITION_ACTIONS[status], now)

    async def _check_offered_books(
        self,
        book_ids: Iterable[str],
        allowed_owners: set,
        field_name: str,
        holders: Iterable[str] = (),
    ) -> List[BookRef]:
        """Validate offered books and return their snapshots in order.

        A book reserved by one of ``holders`` still counts as usable; the
        reservation itself decides whether it can be taken.
        """
        holders = set(holders)
        refs = []
        seen = set()
        for book_id in book_ids:
            book_id = str(book_id)
            if book_id in seen:
                continue
            seen.add(book_id)

            book = await self.books.get_book(book_id)
            if book is None:
                raise NotFoundError("Offered book not found", field=field_name, book_id=book_id)
            if book.owner_id not in allowed_owners:
                raise ValidationError("Offered book is not owned by you", field=field_name, book_id=book_id)
            usable = book.availability == AVAILABLE or (
                book.availability == UNAVAILABLE and book.reserved_by in holders
            )
            if not usable:
                raise ValidationError(
                    "Offered book is not available",
                    field=field_name,
                    book_id=book_id,
                    availability=book.availability,
                )
            refs.append(BookRef(id=book.id, title=book.title, author=book.author))
        return refs

    async def _reserve_books(
        self,
        swap: Swap,
        book_ids: Iterable[str],
        held: List[Reservation],
        take_over_from: Iterable[str] = (),
    ) -> None:
        """Commit holds on ``book_ids`` for ``swap``, appending them to ``held``.

        If any book cannot be had, everything in ``held`` is undone and
        StateConflictError is raised.
        """
        take_over_from = list(take_over_from)
        for book_id in book_ids:
            reservation = await self.books.reserve(
                book_id, swap.id, state=ReservationState.COMMITTED, take_over_from=take_over_from
            )
            if reservation is None:
                await self._undo_reservations(swap, held)
                raise StateConflictError(
                    "Book is reserved by another swap",
                    swap_id=swap.id,
                    book_id=book_id,
                )
            held.append(reservation)

    async def _undo_reservations(self, swap: Swap, reservations: List[Reservation]) -> None:
        for reservation in reversed(reservations):
            try:
                restored = await self.books.undo(reservation)
            except Exception:
                logger.exception("Could not undo reservation of book %s for swap %s", reservation.book_id, swap.id)
                continue
            if not restored:
                logger.warning("Book %s is no longer held by swap %s, nothing to undo", reservation.book_id, swap.id)
        reservations.clear()

    async def _apply(self, swap_id: str, change: Callable[[Swap], Awaitable[_Effects]]) -> SwapActionResult:
        async with self._lock_for(self._swap_locks, swap_id):
            for attempt in range(1, self.max_write_retries + 1):
                swap = await self._load(swap_id)
                effects = await change(swap)
                if not effects.persist:
                    return SwapActionResult(swap=swap, already_confirmed=effects.already_confirmed)
                try:
                    written = await self.store.replace(swap)
                except Exception:
                    await self._undo_reservations(swap, effects.reservations)
                    raise
                if written:
                    break
                # The next attempt re-reserves against fresh state
                await self._undo_reservations(swap, effects.reservations)
                logger.warning("Swap %s changed underneath us (attempt %d), re-reading", swap_id, attempt)
            else:
                raise StateConflictError(
                    "Swap was modified concurrently, please retry",
                    swap_id=swap_id,
                    attempts=self.max_write_retries,
                )
            await self._finish(swap, effects)

        # Cancelling competing swaps takes their locks, so never while holding ours
        if effects.cancel_swaps:
            await self._cancel_competing(swap, effects.cancel_swaps)
        return SwapActionResult(swap=swap, already_confirmed=effects.already_confirmed, completed=effects.completed)

    async def _finish(self, swap: Swap, effects: _Effects) -> None:
        await self._write_books(swap, self.books.release, effects.release)
        await self._write_books(swap, self.books.mark_swapped, effects.swapped)

        if effects.activity is not None:
            event = ActivityEvent(
                swap_id=swap.id,
                kind=effects.activity,
                participants=swap.participants,
                timestamp=swap.updated_at,
            )
            try:
                await self.sink.publish(event)
            except Exception:
                logger.exception("Publishing %s activity for swap %s failed", event.kind.value, swap.id)

        for notification in effects.notifications:
            try:
                await self.sink.notify(notification)
            except Exception:
                logger.exception("Notification for swap %s failed", swap.id)

    async def _write_books(self, swap: Swap, write, book_ids: List[str]) -> None:
        for book_id in book_ids:
            try:
                changed = await write(book_id, swap.id)
            except Exception:
                logger.exception("Updating book %s for swap %s failed", book_id, swap.id)
                continue
            if not changed:
                # Taken over by an accepted swap, or never held by this one
                logger.info("Book %s is not held by swap %s, left as is", book_id, swap.id)

    async def _cancel_competing(self, swap: Swap, swap_ids: List[str]) -> None:
        """Cancel pending swaps that lost their books to ``swap``."""
        for other_id in swap_ids:
            try:
                await self._system_cancel(
                    other_id,
                    "This swap request was automatically cancelled because one of the books "
                    "involved was accepted in another swap.",
                )
            except SwapError as e:
                logger.warning("Could not auto-cancel swap %s: %s", other_id, e.message)

    async def _system_cancel(self, swap_id: str, reason: str) -> None:
        async def change(swap: Swap) -> _Effects:
            if swap.status != SwapStatus.PENDING:
                return _Effects(persist=False)
            logger.info("Auto-cancelling swap %s", swap.id)
            self._transition(swap, SwapStatus.CANCELLED, Participant.NEITHER, reason, self._clock())
            effects = _Effects(activity=ActivityKind.CANCELLED, release=[swap.requested_book.id])
            for user_id in swap.participants:
                effects.notifications.append(_notification(
                    user_id,
                    NotificationType.SWAP_CANCELLED,
                    "Swap Cancelled",
                    reason,
                    swap,
                ))
            return effects

        await self._apply(swap_id, change)

