"""
Shared fixtures for the swap service tests.

The in-memory collaborators below honour the same contracts as the MongoDB
backed ones: swap writes are compare-and-swap on ``version``, book writes are
conditional on the swap holding the book, completion records and rewards are
idempotent per swap. Each call yields to the event loop once so concurrent callers
interleave the way they would against a real database.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from itertools import count

import pytest

from errors import StateConflictError
from models.activity_models import ActivityKind
from models.book_models import BookAvailability, BookRecord, Reservation, ReservationState
from models.swap_models import SwapListFilter
from models.user_models import UserIdentity
from swap_engine import SwapEngine


ALICE = "user-alice"
CAROL = "user-carol"
BOB = "user-bob"

USERS = {
    ALICE: "Alice Reader",
    CAROL: "Carol Shelf",
    BOB: "Bob Pages",
}

# book id -> (owner, title, author)
BOOKS = {
    "book-b1": (CAROL, "Dune", "Frank Herbert"),
    "book-c2": (CAROL, "Emma", "Jane Austen"),
    "book-a1": (ALICE, "Middlemarch", "George Eliot"),
    "book-a2": (ALICE, "Ulysses", "James Joyce"),
    "book-x1": (BOB, "Beloved", "Toni Morrison"),
    "book-x2": (BOB, "Solaris", "Stanislaw Lem"),
}


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        self.now = self.now + timedelta(seconds=1)
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeBookRegistry:
    def __init__(self):
        self.books = {}
        self.swap_requests = {}
        self.writes = []

    def add(self, book_id, owner_id, title="Book", author="Author", availability=BookAvailability.AVAILABLE):
        self.books[book_id] = BookRecord(
            id=book_id, owner_id=owner_id, title=title, author=author, availability=availability
        )

    def availability(self, book_id):
        return self.books[book_id].availability

    def holder(self, book_id):
        return self.books[book_id].reserved_by

    async def get_book(self, book_id):
        await asyncio.sleep(0)
        book = self.books.get(book_id)
        return book.model_copy() if book else None

    async def reserve(self, book_id, swap_id, state=ReservationState.PENDING, take_over_from=()):
        await asyncio.sleep(0)
        book = self.books.get(book_id)
        if book is None:
            return None
        held = book.availability == BookAvailability.UNAVAILABLE
        grantable = book.availability == BookAvailability.AVAILABLE or (
            held and (
                book.reserved_by == swap_id
                or (book.reserved_by in take_over_from and book.reservation == ReservationState.PENDING)
            )
        )
        if not grantable:
            return None
        reservation = Reservation(
            book_id=book_id,
            holder=swap_id,
            previous_holder=book.reserved_by if held else None,
            previous_state=book.reservation if held else None,
        )
        self._set(book_id, availability=BookAvailability.UNAVAILABLE, reserved_by=swap_id, reservation=state)
        return reservation

    async def release(self, book_id, swap_id):
        return await self._update_held(
            book_id, swap_id, availability=BookAvailability.AVAILABLE, reserved_by=None, reservation=None
        )

    async def mark_swapped(self, book_id, swap_id):
        return await self._update_held(book_id, swap_id, availability=BookAvailability.SWAPPED, reservation=None)

    async def undo(self, reservation):
        if reservation.previous_holder is None:
            return await self.release(reservation.book_id, reservation.holder)
        return await self._update_held(
            reservation.book_id,
            reservation.holder,
            reserved_by=reservation.previous_holder,
            reservation=reservation.previous_state,
        )

    async def record_swap_request(self, book_id):
        self.swap_requests[book_id] = self.swap_requests.get(book_id, 0) + 1

    async def _update_held(self, book_id, swap_id, **changes):
        await asyncio.sleep(0)
        book = self.books.get(book_id)
        if book is None or book.availability != BookAvailability.UNAVAILABLE or book.reserved_by != swap_id:
            return False
        self._set(book_id, **changes)
        return True

    def _set(self, book_id, **changes):
        book = self.books[book_id].model_copy(update=changes)
        self.books[book_id] = book
        self.writes.append((book_id, book.availability, book.reserved_by))


class FakeIdentityProvider:
    def __init__(self, users):
        self.users = dict(users)

    async def get_user(self, user_id):
        name = self.users.get(user_id)
        return UserIdentity(id=user_id, display_name=name) if name else None


class FakeSwapStore:
    def __init__(self):
        self.docs = {}
        self._ids = count(1)
        self.lost_writes = 0
        self.replace_calls = 0

    def new_id(self):
        return f"swap-{next(self._ids)}"

    def _snapshot(self, swap):
        return swap.model_copy(deep=True)

    async def get(self, swap_id):
        await asyncio.sleep(0)
        swap = self.docs.get(swap_id)
        return self._snapshot(swap) if swap else None

    async def insert(self, swap):
        await asyncio.sleep(0)
        for other in self.docs.values():
            if not other.is_active:
                continue
            if other.pair_key == swap.pair_key or (
                other.requester_id == swap.requester_id and other.requested_book.id == swap.requested_book.id
            ):
                raise StateConflictError("An active swap between these users already exists")
        if swap.id is None:
            swap.id = self.new_id()
        self.docs[swap.id] = self._snapshot(swap)
        return swap

    async def replace(self, swap):
        self.replace_calls += 1
        await asyncio.sleep(0)
        stored = self.docs.get(swap.id)
        if self.lost_writes:
            # Somebody else wrote the swap in the meantime
            self.lost_writes -= 1
            stored.version += 1
            return False
        if stored is None or stored.version != swap.version:
            return False
        swap.version += 1
        self.docs[swap.id] = self._snapshot(swap)
        return True

    async def find_active_for_book(self, requester_id, book_id):
        for swap in self.docs.values():
            if swap.is_active and swap.requester_id == requester_id and swap.requested_book.id == book_id:
                return self._snapshot(swap)
        return None

    async def find_active_between(self, user_a, user_b):
        for swap in self.docs.values():
            if swap.is_active and set(swap.participants) == {user_a, user_b}:
                return self._snapshot(swap)
        return None

    async def find_pending_involving(self, book_ids, exclude_id=None):
        book_ids = set(book_ids)
        found = []
        for swap in self.docs.values():
            if swap.id == exclude_id or swap.status.value != "pending":
                continue
            if book_ids & set(swap.book_ids()):
                found.append(self._snapshot(swap))
        return found

    async def list_for_user(self, user_id, filter_by=SwapListFilter.ALL, status=None, skip=0, limit=10):
        matches = []
        for swap in self.docs.values():
            if filter_by == SwapListFilter.SENT and swap.requester_id != user_id:
                continue
            if filter_by == SwapListFilter.RECEIVED and swap.owner_id != user_id:
                continue
            if filter_by == SwapListFilter.ALL and user_id not in swap.participants:
                continue
            if status and swap.status != status:
                continue
            matches.append(swap)
        matches.sort(key=lambda s: s.created_at, reverse=True)
        return [self._snapshot(s) for s in matches[skip:skip + limit]], len(matches)


class FakeActivitySink:
    def __init__(self):
        self.events = []
        self.rewards = []
        self.notifications = []
        self.fail = False

    async def publish(self, event):
        await asyncio.sleep(0)
        if self.fail:
            raise RuntimeError("activity service unavailable")
        if event.kind == ActivityKind.COMPLETED and any(
            e.swap_id == event.swap_id and e.kind == event.kind for e in self.events
        ):
            return
        self.events.append(event)
        if event.kind == ActivityKind.COMPLETED:
            self.rewards.extend((user_id, event.swap_id) for user_id in event.participants)

    async def notify(self, notification):
        if self.fail:
            raise RuntimeError("notification service unavailable")
        self.notifications.append(notification)

    def kinds(self, swap_id=None):
        return [e.kind for e in self.events if swap_id is None or e.swap_id == swap_id]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def books():
    registry = FakeBookRegistry()
    for book_id, (owner, title, author) in BOOKS.items():
        registry.add(book_id, owner, title, author)
    return registry


@pytest.fixture
def identity():
    return FakeIdentityProvider(USERS)


@pytest.fixture
def store():
    return FakeSwapStore()


@pytest.fixture
def sink():
    return FakeActivitySink()


@pytest.fixture
def engine(store, books, identity, sink, clock):
    return SwapEngine(store=store, books=books, identity=identity, sink=sink, clock=clock, max_write_retries=3)
