"""
Tests for the MongoDB backed collaborators against mocked Motor collections.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from activity_sink import ActivitySink
from book_registry import BookRegistry
from errors import StateConflictError
from identity import IdentityProvider, display_name
from models.activity_models import ActivityEvent, ActivityKind
from models.book_models import BookAvailability, Reservation, ReservationState
from models.notification_models import Notification, NotificationType
from models.swap_models import BookRef, Swap, SwapListFilter, SwapStatus
from swap_store import SwapStore

pytestmark = pytest.mark.asyncio


class FakeCursor:
    """Stands in for a Motor cursor: chainable and async-iterable."""

    def __init__(self, docs):
        self.docs = list(docs)
        self.calls = []

    def sort(self, *args):
        self.calls.append(("sort", args))
        return self

    def skip(self, n):
        self.calls.append(("skip", n))
        return self

    def limit(self, n):
        self.calls.append(("limit", n))
        return self

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for doc in self.docs:
            yield doc


def collection():
    coll = MagicMock()
    coll.find_one = AsyncMock(return_value=None)
    coll.find_one_and_update = AsyncMock(return_value=None)
    coll.insert_one = AsyncMock()
    coll.update_one = AsyncMock()
    coll.replace_one = AsyncMock()
    coll.count_documents = AsyncMock(return_value=0)
    return coll


def database():
    return SimpleNamespace(
        books=collection(),
        users=collection(),
        swaps=collection(),
        activities=collection(),
        reward_accruals=collection(),
        notifications=collection(),
    )


def make_swap(**overrides):
    data = dict(
        requester_id="u1",
        requester_name="Requester",
        owner_id="u2",
        owner_name="Owner",
        requested_book=BookRef(id="b1"),
    )
    data.update(overrides)
    return Swap(**data)


class TestBookRegistry:

    async def test_get_book_maps_catalogue_fields(self):
        db = database()
        oid = ObjectId()
        db.books.find_one.return_value = {
            "_id": oid,
            "user_id": "owner-1",
            "bookName": "Dune",
            "authorName": "Frank Herbert",
        }

        book = await BookRegistry(db).get_book(str(oid))

        assert book.id == str(oid)
        assert book.owner_id == "owner-1"
        assert book.title == "Dune"
        assert book.author == "Frank Herbert"
        assert book.availability == BookAvailability.AVAILABLE
        db.books.find_one.assert_awaited_once_with({"_id": oid})

    async def test_get_book_invalid_id(self):
        db = database()
        assert await BookRegistry(db).get_book("not-an-object-id") is None
        db.books.find_one.assert_not_awaited()

    async def test_reserve_available_book(self):
        db = database()
        oid = ObjectId()
        db.books.find_one_and_update = AsyncMock(return_value={"_id": oid, "availability": "available"})

        reservation = await BookRegistry(db).reserve(str(oid), "swap-1")

        assert reservation.holder == "swap-1"
        assert reservation.previous_holder is None
        query, update = db.books.find_one_and_update.await_args.args
        assert query["_id"] == oid
        assert {"availability": {"$in": ["available", None]}} in query["$or"]
        assert {"availability": "unavailable", "reserved_by": "swap-1"} in query["$or"]
        assert len(query["$or"]) == 2
        assert update == {"$set": {
            "availability": "unavailable",
            "is_taken": True,
            "reserved_by": "swap-1",
            "reservation": "pending",
        }}
        assert db.books.find_one_and_update.await_args.kwargs["return_document"] == ReturnDocument.BEFORE

    async def test_take_over_pending_hold(self):
        db = database()
        oid = ObjectId()
        db.books.find_one_and_update = AsyncMock(return_value={
            "_id": oid, "availability": "unavailable", "reserved_by": "swap-2", "reservation": "pending",
        })

        reservation = await BookRegistry(db).reserve(
            str(oid), "swap-1", state=ReservationState.COMMITTED, take_over_from=["swap-2"]
        )

        assert reservation.previous_holder == "swap-2"
        assert reservation.previous_state == ReservationState.PENDING
        query, update = db.books.find_one_and_update.await_args.args
        assert {
            "availability": "unavailable",
            "reserved_by": {"$in": ["swap-2"]},
            "reservation": "pending",
        } in query["$or"]
        assert update["$set"]["reservation"] == "committed"

    async def test_reserve_refused(self):
        db = database()
        db.books.find_one_and_update = AsyncMock(return_value=None)
        assert await BookRegistry(db).reserve(str(ObjectId()), "swap-1") is None

    async def test_release_only_by_holder(self):
        db = database()
        db.books.update_one.return_value = SimpleNamespace(matched_count=0)
        oid = ObjectId()

        released = await BookRegistry(db).release(str(oid), "swap-1")

        assert released is False
        query, update = db.books.update_one.await_args.args
        assert query == {"_id": oid, "availability": "unavailable", "reserved_by": "swap-1"}
        assert update["$set"]["availability"] == "available"
        assert update["$set"]["reserved_by"] is None
        assert update["$set"]["is_taken"] is False

    async def test_mark_swapped(self):
        db = database()
        db.books.update_one.return_value = SimpleNamespace(matched_count=1)
        oid = ObjectId()

        assert await BookRegistry(db).mark_swapped(str(oid), "swap-1") is True
        query, update = db.books.update_one.await_args.args
        assert query["reserved_by"] == "swap-1"
        assert update["$set"]["availability"] == "swapped"

    async def test_undo_hands_book_back(self):
        db = database()
        db.books.update_one.return_value = SimpleNamespace(matched_count=1)
        oid = ObjectId()
        reservation = Reservation(
            book_id=str(oid), holder="swap-1", previous_holder="swap-2", previous_state=ReservationState.PENDING
        )

        assert await BookRegistry(db).undo(reservation) is True
        query, update = db.books.update_one.await_args.args
        assert query == {"_id": oid, "availability": "unavailable", "reserved_by": "swap-1"}
        assert update == {"$set": {"reserved_by": "swap-2", "reservation": "pending"}}

    async def test_record_swap_request(self):
        db = database()
        oid = ObjectId()
        await BookRegistry(db).record_swap_request(str(oid))
        db.books.update_one.assert_awaited_once_with({"_id": oid}, {"$inc": {"stats.swapRequests": 1}})


class TestIdentityProvider:

    async def test_display_name_fallbacks(self):
        assert display_name({"fName": "Ada", "lName": "Lovelace"}) == "Ada Lovelace"
        assert display_name({"fName": "", "username": "ada"}) == "ada"
        assert display_name({"email": "ada@example.com"}) == "ada@example.com"
        assert display_name({}) == "Unknown User"

    async def test_get_user(self):
        db = database()
        oid = ObjectId()
        db.users.find_one.return_value = {"_id": oid, "fName": "Ada", "lName": "Lovelace"}

        user = await IdentityProvider(db).get_user(str(oid))

        assert user.id == str(oid)
        assert user.display_name == "Ada Lovelace"

    async def test_unknown_user(self):
        db = database()
        assert await IdentityProvider(db).get_user(str(ObjectId())) is None


class TestSwapStore:

    async def test_get_converts_document(self):
        db = database()
        oid = ObjectId()
        db.swaps.find_one.return_value = {"_id": oid, **make_swap().to_document()}

        swap = await SwapStore(db).get(str(oid))

        assert swap.id == str(oid)
        assert swap.status == SwapStatus.PENDING

    async def test_insert_sets_id(self):
        db = database()
        oid = ObjectId()
        db.swaps.insert_one.return_value = SimpleNamespace(inserted_id=oid)

        swap = await SwapStore(db).insert(make_swap())

        assert swap.id == str(oid)
        doc = db.swaps.insert_one.await_args.args[0]
        assert doc["active"] is True
        assert doc["pair_key"] == "u1|u2"

    async def test_insert_keeps_preset_id(self):
        db = database()
        store = SwapStore(db)
        swap_id = store.new_id()
        db.swaps.insert_one.return_value = SimpleNamespace(inserted_id=ObjectId(swap_id))

        swap = await store.insert(make_swap(id=swap_id))

        assert swap.id == swap_id
        doc = db.swaps.insert_one.await_args.args[0]
        assert doc["_id"] == ObjectId(swap_id)

    async def test_insert_duplicate_active_swap(self):
        db = database()
        db.swaps.insert_one.side_effect = DuplicateKeyError("E11000 duplicate key")

        with pytest.raises(StateConflictError):
            await SwapStore(db).insert(make_swap())

    async def test_replace_checks_version(self):
        db = database()
        db.swaps.replace_one.return_value = SimpleNamespace(matched_count=1)
        oid = ObjectId()
        swap = make_swap(id=str(oid), version=2)

        assert await SwapStore(db).replace(swap) is True

        query, doc = db.swaps.replace_one.await_args.args
        assert query == {"_id": oid, "version": 2}
        assert doc["version"] == 3
        assert swap.version == 3

    async def test_replace_lost_write(self):
        db = database()
        db.swaps.replace_one.return_value = SimpleNamespace(matched_count=0)
        swap = make_swap(id=str(ObjectId()), version=2)

        assert await SwapStore(db).replace(swap) is False
        assert swap.version == 2

    async def test_find_active_between_uses_pair_key(self):
        db = database()
        await SwapStore(db).find_active_between("u2", "u1")
        db.swaps.find_one.assert_awaited_once_with({"pair_key": "u1|u2", "active": True})

    async def test_find_pending_involving(self):
        db = database()
        doc = {"_id": ObjectId(), **make_swap().to_document()}
        db.swaps.find = MagicMock(return_value=FakeCursor([doc]))
        exclude = ObjectId()

        swaps = await SwapStore(db).find_pending_involving(["b1", "b2"], exclude_id=str(exclude))

        assert [s.id for s in swaps] == [str(doc["_id"])]
        query = db.swaps.find.call_args.args[0]
        assert query["status"] == "pending"
        assert query["_id"] == {"$ne": exclude}
        assert {"offered_books.id": {"$in": ["b1", "b2"]}} in query["$or"]

    async def test_list_for_user_sent(self):
        db = database()
        cursor = FakeCursor([{"_id": ObjectId(), **make_swap().to_document()}])
        db.swaps.find = MagicMock(return_value=cursor)
        db.swaps.count_documents.return_value = 7

        swaps, total = await SwapStore(db).list_for_user(
            "u1", SwapListFilter.SENT, SwapStatus.PENDING, skip=5, limit=1
        )

        assert len(swaps) == 1
        assert total == 7
        query = {"requester_id": "u1", "status": "pending"}
        db.swaps.find.assert_called_once_with(query)
        db.swaps.count_documents.assert_awaited_once_with(query)
        assert ("skip", 5) in cursor.calls
        assert ("limit", 1) in cursor.calls

    async def test_list_for_user_all(self):
        db = database()
        db.swaps.find = MagicMock(return_value=FakeCursor([]))

        await SwapStore(db).list_for_user("u1")

        query = db.swaps.find.call_args.args[0]
        assert query == {"$or": [{"requester_id": "u1"}, {"owner_id": "u1"}]}


class TestActivitySink:

    async def test_regular_events_are_appended(self):
        db = database()
        event = ActivityEvent(swap_id="s1", kind=ActivityKind.ACCEPTED, participants=["u1", "u2"])

        await ActivitySink(db).publish(event)

        db.activities.insert_one.assert_awaited_once()
        db.reward_accruals.insert_one.assert_not_awaited()

    async def test_completion_accrues_rewards_once_per_participant(self):
        db = database()
        db.activities.update_one.return_value = SimpleNamespace(upserted_id=ObjectId())
        event = ActivityEvent(swap_id="s1", kind=ActivityKind.COMPLETED, participants=["u1", "u2"])

        await ActivitySink(db).publish(event)

        query = db.activities.update_one.await_args.args[0]
        assert query == {"swap_id": "s1", "kind": "completed"}
        assert db.activities.update_one.await_args.kwargs["upsert"] is True
        users = [c.args[0]["user_id"] for c in db.reward_accruals.insert_one.await_args_list]
        assert users == ["u1", "u2"]

    async def test_replayed_completion_is_ignored(self):
        db = database()
        db.activities.update_one.return_value = SimpleNamespace(upserted_id=None)
        event = ActivityEvent(swap_id="s1", kind=ActivityKind.COMPLETED, participants=["u1", "u2"])

        await ActivitySink(db).publish(event)

        db.reward_accruals.insert_one.assert_not_awaited()

    async def test_duplicate_reward_is_tolerated(self):
        db = database()
        db.activities.update_one.return_value = SimpleNamespace(upserted_id=ObjectId())
        db.reward_accruals.insert_one.side_effect = DuplicateKeyError("E11000 duplicate key")
        event = ActivityEvent(swap_id="s1", kind=ActivityKind.COMPLETED, participants=["u1", "u2"])

        await ActivitySink(db).publish(event)

        assert db.reward_accruals.insert_one.await_count == 2

    async def test_notify(self):
        db = database()
        notification = Notification(
            user_id="u2",
            type=NotificationType.SWAP_REQUEST,
            title="New Swap Request",
            message="Someone wants your book",
        )

        await ActivitySink(db).notify(notification)

        doc = db.notifications.insert_one.await_args.args[0]
        assert doc["user_id"] == "u2"
        assert doc["read"] is False
