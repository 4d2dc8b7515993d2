"""
Persistence for swap documents.

Writes are compare-and-swap on the ``version`` field: ``replace`` only
succeeds if nobody else wrote the swap since it was read.
"""

import logging
from typing import Iterable, List, Optional, Tuple

from bson import ObjectId
from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError

from errors import StateConflictError
from models.swap_models import Swap, SwapListFilter, SwapStatus, make_pair_key
from utils import to_object_id

logger = logging.getLogger(__name__)


class SwapStore:
    def __init__(self, database):
        self.swaps = database.swaps

    async def get(self, swap_id: str) -> Optional[Swap]:
        oid = to_object_id(swap_id)
        if oid is None:
            return None
        doc = await self.swaps.find_one({"_id": oid})
        return Swap.from_document(doc) if doc else None

    def new_id(self) -> str:
        """Id for a swap that is about to be inserted."""
        return str(ObjectId())

    async def insert(self, swap: Swap) -> Swap:
        doc = swap.to_document()
        if swap.id is not None:
            doc["_id"] = to_object_id(swap.id)
        try:
            result = await self.swaps.insert_one(doc)
        except DuplicateKeyError:
            raise StateConflictError(
                "An active swap between these users already exists",
                requester_id=swap.requester_id,
                owner_id=swap.owner_id,
            )
        swap.id = str(result.inserted_id)
        return swap

    async def replace(self, swap: Swap) -> bool:
        """Persist ``swap`` if its stored version is still ``swap.version``.

        On success the in-memory version is bumped to match the stored one.
        """
        expected = swap.version
        doc = swap.to_document()
        doc["version"] = expected + 1
        result = await self.swaps.replace_one({"_id": to_object_id(swap.id), "version": expected}, doc)
        if result.matched_count == 0:
            logger.warning("Lost write on swap %s at version %s", swap.id, expected)
            return False
        swap.version = expected + 1
        return True

    async def find_active_for_book(self, requester_id: str, book_id: str) -> Optional[Swap]:
        doc = await self.swaps.find_one({
            "requester_id": requester_id,
            "requested_book.id": book_id,
            "active": True,
        })
        return Swap.from_document(doc) if doc else None

    async def find_active_between(self, user_a: str, user_b: str) -> Optional[Swap]:
        doc = await self.swaps.find_one({"pair_key": make_pair_key(user_a, user_b), "active": True})
        return Swap.from_document(doc) if doc else None

    async def find_pending_involving(self, book_ids: Iterable[str], exclude_id: Optional[str] = None) -> List[Swap]:
        book_ids = list(book_ids)
        query = {
            "status": SwapStatus.PENDING.value,
            "$or": [
                {"requested_book.id": {"$in": book_ids}},
                {"offered_books.id": {"$in": book_ids}},
            ],
        }
        if exclude_id is not None:
            query["_id"] = {"$ne": to_object_id(exclude_id)}

        swaps = []
        async for doc in self.swaps.find(query):
            swaps.append(Swap.from_document(doc))
        return swaps

    async def list_for_user(
        self,
        user_id: str,
        filter_by: SwapListFilter = SwapListFilter.ALL,
        status: Optional[SwapStatus] = None,
        skip: int = 0,
        limit: int = 10,
    ) -> Tuple[List[Swap], int]:
        if filter_by == SwapListFilter.SENT:
            query = {"requester_id": user_id}
        elif filter_by == SwapListFilter.RECEIVED:
            query = {"owner_id": user_id}
        else:
            query = {"$or": [{"requester_id": user_id}, {"owner_id": user_id}]}
        if status:
            query["status"] = status.value

        swaps = []
        cursor = self.swaps.find(query).sort("created_at", DESCENDING).skip(skip).limit(limit)
        async for doc in cursor:
            swaps.append(Swap.from_document(doc))
        total = await self.swaps.count_documents(query)
        return swaps, total
