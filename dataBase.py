import logging

import motor.motor_asyncio
from pymongo import ASCENDING, DESCENDING

from config import MONGO_URL, DATABASE_NAME

logger = logging.getLogger(__name__)

client = motor.motor_asyncio.AsyncIOMotorClient(MONGO_URL, tz_aware=True)
db = client[DATABASE_NAME]


async def ensure_indexes(database=None):
    """Create the indexes the swap service relies on (idempotent)."""
    database = database if database is not None else db

    await database.swaps.create_index([("requester_id", ASCENDING), ("status", ASCENDING)])
    await database.swaps.create_index([("owner_id", ASCENDING), ("status", ASCENDING)])
    await database.swaps.create_index([("status", ASCENDING), ("created_at", DESCENDING)])
    await database.swaps.create_index([("requested_book.id", ASCENDING)])
    await database.swaps.create_index([("offered_books.id", ASCENDING)])

    # At most one active swap per user pair and per (requester, book)
    await database.swaps.create_index(
        [("pair_key", ASCENDING)],
        name="one_active_swap_per_pair",
        unique=True,
        partialFilterExpression={"active": True},
    )
    await database.swaps.create_index(
        [("requester_id", ASCENDING), ("requested_book.id", ASCENDING)],
        name="one_active_request_per_book",
        unique=True,
        partialFilterExpression={"active": True},
    )

    await database.activities.create_index(
        [("swap_id", ASCENDING), ("kind", ASCENDING), ("timestamp", DESCENDING)]
    )
    await database.reward_accruals.create_index(
        [("user_id", ASCENDING), ("swap_id", ASCENDING)], unique=True
    )
    await database.notifications.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    logger.info("MongoDB indexes ensured on %s", database.name)
