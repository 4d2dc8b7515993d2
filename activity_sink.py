"""
Activity, reward and notification records consumed by other services.

Nothing here is allowed to break a swap transition: the engine calls these
after the swap is committed and only logs failures.
"""

import logging

from pymongo.errors import DuplicateKeyError

from models.activity_models import ActivityEvent, ActivityKind, RewardAccrual
from models.notification_models import Notification

logger = logging.getLogger(__name__)


class ActivitySink:
    def __init__(self, database):
        self.activities = database.activities
        self.rewards = database.reward_accruals
        self.notifications = database.notifications

    async def publish(self, event: ActivityEvent) -> None:
        doc = event.model_dump()
        if event.kind != ActivityKind.COMPLETED:
            await self.activities.insert_one(doc)
            return

        # At most one completion record and one reward per participant per swap
        result = await self.activities.update_one(
            {"swap_id": event.swap_id, "kind": event.kind.value},
            {"$setOnInsert": doc},
            upsert=True,
        )
        if result.upserted_id is None:
            logger.info("Completion of swap %s already recorded", event.swap_id)
            return

        for user_id in event.participants:
            await self.accrue_reward(RewardAccrual(user_id=user_id, swap_id=event.swap_id))

    async def accrue_reward(self, accrual: RewardAccrual) -> None:
        try:
            await self.rewards.insert_one(accrual.model_dump())
        except DuplicateKeyError:
            logger.info("Reward for user %s on swap %s already accrued", accrual.user_id, accrual.swap_id)

    async def notify(self, notification: Notification) -> None:
        await self.notifications.insert_one(notification.model_dump())
