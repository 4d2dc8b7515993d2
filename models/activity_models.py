from pydantic import BaseModel, Field
from typing import List
from datetime import datetime
from enum import Enum

from utils import utcnow


class ActivityKind(str, Enum):
    CREATED = "created"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ActivityEvent(BaseModel):
    swap_id: str
    kind: ActivityKind
    participants: List[str]
    timestamp: datetime = Field(default_factory=utcnow)


class RewardAccrual(BaseModel):
    """Signal that a user earned whatever a completed swap is worth.

    Point values and badges are decided by the rewards service.
    """
    user_id: str
    swap_id: str
    reason: str = "COMPLETE_SWAP"
    created_at: datetime = Field(default_factory=utcnow)
