from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from datetime import datetime
from enum import Enum

from utils import utcnow


class NotificationType(str, Enum):
    SWAP_REQUEST = "swap_request"
    SWAP_RESPONSE = "swap_response"
    SWAP_MESSAGE = "swap_message"
    MEETING_UPDATE = "meeting_update"
    RECEIPT_CONFIRMATION_REQUESTED = "receipt_confirmation_requested"
    SWAP_COMPLETED = "swap_completed"
    SWAP_CANCELLED = "swap_cancelled"


class Notification(BaseModel):
    user_id: str
    type: NotificationType
    title: str
    message: str
    data: Optional[Dict[str, Any]] = None
    read: bool = False
    created_at: datetime = Field(default_factory=utcnow)
