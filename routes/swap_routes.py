import logging
from fastapi import APIRouter, Depends, Header, HTTPException, Query
from typing import Optional

from dataBase import db
from errors import SwapError
from models.swap_models import (
    CancelRequest,
    MeetingRequest,
    NegotiationMessage,
    RatingRequest,
    SwapListFilter,
    SwapProposal,
    SwapRespond,
    SwapStatus,
)
from activity_sink import ActivitySink
from book_registry import BookRegistry
from identity import IdentityProvider
from swap_engine import SwapEngine
from swap_store import SwapStore
from utils import verify_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/swaps", tags=["swaps"])

_engine: Optional[SwapEngine] = None


def get_swap_engine() -> SwapEngine:
    global _engine
    if _engine is None:
        _engine = SwapEngine(
            store=SwapStore(db),
            books=BookRegistry(db),
            identity=IdentityProvider(db),
            sink=ActivitySink(db),
        )
    return _engine


async def get_current_user_id(authorization: Optional[str] = Header(None)) -> str:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Not authenticated")
    user_id = verify_token(authorization.split(" ", 1)[1].strip())
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return user_id


def _http_error(e: Exception, action: str) -> HTTPException:
    if isinstance(e, SwapError):
        return HTTPException(status_code=e.status_code, detail=e.detail)
    logger.exception("Failed to %s", action)
    return HTTPException(status_code=500, detail=f"Failed to {action}: {str(e)}")


@router.post("", status_code=201)
async def create_swap_request(
    proposal: SwapProposal,
    user_id: str = Depends(get_current_user_id),
    engine: SwapEngine = Depends(get_swap_engine),
):
    try:
        swap = await engine.propose(user_id, proposal.requested_book_id, proposal.offered_book_ids, proposal.message)
        return {"message": "Swap request sent successfully!", "swap": swap}
    except Exception as e:
        raise _http_error(e, "create swap request")


@router.get("")
async def get_user_swaps(
    type: SwapListFilter = SwapListFilter.ALL,
    status: Optional[SwapStatus] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(10, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    engine: SwapEngine = Depends(get_swap_engine),
):
    try:
        page = await engine.list_for_user(user_id, type, status, skip, limit)
        return {
            "message": f"Found {len(page.swaps)} swaps",
            "swaps": page.swaps,
            "pagination": {
                "skip": page.skip,
                "limit": page.limit,
                "total_swaps": page.total,
                "has_more": page.has_more,
            },
        }
    except Exception as e:
        raise _http_error(e, "fetch swaps")


@router.get("/{swap_id}")
async def get_swap_details(
    swap_id: str,
    user_id: str = Depends(get_current_user_id),
    engine: SwapEngine = Depends(get_swap_engine),
):
    try:
        return {"swap": await engine.get_details(swap_id, user_id)}
    except Exception as e:
        raise _http_error(e, "fetch swap details")


@router.post("/{swap_id}/respond")
async def respond_to_swap(
    swap_id: str,
    response: SwapRespond,
    user_id: str = Depends(get_current_user_id),
    engine: SwapEngine = Depends(get_swap_engine),
):
    try:
        swap = await engine.respond(swap_id, user_id, response.action, response.message)
        return {"message": f"Swap request {swap.status.value}", "swap": swap}
    except Exception as e:
        raise _http_error(e, "process swap response")


@router.post("/{swap_id}/message")
async def add_negotiation_message(
    swap_id: str,
    body: NegotiationMessage,
    user_id: str = Depends(get_current_user_id),
    engine: SwapEngine = Depends(get_swap_engine),
):
    try:
        swap = await engine.negotiate(swap_id, user_id, body.message, body.offered_book_ids)
        return {"message": "Message added successfully", "swap": swap}
    except Exception as e:
        raise _http_error(e, "add message")


@router.post("/{swap_id}/in-progress")
async def mark_swap_in_progress(
    swap_id: str,
    user_id: str = Depends(get_current_user_id),
    engine: SwapEngine = Depends(get_swap_engine),
):
    try:
        swap = await engine.mark_in_progress(swap_id, user_id)
        return {"message": "Swap marked as in progress", "swap": swap}
    except Exception as e:
        raise _http_error(e, "mark swap in progress")


@router.post("/{swap_id}/meeting")
async def schedule_meeting(
    swap_id: str,
    meeting: MeetingRequest,
    user_id: str = Depends(get_current_user_id),
    engine: SwapEngine = Depends(get_swap_engine),
):
    try:
        swap = await engine.schedule_meeting(swap_id, user_id, meeting.location, meeting.scheduled_at, meeting.notes)
        return {"message": "Meeting scheduled", "swap": swap}
    except Exception as e:
        raise _http_error(e, "schedule meeting")


@router.post("/{swap_id}/meeting/confirm")
async def confirm_meeting(
    swap_id: str,
    user_id: str = Depends(get_current_user_id),
    engine: SwapEngine = Depends(get_swap_engine),
):
    try:
        result = await engine.confirm_meeting(swap_id, user_id)
        message = "Meeting already confirmed" if result.already_confirmed else "Meeting confirmed"
        return {"message": message, "already_confirmed": result.already_confirmed, "swap": result.swap}
    except Exception as e:
        raise _http_error(e, "confirm meeting")


@router.post("/{swap_id}/confirm-receipt")
async def confirm_receipt(
    swap_id: str,
    user_id: str = Depends(get_current_user_id),
    engine: SwapEngine = Depends(get_swap_engine),
):
    try:
        result = await engine.confirm_receipt(swap_id, user_id)
        if result.completed:
            message = "Swap completed successfully!"
        elif result.already_confirmed:
            message = "You have already confirmed receipt"
        else:
            message = "Receipt confirmed, waiting for the other party"
        return {
            "message": message,
            "already_confirmed": result.already_confirmed,
            "completed": result.completed,
            "swap": result.swap,
        }
    except Exception as e:
        raise _http_error(e, "confirm receipt")


@router.post("/{swap_id}/cancel")
async def cancel_swap(
    swap_id: str,
    body: Optional[CancelRequest] = None,
    user_id: str = Depends(get_current_user_id),
    engine: SwapEngine = Depends(get_swap_engine),
):
    try:
        swap = await engine.cancel(swap_id, user_id, body.reason if body else None)
        return {"message": "Swap cancelled successfully", "swap": swap}
    except Exception as e:
        raise _http_error(e, "cancel swap")


@router.post("/{swap_id}/rate")
async def rate_swap(
    swap_id: str,
    body: RatingRequest,
    user_id: str = Depends(get_current_user_id),
    engine: SwapEngine = Depends(get_swap_engine),
):
    try:
        swap = await engine.rate(swap_id, user_id, body.rating, body.comment)
        return {"message": "Rating submitted successfully", "swap": swap}
    except Exception as e:
        raise _http_error(e, "submit rating")
