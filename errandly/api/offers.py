"""Bidding routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from errandly.auth import AuthUser
from errandly.config import settings
from errandly.content import parse_model, render_response
from errandly.database import get_db_session
from errandly.db_models import User
from errandly.models import ErrorResponse, OfferCreateRequest, OfferResponse
from errandly.rate_limit import limiter
from errandly.services.offers import accept_offer, list_offers, submit_offer

router = APIRouter()

_ERRORS = {
    400: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
}


@router.post("/v1/tasks/{task_id}/offer", response_model=OfferResponse, status_code=201, responses=_ERRORS)
@limiter.limit(settings.rate_limit_action)
async def make_offer(task_id: str, request: Request, user: User = AuthUser, session=Depends(get_db_session)):
    """Offer to do a bidding task for a price. One pending offer per tasker."""
    req = await parse_model(request, OfferCreateRequest)
    offer = await submit_offer(session, task_id, user, req.proposed_price, message=req.message)
    return render_response(request, offer, status_code=201)


@router.get("/v1/tasks/{task_id}/offers", responses=_ERRORS)
@limiter.limit(settings.rate_limit_read)
async def offers_for_task(task_id: str, request: Request, user: User = AuthUser, session=Depends(get_db_session)):
    offers = await list_offers(session, task_id, user)
    return render_response(request, {"offers": offers, "total": len(offers)})


@router.post("/v1/tasks/{task_id}/offer/{offer_id}/accept", responses=_ERRORS)
@limiter.limit(settings.rate_limit_accept)
async def take_offer(
    task_id: str, offer_id: str, request: Request, user: User = AuthUser, session=Depends(get_db_session)
):
    """Accept an offer: the tasker is assigned at the offered price."""
    result = await accept_offer(session, task_id, offer_id, user)
    return render_response(request, result)
