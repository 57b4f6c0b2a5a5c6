"""User registration, profile and wallet routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from errandly.auth import AuthUser
from errandly.config import settings
from errandly.content import parse_model, render_response
from errandly.database import get_db_session
from errandly.db_models import User
from errandly.models import (
    ErrorResponse,
    ProfileResponse,
    RedeemPointsRequest,
    RegisterRequest,
    RegisterResponse,
)
from errandly.rate_limit import limiter
from errandly.services.payouts import get_ledger, loyalty_summary, redeem_points
from errandly.services.users import get_profile, register

router = APIRouter()


@router.post(
    "/v1/register",
    response_model=RegisterResponse,
    status_code=201,
    responses={400: {"model": ErrorResponse}},
)
@limiter.limit(settings.rate_limit_register)
async def register_user(request: Request, session=Depends(get_db_session)):
    """Create an account. The API key is shown once."""
    req = await parse_model(request, RegisterRequest)
    result = await register(session, req.name, tier=req.tier)
    return render_response(request, RegisterResponse(**result), status_code=201)


@router.get("/v1/me", response_model=ProfileResponse, responses={401: {"model": ErrorResponse}})
@limiter.limit(settings.rate_limit_read)
async def me(request: Request, user: User = AuthUser, session=Depends(get_db_session)):
    """Your profile: wallet, loyalty points, rewards level and active perks."""
    profile = await get_profile(session, user)
    return render_response(request, profile)


@router.get("/v1/me/wallet", responses={401: {"model": ErrorResponse}})
@limiter.limit(settings.rate_limit_read)
async def wallet(
    request: Request,
    user: User = AuthUser,
    session=Depends(get_db_session),
    limit: int = Query(settings.ledger_page_size, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    await session.refresh(user)
    entries, total = await get_ledger(session, user.id, offset=offset, limit=limit)
    return render_response(
        request,
        {"balance": user.wallet_balance, "ledger": entries, "total": total, "offset": offset, "limit": limit},
    )


@router.get("/v1/me/loyalty", responses={401: {"model": ErrorResponse}})
@limiter.limit(settings.rate_limit_read)
async def loyalty(request: Request, user: User = AuthUser, session=Depends(get_db_session)):
    """Loyalty points and how much of them can be redeemed right now."""
    return render_response(request, await loyalty_summary(session, user.id))


@router.post("/v1/me/redeem-points", responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}})
@limiter.limit(settings.rate_limit_redeem)
async def redeem(request: Request, user: User = AuthUser, session=Depends(get_db_session)):
    """Redeem loyalty points into wallet balance, one minor unit per point."""
    req = await parse_model(request, RedeemPointsRequest)
    result = await redeem_points(session, user.id, req.points)
    return render_response(request, result)
