"""Categories and platform settings routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from errandly.auth import verify_admin_key
from errandly.config import settings
from errandly.content import parse_model, render_response
from errandly.database import get_db_session
from errandly.models import CategoryResponse, ErrorResponse, SettingsResponse, SettingsUpdateRequest
from errandly.rate_limit import limiter
from errandly.services.platform import get_platform_settings, list_categories, update_platform_settings
from errandly.utils import iso

router = APIRouter()


def _settings_dict(row) -> dict:
    return {
        "platform_fee_pct": row.platform_fee_pct,
        "default_radius_km": row.default_radius_km,
        "updated_at": iso(row.updated_at),
    }


@router.get("/v1/categories")
@limiter.limit(settings.rate_limit_read)
async def categories(request: Request, session=Depends(get_db_session)):
    """Task categories with their price bounds. No auth required."""
    rows = await list_categories(session)
    data = [CategoryResponse.model_validate(c, from_attributes=True).model_dump() for c in rows]
    return render_response(request, {"categories": data})


@router.get("/v1/settings", response_model=SettingsResponse)
@limiter.limit(settings.rate_limit_read)
async def read_settings(request: Request, session=Depends(get_db_session)):
    row = await get_platform_settings(session)
    return render_response(request, _settings_dict(row))


@router.put(
    "/v1/settings",
    response_model=SettingsResponse,
    responses={400: {"model": ErrorResponse}, 403: {"model": ErrorResponse}},
    dependencies=[Depends(verify_admin_key)],
)
@limiter.limit(settings.rate_limit_admin)
async def write_settings(request: Request, session=Depends(get_db_session)):
    """Admin: change the platform fee or default search radius.

    The fee applies to every task approved after the change.
    """
    req = await parse_model(request, SettingsUpdateRequest)
    row = await update_platform_settings(
        session, platform_fee_pct=req.platform_fee_pct, default_radius_km=req.default_radius_km
    )
    return render_response(request, _settings_dict(row))
