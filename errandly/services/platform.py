"""Platform-wide settings and task categories."""

from __future__ import annotations

import logging

from fastapi import HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from errandly.config import settings
from errandly.db_models import Category, PlatformSettings
from errandly.utils import utcnow

logger = logging.getLogger("errandly.platform")

CUSTOM_CATEGORY = "custom"


async def get_platform_settings(session: AsyncSession) -> PlatformSettings:
    """Current settings row, read fresh on every call."""
    row = await session.get(PlatformSettings, "global", populate_existing=True)
    if row is None:
        row = PlatformSettings(
            id="global",
            platform_fee_pct=settings.default_platform_fee_pct,
            default_radius_km=settings.default_radius_km,
        )
        session.add(row)
        await session.commit()
    return row


async def update_platform_settings(
    session: AsyncSession,
    platform_fee_pct: float | None = None,
    default_radius_km: float | None = None,
) -> PlatformSettings:
    row = await get_platform_settings(session)
    if platform_fee_pct is not None:
        row.platform_fee_pct = platform_fee_pct
    if default_radius_km is not None:
        row.default_radius_km = default_radius_km
    row.updated_at = utcnow()
    session.add(row)
    await session.commit()
    await session.refresh(row)
    logger.info(
        "Platform settings updated: fee=%s%% radius=%skm", row.platform_fee_pct, row.default_radius_km
    )
    return row


async def list_categories(session: AsyncSession) -> list[Category]:
    result = await session.execute(select(Category).order_by(Category.name))
    return list(result.scalars().all())


async def validate_category_price(
    session: AsyncSession, category_id: str, price: int, category_name: str | None = None
) -> Category:
    """Check the category exists and ``price`` is within its bounds."""
    if category_id == CUSTOM_CATEGORY:
        if not (category_name or "").strip():
            raise HTTPException(status_code=400, detail="category_name is required for custom tasks")
    category = await session.get(Category, category_id)
    if category is None:
        raise HTTPException(status_code=400, detail=f"Unknown category: {category_id}")
    if category.min_price is not None and price < category.min_price:
        raise HTTPException(
            status_code=400,
            detail=f"Price for {category.name} must be at least {category.min_price}",
        )
    if category.max_price is not None and price > category.max_price:
        raise HTTPException(
            status_code=400,
            detail=f"Price for {category.name} must be at most {category.max_price}",
        )
    return category
