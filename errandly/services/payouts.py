"""Tasker payouts: wallet ledger, commission and loyalty rewards."""

from __future__ import annotations

import logging
from datetime import datetime

from fastapi import HTTPException
from sqlalchemy import func, text
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from errandly.config import settings
from errandly.db_models import Perk, PerkType, RewardsLevel, User, WalletLedger
from errandly.escrow import compute_fee
from errandly.ids import ledger_id
from errandly.rewards import effective_fee_pct, level_for, loyalty_points_for, perks_for, redeemable_points
from errandly.services.platform import get_platform_settings
from errandly.utils import utcnow

logger = logging.getLogger("errandly.payouts")


async def record_wallet(
    session: AsyncSession,
    user_id: str,
    amount: int,
    reason: str,
    task_id: str | None = None,
) -> None:
    session.add(WalletLedger(id=ledger_id(), user_id=user_id, amount=amount, reason=reason, task_id=task_id))


async def credit_wallet(
    session: AsyncSession, user_id: str, amount: int, reason: str, task_id: str | None = None
) -> None:
    """Atomic wallet increment plus a ledger row. Caller commits."""
    await session.execute(
        text("UPDATE users SET wallet_balance = wallet_balance + :amount WHERE id = :id"),
        {"amount": amount, "id": user_id},
    )
    await record_wallet(session, user_id, amount, reason, task_id)


async def commission_discount(session: AsyncSession, user_id: str, now: datetime | None = None) -> float:
    """Largest active reduced_commission perk, in percentage points."""
    now = now or utcnow()
    result = await session.execute(
        select(func.max(Perk.value)).where(
            Perk.user_id == user_id,
            Perk.type == PerkType.reduced_commission,
            col(Perk.expires_at) > now,
        )
    )
    return float(result.scalar_one_or_none() or 0)


async def settle_payout(session: AsyncSession, task_id: str, tasker_id: str, price: int) -> tuple[int, int]:
    """Split a captured price and credit the tasker's share.

    The fee percentage is read from the platform settings at this moment, so
    a settings change applies to tasks already in flight.
    Returns ``(platform_fee, payout)``.
    """
    platform = await get_platform_settings(session)
    discount = await commission_discount(session, tasker_id)
    fee_pct = effective_fee_pct(platform.platform_fee_pct, discount)
    fee, payout = compute_fee(price, fee_pct)
    if payout:
        await credit_wallet(session, tasker_id, payout, "payout", task_id)
    logger.info("Task %s payout %d to %s (fee %d at %.2f%%)", task_id, payout, tasker_id, fee, fee_pct)
    return fee, payout


async def award_loyalty(session: AsyncSession, price: int, *user_ids: str) -> int:
    """Give every party loyalty and task points for a paid task."""
    points = loyalty_points_for(price)
    if points <= 0:
        return 0
    for uid in user_ids:
        await session.execute(
            text(
                "UPDATE users SET loyalty_points = loyalty_points + :pts, "
                "task_points = task_points + :pts WHERE id = :id"
            ),
            {"pts": points, "id": uid},
        )
    return points


async def refresh_rewards_level(session: AsyncSession, user_id: str) -> RewardsLevel | None:
    """Recompute the level from task_points; grant perks on a level-up.

    Returns the new level when it changed, otherwise None.
    """
    user = await session.get(User, user_id, populate_existing=True)
    if user is None:
        return None
    new_level = level_for(user.task_points)
    if new_level == user.rewards_level:
        return None

    user.rewards_level = new_level
    session.add(user)
    for perk_type, value, expires_at in perks_for(new_level, utcnow()):
        session.add(Perk(user_id=user_id, type=perk_type, value=value, expires_at=expires_at))
    logger.info("User %s reached %s", user_id, new_level.value)
    return new_level


async def active_perks(session: AsyncSession, user_id: str) -> list[Perk]:
    result = await session.execute(
        select(Perk)
        .where(Perk.user_id == user_id, col(Perk.expires_at) > utcnow())
        .order_by(col(Perk.expires_at))
    )
    return list(result.scalars().all())


async def get_ledger(
    session: AsyncSession, user_id: str, offset: int = 0, limit: int = 50
) -> tuple[list[dict], int]:
    """Return (entries, total_count)."""
    count_result = await session.execute(
        select(func.count()).select_from(WalletLedger).where(WalletLedger.user_id == user_id)
    )
    total = count_result.scalar_one()

    result = await session.execute(
        select(WalletLedger)
        .where(WalletLedger.user_id == user_id)
        .order_by(col(WalletLedger.created_at).desc())
        .offset(offset)
        .limit(limit)
    )
    entries = [
        {
            "id": r.id,
            "amount": r.amount,
            "reason": r.reason,
            "task_id": r.task_id,
            "created_at": r.created_at.isoformat() if r.created_at else None,
        }
        for r in result.scalars().all()
    ]
    return entries, total


async def redeem_points(session: AsyncSession, user_id: str, points: int) -> dict:
    """Turn loyalty points into wallet balance, in whole blocks.

    ``points`` is rounded down to a block; the deduction is a conditional
    update so concurrent redemptions cannot overdraw the balance.
    """
    if not isinstance(points, int) or isinstance(points, bool) or points <= 0:
        raise HTTPException(status_code=400, detail="points must be a positive integer")
    amount = redeemable_points(points)
    if amount == 0:
        raise HTTPException(
            status_code=400, detail=f"Minimum {settings.redeem_block_points} points required for redemption"
        )

    result = await session.execute(
        text(
            "UPDATE users SET loyalty_points = loyalty_points - :pts "
            "WHERE id = :id AND loyalty_points >= :pts"
        ),
        {"pts": amount, "id": user_id},
    )
    if result.rowcount == 0:
        await session.rollback()
        raise HTTPException(status_code=400, detail="Insufficient loyalty points")
    await credit_wallet(session, user_id, amount, "points_redemption")
    await session.commit()

    user = await session.get(User, user_id, populate_existing=True)
    logger.info("User %s redeemed %d points", user_id, amount)
    return {
        "points_redeemed": amount,
        "credited_amount": amount,
        "loyalty_points": user.loyalty_points,
        "wallet_balance": user.wallet_balance,
    }


async def loyalty_summary(session: AsyncSession, user_id: str) -> dict:
    user = await session.get(User, user_id, populate_existing=True)
    redeemable = redeemable_points(user.loyalty_points)
    return {
        "loyalty_points": user.loyalty_points,
        "redeemable_points": redeemable,
        "redeemable_amount": redeemable,
        "task_points": user.task_points,
        "rewards_level": user.rewards_level.value,
    }
