"""Loyalty points, rewards levels and the perks that come with them."""

from __future__ import annotations

from datetime import datetime, timedelta

from errandly.config import settings
from errandly.db_models import PerkType, RewardsLevel

# Minimum task_points for each level, highest first
LEVEL_THRESHOLDS = [
    (RewardsLevel.platinum, 100_000),
    (RewardsLevel.gold, 50_000),
    (RewardsLevel.silver, 20_000),
]

# Perks granted on reaching a level: (type, value)
LEVEL_PERKS = {
    RewardsLevel.platinum: [
        (PerkType.reduced_commission, 5),
        (PerkType.priority_listing, 1),
        (PerkType.top_badge, 1),
    ],
    RewardsLevel.gold: [
        (PerkType.reduced_commission, 3),
        (PerkType.priority_listing, 1),
    ],
    RewardsLevel.silver: [
        (PerkType.reduced_commission, 2),
    ],
    RewardsLevel.bronze: [],
}


def loyalty_points_for(price: int) -> int:
    """Points each party earns for a paid task."""
    return round(price * settings.loyalty_percent / 100)


def level_for(task_points: int) -> RewardsLevel:
    for level, threshold in LEVEL_THRESHOLDS:
        if task_points >= threshold:
            return level
    return RewardsLevel.bronze


def perks_for(level: RewardsLevel, now: datetime) -> list[tuple[PerkType, float, datetime]]:
    expires = now + timedelta(days=settings.perk_duration_days)
    return [(perk_type, value, expires) for perk_type, value in LEVEL_PERKS[level]]


def effective_fee_pct(platform_fee_pct: float, commission_discount: float) -> float:
    """Platform fee after a reduced_commission perk, never below zero."""
    return max(0.0, platform_fee_pct - commission_discount)


def redeemable_points(points: int) -> int:
    """Largest whole number of redemption blocks within ``points``.

    Each redeemed point is worth one minor currency unit.
    """
    block = settings.redeem_block_points
    return max(0, points) // block * block
