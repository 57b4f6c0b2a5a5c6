"""User registration and profile service."""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from errandly.auth import hash_key, key_fingerprint
from errandly.db_models import User, UserTier
from errandly.ids import api_key, user_id
from errandly.services.payouts import active_perks
from errandly.utils import iso


async def register(session: AsyncSession, name: str, tier: UserTier = UserTier.basic) -> dict:
    """Register a new user. Returns user_id and raw API key."""
    uid = user_id()
    key = api_key()
    user = User(
        id=uid,
        name=name,
        key_hash=hash_key(key),
        key_fingerprint=key_fingerprint(key),
        tier=tier,
    )
    session.add(user)
    await session.commit()
    return {"user_id": uid, "api_key": key, "tier": tier.value}


async def get_profile(session: AsyncSession, user: User) -> dict:
    await session.refresh(user)
    perks = await active_perks(session, user.id)
    return {
        "user_id": user.id,
        "name": user.name,
        "tier": user.tier.value,
        "wallet_balance": user.wallet_balance,
        "loyalty_points": user.loyalty_points,
        "task_points": user.task_points,
        "rewards_level": user.rewards_level.value,
        "rating_avg": user.rating_avg,
        "rating_count": user.rating_count,
        "perks": [
            {"type": p.type.value, "value": p.value, "expires_at": iso(p.expires_at)} for p in perks
        ],
        "created_at": iso(user.created_at),
    }
