"""Authentication: bcrypt hashing with fingerprint-based DB lookup."""

from __future__ import annotations

import hashlib
import secrets

import bcrypt
from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from errandly.database import get_db_session
from errandly.db_models import User


def hash_key(key: str) -> str:
    return bcrypt.hashpw(key.encode(), bcrypt.gensalt()).decode()


def verify_key(key: str, key_hash: str) -> bool:
    return bcrypt.checkpw(key.encode(), key_hash.encode())


def key_fingerprint(key: str) -> str:
    return hashlib.sha256(key.encode()).hexdigest()[:16]


async def get_current_user(
    request: Request,
    session: AsyncSession = Depends(get_db_session),
) -> User:
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing or invalid Authorization header")

    raw_key = auth[7:]
    fp = key_fingerprint(raw_key)

    result = await session.execute(select(User).where(User.key_fingerprint == fp))
    user = result.scalar_one_or_none()

    if not user or not verify_key(raw_key, user.key_hash):
        raise HTTPException(status_code=401, detail="Invalid API key")

    return user


AuthUser = Depends(get_current_user)


async def verify_admin_key(request: Request) -> None:
    from errandly.config import settings

    if settings.admin_key is None:
        raise HTTPException(status_code=501, detail="Admin API not configured")
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    if not secrets.compare_digest(auth[7:], settings.admin_key):
        raise HTTPException(status_code=403, detail="Invalid admin key")
