"""Shared slowapi limiter, keyed by API key fingerprint when present."""

from __future__ import annotations

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from errandly.auth import key_fingerprint


def _rate_limit_key(request: Request) -> str:
    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        return f"key:{key_fingerprint(auth[7:])}"
    return get_remote_address(request)


limiter = Limiter(key_func=_rate_limit_key)
