"""Structural inspection of upstream bearer tokens."""

import time
from typing import Optional

import jwt
from jwt import InvalidTokenError

from chat_gateway.errors import TokenExpiredError

RENEWAL_WINDOW_SECONDS = 24 * 60 * 60


def token_expiry(token: Optional[str]) -> Optional[float]:
    """Return the ``exp`` claim as an epoch timestamp, or None if unreadable."""
    if not token:
        return None
    try:
        claims = jwt.decode(
            token,
            options={"verify_signature": False, "verify_exp": False},
        )
    except InvalidTokenError:
        return None
    exp = claims.get("exp")
    if not isinstance(exp, (int, float)):
        return None
    return float(exp)


def is_token_expired(token: Optional[str], now: Optional[float] = None) -> bool:
    expiry = token_expiry(token)
    if expiry is None:
        return True
    current = time.time() if now is None else now
    return expiry < current


def token_remaining(token: Optional[str], now: Optional[float] = None) -> float:
    """Seconds of validity left, floored at zero."""
    expiry = token_expiry(token)
    if expiry is None:
        return 0.0
    current = time.time() if now is None else now
    return max(0.0, expiry - current)


def needs_renewal(token: Optional[str], now: Optional[float] = None) -> bool:
    if is_token_expired(token, now):
        return True
    return token_remaining(token, now) < RENEWAL_WINDOW_SECONDS


def ensure_token_fresh(token: Optional[str], now: Optional[float] = None) -> None:
    if is_token_expired(token, now):
        raise TokenExpiredError("Bearer token is expired or unreadable")


def format_remaining(seconds: float) -> str:
    if seconds <= 0:
        return "Expired"
    days, rest = divmod(int(seconds), 86400)
    hours, rest = divmod(rest, 3600)
    minutes = rest // 60
    if days > 0:
        return f"{days}d {hours}h"
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"
