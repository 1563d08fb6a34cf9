import time

import jwt
import pytest

from chat_gateway.errors import TokenExpiredError
from chat_gateway.tokens import (
    ensure_token_fresh,
    format_remaining,
    is_token_expired,
    needs_renewal,
    token_expiry,
    token_remaining,
)

SIGNING_KEY = "test-signing-key-0123456789abcdef"


def make_token(exp: float) -> str:
    return jwt.encode({"exp": int(exp)}, SIGNING_KEY, algorithm="HS256")


def test_token_expiry_reads_exp_claim():
    token = make_token(2_000_000_000)

    assert token_expiry(token) == 2_000_000_000.0


@pytest.mark.parametrize("token", [None, "", "not-a-jwt", "a.b.c"])
def test_token_expiry_unreadable(token):
    assert token_expiry(token) is None
    assert is_token_expired(token)


def test_token_without_exp_counts_as_expired():
    token = jwt.encode({"sub": "user"}, SIGNING_KEY, algorithm="HS256")

    assert token_expiry(token) is None
    assert is_token_expired(token)


def test_is_token_expired_uses_now():
    now = time.time()
    token = make_token(now + 60)

    assert not is_token_expired(token, now)
    assert is_token_expired(token, now + 120)


def test_token_remaining_floors_at_zero():
    now = time.time()
    token = make_token(now + 100)

    assert token_remaining(token, now) == pytest.approx(100, abs=1)
    assert token_remaining(token, now + 1000) == 0.0


def test_needs_renewal_inside_window():
    now = time.time()

    assert needs_renewal(make_token(now + 3600), now)
    assert not needs_renewal(make_token(now + 3 * 86400), now)


def test_ensure_token_fresh_raises_for_expired():
    now = time.time()
    ensure_token_fresh(make_token(now + 60), now)

    with pytest.raises(TokenExpiredError):
        ensure_token_fresh(make_token(now - 60), now)


def test_format_remaining():
    assert format_remaining(0) == "Expired"
    assert format_remaining(2 * 86400 + 3 * 3600) == "2d 3h"
    assert format_remaining(5 * 3600 + 7 * 60) == "5h 7m"
    assert format_remaining(90) == "1m"
