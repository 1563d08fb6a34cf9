import time

import jwt
import pytest

from chat_gateway.errors import ValidationError
from chat_gateway.models import (
    ChatRequest,
    Credential,
    PoolState,
    STATUS_DEGRADED,
    STATUS_DOWN,
    STATUS_HEALTHY,
)

SIGNING_KEY = "test-signing-key-0123456789abcdef"


def make_token(expires_in: float = 7 * 86400) -> str:
    claims = {"exp": int(time.time() + expires_in)}
    return jwt.encode(claims, SIGNING_KEY, algorithm="HS256")


def test_credential_defaults():
    credential = Credential(id="credential_1", secret="cookie-value")

    assert credential.bearer_token is None
    assert credential.token_expires_at is None
    assert credential.failure_count == 0
    assert credential.next_eligible_at is None
    assert credential.last_used_at is None
    assert credential.last_error is None
    assert credential.status == STATUS_DEGRADED


def test_credential_update_token_reads_expiry():
    credential = Credential(id="credential_1", secret="cookie-value")
    token = make_token(3600)

    credential.update_token(token)

    assert credential.bearer_token == token
    assert credential.token_expires_at is not None
    assert credential.has_valid_token(time.time())
    assert credential.status == STATUS_HEALTHY


def test_credential_status_transitions():
    now = time.time()
    credential = Credential(id="credential_1", secret="cookie-value")
    credential.update_token(make_token())

    credential.failure_count = 3
    credential.next_eligible_at = now + 120
    assert credential.status_at(now) == STATUS_DEGRADED
    assert not credential.is_available(now)

    credential.failure_count = 5
    credential.next_eligible_at = now + 300
    assert credential.status_at(now) == STATUS_DOWN
    assert not credential.is_available(now)

    later = now + 301
    assert credential.status_at(later) == STATUS_DEGRADED
    assert credential.is_available(later)


def test_credential_expired_token_is_unavailable():
    credential = Credential(id="credential_1", secret="cookie-value")
    credential.update_token(make_token(-60))

    assert not credential.is_available(time.time())


def test_credential_secret_prefix():
    short = Credential(id="credential_1", secret="abc")
    assert short.secret_prefix() == "***"

    long = Credential(id="credential_2", secret="ssxmod_itna=abcdef123")
    assert long.secret_prefix() == "ssxmod...123"


def test_chat_request_from_dict_defaults():
    request = ChatRequest.from_dict(
        {"messages": [{"role": "user", "content": "hi"}]}, default_model="qwen-max"
    )

    assert request.model == "qwen-max"
    assert request.stream is True
    assert request.size is None
    assert request.messages[0].text == "hi"
    assert not request.has_images


def test_chat_request_parses_content_parts():
    request = ChatRequest.from_dict(
        {
            "model": "qwen3-max",
            "stream": False,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": "describe"},
                        {"type": "image_url", "image_url": {"url": "https://x/a.png"}},
                        {"type": "image", "image": "https://x/b.jpg"},
                    ],
                }
            ],
        }
    )

    message = request.messages[0]
    assert request.stream is False
    assert message.text == "describe"
    assert message.image_urls == ["https://x/a.png", "https://x/b.jpg"]
    assert request.has_images


def test_chat_request_last_user_message():
    request = ChatRequest.from_dict(
        {
            "messages": [
                {"role": "user", "content": "first"},
                {"role": "assistant", "content": "answer"},
                {"role": "user", "content": "second"},
                {"role": "assistant", "content": "again"},
            ]
        }
    )

    last = request.last_user_message()
    assert last is not None
    assert last.text == "second"


@pytest.mark.parametrize(
    "body",
    [
        [],
        {},
        {"messages": []},
        {"messages": "hi"},
        {"messages": [{"role": "robot", "content": "hi"}]},
        {"messages": [{"role": "user", "content": 42}]},
        {"model": 7, "messages": [{"role": "user", "content": "hi"}]},
    ],
)
def test_chat_request_rejects_malformed_bodies(body):
    with pytest.raises(ValidationError):
        ChatRequest.from_dict(body)


def test_pool_state_find_and_counts():
    now = time.time()
    healthy = Credential(id="credential_1", secret="c1")
    healthy.update_token(make_token())
    down = Credential(id="credential_2", secret="c2", failure_count=5)
    down.update_token(make_token())
    down.next_eligible_at = now + 300
    pool = PoolState(credentials=[healthy, down])

    assert pool.find("credential_2") is down
    assert pool.find("missing") is None
    assert pool.counts(now) == {
        STATUS_HEALTHY: 1,
        STATUS_DEGRADED: 0,
        STATUS_DOWN: 1,
    }
