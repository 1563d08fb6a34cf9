import json
import time

import httpx
import jwt
import pytest
import respx
from fastapi.testclient import TestClient
from httpx import Response

from chat_gateway.config import Config
from chat_gateway.credential_pool import CredentialPool
from chat_gateway.main import app as main_app
from chat_gateway.models import Credential
from chat_gateway.translator import FALLBACK_MODELS
from chat_gateway.upstream import PassthroughUploader, UpstreamClient

BASE_URL = "https://chat.example.test"
SIGNING_KEY = "test-signing-key-0123456789abcdef"

HELLO_STREAM = (
    b'data: {"choices": [{"delta": {"content": "hel"}}]}\n\n'
    b'data: {"choices": [{"delta": {"content": "lo"}, "finish_reason": "stop"}]}'
    b"\n\ndata: [DONE]\n\n"
)


def make_token(expires_in: float = 7 * 86400) -> str:
    return jwt.encode(
        {"exp": int(time.time() + expires_in)}, SIGNING_KEY, algorithm="HS256"
    )


class FakeExchanger:
    def __init__(self):
        self.calls = 0

    async def exchange_token(self, secret: str) -> str:
        self.calls += 1
        return make_token()


def make_state(config: Config, expires_in: float = 7 * 86400):
    http_client = httpx.AsyncClient(base_url=config.upstream_base_url)
    credential_pool = CredentialPool(FakeExchanger())
    credentials = []
    for index, secret in enumerate(config.secrets, start=1):
        credential = Credential(id=f"credential_{index}", secret=secret)
        credential.update_token(make_token(expires_in))
        credentials.append(credential)
    credential_pool.pool.credentials = credentials
    credential_pool.pool.initialized = True

    main_app.state.config = config
    main_app.state.http_client = http_client
    main_app.state.upstream_client = UpstreamClient(http_client, config)
    main_app.state.credential_pool = credential_pool
    main_app.state.uploader = PassthroughUploader()
    return main_app


@pytest.fixture
def app_factory():
    def factory(expires_in: float = 7 * 86400, **overrides):
        settings = {"secrets": ["cookie-one", "cookie-two"]}
        settings.update(overrides)
        settings.setdefault("upstream_base_url", BASE_URL)
        return make_state(Config(**settings), expires_in)

    yield factory

    for name in (
        "config",
        "http_client",
        "upstream_client",
        "credential_pool",
        "uploader",
    ):
        if hasattr(main_app.state, name):
            delattr(main_app.state, name)


@pytest.fixture
def app(app_factory):
    return app_factory()


def mock_chat(stream_body: bytes = HELLO_STREAM):
    new_chat = respx.post(f"{BASE_URL}/api/v2/chats/new").mock(
        return_value=Response(200, json={"success": True, "data": {"id": "chat-1"}})
    )
    completions = respx.post(f"{BASE_URL}/api/v2/chat/completions").mock(
        return_value=Response(
            200,
            content=stream_body,
            headers={"content-type": "text/event-stream"},
        )
    )
    return new_chat, completions


def test_root(app):
    client = TestClient(app)
    response = client.get("/")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "running"
    assert data["auth_mode"] == "server"
    assert data["api_key_required"] is False
    assert data["credentials_available"] == 2
    assert data["total_credentials"] == 2


def test_health_check(app):
    client = TestClient(app)
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["config"]["server_mode"] is True
    assert data["token"]["valid"] is True
    assert data["token"]["remaining_seconds"] > 6 * 86400
    assert data["pool"] == {
        "total": 2,
        "available": 2,
        "healthy": 2,
        "degraded": 0,
        "down": 0,
    }


def test_health_check_degraded_when_tokens_expired(app_factory):
    client = TestClient(app_factory(expires_in=-60))
    data = client.get("/health").json()
    assert data["status"] == "degraded"
    assert data["token"]["valid"] is False
    assert data["pool"]["available"] == 0


@respx.mock
def test_list_models_expands_variants(app):
    route = respx.get(f"{BASE_URL}/api/models").mock(
        return_value=Response(
            200,
            json={
                "data": [
                    {
                        "id": "qwen3-max",
                        "info": {
                            "meta": {
                                "abilities": {"thinking": True},
                                "chat_type": ["t2t", "search"],
                            }
                        },
                    }
                ]
            },
        )
    )

    client = TestClient(app)
    response = client.get("/v1/models")
    assert response.status_code == 200
    data = response.json()
    assert data["object"] == "list"
    ids = [model["id"] for model in data["data"]]
    assert ids == ["qwen3-max", "qwen3-max-thinking", "qwen3-max-search"]
    assert route.calls[0].request.headers["authorization"].startswith("Bearer ")


@respx.mock
def test_list_models_survives_upstream_failure(app):
    respx.get(f"{BASE_URL}/api/models").mock(return_value=Response(500))

    client = TestClient(app)
    response = client.get("/v1/models")
    assert response.status_code == 200
    ids = [model["id"] for model in response.json()["data"]]
    assert ids == FALLBACK_MODELS

    status = client.get("/admin/status").json()
    assert sum(c["failure_count"] for c in status["credentials"]) == 1


@respx.mock
def test_chat_completion_non_streaming(app):
    new_chat, completions = mock_chat()

    client = TestClient(app)
    response = client.post(
        "/v1/chat/completions",
        json={
            "model": "qwen3-max",
            "stream": False,
            "messages": [{"role": "user", "content": "say hello"}],
        },
    )

    assert response.status_code == 200
    data = response.json()
    assert data["object"] == "chat.completion"
    assert data["model"] == "qwen3-max"
    assert data["choices"][0]["message"]["content"] == "hello"
    assert data["choices"][0]["finish_reason"] == "stop"

    assert json.loads(new_chat.calls[0].request.content)["models"] == ["qwen3-max"]
    payload = json.loads(completions.calls[0].request.content)
    assert payload["stream"] is True
    assert payload["chat_id"] == "chat-1"


@respx.mock
def test_chat_completion_streaming(app):
    mock_chat()

    client = TestClient(app)
    response = client.post(
        "/v1/chat/completions",
        json={
            "model": "qwen3-max",
            "messages": [{"role": "user", "content": "say hello"}],
        },
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache, no-transform"
    records = [r for r in response.text.split("\n\n") if r]
    assert records[-1] == "data: [DONE]"
    assert response.text.count("data: [DONE]") == 1

    chunks = [json.loads(r[len("data: ") :]) for r in records[:-1]]
    assert "".join(c["choices"][0]["delta"]["content"] for c in chunks) == "hello"
    assert chunks[-1]["choices"][0]["finish_reason"] == "stop"
    assert len({c["id"] for c in chunks}) == 1


@respx.mock
def test_chat_completion_fails_over_to_second_credential(app):
    respx.post(f"{BASE_URL}/api/v2/chats/new").mock(
        side_effect=[
            Response(500, text="busy"),
            Response(200, json={"success": True, "data": {"id": "chat-2"}}),
        ]
    )
    respx.post(f"{BASE_URL}/api/v2/chat/completions").mock(
        return_value=Response(200, content=HELLO_STREAM)
    )

    client = TestClient(app)
    response = client.post(
        "/v1/chat/completions",
        json={"stream": False, "messages": [{"role": "user", "content": "hi"}]},
    )

    assert response.status_code == 200
    assert response.json()["choices"][0]["message"]["content"] == "hello"
    status = client.get("/admin/status").json()
    assert sorted(c["failure_count"] for c in status["credentials"]) == [0, 1]


def test_chat_completion_rejects_invalid_json(app):
    client = TestClient(app)
    response = client.post(
        "/v1/chat/completions",
        content=b"{not json",
        headers={"content-type": "application/json"},
    )
    assert response.status_code == 400
    assert response.json()["error"]["type"] == "invalid_request_error"


def test_chat_completion_rejects_missing_messages(app):
    client = TestClient(app)
    response = client.post("/v1/chat/completions", json={"model": "qwen3-max"})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == 400


def test_chat_completion_requires_api_key(app_factory):
    client = TestClient(app_factory(api_key="sk-test"))
    body = {"messages": [{"role": "user", "content": "hi"}]}

    response = client.post("/v1/chat/completions", json=body)
    assert response.status_code == 401
    assert response.json()["error"]["message"] == "Invalid API key"

    response = client.post(
        "/v1/chat/completions",
        json=body,
        headers={"Authorization": "Bearer wrong"},
    )
    assert response.status_code == 401


@respx.mock
def test_chat_completion_accepts_api_key_in_query(app_factory):
    mock_chat()
    client = TestClient(app_factory(api_key="sk-test"))

    response = client.post(
        "/v1/chat/completions?key=sk-test",
        json={"stream": False, "messages": [{"role": "user", "content": "hi"}]},
    )
    assert response.status_code == 200


@respx.mock
def test_chat_completion_client_mode_uses_caller_credential(app_factory):
    new_chat, completions = mock_chat()
    client = TestClient(app_factory(secrets=[], server_mode=False))

    response = client.post(
        "/v1/chat/completions",
        json={"stream": False, "messages": [{"role": "user", "content": "hi"}]},
        headers={"Authorization": "Bearer caller-token;session=1; other=2"},
    )

    assert response.status_code == 200
    request = new_chat.calls[0].request
    assert request.headers["authorization"] == "Bearer caller-token"
    assert request.headers["cookie"] == "session=1; other=2"
    assert completions.called


def test_chat_completion_client_mode_requires_token(app_factory):
    client = TestClient(app_factory(secrets=[], server_mode=False))
    response = client.post(
        "/v1/chat/completions",
        json={"messages": [{"role": "user", "content": "hi"}]},
    )
    assert response.status_code == 401
    assert "token;secret" in response.json()["error"]["message"]


def test_refresh_token_renews_expiring_credentials(app_factory):
    app = app_factory(expires_in=3600)
    exchanger = app.state.credential_pool._exchanger

    client = TestClient(app)
    response = client.post("/refresh-token")
    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["renewed"] == 2
    assert data["available"] == 2
    assert exchanger.calls == 2

    response = client.post("/refresh-token")
    assert response.json()["renewed"] == 0
