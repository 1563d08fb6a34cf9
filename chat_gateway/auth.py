"""Caller authentication for server-side and client-side modes."""

import hmac
import logging
from typing import Optional

from starlette.requests import Request

from chat_gateway.config import Config
from chat_gateway.errors import AuthenticationError
from chat_gateway.models import Credential

logger = logging.getLogger(__name__)

CALLER_CREDENTIAL_ID = "caller"


def _bearer(request: Request) -> str:
    authorization = request.headers.get("authorization", "")
    if authorization[:7].lower() != "bearer ":
        return ""
    return authorization[7:].strip()


def presented_api_key(request: Request) -> str:
    """The API key from the bearer header, ``X-API-Key`` or the query string."""
    candidate = (
        _bearer(request)
        or request.headers.get("x-api-key", "")
        or request.query_params.get("api_key", "")
        or request.query_params.get("key", "")
    )
    return candidate.strip()


def _matches(candidate: str, expected: str) -> bool:
    return hmac.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8"))


def check_api_key(request: Request, config: Config) -> None:
    """Raise AuthenticationError unless the configured API key was presented.

    With no API key configured the gateway runs in open access mode.
    """
    if not config.api_key:
        return
    candidate = presented_api_key(request)
    if not candidate or not _matches(candidate, config.api_key):
        raise AuthenticationError("Invalid API key")


def authenticate(request: Request, config: Config) -> Optional[Credential]:
    """Resolve the credential a request should run with.

    Server mode only checks the API key and returns None so the pool
    supplies a credential. Client mode expects
    ``Authorization: Bearer [api_key;]token;secret`` and returns the caller's
    own credential.

    Raises:
        AuthenticationError: If the API key or the caller token is missing or
            wrong
    """
    if config.server_mode:
        check_api_key(request, config)
        return None

    value = _bearer(request)
    if not value:
        expected = "token;secret"
        if config.api_key:
            expected = f"api_key;{expected}"
        raise AuthenticationError(
            f"No authentication token provided, expected Bearer {expected}"
        )

    parts = value.split(";")
    if config.api_key:
        if not _matches(parts[0].strip(), config.api_key):
            raise AuthenticationError("Invalid API key")
        parts = parts[1:]

    token = parts[0].strip() if parts else ""
    if not token:
        raise AuthenticationError("Upstream token required")
    # Cookie strings may themselves contain semicolons.
    secret = ";".join(parts[1:]).strip()

    logger.debug("Authenticated caller-supplied credential")
    credential = Credential(id=CALLER_CREDENTIAL_ID, secret=secret)
    credential.update_token(token)
    return credential
