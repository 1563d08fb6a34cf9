"""FastAPI application for the pooled chat gateway."""

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, List, Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request
from starlette.responses import JSONResponse, Response

from chat_gateway.admin import admin_router
from chat_gateway.auth import authenticate, check_api_key
from chat_gateway.config import load_config
from chat_gateway.credential_pool import CredentialPool
from chat_gateway.errors import (
    CredentialUnavailableError,
    GatewayError,
    UpstreamError,
    ValidationError,
)
from chat_gateway.gateway import error_response, handle_chat_completion
from chat_gateway.models import ChatRequest, Credential
from chat_gateway.tokens import format_remaining, token_remaining
from chat_gateway.translator import expand_model_variants
from chat_gateway.upstream import PassthroughUploader, UpstreamClient

logger = logging.getLogger(__name__)

SERVICE_NAME = "Chat Gateway"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle: startup and shutdown."""
    config = load_config()

    logging.basicConfig(level=getattr(logging, config.log_level.upper(), logging.INFO))

    http_client = httpx.AsyncClient(
        base_url=config.upstream_base_url,
        timeout=httpx.Timeout(config.request_timeout_seconds),
        limits=httpx.Limits(max_keepalive_connections=20, max_connections=100),
    )
    upstream_client = UpstreamClient(http_client, config)
    credential_pool = CredentialPool(upstream_client)
    await credential_pool.initialize(config.secrets)

    app.state.config = config
    app.state.http_client = http_client
    app.state.upstream_client = upstream_client
    app.state.credential_pool = credential_pool
    app.state.uploader = PassthroughUploader()

    renewal_task: Optional[asyncio.Task] = None
    if config.auto_refresh_token and config.secrets:
        renewal_task = asyncio.create_task(
            credential_pool.run_renewal_loop(
                config.token_refresh_interval_hours * 3600
            )
        )

    logger.info(
        "Chat gateway started with %d credentials (%s mode)",
        len(config.secrets),
        "server" if config.server_mode else "client",
    )

    yield

    if renewal_task is not None:
        renewal_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await renewal_task
    await http_client.aclose()
    logger.info("Chat gateway stopped")


app = FastAPI(title="Chat Gateway", lifespan=lifespan)

app.include_router(admin_router)


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    return error_response(exc)


@app.get("/")
async def root(request: Request) -> Dict[str, object]:
    config = request.app.state.config
    status = await request.app.state.credential_pool.get_status()
    return {
        "service": SERVICE_NAME,
        "status": "running",
        "auth_mode": "server" if config.server_mode else "client",
        "api_key_required": bool(config.api_key),
        "credentials_available": status["available"],
        "total_credentials": status["total"],
        "endpoints": ["/v1/models", "/v1/chat/completions"],
    }


@app.get("/health")
async def health_check(request: Request) -> Dict[str, object]:
    """Health check endpoint with credential pool status."""
    config = request.app.state.config
    pool = request.app.state.credential_pool
    status = await pool.get_status()
    remaining = _soonest_token_remaining(pool.pool.credentials)
    return {
        "status": "healthy" if status["available"] else "degraded",
        "timestamp": datetime.now(tz=timezone.utc).isoformat(),
        "config": {
            "api_key_enabled": bool(config.api_key),
            "server_mode": config.server_mode,
            "auto_refresh_token": config.auto_refresh_token,
        },
        "token": {
            "valid": remaining > 0,
            "remaining_seconds": int(remaining),
            "formatted": format_remaining(remaining),
        },
        "pool": {
            key: status[key]
            for key in ("total", "available", "healthy", "degraded", "down")
        },
    }


def _soonest_token_remaining(credentials: List[Credential]) -> float:
    """Validity left on the token that expires first, among credentials with one."""
    remaining = [
        token_remaining(c.bearer_token) for c in credentials if c.bearer_token
    ]
    return min(remaining) if remaining else 0.0


@app.get("/v1/models")
async def list_models(request: Request) -> Dict[str, object]:
    config = request.app.state.config
    pool = request.app.state.credential_pool
    caller = authenticate(request, config)

    credential = caller or await pool.select_available()
    if credential is None or not credential.bearer_token:
        raise CredentialUnavailableError("No available credentials")

    try:
        models = await request.app.state.upstream_client.list_models(
            credential.bearer_token, credential.secret
        )
    except UpstreamError as exc:
        logger.warning("Listing upstream models failed: %s", exc.message)
        if caller is None:
            await pool.report_failure(credential, exc.message)
        models = []
    else:
        if caller is None:
            await pool.report_success(credential)

    return {"object": "list", "data": expand_model_variants(models)}


@app.post("/v1/chat/completions")
async def chat_completions(request: Request) -> Response:
    config = request.app.state.config
    caller = authenticate(request, config)
    try:
        body = await request.json()
    except ValueError as exc:
        raise ValidationError("Invalid request: body is not valid JSON") from exc

    chat_request = ChatRequest.from_dict(body, default_model=config.default_model)
    return await handle_chat_completion(
        chat_request,
        pool=request.app.state.credential_pool,
        client=request.app.state.upstream_client,
        config=config,
        uploader=request.app.state.uploader,
        caller=caller,
    )


@app.post("/refresh-token")
async def refresh_token(request: Request) -> Dict[str, object]:
    """Renew every pooled bearer token that is expired or close to expiry."""
    check_api_key(request, request.app.state.config)
    pool = request.app.state.credential_pool
    renewed = await pool.renew_expiring()
    status = await pool.get_status()
    return {
        "success": True,
        "renewed": renewed,
        "timestamp": datetime.now(tz=timezone.utc).isoformat(),
        "available": status["available"],
        "total": status["total"],
    }


def run() -> None:
    config = load_config()
    uvicorn.run(
        "chat_gateway.main:app",
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
    )
