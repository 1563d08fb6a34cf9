import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import AsyncGenerator, AsyncIterator, Optional, Protocol

import httpx
from starlette.responses import JSONResponse, Response, StreamingResponse

from chat_gateway.config import Config
from chat_gateway.errors import (
    AuthenticationError,
    CredentialUnavailableError,
    GatewayError,
    TokenExpiredError,
    UpstreamError,
    ValidationError,
)
from chat_gateway.models import ChatRequest, Credential
from chat_gateway.stream import (
    DONE_RECORD,
    KEEPALIVE_RECORD,
    aggregate_stream,
    build_completion,
    encode_error,
    new_response_id,
    reframe,
)
from chat_gateway.tokens import ensure_token_fresh, token_expiry
from chat_gateway.translator import plan_request, translate, validate_payload
from chat_gateway.upstream import AttachmentUploader, UpstreamClient

logger = logging.getLogger(__name__)

OUTCOME_OK = "ok"
OUTCOME_RETRY = "retry"
OUTCOME_FAIL = "fail"

STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "X-Accel-Buffering": "no",
}


class CredentialSource(Protocol):
    async def select_available(
        self, exclude_id: Optional[str] = None
    ) -> Optional[Credential]: ...

    async def report_failure(
        self, credential: Credential, cause: object = None
    ) -> None: ...

    async def report_success(self, credential: Credential) -> None: ...

    async def renew(self, credential: Credential) -> bool: ...


@dataclass
class AttemptResult:
    """Outcome of one select-open-translate-dispatch attempt."""

    outcome: str
    response: Optional[httpx.Response] = None
    error: Optional[GatewayError] = None

    @classmethod
    def ok(cls, response: httpx.Response) -> "AttemptResult":
        return cls(outcome=OUTCOME_OK, response=response)

    @classmethod
    def retry(cls, error: GatewayError) -> "AttemptResult":
        return cls(outcome=OUTCOME_RETRY, error=error)

    @classmethod
    def fail(cls, error: GatewayError) -> "AttemptResult":
        return cls(outcome=OUTCOME_FAIL, error=error)


def error_response(error: GatewayError) -> JSONResponse:
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


async def handle_chat_completion(
    chat_request: ChatRequest,
    pool: CredentialSource,
    client: UpstreamClient,
    config: Config,
    uploader: AttachmentUploader,
    caller: Optional[Credential] = None,
) -> Response:
    """
    Serve one chat completion against the upstream.

    Flow:
    1. Pick a credential: the caller's own in client mode, else the pool's
    2. Run one attempt (freshness check, open session, translate, validate,
       dispatch)
    3. On an upstream failure, retry up to config.max_retries more times with
       a fresh session, excluding the credential that just failed
    4. Stream the re-framed upstream body, or aggregate it into one
       chat.completion object

    Validation errors return 400 without touching credential health. No
    usable credential returns 401. Exhausted retries return 502.
    """
    request_id = str(uuid.uuid4())
    tracked = pool if caller is None else None
    total_attempts = config.max_retries + 1
    exclude_id: Optional[str] = None
    last_error: Optional[GatewayError] = None

    for attempt in range(1, total_attempts + 1):
        credential = caller or await pool.select_available(exclude_id)
        if credential is None:
            if last_error is not None:
                break
            logger.error("No available credentials (request=%s)", request_id)
            return error_response(
                CredentialUnavailableError("No available credentials")
            )

        result = await _run_attempt(
            chat_request, credential, tracked, client, config, uploader
        )
        if result.outcome == OUTCOME_FAIL and result.error is not None:
            return error_response(result.error)

        if result.outcome == OUTCOME_OK and result.response is not None:
            if chat_request.stream:
                return _streaming_response(
                    result.response,
                    chat_request.model,
                    credential,
                    tracked,
                    config,
                    request_id,
                )
            try:
                content = await _collect(result.response)
            except httpx.HTTPError as exc:
                last_error = UpstreamError(f"Reading upstream response failed: {exc}")
                if tracked is not None:
                    await tracked.report_failure(credential, last_error.message)
            else:
                return JSONResponse(
                    content=build_completion(content, chat_request.model),
                    headers={"X-Request-Id": request_id},
                )
        else:
            last_error = result.error

        logger.warning(
            "Attempt %d/%d failed (request=%s, credential=%s): %s",
            attempt,
            total_attempts,
            request_id,
            credential.id,
            last_error.message if last_error else "unknown error",
        )
        exclude_id = credential.id

    message = last_error.message if last_error else "unknown error"
    upstream_status = (
        last_error.upstream_status if isinstance(last_error, UpstreamError) else None
    )
    return error_response(
        UpstreamError(
            f"Upstream request failed after {total_attempts} attempts: {message}",
            upstream_status=upstream_status,
        )
    )


async def _run_attempt(
    chat_request: ChatRequest,
    credential: Credential,
    pool: Optional[CredentialSource],
    client: UpstreamClient,
    config: Config,
    uploader: AttachmentUploader,
) -> AttemptResult:
    try:
        await _ensure_fresh(credential, pool)
    except TokenExpiredError as exc:
        return AttemptResult.retry(exc)
    except AuthenticationError as exc:
        return AttemptResult.fail(exc)

    token = credential.bearer_token or ""
    plan = plan_request(chat_request, config.vision_fallback_model)
    try:
        session = await client.open_session(
            token, credential.secret, plan.model, plan.mode, credential.id
        )
        payload = await translate(chat_request, plan, session, credential, uploader)
        if not chat_request.stream:
            # Aggregation always reads the upstream as a stream.
            payload["stream"] = True
            payload["incremental_output"] = True
        validate_payload(payload)
        if plan.used_fallback:
            logger.info(
                "Dispatching with vision fallback model %s (credential=%s)",
                plan.model,
                credential.id,
            )
        response = await client.dispatch(
            session,
            payload,
            token,
            credential.secret,
            browser_like=plan.used_fallback,
        )
    except ValidationError as exc:
        logger.warning("Request rejected before dispatch: %s", exc.message)
        return AttemptResult.fail(exc)
    except UpstreamError as exc:
        if pool is not None:
            await pool.report_failure(credential, exc.message)
        return AttemptResult.retry(exc)

    if pool is not None:
        await pool.report_success(credential)
    return AttemptResult.ok(response)


async def _ensure_fresh(
    credential: Credential, pool: Optional[CredentialSource]
) -> None:
    if pool is None:
        # Caller tokens are opaque unless they carry a readable expiry.
        expiry = token_expiry(credential.bearer_token)
        if expiry is not None and expiry < time.time():
            raise AuthenticationError("Caller bearer token is expired")
        return

    try:
        ensure_token_fresh(credential.bearer_token)
        return
    except TokenExpiredError:
        logger.info("%s bearer token expired, renewing", credential.id)

    if not await pool.renew(credential):
        raise TokenExpiredError(f"{credential.id} bearer token could not be renewed")


async def _collect(response: httpx.Response) -> str:
    try:
        return await aggregate_stream(response.aiter_bytes())
    finally:
        await response.aclose()


def _streaming_response(
    response: httpx.Response,
    model: str,
    credential: Credential,
    pool: Optional[CredentialSource],
    config: Config,
    request_id: str,
) -> StreamingResponse:
    """Handle streaming (SSE) responses."""
    response_id = new_response_id()

    async def stream_generator():
        records = with_keepalive(
            reframe(response.aiter_bytes(), response_id, model),
            config.keepalive_interval_seconds,
        )
        try:
            async for record in records:
                yield record
        except (httpx.HTTPError, UpstreamError) as exc:
            logger.error(
                "Upstream stream failed mid-response (request=%s, credential=%s): %s",
                request_id,
                credential.id,
                exc,
            )
            if pool is not None:
                await pool.report_failure(credential, str(exc))
            yield encode_error(str(exc) or "Upstream stream failed", response_id, model)
            yield DONE_RECORD
        finally:
            await records.aclose()
            await response.aclose()

    return StreamingResponse(
        stream_generator(),
        media_type="text/event-stream",
        headers={**STREAM_HEADERS, "X-Request-Id": request_id},
    )


async def _next_record(records: AsyncIterator[str]) -> str:
    return await records.__anext__()


async def with_keepalive(
    records: AsyncIterator[str], interval_seconds: float
) -> AsyncGenerator[str, None]:
    """Interleave keepalive comments whenever ``records`` stays quiet too long.

    The pending read is cancelled as soon as this generator is closed, so no
    keepalive is produced after the response finishes.
    """
    pending: Optional["asyncio.Task[str]"] = None
    try:
        while True:
            if pending is None:
                pending = asyncio.create_task(_next_record(records))
            done, _ = await asyncio.wait({pending}, timeout=interval_seconds)
            if not done:
                yield KEEPALIVE_RECORD
                continue

            task, pending = pending, None
            try:
                record = task.result()
            except StopAsyncIteration:
                return
            yield record
    finally:
        if pending is not None:
            pending.cancel()
