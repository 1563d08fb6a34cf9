"""httpx client for the upstream chat service."""

import base64
import binascii
import logging
import re
import time
import uuid
from typing import Dict, List, Optional, Protocol, Tuple, cast

import httpx

from chat_gateway.config import Config
from chat_gateway.errors import UpstreamError
from chat_gateway.models import UpstreamSession, upstream_chat_type

logger = logging.getLogger(__name__)

AUTH_PATH = "/api/v1/auths/"
NEW_CHAT_PATH = "/api/v2/chats/new"
COMPLETIONS_PATH = "/api/v2/chat/completions"
MODELS_PATH = "/api/models"

USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

BROWSER_HEADERS = {
    "sec-ch-ua": '"Google Chrome";v="120", "Chromium";v="120", "Not=A?Brand";v="24"',
    "sec-ch-ua-mobile": "?0",
    "sec-ch-ua-platform": '"macOS"',
    "sec-fetch-dest": "empty",
    "sec-fetch-mode": "cors",
    "sec-fetch-site": "same-origin",
}

DATA_URL_PATTERN = re.compile(r"^data:([^;,]+)?;base64,(.*)$", re.DOTALL)
URL_EXTENSION_PATTERN = re.compile(
    r"\.(jpg|jpeg|png|gif|webp|bmp)(\?|$)", re.IGNORECASE
)


def clean_secret(secret: str) -> str:
    """Strip characters that are illegal in a Cookie header."""
    return re.sub(r"[\r\n]", "", secret or "").strip()


def build_upstream_headers(
    token: Optional[str],
    secret: Optional[str],
    browser_like: bool = False,
) -> Dict[str, str]:
    headers = {
        "Content-Type": "application/json",
        "User-Agent": USER_AGENT,
        "accept": "application/json, text/plain, */*",
        "accept-language": "en-US,en;q=0.9",
        "cache-control": "no-cache",
        "source": "web",
        "x-request-id": str(uuid.uuid4()),
        "referer": "https://chat.qwen.ai/",
    }
    if token:
        headers["Authorization"] = f"Bearer {token}"
    cookie = clean_secret(secret or "")
    if cookie:
        headers["Cookie"] = cookie
    if browser_like:
        headers.update(BROWSER_HEADERS)
    return headers


def _body_preview(response: httpx.Response) -> str:
    try:
        return response.text[:500]
    except (httpx.ResponseNotRead, UnicodeDecodeError):
        return ""


class UpstreamClient:
    """Token exchange, session opening and dispatch against the upstream.

    The client never retries; callers decide what a failure means for the
    credential that was used.
    """

    def __init__(self, http_client: httpx.AsyncClient, config: Config):
        self._http = http_client
        self._timeout = httpx.Timeout(config.request_timeout_seconds)

    async def exchange_token(self, secret: str) -> str:
        if not clean_secret(secret):
            raise UpstreamError("Secret is empty")

        headers = build_upstream_headers(None, secret, browser_like=True)
        headers["accept"] = "*/*"
        response = await self._request("GET", AUTH_PATH, headers=headers)
        if response.status_code != 200:
            raise UpstreamError(
                f"Token exchange failed: HTTP {response.status_code}",
                upstream_status=response.status_code,
                body=_body_preview(response),
            )

        data = self._json(response)
        nested = data.get("data")
        token = (
            data.get("token")
            or data.get("access_token")
            or (nested.get("token") if isinstance(nested, dict) else None)
        )
        if not isinstance(token, str) or not token:
            raise UpstreamError("Token not found in exchange response")
        return token

    async def open_session(
        self,
        token: str,
        secret: str,
        model: str,
        mode: str,
        credential_id: str = "",
    ) -> UpstreamSession:
        chat_type = upstream_chat_type(mode)
        logger.info(
            "Opening upstream session (model=%s, chat_type=%s)", model, chat_type
        )
        response = await self._request(
            "POST",
            NEW_CHAT_PATH,
            headers=build_upstream_headers(token, secret),
            json={
                "title": "New Chat",
                "models": [model],
                "chat_mode": "normal",
                "chat_type": chat_type,
                "timestamp": int(time.time() * 1000),
            },
        )
        if response.status_code >= 400:
            raise UpstreamError(
                f"Opening session failed: HTTP {response.status_code}",
                upstream_status=response.status_code,
                body=_body_preview(response),
            )

        data = self._json(response).get("data")
        chat_id = data.get("id") if isinstance(data, dict) else None
        if not chat_id:
            raise UpstreamError(
                "No chat id in session response", body=_body_preview(response)
            )
        return UpstreamSession(
            chat_id=str(chat_id), mode=mode, credential_id=credential_id
        )

    async def dispatch(
        self,
        session: UpstreamSession,
        payload: Dict[str, object],
        token: str,
        secret: str,
        browser_like: bool = False,
    ) -> httpx.Response:
        """Send ``payload`` and return the still-open streaming response.

        The caller owns the returned response and must close it.
        """
        headers = build_upstream_headers(token, secret, browser_like=browser_like)
        headers["accept"] = "*/*"
        headers["x-accel-buffering"] = "no"
        request = self._http.build_request(
            "POST",
            COMPLETIONS_PATH,
            params={"chat_id": session.chat_id},
            json=payload,
            headers=headers,
            timeout=self._timeout,
        )
        try:
            response = await self._http.send(request, stream=True)
        except httpx.TimeoutException as exc:
            raise UpstreamError("Upstream dispatch timed out") from exc
        except httpx.RequestError as exc:
            raise UpstreamError(f"Upstream dispatch failed: {exc}") from exc

        if response.status_code >= 400:
            try:
                await response.aread()
                body = _body_preview(response)
            except httpx.HTTPError:
                body = ""
            finally:
                await response.aclose()
            raise UpstreamError(
                f"Upstream API returned error: {response.status_code}",
                upstream_status=response.status_code,
                body=body,
            )
        return response

    async def list_models(self, token: str, secret: str) -> List[Dict[str, object]]:
        response = await self._request(
            "GET", MODELS_PATH, headers=build_upstream_headers(token, secret)
        )
        if response.status_code >= 400:
            raise UpstreamError(
                f"Listing models failed: HTTP {response.status_code}",
                upstream_status=response.status_code,
                body=_body_preview(response),
            )
        models = self._json(response).get("data")
        if not isinstance(models, list):
            return []
        return [model for model in models if isinstance(model, dict)]

    async def _request(
        self,
        method: str,
        path: str,
        headers: Dict[str, str],
        json: Optional[Dict[str, object]] = None,
    ) -> httpx.Response:
        try:
            return await self._http.request(
                method, path, headers=headers, json=json, timeout=self._timeout
            )
        except httpx.TimeoutException as exc:
            raise UpstreamError(f"Timeout calling upstream {path}") from exc
        except httpx.RequestError as exc:
            raise UpstreamError(
                f"Request error calling upstream {path}: {exc}"
            ) from exc

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, object]:
        try:
            data = response.json()
        except ValueError as exc:
            raise UpstreamError(
                "Upstream returned a non-JSON body", body=_body_preview(response)
            ) from exc
        if not isinstance(data, dict):
            return {}
        return cast(Dict[str, object], data)


class AttachmentUploader(Protocol):
    async def upload_attachment(
        self, data: bytes, filename: str, token: str
    ) -> str: ...


class PassthroughUploader:
    """Stores attachments by re-encoding them as data URLs.

    The upstream accepts inline data URLs as file references, so no object
    store round trip is needed. Swap in another ``AttachmentUploader`` to
    push bytes to a remote bucket instead.
    """

    async def upload_attachment(self, data: bytes, filename: str, token: str) -> str:
        if not data:
            raise UpstreamError(f"Attachment {filename} is empty")
        mime_type = guess_image_mime(filename)
        encoded = base64.b64encode(data).decode("ascii")
        return f"data:{mime_type};base64,{encoded}"


def guess_image_mime(filename_or_url: str) -> str:
    match = URL_EXTENSION_PATTERN.search(filename_or_url or "")
    if not match:
        return "image/png"
    extension = match.group(1).lower()
    return f"image/{'jpeg' if extension == 'jpg' else extension}"


def decode_data_url(url: str) -> Optional[Tuple[str, bytes]]:
    """Split an inline ``data:`` URL into its MIME type and raw bytes.

    Returns None for anything that is not a data URL.

    Raises:
        UpstreamError: If the base64 payload cannot be decoded
    """
    match = DATA_URL_PATTERN.match(url or "")
    if not match:
        return None
    mime_type = match.group(1) or "image/png"
    try:
        data = base64.b64decode(match.group(2), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise UpstreamError("Inline image is not valid base64") from exc
    return mime_type, data


def build_file_reference(url: str, mime_type: str, size: int = 0) -> Dict[str, object]:
    """The stored-file descriptor the upstream expects inside ``files``."""
    extension = mime_type.split("/")[-1] or "png"
    now_ms = int(time.time() * 1000)
    filename = f"image_{now_ms}.{extension}"
    return {
        "type": "image",
        "file": {
            "created_at": now_ms,
            "data": {},
            "filename": filename,
            "hash": None,
            "id": str(uuid.uuid4()),
            "user_id": "system",
            "meta": {"name": filename, "size": size, "content_type": mime_type},
            "update_at": now_ms,
        },
        "id": str(uuid.uuid4()),
        "url": url,
        "name": filename,
        "collection_name": "",
        "progress": 0,
        "status": "uploaded",
        "greenNet": "success",
        "size": size,
        "error": "",
        "itemId": str(uuid.uuid4()),
        "file_type": mime_type,
        "showType": "image",
        "file_class": "vision",
        "uploadTaskId": str(uuid.uuid4()),
    }
