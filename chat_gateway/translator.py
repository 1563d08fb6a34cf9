"""Translate unified chat requests into upstream payloads.

Translation happens in two steps. ``plan_request`` decides the effective
upstream model and conversation mode; the orchestrator needs both to open
an upstream session. ``translate`` then builds the payload for that
session, resolving image parts into stored-file references.
"""

import hashlib
import logging
import math
import re
import time
import uuid
from dataclasses import dataclass
from typing import Dict, List, Optional

from chat_gateway.errors import UpstreamError, ValidationError
from chat_gateway.models import (
    MODE_IMAGE_EDIT,
    MODE_TEXT,
    MODE_TEXT_TO_IMAGE,
    MODE_TEXT_TO_VIDEO,
    MODE_VISION,
    ChatMessage,
    ChatRequest,
    Credential,
    UpstreamSession,
    upstream_chat_type,
)
from chat_gateway.upstream import (
    AttachmentUploader,
    build_file_reference,
    decode_data_url,
    guess_image_mime,
)

logger = logging.getLogger(__name__)

MODEL_SUFFIX_PATTERN = re.compile(r"-(search|thinking|image|image_edit|video)$")
MARKDOWN_IMAGE_PATTERN = re.compile(r"!\[.*?\]\((.*?)\)")

MODE_SUFFIXES = (
    ("-image_edit", MODE_IMAGE_EDIT),
    ("-image", MODE_TEXT_TO_IMAGE),
    ("-video", MODE_TEXT_TO_VIDEO),
)

SIZE_TO_ASPECT_RATIO = {
    "256x256": "1:1",
    "512x512": "1:1",
    "1024x1024": "1:1",
    "1792x1024": "16:9",
    "1024x1792": "9:16",
    "2048x2048": "1:1",
    "1152x768": "3:2",
    "768x1152": "2:3",
}

DEFAULT_IMAGE_SIZE = "1024x1024"
DEFAULT_IMAGE_PROMPT = "Generate an image"
MAX_EDIT_IMAGES = 3

FALLBACK_MODELS = [
    "qwen3-max",
    "qwen3-max-thinking",
    "qwen3-max-image",
    "qwen3-max-image_edit",
    "qwen3-vl-plus",
]


@dataclass
class TranslationPlan:
    """Effective upstream model and mode for one inbound request.

    ``search`` records a ``-search`` suffix; the upstream payload has no
    switch for it, so it only affects the model name that gets stripped.
    ``used_fallback`` makes dispatch send the full browser header set.
    """

    model: str
    mode: str
    stream: bool
    used_fallback: bool = False
    thinking: bool = False
    search: bool = False


def strip_model_suffix(model: str) -> str:
    return MODEL_SUFFIX_PATTERN.sub("", model)


def mode_from_suffix(model: str) -> Optional[str]:
    for suffix, mode in MODE_SUFFIXES:
        if model.endswith(suffix):
            return mode
    return None


def plan_request(
    request: ChatRequest, vision_fallback_model: str = ""
) -> TranslationPlan:
    """Resolve mode and effective model from the model name and content."""
    requested_mode = mode_from_suffix(request.model)
    has_images = request.has_images

    if requested_mode is not None:
        mode = requested_mode
    elif has_images:
        mode = MODE_VISION
    else:
        mode = MODE_TEXT

    model = strip_model_suffix(request.model)
    used_fallback = False
    if has_images and requested_mode is None and vision_fallback_model:
        model = vision_fallback_model
        used_fallback = True
        logger.info("Image detected, switched to vision fallback model %s", model)

    return TranslationPlan(
        model=model,
        mode=mode,
        stream=request.stream,
        used_fallback=used_fallback,
        thinking="-thinking" in request.model,
        search="-search" in request.model,
    )


def aspect_ratio(size: Optional[str]) -> str:
    """Map an ``WxH`` image size onto the upstream aspect-ratio token."""
    size = size or DEFAULT_IMAGE_SIZE
    if size in SIZE_TO_ASPECT_RATIO:
        return SIZE_TO_ASPECT_RATIO[size]
    try:
        width, height = (int(value) for value in size.lower().split("x"))
    except ValueError:
        return "1:1"
    if width <= 0 or height <= 0:
        return "1:1"
    divisor = math.gcd(width, height)
    return f"{width // divisor}:{height // divisor}"


def extract_history_images(messages: List[ChatMessage]) -> List[str]:
    """Collect image references from earlier turns, most recent first.

    Both markdown image links in user/assistant text and image parts of
    user messages count. At most three references are returned.
    """
    images: List[str] = []
    for message in messages:
        if message.role not in ("user", "assistant"):
            continue
        images.extend(
            url for url in MARKDOWN_IMAGE_PATTERN.findall(message.text) if url
        )
        if message.role == "user":
            images.extend(message.image_urls)
    return list(reversed(images[-MAX_EDIT_IMAGES:]))


class _AttachmentResolver:
    """Resolves image URLs into file references, once per distinct image."""

    def __init__(self, uploader: AttachmentUploader, token: str):
        self._uploader = uploader
        self._token = token
        self._cache: Dict[str, Dict[str, object]] = {}

    async def resolve(self, url: str) -> Dict[str, object]:
        signature = hashlib.sha256(url.encode("utf-8")).hexdigest()
        if signature in self._cache:
            return self._cache[signature]

        inline = decode_data_url(url)
        if inline is None:
            reference = build_file_reference(url, guess_image_mime(url))
        else:
            mime_type, data = inline
            extension = mime_type.split("/")[-1] or "png"
            filename = f"{uuid.uuid4()}.{extension}"
            stored_url = await self._uploader.upload_attachment(
                data, filename, self._token
            )
            reference = build_file_reference(stored_url, mime_type, len(data))

        self._cache[signature] = reference
        return reference

    async def resolve_all(self, urls: List[str]) -> List[Dict[str, object]]:
        files = []
        for url in urls:
            try:
                files.append(await self.resolve(url))
            except UpstreamError as exc:
                logger.error("Image upload failed, skipping this image: %s", exc)
        return files


def _message_entry(
    role: str,
    content: str,
    model: str,
    chat_type: str,
    timestamp: int,
    files: Optional[List[Dict[str, object]]] = None,
    thinking: bool = False,
) -> Dict[str, object]:
    entry: Dict[str, object] = {
        "fid": str(uuid.uuid4()),
        "parentId": None,
        "childrenIds": [],
        "role": role,
        "content": content,
        "files": files or [],
        "timestamp": timestamp,
        "models": [model],
        "chat_type": chat_type,
        "feature_config": {"thinking_enabled": thinking, "output_schema": "phase"},
        "extra": {"meta": {"subChatType": chat_type}},
        "sub_chat_type": chat_type,
        "parent_id": None,
    }
    if role == "user":
        entry["user_action"] = "chat"
    return entry


def _envelope(
    plan: TranslationPlan,
    session: UpstreamSession,
    messages: List[Dict[str, object]],
    timestamp: int,
) -> Dict[str, object]:
    return {
        "stream": plan.stream,
        "incremental_output": plan.stream,
        "chat_id": session.chat_id,
        "chat_mode": "normal",
        "model": plan.model,
        "parent_id": None,
        "messages": messages,
        "timestamp": timestamp,
    }


async def translate(
    request: ChatRequest,
    plan: TranslationPlan,
    session: UpstreamSession,
    credential: Credential,
    uploader: AttachmentUploader,
) -> Dict[str, object]:
    """Build the upstream payload for ``session``.

    Raises:
        ValidationError: If the request lacks the user message a mode needs
    """
    resolver = _AttachmentResolver(uploader, credential.bearer_token or "")
    timestamp = int(time.time())

    if plan.mode == MODE_IMAGE_EDIT:
        return await _translate_image_edit(request, plan, session, resolver, timestamp)
    if plan.mode == MODE_TEXT_TO_IMAGE:
        return _translate_text_to_image(request, plan, session, timestamp)

    chat_type = upstream_chat_type(plan.mode)
    messages = []
    for message in request.messages:
        files: List[Dict[str, object]] = []
        if message.role == "user" and message.has_images:
            files = await resolver.resolve_all(message.image_urls)
        if isinstance(message.content, str):
            content = message.content
        else:
            content = " ".join(p.text for p in message.content if p.type == "text")
        messages.append(
            _message_entry(
                message.role,
                content,
                plan.model,
                chat_type,
                timestamp,
                files=files,
                thinking=plan.thinking,
            )
        )
    return _envelope(plan, session, messages, timestamp)


def _translate_text_to_image(
    request: ChatRequest,
    plan: TranslationPlan,
    session: UpstreamSession,
    timestamp: int,
) -> Dict[str, object]:
    last_user = request.last_user_message()
    if last_user is None:
        raise ValidationError("User message for image generation not found.")

    message = _message_entry(
        "user",
        last_user.text or DEFAULT_IMAGE_PROMPT,
        plan.model,
        MODE_TEXT_TO_IMAGE,
        timestamp,
    )
    payload = _envelope(plan, session, [message], timestamp)
    payload["size"] = aspect_ratio(request.size)
    return payload


async def _translate_image_edit(
    request: ChatRequest,
    plan: TranslationPlan,
    session: UpstreamSession,
    resolver: _AttachmentResolver,
    timestamp: int,
) -> Dict[str, object]:
    last_user = request.last_user_message()
    if last_user is None:
        raise ValidationError("User message for image editing not found.")

    earlier = request.messages[: _last_index(request.messages, last_user)]
    history = extract_history_images(earlier)
    images = (last_user.image_urls + history)[:MAX_EDIT_IMAGES]
    files = await resolver.resolve_all(images)

    chat_type = MODE_IMAGE_EDIT
    if not files:
        if images:
            logger.error("All image uploads failed, switching to text-to-image mode")
        chat_type = MODE_TEXT_TO_IMAGE

    message = _message_entry(
        "user",
        last_user.text or DEFAULT_IMAGE_PROMPT,
        plan.model,
        chat_type,
        timestamp,
        files=files,
    )
    return _envelope(plan, session, [message], timestamp)


def _last_index(messages: List[ChatMessage], target: ChatMessage) -> int:
    for index in range(len(messages) - 1, -1, -1):
        if messages[index] is target:
            return index
    return len(messages)


def validate_payload(payload: Dict[str, object]) -> None:
    """Structural check run on every payload before dispatch.

    Raises:
        ValidationError: If a required field is missing
    """
    if not payload.get("chat_id"):
        raise ValidationError("Request format transformation failed: missing chat_id")
    messages = payload.get("messages")
    if not isinstance(messages, list) or not messages:
        raise ValidationError("Request format transformation failed: no messages")

    for index, message in enumerate(messages):
        if not isinstance(message, dict):
            raise ValidationError(
                f"Request format transformation failed: messages[{index}]"
            )
        if not message.get("fid") or not message.get("role"):
            raise ValidationError(
                f"Request format transformation failed: messages[{index}] "
                "lacks fid or role"
            )
        if message.get("content") is None:
            raise ValidationError(
                f"Request format transformation failed: messages[{index}] "
                "lacks content"
            )
        if message["role"] == "user":
            if not (
                message.get("user_action")
                and message.get("timestamp")
                and message.get("models")
            ):
                raise ValidationError(
                    f"Request format transformation failed: messages[{index}] "
                    "lacks user_action, timestamp or models"
                )


def expand_model_variants(models: List[Dict[str, object]]) -> List[Dict[str, object]]:
    """Advertise suffixed variants for the capabilities each model reports."""
    expanded: List[Dict[str, object]] = []
    seen = set()

    def add(model: Dict[str, object], model_id: str) -> None:
        if model_id in seen:
            return
        seen.add(model_id)
        expanded.append({**model, "id": model_id})

    for model in models:
        model_id = model.get("id")
        if not isinstance(model_id, str):
            continue
        info = model.get("info")
        meta = info.get("meta") if isinstance(info, dict) else None
        meta = meta if isinstance(meta, dict) else {}
        abilities = meta.get("abilities")
        abilities = abilities if isinstance(abilities, dict) else {}
        chat_types = meta.get("chat_type")
        chat_types = chat_types if isinstance(chat_types, list) else []

        add(model, model_id)
        if abilities.get("thinking"):
            add(model, f"{model_id}-thinking")
        if "search" in chat_types:
            add(model, f"{model_id}-search")
        if MODE_TEXT_TO_IMAGE in chat_types:
            add(model, f"{model_id}-image")
            add(model, f"{model_id}-image_edit")
        if MODE_IMAGE_EDIT in chat_types:
            add(model, f"{model_id}-image_edit")

    if not expanded:
        return [{"id": model_id, "object": "model"} for model_id in FALLBACK_MODELS]
    return expanded
