"""Data models for credentials, chat requests and stream frames."""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union
import time

from chat_gateway.errors import ValidationError
from chat_gateway.tokens import token_expiry

STATUS_HEALTHY = "healthy"
STATUS_DEGRADED = "degraded"
STATUS_DOWN = "down"

DEGRADED_THRESHOLD = 3
DOWN_THRESHOLD = 5
DEGRADED_COOLDOWN_SECONDS = 2 * 60
DOWN_COOLDOWN_SECONDS = 5 * 60

MODE_TEXT = "t2t"
MODE_VISION = "vision"
MODE_TEXT_TO_IMAGE = "t2i"
MODE_IMAGE_EDIT = "image_edit"
MODE_TEXT_TO_VIDEO = "t2v"

VALID_ROLES = frozenset({"system", "user", "assistant", "tool", "developer"})


def upstream_chat_type(mode: str) -> str:
    """Vision conversations travel as plain text with files attached."""
    if mode == MODE_VISION:
        return MODE_TEXT
    return mode


@dataclass
class Credential:
    """One upstream identity: a long-lived secret plus a short-lived token."""

    id: str
    secret: str
    bearer_token: Optional[str] = None
    token_expires_at: Optional[float] = None
    failure_count: int = 0
    next_eligible_at: Optional[float] = None
    last_used_at: Optional[float] = None
    last_error: Optional[str] = None

    def update_token(self, token: str) -> None:
        self.bearer_token = token
        self.token_expires_at = token_expiry(token)

    def has_valid_token(self, now: float) -> bool:
        if not self.bearer_token or self.token_expires_at is None:
            return False
        return self.token_expires_at >= now

    def status_at(self, now: float) -> str:
        cooling_down = self.next_eligible_at is not None and now < self.next_eligible_at
        if self.failure_count >= DOWN_THRESHOLD and cooling_down:
            return STATUS_DOWN
        if self.next_eligible_at is not None or not self.bearer_token:
            return STATUS_DEGRADED
        return STATUS_HEALTHY

    @property
    def status(self) -> str:
        return self.status_at(time.time())

    def is_available(self, now: float) -> bool:
        if self.status_at(now) == STATUS_DOWN:
            return False
        if self.next_eligible_at is not None and now < self.next_eligible_at:
            return False
        return self.has_valid_token(now)

    def secret_prefix(self) -> str:
        if len(self.secret) <= 11:
            return "***"
        return f"{self.secret[:6]}...{self.secret[-3:]}"


@dataclass
class ContentPart:
    """A typed piece of message content: text or an image reference."""

    type: str
    text: str = ""
    url: str = ""

    @property
    def is_image(self) -> bool:
        return self.type == "image"


@dataclass
class ChatMessage:
    role: str
    content: Union[str, List[ContentPart]]

    @property
    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return "".join(part.text for part in self.content if part.type == "text")

    @property
    def image_urls(self) -> List[str]:
        if isinstance(self.content, str):
            return []
        return [part.url for part in self.content if part.is_image and part.url]

    @property
    def has_images(self) -> bool:
        return bool(self.image_urls)


@dataclass
class ChatRequest:
    """The unified chat-completion request received from callers."""

    model: str
    messages: List[ChatMessage]
    stream: bool = True
    size: Optional[str] = None

    @property
    def has_images(self) -> bool:
        return any(message.has_images for message in self.messages)

    def last_user_message(self) -> Optional[ChatMessage]:
        for message in reversed(self.messages):
            if message.role == "user":
                return message
        return None

    @classmethod
    def from_dict(cls, body: object, default_model: str = "qwen-max") -> "ChatRequest":
        if not isinstance(body, dict):
            raise ValidationError("Invalid request: body must be a JSON object")
        raw_messages = body.get("messages")
        if not isinstance(raw_messages, list):
            raise ValidationError("Invalid request: messages array is required")
        if not raw_messages:
            raise ValidationError("Invalid request: messages array cannot be empty")

        messages = [
            _parse_message(raw, index) for index, raw in enumerate(raw_messages)
        ]

        model = body.get("model") or default_model
        if not isinstance(model, str):
            raise ValidationError("Invalid request: model must be a string")

        size = body.get("size")
        if size is not None and not isinstance(size, str):
            raise ValidationError("Invalid request: size must be a string")

        return cls(
            model=model,
            messages=messages,
            stream=body.get("stream") is not False,
            size=size,
        )


def _parse_message(raw: object, index: int) -> ChatMessage:
    if not isinstance(raw, dict):
        raise ValidationError(f"Invalid request: messages[{index}] must be an object")
    role = raw.get("role")
    if role not in VALID_ROLES:
        raise ValidationError(f"Invalid request: messages[{index}] has invalid role")

    content = raw.get("content")
    if content is None:
        return ChatMessage(role=role, content="")
    if isinstance(content, str):
        return ChatMessage(role=role, content=content)
    if not isinstance(content, list):
        raise ValidationError(
            f"Invalid request: messages[{index}].content must be a string or a list"
        )

    parts: List[ContentPart] = []
    for item in content:
        part = _parse_part(item)
        if part is not None:
            parts.append(part)
    return ChatMessage(role=role, content=parts)


def _parse_part(item: object) -> Optional[ContentPart]:
    if isinstance(item, str):
        return ContentPart(type="text", text=item)
    if not isinstance(item, dict):
        return None

    part_type = item.get("type")
    if part_type == "text":
        text = item.get("text") or item.get("content") or ""
        return ContentPart(type="text", text=str(text))
    if part_type == "image_url":
        image_url = item.get("image_url")
        if isinstance(image_url, dict):
            image_url = image_url.get("url")
        if isinstance(image_url, str) and image_url:
            return ContentPart(type="image", url=image_url)
        return None
    if part_type == "image":
        image = item.get("image")
        if isinstance(image, str) and image:
            return ContentPart(type="image", url=image)
    return None


@dataclass
class UpstreamSession:
    """A conversation context opened upstream for exactly one credential."""

    chat_id: str
    mode: str
    credential_id: str


@dataclass
class StreamFrame:
    """One unit of outward streaming content."""

    delta_text: str = ""
    is_final: bool = False


@dataclass
class PoolState:
    """Represents the state of the entire credential pool."""

    credentials: List[Credential] = field(default_factory=list)
    cursor: int = 0
    initialized: bool = False

    def find(self, credential_id: str) -> Optional[Credential]:
        for credential in self.credentials:
            if credential.id == credential_id:
                return credential
        return None

    def counts(self, now: float) -> Dict[str, int]:
        counts = {STATUS_HEALTHY: 0, STATUS_DEGRADED: 0, STATUS_DOWN: 0}
        for credential in self.credentials:
            counts[credential.status_at(now)] += 1
        return counts
