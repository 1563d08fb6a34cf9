"""Re-frame the upstream event stream into outward chat-completion chunks.

The upstream sends newline or blank-line delimited records, mostly
``data: <json>`` lines with the odd plain-text line mixed in. A
``StreamTransformer`` owns one response: it buffers partial records,
decodes complete ones into ``StreamFrame`` objects and stops for good once
it sees the ``[DONE]`` sentinel, a finish marker or an upstream error.
"""

import json
import logging
import time
import uuid
from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator, Dict, List, Optional, Set, Union

from chat_gateway.errors import StreamCorruptionError
from chat_gateway.models import MODE_IMAGE_EDIT, MODE_TEXT_TO_IMAGE, StreamFrame

logger = logging.getLogger(__name__)

MAX_BUFFER_SIZE = 100000
DONE_SENTINEL = b"[DONE]"
DONE_RECORD = "data: [DONE]\n\n"
KEEPALIVE_RECORD = ": keepalive\n\n"
IMAGE_CDN_HOST = "cdn.qwenlm.ai"


@dataclass
class ErrorRecord:
    """The upstream reported a failure in-band (``success: false``)."""

    message: str


@dataclass
class DeltaRecord:
    """A content-bearing record.

    ``image_candidate`` marks content that is a generated image URL and must
    be wrapped as an embedded image the first time it is seen.
    """

    content: str
    finished: bool = False
    image_candidate: bool = False


@dataclass
class RawRecord:
    """A plain-text line passed through as literal content."""

    text: str


@dataclass
class EmptyRecord:
    """Nothing to emit: keepalives, blank data or undecodable JSON."""


Record = Union[ErrorRecord, DeltaRecord, RawRecord, EmptyRecord]


def decode_record(text: str) -> Record:
    """Decode one complete upstream record. Has no side effects."""
    body = text.strip()
    if body.startswith("data:"):
        body = body[len("data:") :].strip()
    if not body or body.startswith(":"):
        return EmptyRecord()

    try:
        data = json.loads(body)
    except ValueError:
        if body.startswith("{"):
            return EmptyRecord()
        return RawRecord(text=body)

    if not isinstance(data, dict):
        return RawRecord(text=body)
    return _decode_object(data)


def _decode_object(data: Dict[str, object]) -> Record:
    if data.get("success") is False:
        details = data.get("data")
        details = details if isinstance(details, dict) else {}
        message = (
            details.get("details") or details.get("code") or "Unknown upstream error"
        )
        return ErrorRecord(message=str(message))

    choices = data.get("choices")
    if isinstance(choices, list) and choices:
        choice = choices[0] if isinstance(choices[0], dict) else {}
        delta = choice.get("delta")
        if delta is None:
            delta = choice.get("message")
        if not isinstance(delta, dict):
            return EmptyRecord()
        content = _as_text(delta.get("content"))
        is_image_phase = delta.get("phase") == "image_gen" or delta.get(
            "chat_type"
        ) in (MODE_TEXT_TO_IMAGE, MODE_IMAGE_EDIT)
        # A finished thinking phase is followed by the answer phase.
        finished = (
            delta.get("status") == "finished" and delta.get("phase") != "think"
        ) or choice.get("finish_reason") == "stop"
        return DeltaRecord(
            content=content,
            finished=finished,
            image_candidate=is_image_phase and content.startswith("https://"),
        )

    if data.get("content"):
        content = _as_text(data.get("content"))
        return DeltaRecord(
            content=content,
            finished=data.get("status") == "finished"
            or data.get("finish_reason") == "stop",
            image_candidate=content.startswith("https://")
            and IMAGE_CDN_HOST in content,
        )

    payload = data.get("result") or data.get("data")
    if isinstance(payload, str):
        return DeltaRecord(content=payload)
    if isinstance(payload, dict) and payload.get("content"):
        return DeltaRecord(content=_as_text(payload.get("content")))
    return EmptyRecord()


def _as_text(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


class StreamTransformer:
    """Single-pass re-framer for one upstream response.

    ``feed`` accepts raw byte chunks in arrival order and returns the frames
    they completed. Once ``terminated`` is set every later chunk is ignored.
    """

    def __init__(self, max_buffer_size: int = MAX_BUFFER_SIZE):
        self._buffer = bytearray()
        self._max_buffer_size = max_buffer_size
        self._seen_images: Set[str] = set()
        self._terminated = False

    @property
    def terminated(self) -> bool:
        return self._terminated

    @property
    def buffer(self) -> bytes:
        return bytes(self._buffer)

    def feed(self, chunk: Union[bytes, str]) -> List[StreamFrame]:
        if self._terminated or not chunk:
            return []
        if isinstance(chunk, str):
            chunk = chunk.encode("utf-8")
        self._buffer.extend(chunk)

        try:
            self._check_overflow()
        except StreamCorruptionError as exc:
            logger.error("%s, clearing buffer", exc.message)
            self._buffer.clear()
            return []

        sentinel_at = self._buffer.find(DONE_SENTINEL)
        if sentinel_at >= 0:
            head = bytes(self._buffer[:sentinel_at])
            self._buffer.clear()
            # Complete records ahead of the sentinel line still count.
            line_start = head.rfind(b"\n")
            frames = self._process(head[:line_start] if line_start >= 0 else b"")
            self._terminated = True
            return frames

        records = self._take_complete_records()
        return self._process(records)

    def finish(self) -> List[StreamFrame]:
        """Flush whatever is left once the upstream body has ended."""
        if self._terminated:
            return []
        remainder = bytes(self._buffer)
        self._buffer.clear()
        frames = self._process(remainder)
        self._terminated = True
        return frames

    def _check_overflow(self) -> None:
        if len(self._buffer) > self._max_buffer_size:
            raise StreamCorruptionError(
                f"Buffer overflow detected (size: {len(self._buffer)})"
            )

    def _take_complete_records(self) -> bytes:
        if b"\n\n" in self._buffer:
            delimiter = b"\n\n"
        elif b"\n" in self._buffer:
            delimiter = b"\n"
        else:
            return b""
        cut = self._buffer.rfind(delimiter) + len(delimiter)
        complete = bytes(self._buffer[:cut])
        del self._buffer[:cut]
        return complete

    def _process(self, data: bytes) -> List[StreamFrame]:
        frames: List[StreamFrame] = []
        for line in data.decode("utf-8", errors="replace").split("\n"):
            if not line.strip():
                continue
            frame = self._to_frame(decode_record(line))
            if frame is None:
                continue
            frames.append(frame)
            if frame.is_final:
                self._terminated = True
                break
        return frames

    def _to_frame(self, record: Record) -> Optional[StreamFrame]:
        if isinstance(record, ErrorRecord):
            logger.error("Upstream reported an error: %s", record.message)
            return StreamFrame(delta_text=f"Error: {record.message}", is_final=True)
        if isinstance(record, RawRecord):
            return StreamFrame(delta_text=record.text)
        if isinstance(record, EmptyRecord):
            return None

        content = record.content
        if record.image_candidate:
            if content in self._seen_images:
                content = ""
            else:
                self._seen_images.add(content)
                content = f"![Image]({content})"
        if not content and not record.finished:
            return None
        return StreamFrame(delta_text=content, is_final=record.finished)


def new_response_id() -> str:
    return f"chatcmpl-{uuid.uuid4()}"


def encode_frame(frame: StreamFrame, response_id: str, model: str) -> str:
    chunk = {
        "id": response_id,
        "object": "chat.completion.chunk",
        "created": int(time.time()),
        "model": model,
        "choices": [
            {
                "index": 0,
                "delta": {"content": frame.delta_text},
                "finish_reason": "stop" if frame.is_final else None,
            }
        ],
    }
    return f"data: {json.dumps(chunk, ensure_ascii=False)}\n\n"


def encode_error(message: str, response_id: str, model: str) -> str:
    """The in-band frame that ends a stream which failed mid-flight."""
    frame = StreamFrame(delta_text=f"Error: {message}", is_final=True)
    return encode_frame(frame, response_id, model)


async def reframe(
    chunks: AsyncIterable[bytes],
    response_id: str,
    model: str,
    transformer: Optional[StreamTransformer] = None,
) -> AsyncIterator[str]:
    """Yield outward SSE records for ``chunks``, ending with ``[DONE]``.

    Stops pulling from ``chunks`` as soon as the transformer terminates.
    """
    transformer = transformer or StreamTransformer()
    async for chunk in chunks:
        for frame in transformer.feed(chunk):
            yield encode_frame(frame, response_id, model)
        if transformer.terminated:
            break
    for frame in transformer.finish():
        yield encode_frame(frame, response_id, model)
    yield DONE_RECORD


async def aggregate_stream(chunks: AsyncIterable[bytes]) -> str:
    """Collect the full text of an upstream stream for non-streaming callers."""
    transformer = StreamTransformer()
    parts: List[str] = []
    async for chunk in chunks:
        parts.extend(frame.delta_text for frame in transformer.feed(chunk))
        if transformer.terminated:
            break
    parts.extend(frame.delta_text for frame in transformer.finish())
    return "".join(parts)


def build_completion(content: str, model: str) -> Dict[str, object]:
    return {
        "id": new_response_id(),
        "object": "chat.completion",
        "created": int(time.time()),
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
    }
