"""
Event normalizer: pull plain text and map side actions out of agent events.

Model chunks reach us in structurally different shapes depending on the
code path that emitted them (token callbacks, the astream_events log,
serialized message replays, other providers). Instead of ad hoc attribute
sniffing, every chunk is decoded into one of a closed set of shapes:

    RawText       the chunk itself is a string
    TextContent   ``content`` is a non-empty string
    PartsContent  ``content`` is a list of parts (str, {"text"}, {"content"})
    TextField     a top-level ``text`` string
    Wrapped       one of the wrapper keys (kwargs, lc_kwargs, message)
                  holding a TextContent or PartsContent
    NoText        nothing usable

Candidates are tried in that order and the first one that renders non-empty
text wins. Both functions here are pure and never raise.
"""

import json
from dataclasses import dataclass
from typing import Any, Union

import structlog
from pydantic import ValidationError

from mapbot.models.map_actions import KNOWN_ACTION_TYPES, SideAction, side_action_adapter

logger = structlog.get_logger(__name__)

WRAPPER_KEYS: tuple[str, ...] = ("kwargs", "lc_kwargs", "message")


@dataclass(frozen=True)
class RawText:
    text: str


@dataclass(frozen=True)
class TextContent:
    text: str


@dataclass(frozen=True)
class PartsContent:
    parts: tuple[Any, ...]


@dataclass(frozen=True)
class TextField:
    text: str


@dataclass(frozen=True)
class Wrapped:
    key: str
    inner: Union[TextContent, PartsContent]


@dataclass(frozen=True)
class NoText:
    pass


ChunkShape = Union[RawText, TextContent, PartsContent, TextField, Wrapped, NoText]


@dataclass(frozen=True)
class Extraction:
    """Normalized view of one event payload."""

    text: str = ""
    side_action: SideAction | None = None


def _field(obj: Any, key: str) -> Any:
    """Read ``key`` from a mapping or an attribute, None when absent."""
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(key)
    try:
        return getattr(obj, key, None)
    except Exception:
        return None


def _part_text(part: Any) -> str:
    if isinstance(part, str):
        return part
    for key in ("text", "content"):
        value = _field(part, key)
        if isinstance(value, str) and value:
            return value
    return ""


def render(shape: ChunkShape) -> str:
    """Text carried by a decoded shape."""
    if isinstance(shape, (RawText, TextContent, TextField)):
        return shape.text
    if isinstance(shape, PartsContent):
        return "".join(_part_text(part) for part in shape.parts)
    if isinstance(shape, Wrapped):
        return render(shape.inner)
    return ""


def _content_shape(content: Any) -> Union[TextContent, PartsContent, None]:
    if isinstance(content, str) and content:
        return TextContent(content)
    if isinstance(content, (list, tuple)) and content:
        return PartsContent(tuple(content))
    return None


def _candidates(chunk: Any):
    """Every shape ``chunk`` could be read as, in priority order."""
    if isinstance(chunk, str):
        yield RawText(chunk)
        return

    content = _field(chunk, "content")
    if isinstance(content, str) and content:
        yield TextContent(content)
    if isinstance(content, (list, tuple)) and content:
        yield PartsContent(tuple(content))

    # On langchain-core messages ``text`` may be a method rather than a str
    text = _field(chunk, "text")
    if isinstance(text, str) and text:
        yield TextField(str(text))

    for key in WRAPPER_KEYS:
        inner = _content_shape(_field(_field(chunk, key), "content"))
        if inner is not None:
            yield Wrapped(key, inner)


def decode_chunk(chunk: Any) -> ChunkShape:
    """Decode a chunk into the first shape that yields non-empty text."""
    if chunk is None:
        return NoText()
    for shape in _candidates(chunk):
        if render(shape):
            return shape
    return NoText()


def extract_side_action(result_text: Any) -> SideAction | None:
    """
    Parse a tool result document and return its ``mapAction``, if any.

    Total: any input yields a validated SideAction or None. Non-JSON text,
    documents without ``mapAction``, unknown tags and malformed payloads all
    return None.
    """
    if not isinstance(result_text, (str, bytes, bytearray)) or not result_text:
        return None
    try:
        document = json.loads(result_text)
    except (ValueError, TypeError, RecursionError):
        return None
    if not isinstance(document, dict):
        return None

    payload = document.get("mapAction")
    if not isinstance(payload, dict) or payload.get("type") not in KNOWN_ACTION_TYPES:
        return None

    try:
        return side_action_adapter.validate_python(payload)
    except ValidationError as e:
        logger.debug("map_action_invalid", action_type=payload.get("type"), errors=e.error_count())
        return None


def extract(raw: Any, *, tool_output: bool = False) -> Extraction:
    """
    Normalize a model chunk or a tool output.

    Args:
        raw:         Chunk/message/dict/str from either event channel.
        tool_output: Also look for a map side action in the extracted text.
    """
    shape = decode_chunk(raw)
    if isinstance(shape, NoText) and raw is not None:
        logger.debug(
            "chunk_without_text",
            chunk_type=type(raw).__name__,
            keys=sorted(raw.keys()) if isinstance(raw, dict) else None,
        )
    text = render(shape)
    side_action = extract_side_action(text) if tool_output else None
    return Extraction(text=text, side_action=side_action)


def extract_final_output(output: Any) -> str:
    """
    Final answer text from a completed agent run.

    Accepts an executor-style ``{"output": "..."}`` mapping or a graph state
    with ``messages``, in which case the last AI message is used.
    """
    direct = _field(output, "output")
    if isinstance(direct, str):
        return direct

    messages = _field(output, "messages")
    if isinstance(messages, (list, tuple)):
        for message in reversed(messages):
            if _field(message, "type") in ("ai", "AIMessageChunk"):
                return render(decode_chunk(message))
    return ""
