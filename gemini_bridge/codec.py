"""Conversion between Gemini-style content parts and backend message parts.

Two backend part styles are supported:

* ``openai`` -- chat-completions content blocks, media as ``image_url`` data URIs.
* ``gemini`` -- ``{"text": ...}`` / ``{"inlineData": {...}}`` parts.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from gemini_bridge.config import BackendVariant
from gemini_bridge.errors import InvalidMediaEncodingError, InvalidRequestShapeError
from gemini_bridge.models import InlineMediaPart, Message, Part, TextPart

DATA_URI_PREFIX = "data:"
DATA_URI_MARKER = ";base64,"
_DATA_IMAGE_PREFIX = "data:image/"


def format_data_uri(mime_type: str, data: str) -> str:
    return f"{DATA_URI_PREFIX}{mime_type}{DATA_URI_MARKER}{data}"


def decode_data_uri(uri: str) -> InlineMediaPart:
    """Split ``data:<mime>;base64,<payload>`` on the first base64 marker."""
    value = uri.strip() if isinstance(uri, str) else ""
    if not value.startswith(DATA_URI_PREFIX):
        raise InvalidMediaEncodingError(str(uri))
    mime_type, marker, data = value[len(DATA_URI_PREFIX) :].partition(DATA_URI_MARKER)
    if not marker or not mime_type.strip() or not data:
        raise InvalidMediaEncodingError(value)
    return InlineMediaPart(mime_type=mime_type.strip(), data=data)


def is_data_uri(value: Any) -> bool:
    return isinstance(value, str) and value.strip().startswith(DATA_URI_PREFIX)


def to_upstream(part: Part, variant: BackendVariant) -> dict[str, Any] | None:
    if variant.part_style == "gemini":
        if isinstance(part, TextPart):
            text = part.value.strip()
            return {"text": text} if text else None
        return {"inlineData": {"mimeType": part.mime_type, "data": part.data}}

    if isinstance(part, TextPart):
        return {"type": "text", "text": part.value} if part.value else None
    return {
        "type": "image_url",
        "image_url": {"url": format_data_uri(part.mime_type, part.data)},
    }


def upstream_role(role: str, variant: BackendVariant) -> str:
    if role == "model":
        return variant.model_role
    return "user"


def encode_message(message: Message, variant: BackendVariant) -> dict[str, Any] | None:
    content = [
        encoded
        for encoded in (to_upstream(part, variant) for part in message.parts)
        if encoded is not None
    ]
    if not content:
        return None
    return {"role": upstream_role(message.role, variant), "content": content}


def ensure_sendable(window: Sequence[Message], variant: BackendVariant) -> None:
    """Reject a window whose final message encodes to no parts for ``variant``."""
    if not window or all(
        to_upstream(part, variant) is None for part in window[-1].parts
    ):
        raise InvalidRequestShapeError(
            "Invalid request: the last user message has no text or inline data parts."
        )


def encode_window(
    window: Sequence[Message], variant: BackendVariant
) -> list[dict[str, Any]]:
    ensure_sendable(window, variant)
    messages = (encode_message(message, variant) for message in window)
    return [message for message in messages if message is not None]


def upstream_image_url(part: Any) -> str | None:
    """Return the image payload carried by a backend reply part, if any."""
    if not isinstance(part, dict):
        return None
    image_url = part.get("image_url")
    if isinstance(image_url, dict):
        url = image_url.get("url")
        if isinstance(url, str) and url.strip():
            return url.strip()
    elif isinstance(image_url, str) and image_url.strip():
        return image_url.strip()
    inline = part.get("inlineData") or part.get("inline_data")
    if isinstance(inline, dict):
        mime_type = inline.get("mimeType") or inline.get("mime_type")
        data = inline.get("data")
        if isinstance(mime_type, str) and isinstance(data, str) and data:
            return format_data_uri(mime_type, data)
    text = part.get("text")
    if isinstance(text, str) and text.startswith(_DATA_IMAGE_PREFIX):
        return text
    return None


def upstream_text(part: Any) -> str | None:
    if not isinstance(part, dict):
        return None
    text = part.get("text")
    if not isinstance(text, str) or text.startswith(_DATA_IMAGE_PREFIX):
        return None
    return text


def from_upstream(part: Any) -> Part | Any:
    """Decode a backend reply part; unrecognised parts are returned unchanged."""
    image_url = upstream_image_url(part)
    if image_url is not None:
        return decode_data_uri(image_url)
    text = upstream_text(part)
    if text is not None:
        return TextPart(value=text)
    return part
