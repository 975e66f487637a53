from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Literal, Union

from gemini_bridge.errors import InvalidRequestShapeError

logger = logging.getLogger("uvicorn.error")

Role = Literal["user", "model"]
_ROLES: frozenset[str] = frozenset({"user", "model"})


@dataclass(frozen=True, slots=True)
class TextPart:
    value: str


@dataclass(frozen=True, slots=True)
class InlineMediaPart:
    mime_type: str
    data: str


Part = Union[TextPart, InlineMediaPart]


@dataclass(frozen=True, slots=True)
class Message:
    role: Role
    parts: tuple[Part, ...]

    @classmethod
    def from_payload(cls, raw: Any, *, index: int = 0) -> Message:
        if not isinstance(raw, dict):
            raise InvalidRequestShapeError(
                f"Invalid request: contents[{index}] must be an object."
            )
        role = raw.get("role") or "user"
        if not isinstance(role, str) or role not in _ROLES:
            raise InvalidRequestShapeError(
                f"Invalid request: contents[{index}].role must be 'user' or 'model'."
            )
        raw_parts = raw.get("parts") or []
        if not isinstance(raw_parts, list):
            raise InvalidRequestShapeError(
                f"Invalid request: contents[{index}].parts must be an array."
            )
        parts: list[Part] = []
        for part_index, raw_part in enumerate(raw_parts):
            part = _part_from_payload(raw_part)
            if part is None:
                logger.debug(
                    "inbound_part_skipped content_index=%d part_index=%d keys=%s",
                    index,
                    part_index,
                    sorted(raw_part) if isinstance(raw_part, dict) else None,
                )
                continue
            parts.append(part)
        return cls(role=role, parts=tuple(parts))


def _part_from_payload(raw: Any) -> Part | None:
    if not isinstance(raw, dict):
        return None
    text = raw.get("text")
    if isinstance(text, str):
        return TextPart(value=text)
    inline = raw.get("inlineData") or raw.get("inline_data")
    if isinstance(inline, dict):
        mime_type = inline.get("mimeType") or inline.get("mime_type")
        data = inline.get("data")
        if isinstance(mime_type, str) and isinstance(data, str) and data:
            return InlineMediaPart(mime_type=mime_type, data=data)
    return None


def parse_contents(payload: Any) -> tuple[Message, ...]:
    """Build the immutable message history from a generateContent body."""
    if not isinstance(payload, dict):
        raise InvalidRequestShapeError("Expected a JSON object request body.")
    contents = payload.get("contents")
    if not isinstance(contents, list) or not contents:
        raise InvalidRequestShapeError("Invalid request: 'contents' array is missing.")
    return tuple(
        Message.from_payload(raw, index=index) for index, raw in enumerate(contents)
    )


class ResultKind(str, Enum):
    IMAGE = "image"
    TEXT = "text"


@dataclass(frozen=True, slots=True)
class UpstreamResult:
    kind: ResultKind
    content: str
    model: str = ""

    @property
    def is_image(self) -> bool:
        return self.kind == ResultKind.IMAGE
