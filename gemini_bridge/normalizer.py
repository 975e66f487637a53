from __future__ import annotations

import logging
from collections.abc import Sequence
from enum import Enum
from typing import Any

from gemini_bridge.codec import decode_data_uri
from gemini_bridge.errors import InvalidMediaEncodingError
from gemini_bridge.models import InlineMediaPart, Message, TextPart, UpstreamResult

IMAGE_LEAD_IN = "Okay, here is the generated image:"
GENERATION_FAILED_TEXT = "[image generation failed]"

# Gemini bills a fixed token count per image regardless of resolution.
_IMAGE_INPUT_TOKENS = 258
_IMAGE_OUTPUT_TOKENS = 1290
_CHARS_PER_TOKEN = 4

logger = logging.getLogger("uvicorn.error")


class ResponseMode(str, Enum):
    BATCH = "batch"
    STREAM = "stream"


def reply_parts(result: UpstreamResult) -> list[dict[str, Any]]:
    if not result.is_image:
        return [{"text": result.content}]
    try:
        media = decode_data_uri(result.content)
    except InvalidMediaEncodingError:
        logger.warning(
            "image_decode_failed model=%s content_prefix=%s",
            result.model,
            result.content[:32],
        )
        return [{"text": GENERATION_FAILED_TEXT}]
    return [
        {"text": IMAGE_LEAD_IN},
        {"inlineData": {"mimeType": media.mime_type, "data": media.data}},
    ]


def _estimate_tokens(chars: int) -> int:
    return (chars + _CHARS_PER_TOKEN - 1) // _CHARS_PER_TOKEN


def usage_metadata(
    window: Sequence[Message], result: UpstreamResult | None = None
) -> dict[str, int]:
    prompt_tokens = 0
    for message in window:
        for part in message.parts:
            if isinstance(part, TextPart):
                prompt_tokens += _estimate_tokens(len(part.value))
            elif isinstance(part, InlineMediaPart):
                prompt_tokens += _IMAGE_INPUT_TOKENS

    candidates_tokens = 0
    if result is not None:
        candidates_tokens = (
            _IMAGE_OUTPUT_TOKENS
            if result.is_image
            else _estimate_tokens(len(result.content))
        )
    return {
        "promptTokenCount": prompt_tokens,
        "candidatesTokenCount": candidates_tokens,
        "totalTokenCount": prompt_tokens + candidates_tokens,
    }


def build_batch_response(
    result: UpstreamResult, usage: dict[str, int] | None = None
) -> dict[str, Any]:
    response: dict[str, Any] = {
        "candidates": [
            {
                "content": {"role": "model", "parts": reply_parts(result)},
                "finishReason": "STOP",
                "index": 0,
            }
        ],
        "usageMetadata": usage or usage_metadata((), result),
    }
    if result.model:
        response["modelVersion"] = result.model
    return response


def normalize(
    result: UpstreamResult,
    mode: ResponseMode,
    *,
    usage: dict[str, int] | None = None,
) -> dict[str, Any] | list[dict[str, Any]]:
    """Batch mode gives a generateContent body; stream mode gives the reply parts."""
    if mode == ResponseMode.STREAM:
        return reply_parts(result)
    return build_batch_response(result, usage)
