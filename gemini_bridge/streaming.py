from __future__ import annotations

import json
import logging
from asyncio import sleep
from collections.abc import AsyncIterator, Awaitable, Callable, Iterator, Sequence
from typing import Any, cast

from gemini_bridge.errors import GatewayError
from gemini_bridge.models import Message, UpstreamResult
from gemini_bridge.normalizer import ResponseMode, normalize, usage_metadata

STREAM_DONE_FRAME = b"data: [DONE]\n\n"
SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}

logger = logging.getLogger("uvicorn.error")


def encode_event(event: dict[str, Any]) -> bytes:
    body = json.dumps(event, ensure_ascii=False, separators=(",", ":"))
    return f"data: {body}\n\n".encode("utf-8")


def _content_event(part: dict[str, Any]) -> dict[str, Any]:
    return {"candidates": [{"content": {"role": "model", "parts": [part]}, "index": 0}]}


def finish_event(usage: dict[str, int], model: str = "") -> dict[str, Any]:
    event: dict[str, Any] = {
        "candidates": [
            {
                "content": {"role": "model", "parts": []},
                "finishReason": "STOP",
                "index": 0,
            }
        ],
        "usageMetadata": usage,
    }
    if model:
        event["modelVersion"] = model
    return event


def error_event(exc: BaseException) -> dict[str, Any]:
    if isinstance(exc, GatewayError):
        payload = exc.to_payload()
        return {
            "error": {
                "code": payload["error"]["code"],
                "message": payload["error"]["message"],
                "status": payload["error"]["status"],
            }
        }
    return {
        "error": {
            "code": 500,
            "message": str(exc) or exc.__class__.__name__,
            "status": "INTERNAL",
        }
    }


def _is_finish(event: dict[str, Any]) -> bool:
    candidates = event.get("candidates") or [{}]
    return "finishReason" in candidates[0]


def iter_stream_events(
    result: UpstreamResult, window: Sequence[Message] = ()
) -> Iterator[dict[str, Any]]:
    """Yield the caller-format events for ``result``, ending with the finish event.

    Text replies are split into one event per character; image replies become a
    lead-in text event followed by the inline media event.
    """
    if result.is_image:
        parts = cast(list[dict[str, Any]], normalize(result, ResponseMode.STREAM))
        for part in parts:
            yield _content_event(part)
    else:
        for char in result.content:
            yield _content_event({"text": char})
    yield finish_event(usage_metadata(window, result), result.model)


async def synthesize(
    produce: Callable[[], Awaitable[UpstreamResult]],
    *,
    window: Sequence[Message] = (),
    delay_seconds: float = 0.0,
    request_id: str | None = None,
) -> AsyncIterator[bytes]:
    """Run ``produce`` and stream its result as SSE frames.

    Always ends with exactly one ``[DONE]`` frame. A failure while producing or
    emitting becomes a single error event before that frame.
    """
    emitted = 0
    try:
        result = await produce()
        for event in iter_stream_events(result, window):
            yield encode_event(event)
            emitted += 1
            if delay_seconds > 0 and not result.is_image and not _is_finish(event):
                await sleep(delay_seconds)
    except Exception as exc:
        logger.warning(
            "stream_error request_id=%s events_emitted=%d error_type=%s error=%s",
            request_id or "-",
            emitted,
            exc.__class__.__name__,
            exc,
        )
        yield encode_event(error_event(exc))
    yield STREAM_DONE_FRAME
    logger.info(
        "stream_complete request_id=%s events_emitted=%d", request_id or "-", emitted
    )
