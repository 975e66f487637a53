from __future__ import annotations

import asyncio
from typing import Any

from gemini_bridge.errors import UpstreamFailureError
from gemini_bridge.models import ResultKind, UpstreamResult
from gemini_bridge.normalizer import GENERATION_FAILED_TEXT, IMAGE_LEAD_IN
from gemini_bridge.streaming import STREAM_DONE_FRAME, iter_stream_events, synthesize
from tests.client_test_utils import parse_sse_frames


def _collect(produce: Any, **kwargs: Any) -> list[bytes]:
    async def _run() -> list[bytes]:
        return [frame async for frame in synthesize(produce, **kwargs)]

    return asyncio.run(_run())


def _result(kind: ResultKind, content: str) -> Any:
    async def _produce() -> UpstreamResult:
        return UpstreamResult(kind=kind, content=content)

    return _produce


def _parts(frame: Any) -> list[dict[str, Any]]:
    return frame["candidates"][0]["content"]["parts"]


def test_text_result_streams_one_event_per_character() -> None:
    frames = _collect(_result(ResultKind.TEXT, "AB"))

    assert frames[-1] == STREAM_DONE_FRAME
    parsed = parse_sse_frames(b"".join(frames).decode("utf-8"))
    assert len(parsed) == 4
    assert _parts(parsed[0]) == [{"text": "A"}]
    assert _parts(parsed[1]) == [{"text": "B"}]
    assert parsed[2]["candidates"][0]["finishReason"] == "STOP"
    assert _parts(parsed[2]) == []
    assert "usageMetadata" in parsed[2]
    assert parsed[3] == "[DONE]"


def test_image_result_streams_lead_in_then_media() -> None:
    frames = _collect(_result(ResultKind.IMAGE, "data:image/png;base64,QUJD"))

    parsed = parse_sse_frames(b"".join(frames).decode("utf-8"))
    assert _parts(parsed[0]) == [{"text": IMAGE_LEAD_IN}]
    assert _parts(parsed[1]) == [
        {"inlineData": {"mimeType": "image/png", "data": "QUJD"}}
    ]
    assert parsed[2]["candidates"][0]["finishReason"] == "STOP"
    assert parsed[3] == "[DONE]"
    assert len(parsed) == 4


def test_undecodable_image_streams_failure_text() -> None:
    events = list(
        iter_stream_events(UpstreamResult(kind=ResultKind.IMAGE, content="not-a-uri"))
    )

    assert len(events) == 2
    assert _parts(events[0]) == [{"text": GENERATION_FAILED_TEXT}]


def test_failure_while_producing_emits_error_event_then_done() -> None:
    async def _failing() -> UpstreamResult:
        raise UpstreamFailureError(model="m", detail="insufficient credits")

    frames = _collect(_failing)

    parsed = parse_sse_frames(b"".join(frames).decode("utf-8"))
    assert len(parsed) == 2
    assert parsed[0]["error"]["code"] == 502
    assert "insufficient credits" in parsed[0]["error"]["message"]
    assert parsed[1] == "[DONE]"


def test_unexpected_exception_becomes_internal_error_event() -> None:
    async def _broken() -> UpstreamResult:
        raise KeyError("choices")

    parsed = parse_sse_frames(b"".join(_collect(_broken)).decode("utf-8"))

    assert parsed[0]["error"]["code"] == 500
    assert parsed[0]["error"]["status"] == "INTERNAL"
    assert parsed[-1] == "[DONE]"


def test_pacing_sleeps_between_character_events_only(monkeypatch: Any) -> None:
    delays: list[float] = []

    async def _fake_sleep(seconds: float) -> None:
        delays.append(seconds)

    monkeypatch.setattr("gemini_bridge.streaming.sleep", _fake_sleep)

    frames = _collect(_result(ResultKind.TEXT, "abc"), delay_seconds=0.01)

    assert delays == [0.01, 0.01, 0.01]
    assert len(frames) == 5


def test_zero_delay_never_sleeps(monkeypatch: Any) -> None:
    async def _fail_sleep(_seconds: float) -> None:
        raise AssertionError("should not pace")

    monkeypatch.setattr("gemini_bridge.streaming.sleep", _fail_sleep)

    frames = _collect(_result(ResultKind.TEXT, "xyz"))

    assert len(frames) == 5
