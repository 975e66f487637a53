from __future__ import annotations

import json
import time
from pathlib import Path

from gemini_bridge.audit import JsonlAuditLogger, summarize_messages


def _wait_for_lines(log_path: Path, count: int) -> list[str]:
    deadline = time.time() + 1.0
    lines: list[str] = []
    while time.time() < deadline:
        if log_path.exists():
            lines = log_path.read_text(encoding="utf-8").strip().splitlines()
            if len(lines) >= count:
                break
        time.sleep(0.02)
    return lines


def test_audit_logger_writes_records_before_close(tmp_path: Path) -> None:
    log_path = tmp_path / "gateway_attempts.jsonl"
    logger = JsonlAuditLogger(path=str(log_path), enabled=True)
    try:
        logger.log({"event": "dispatch_attempt", "request_id": "req-1"})

        lines = _wait_for_lines(log_path, 1)

        assert lines
        payload = json.loads(lines[0])
        assert payload["event"] == "dispatch_attempt"
        assert payload["request_id"] == "req-1"
        assert "ts" in payload
    finally:
        logger.close()


def test_disabled_audit_logger_never_creates_file(tmp_path: Path) -> None:
    log_path = tmp_path / "nested" / "gateway_attempts.jsonl"
    logger = JsonlAuditLogger(path=str(log_path), enabled=False)

    logger.log({"event": "dispatch_attempt"})
    logger.close()

    assert not log_path.parent.exists()


def test_summarize_messages_counts_parts_without_bodies() -> None:
    messages = [
        {"role": "assistant", "content": [{"type": "text", "text": "earlier"}]},
        {
            "role": "user",
            "content": [
                {"type": "text", "text": "make it blue"},
                {
                    "type": "image_url",
                    "image_url": {"url": "data:image/png;base64,QUJDREVG"},
                },
            ],
        },
        {
            "role": "model",
            "content": [{"inlineData": {"mimeType": "image/webp", "data": "R0lG"}}],
        },
    ]

    summary = summarize_messages(messages)

    assert summary == {
        "messages_count": 3,
        "roles": ["assistant", "user", "model"],
        "text_parts": 2,
        "text_chars": len("earlier") + len("make it blue"),
        "media_parts": 2,
        "media_types": ["image/png", "image/webp"],
    }
    encoded = json.dumps(summary)
    assert "QUJDREVG" not in encoded
    assert "make it blue" not in encoded


def test_dropped_records_are_reported_on_close(tmp_path: Path) -> None:
    log_path = tmp_path / "gateway_attempts.jsonl"
    logger = JsonlAuditLogger(path=str(log_path), enabled=True)
    logger.log({"event": "dispatch_attempt"})
    logger._dropped = 3

    logger.close()

    records = [json.loads(line) for line in log_path.read_text("utf-8").splitlines()]
    assert records[0]["event"] == "dispatch_attempt"
    assert records[-1]["event"] == "audit_records_dropped"
    assert records[-1]["dropped_count"] == 3
