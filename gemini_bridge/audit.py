from __future__ import annotations

import json
import time
from collections.abc import Sequence
from pathlib import Path
from queue import Full, Queue
from threading import Lock, Thread
from typing import Any

from gemini_bridge.codec import is_data_uri, upstream_image_url


def _encode_record(record: dict[str, Any]) -> str:
    return json.dumps(record, ensure_ascii=True, separators=(",", ":"), default=str)


class JsonlAuditLogger:
    """Append dispatch events to a JSONL file from a background writer thread.

    ``log`` never blocks the event loop: records go into a bounded queue and are
    counted as dropped when it is full. The drop count is written as its own
    record when the writer shuts down.
    """

    def __init__(
        self,
        path: str,
        enabled: bool = True,
        max_queue_size: int = 4096,
    ) -> None:
        self.enabled = enabled
        self.path = Path(path)
        self._lock = Lock()
        self._dropped = 0
        self._queue: Queue[str | None] = Queue(maxsize=max_queue_size)
        self._worker: Thread | None = None
        if enabled:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._worker = Thread(
                target=self._write_loop, name="gateway-audit-writer", daemon=True
            )
            self._worker.start()

    def log(self, event: dict[str, Any]) -> None:
        if self._worker is None:
            return
        line = _encode_record({"ts": round(time.time(), 3), **event})
        try:
            self._queue.put_nowait(line)
        except Full:
            with self._lock:
                self._dropped += 1

    def close(self) -> None:
        worker = self._worker
        if worker is None:
            return
        self._worker = None
        self._queue.put(None)
        worker.join(timeout=2.0)

    def _write_loop(self) -> None:
        with self.path.open("a", encoding="utf-8") as handle:
            while True:
                line = self._queue.get()
                if line is None:
                    break
                handle.write(line + "\n")
                handle.flush()
            with self._lock:
                dropped, self._dropped = self._dropped, 0
            if dropped:
                handle.write(
                    _encode_record(
                        {
                            "ts": round(time.time(), 3),
                            "event": "audit_records_dropped",
                            "dropped_count": dropped,
                        }
                    )
                    + "\n"
                )
                handle.flush()


def summarize_messages(messages: Sequence[dict[str, Any]]) -> dict[str, Any]:
    """Describe an upstream ``messages`` list without text or base64 bodies."""
    roles: list[str] = []
    text_chars = 0
    text_parts = 0
    media_parts = 0
    media_types: set[str] = set()
    for message in messages:
        roles.append(str(message.get("role", "")))
        content = message.get("content")
        if isinstance(content, str):
            text_parts += 1
            text_chars += len(content)
            continue
        if not isinstance(content, list):
            continue
        for part in content:
            image = upstream_image_url(part)
            if image is not None:
                media_parts += 1
                if is_data_uri(image):
                    mime_type, _, _ = image.strip()[len("data:") :].partition(";")
                    media_types.add(mime_type)
                continue
            text = part.get("text") if isinstance(part, dict) else None
            if isinstance(text, str):
                text_parts += 1
                text_chars += len(text)
    return {
        "messages_count": len(messages),
        "roles": roles,
        "text_parts": text_parts,
        "text_chars": text_chars,
        "media_parts": media_parts,
        "media_types": sorted(media_types),
    }
