from __future__ import annotations

from collections.abc import Sequence

from gemini_bridge.errors import NoUserMessageError
from gemini_bridge.models import Message


def _last_index(
    history: Sequence[Message], role: str, *, before: int | None = None
) -> int:
    stop = len(history) if before is None else before
    for index in range(stop - 1, -1, -1):
        if history[index].role == role:
            return index
    return -1


def extract_window(history: Sequence[Message]) -> tuple[Message, ...]:
    """Return the slice of ``history`` that is sent upstream.

    The window ends at the last ``user`` message and starts at the last ``model``
    message before it, or at the start of the history when there is none.
    Earlier turns are never forwarded.
    """
    user_index = _last_index(history, "user")
    if user_index == -1:
        raise NoUserMessageError()

    model_index = _last_index(history, "model", before=user_index)
    start = model_index if model_index != -1 else 0
    window = tuple(history[start : user_index + 1])
    if not window:
        window = (history[user_index],)
    return window
