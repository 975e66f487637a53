from __future__ import annotations

import pytest

from gemini_bridge.codec import (
    decode_data_uri,
    encode_message,
    encode_window,
    ensure_sendable,
    format_data_uri,
    from_upstream,
    to_upstream,
)
from gemini_bridge.config import BackendVariant
from gemini_bridge.errors import InvalidMediaEncodingError, InvalidRequestShapeError
from gemini_bridge.models import InlineMediaPart, Message, TextPart
from tests.client_test_utils import GEMINI_VARIANT, OPENAI_VARIANT


def test_text_part_encodes_per_backend_style() -> None:
    part = TextPart(value="  a red fox \n")

    assert to_upstream(part, OPENAI_VARIANT) == {"type": "text", "text": "  a red fox \n"}
    assert to_upstream(part, GEMINI_VARIANT) == {"text": "a red fox"}


def test_inline_media_encodes_per_backend_style() -> None:
    part = InlineMediaPart(mime_type="image/png", data="QUJD")

    assert to_upstream(part, OPENAI_VARIANT) == {
        "type": "image_url",
        "image_url": {"url": "data:image/png;base64,QUJD"},
    }
    assert to_upstream(part, GEMINI_VARIANT) == {
        "inlineData": {"mimeType": "image/png", "data": "QUJD"}
    }


@pytest.mark.parametrize("variant", [OPENAI_VARIANT, GEMINI_VARIANT])
@pytest.mark.parametrize(
    "text",
    ["hello", 'quotes " and \\ backslashes', "多语言 text", "line one\nline two"],
)
def test_text_round_trip_is_lossless(variant: BackendVariant, text: str) -> None:
    encoded = to_upstream(TextPart(value=text), variant)

    assert from_upstream(encoded) == TextPart(value=text)


@pytest.mark.parametrize("variant", [OPENAI_VARIANT, GEMINI_VARIANT])
def test_inline_media_round_trip_keeps_mime_type_and_data(
    variant: BackendVariant,
) -> None:
    part = InlineMediaPart(mime_type="image/webp", data="UklGRiQAAABXRUJQ+/=")

    assert from_upstream(to_upstream(part, variant)) == part


def test_decode_data_uri_splits_on_first_marker() -> None:
    part = decode_data_uri("data:text/plain;base64,abc;base64,def")

    assert part == InlineMediaPart(mime_type="text/plain", data="abc;base64,def")
    assert format_data_uri(part.mime_type, part.data) == (
        "data:text/plain;base64,abc;base64,def"
    )


@pytest.mark.parametrize(
    "value",
    [
        "data:image/png,QUJD",
        "https://cdn.example/image.png",
        "data:;base64,QUJD",
        "data:image/png;base64,",
        "",
    ],
)
def test_decode_data_uri_rejects_malformed_values(value: str) -> None:
    with pytest.raises(InvalidMediaEncodingError):
        decode_data_uri(value)


def test_from_upstream_decodes_data_uri_text_and_inline_data() -> None:
    assert from_upstream({"type": "text", "text": "data:image/jpeg;base64,/9j/"}) == (
        InlineMediaPart(mime_type="image/jpeg", data="/9j/")
    )
    assert from_upstream({"inlineData": {"mimeType": "image/gif", "data": "R0lG"}}) == (
        InlineMediaPart(mime_type="image/gif", data="R0lG")
    )


def test_from_upstream_rejects_malformed_image_url() -> None:
    with pytest.raises(InvalidMediaEncodingError):
        from_upstream({"type": "image_url", "image_url": {"url": "data:image/png,QUJD"}})


def test_from_upstream_passes_unknown_parts_through() -> None:
    part = {"type": "refusal", "refusal": "no"}

    assert from_upstream(part) is part


def test_model_role_follows_backend_convention() -> None:
    message = Message(role="model", parts=(TextPart(value="done"),))

    assert encode_message(message, OPENAI_VARIANT) == {
        "role": "assistant",
        "content": [{"type": "text", "text": "done"}],
    }
    assert encode_message(message, GEMINI_VARIANT) == {
        "role": "model",
        "content": [{"text": "done"}],
    }


def test_encode_window_drops_messages_without_parts() -> None:
    window = (
        Message(role="model", parts=()),
        Message(role="user", parts=(TextPart(value="hi"),)),
    )

    assert encode_window(window, OPENAI_VARIANT) == [
        {"role": "user", "content": [{"type": "text", "text": "hi"}]}
    ]


def test_encode_window_rejects_empty_final_user_message() -> None:
    window = (Message(role="user", parts=(TextPart(value="   "),)),)

    with pytest.raises(InvalidRequestShapeError):
        encode_window(window, GEMINI_VARIANT)


def test_ensure_sendable_checks_only_the_final_message() -> None:
    earlier_empty = (
        Message(role="model", parts=()),
        Message(role="user", parts=(TextPart(value="hi"),)),
    )
    blank_for_gemini = (Message(role="user", parts=(TextPart(value="  "),)),)

    ensure_sendable(earlier_empty, OPENAI_VARIANT)
    ensure_sendable(blank_for_gemini, OPENAI_VARIANT)
    with pytest.raises(InvalidRequestShapeError):
        ensure_sendable(blank_for_gemini, GEMINI_VARIANT)
    with pytest.raises(InvalidRequestShapeError):
        ensure_sendable((), OPENAI_VARIANT)
