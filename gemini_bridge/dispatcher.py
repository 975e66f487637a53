from __future__ import annotations

import json
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Callable, Literal

import httpx

from gemini_bridge.audit import summarize_messages
from gemini_bridge.codec import encode_window, upstream_image_url, upstream_text
from gemini_bridge.config import BackendVariant, ModelTier
from gemini_bridge.errors import MissingCredentialError, UpstreamFailureError
from gemini_bridge.models import Message, ResultKind, UpstreamResult
from gemini_bridge.quota import QuotaClassifier, get_quota_classifier

EMPTY_REPLY_PLACEHOLDER = "[model returned no content]"
_LOG_PREVIEW_CHARS = 2000

logger = logging.getLogger("uvicorn.error")

Tier = Literal["primary", "fallback"]


def _request_error_details(exc: httpx.RequestError) -> dict[str, Any]:
    error_message = str(exc).strip() or repr(exc)
    details: dict[str, Any] = {
        "error": error_message,
        "error_type": exc.__class__.__name__ or "RequestError",
        "is_timeout": isinstance(exc, httpx.TimeoutException),
    }
    try:
        details["request_url"] = str(exc.request.url)
    except RuntimeError:
        pass
    return details


def _preview(value: str) -> str:
    if len(value) <= _LOG_PREVIEW_CHARS:
        return value
    return value[:_LOG_PREVIEW_CHARS] + f"...[{len(value) - _LOG_PREVIEW_CHARS} more]"


def _error_text(body: Any, raw_text: str) -> str:
    if isinstance(body, dict) and "error" in body:
        error = body["error"]
        if isinstance(error, str):
            return error
        return json.dumps(error, ensure_ascii=False, default=str)
    if raw_text.strip():
        return raw_text.strip()
    if body is not None:
        return json.dumps(body, ensure_ascii=False, default=str)
    return "Unknown error"


@dataclass(slots=True)
class AttemptOutcome:
    tier: Tier
    model: str
    ok: bool
    status_code: int | None
    body: Any
    error_text: str
    latency_ms: float


def _reply_parts(body: dict[str, Any]) -> tuple[list[Any], list[Any]]:
    """Return ``(image_sources, content_parts)`` from a success payload."""
    choices = body.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        message = choices[0].get("message")
        if not isinstance(message, dict):
            return [], []
        images = message.get("images")
        image_sources = images if isinstance(images, list) else []
        content = message.get("content")
        if isinstance(content, str):
            return image_sources, [{"text": content}]
        if isinstance(content, list):
            return image_sources, content
        return image_sources, []

    candidates = body.get("candidates")
    if isinstance(candidates, list) and candidates and isinstance(candidates[0], dict):
        content = candidates[0].get("content")
        if isinstance(content, dict) and isinstance(content.get("parts"), list):
            return [], content["parts"]
    return [], []


def extract_result(body: dict[str, Any], *, model: str = "") -> UpstreamResult:
    """Pick the reply: first image wins, then joined text, then a placeholder."""
    image_sources, content_parts = _reply_parts(body)
    for part in [*image_sources, *content_parts]:
        image = upstream_image_url(part)
        if image is not None:
            return UpstreamResult(kind=ResultKind.IMAGE, content=image, model=model)

    texts = [text for text in map(upstream_text, content_parts) if text]
    joined = "".join(texts)
    if joined.strip():
        return UpstreamResult(kind=ResultKind.TEXT, content=joined, model=model)
    return UpstreamResult(
        kind=ResultKind.TEXT, content=EMPTY_REPLY_PLACEHOLDER, model=model
    )


class Dispatcher:
    def __init__(
        self,
        timeout_seconds: float,
        connect_timeout_seconds: float | None = None,
        read_timeout_seconds: float | None = None,
        write_timeout_seconds: float | None = None,
        pool_timeout_seconds: float | None = None,
        audit_hook: Callable[[dict[str, Any]], None] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        connect_timeout = (
            max(0.1, float(connect_timeout_seconds))
            if connect_timeout_seconds is not None
            else max(0.1, min(10.0, timeout_seconds))
        )
        read_timeout = max(
            0.1,
            float(
                read_timeout_seconds
                if read_timeout_seconds is not None
                else timeout_seconds
            ),
        )
        write_timeout = max(
            0.1,
            float(
                write_timeout_seconds
                if write_timeout_seconds is not None
                else timeout_seconds
            ),
        )
        pool_timeout = (
            max(0.1, float(pool_timeout_seconds))
            if pool_timeout_seconds is not None
            else connect_timeout
        )
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(
                timeout=None,
                connect=connect_timeout,
                read=read_timeout,
                write=write_timeout,
                pool=pool_timeout,
            ),
            limits=httpx.Limits(max_connections=256, max_keepalive_connections=64),
        )
        self._audit_hook = audit_hook

    async def close(self) -> None:
        await self.client.aclose()

    def _audit(self, event: str, **fields: Any) -> None:
        if self._audit_hook is None:
            return
        try:
            self._audit_hook({"event": event, **fields})
        except Exception as exc:
            logger.debug("audit_write_failed event=%s error=%s", event, exc)

    async def dispatch(
        self,
        window: Sequence[Message],
        credential: str,
        *,
        variant: BackendVariant,
        tiers: ModelTier | None = None,
        classifier: QuotaClassifier | None = None,
        request_id: str | None = None,
    ) -> UpstreamResult:
        if not credential or not credential.strip():
            raise MissingCredentialError()

        rid = request_id or "-"
        tiers = tiers or variant.tiers
        is_quota_exhausted = classifier or get_quota_classifier(variant.quota_policy)
        messages = encode_window(window, variant)

        outcome = await self._attempt(
            variant=variant,
            tier="primary",
            model=tiers.primary,
            messages=messages,
            credential=credential.strip(),
            request_id=rid,
        )
        if (
            not outcome.ok
            and outcome.tier == "primary"
            and is_quota_exhausted(outcome.error_text)
        ):
            logger.info(
                "dispatch_fallback request_id=%s backend=%s from_model=%s to_model=%s",
                rid,
                variant.name,
                tiers.primary,
                tiers.fallback,
            )
            self._audit(
                "dispatch_fallback",
                request_id=rid,
                backend=variant.name,
                from_model=tiers.primary,
                to_model=tiers.fallback,
                reason=_preview(outcome.error_text),
            )
            outcome = await self._attempt(
                variant=variant,
                tier="fallback",
                model=tiers.fallback,
                messages=messages,
                credential=credential.strip(),
                request_id=rid,
            )

        if not outcome.ok:
            raise UpstreamFailureError(model=outcome.model, detail=outcome.error_text)

        result = extract_result(outcome.body, model=outcome.model)
        logger.info(
            "dispatch_result request_id=%s backend=%s model=%s kind=%s chars=%d",
            rid,
            variant.name,
            outcome.model,
            result.kind.value,
            len(result.content),
        )
        self._audit(
            "dispatch_result",
            request_id=rid,
            backend=variant.name,
            model=outcome.model,
            tier=outcome.tier,
            kind=result.kind.value,
            content_chars=len(result.content),
        )
        return result

    async def _attempt(
        self,
        *,
        variant: BackendVariant,
        tier: Tier,
        model: str,
        messages: list[dict[str, Any]],
        credential: str,
        request_id: str,
    ) -> AttemptOutcome:
        payload = {"model": model, "messages": messages}
        summary = summarize_messages(messages)
        logger.info(
            "dispatch_attempt request_id=%s backend=%s tier=%s model=%s messages=%d",
            request_id,
            variant.name,
            tier,
            model,
            len(messages),
        )
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "dispatch_payload request_id=%s payload=%s",
                request_id,
                _preview(json.dumps(payload, ensure_ascii=False)),
            )

        started = time.perf_counter()
        try:
            response = await self.client.post(
                variant.endpoint,
                json=payload,
                headers={
                    "Authorization": f"Bearer {credential}",
                    "Content-Type": "application/json",
                },
            )
        except httpx.RequestError as exc:
            latency_ms = (time.perf_counter() - started) * 1000.0
            details = _request_error_details(exc)
            logger.warning(
                "dispatch_transport_error request_id=%s model=%s error_type=%s error=%s",
                request_id,
                model,
                details["error_type"],
                details["error"],
            )
            self._audit(
                "dispatch_attempt",
                request_id=request_id,
                backend=variant.name,
                tier=tier,
                model=model,
                status=None,
                ok=False,
                latency_ms=round(latency_ms, 3),
                payload_summary=summary,
                **details,
            )
            return AttemptOutcome(
                tier=tier,
                model=model,
                ok=False,
                status_code=None,
                body=None,
                error_text=details["error"],
                latency_ms=latency_ms,
            )

        latency_ms = (time.perf_counter() - started) * 1000.0
        raw_text = response.text
        try:
            body: Any = response.json()
        except ValueError:
            body = None

        ok = (
            response.is_success
            and isinstance(body, dict)
            and not ("error" in body and "choices" not in body)
        )
        error_text = "" if ok else _error_text(body, raw_text)
        log = logger.info if ok else logger.warning
        log(
            "dispatch_response request_id=%s model=%s status=%d ok=%s latency_ms=%.1f",
            request_id,
            model,
            response.status_code,
            ok,
            latency_ms,
        )
        if not ok:
            logger.warning(
                "dispatch_error_body request_id=%s model=%s body=%s",
                request_id,
                model,
                _preview(error_text),
            )
        elif logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "dispatch_body request_id=%s body=%s", request_id, _preview(raw_text)
            )
        self._audit(
            "dispatch_attempt",
            request_id=request_id,
            backend=variant.name,
            tier=tier,
            model=model,
            status=response.status_code,
            ok=ok,
            latency_ms=round(latency_ms, 3),
            payload_summary=summary,
            error=_preview(error_text) if error_text else None,
        )
        return AttemptOutcome(
            tier=tier,
            model=model,
            ok=ok,
            status_code=response.status_code,
            body=body,
            error_text=error_text,
            latency_ms=latency_ms,
        )
