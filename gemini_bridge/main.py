from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from gemini_bridge.audit import JsonlAuditLogger
from gemini_bridge.codec import decode_data_uri, ensure_sendable
from gemini_bridge.config import BackendCatalog, load_backend_catalog
from gemini_bridge.dispatcher import Dispatcher
from gemini_bridge.errors import (
    GatewayError,
    InvalidRequestShapeError,
    MissingCredentialError,
)
from gemini_bridge.history import extract_window
from gemini_bridge.models import Message, Part, TextPart, parse_contents
from gemini_bridge.normalizer import build_batch_response, usage_metadata
from gemini_bridge.settings import Settings, get_settings
from gemini_bridge.streaming import SSE_HEADERS, synthesize

app = FastAPI(
    title="Gemini Bridge",
    description="Gemini-compatible generateContent API backed by chat-completion providers.",
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")


@app.middleware("http")
async def request_id_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    request_id = (
        request.headers.get("x-request-id")
        or request.headers.get("x-correlation-id")
        or uuid4().hex[:12]
    )
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["x-gateway-request-id"] = request_id
    return response


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    catalog = load_backend_catalog(settings)
    audit_logger = JsonlAuditLogger(
        path=settings.gateway_audit_log_path,
        enabled=settings.gateway_audit_log_enabled,
    )
    app.state.settings = settings
    app.state.backend_catalog = catalog
    app.state.audit_logger = audit_logger
    app.state.dispatcher = Dispatcher(
        timeout_seconds=settings.backend_timeout_seconds,
        connect_timeout_seconds=settings.backend_connect_timeout_seconds,
        read_timeout_seconds=settings.backend_read_timeout_seconds,
        write_timeout_seconds=settings.backend_write_timeout_seconds,
        pool_timeout_seconds=settings.backend_pool_timeout_seconds,
        audit_hook=audit_logger.log if audit_logger.enabled else None,
    )
    default_variant = catalog.get()
    logger.info(
        (
            "startup complete default_backend=%s backends=%s primary_model=%s "
            "fallback_model=%s audit_log_enabled=%s"
        ),
        default_variant.name,
        ",".join(catalog.names()),
        default_variant.tiers.primary,
        default_variant.tiers.fallback,
        audit_logger.enabled,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    dispatcher: Dispatcher | None = getattr(app.state, "dispatcher", None)
    if dispatcher is not None:
        await dispatcher.close()
    audit_logger: JsonlAuditLogger | None = getattr(app.state, "audit_logger", None)
    if audit_logger is not None:
        audit_logger.close()
    logger.info("shutdown complete")


def extract_credential(request: Request) -> str:
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()
    for candidate in (
        request.headers.get("x-goog-api-key"),
        request.query_params.get("key"),
    ):
        if candidate and candidate.strip():
            return candidate.strip()
    return ""


async def _read_json(request: Request) -> Any:
    try:
        return await request.json()
    except Exception as exc:
        raise InvalidRequestShapeError(f"Expected JSON body: {exc}") from exc


def _error_response(exc: GatewayError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


async def _generate_content(
    request: Request, *, model: str, backend: str | None, stream: bool
) -> Response:
    settings: Settings = app.state.settings
    catalog: BackendCatalog = app.state.backend_catalog
    dispatcher: Dispatcher = app.state.dispatcher
    request_id: str = request.state.request_id

    variant = catalog.get(backend)
    credential = extract_credential(request)
    if not credential:
        raise MissingCredentialError()

    history = parse_contents(await _read_json(request))
    window = extract_window(history)
    ensure_sendable(window, variant)
    logger.info(
        (
            "generate_request request_id=%s backend=%s requested_model=%s stream=%s "
            "history=%d window=%d"
        ),
        request_id,
        variant.name,
        model,
        stream,
        len(history),
        len(window),
    )

    if stream:
        return StreamingResponse(
            content=synthesize(
                lambda: dispatcher.dispatch(
                    window, credential, variant=variant, request_id=request_id
                ),
                window=window,
                delay_seconds=settings.stream_delay,
                request_id=request_id,
            ),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    try:
        result = await dispatcher.dispatch(
            window, credential, variant=variant, request_id=request_id
        )
    except GatewayError:
        raise
    except Exception as exc:
        logger.exception("generate_failed request_id=%s", request_id)
        return _error_response(GatewayError(str(exc) or exc.__class__.__name__))
    return JSONResponse(content=build_batch_response(result, usage_metadata(window, result)))


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/v1beta/models/{model}:generateContent")
@app.post("/v1/models/{model}:generateContent")
async def generate_content(model: str, request: Request) -> Response:
    return await _generate_content(request, model=model, backend=None, stream=False)


@app.post("/v1beta/models/{model}:streamGenerateContent")
@app.post("/v1/models/{model}:streamGenerateContent")
async def stream_generate_content(model: str, request: Request) -> Response:
    return await _generate_content(request, model=model, backend=None, stream=True)


@app.post("/backends/{backend}/v1beta/models/{model}:generateContent")
async def backend_generate_content(backend: str, model: str, request: Request) -> Response:
    return await _generate_content(request, model=model, backend=backend, stream=False)


@app.post("/backends/{backend}/v1beta/models/{model}:streamGenerateContent")
async def backend_stream_generate_content(
    backend: str, model: str, request: Request
) -> Response:
    return await _generate_content(request, model=model, backend=backend, stream=True)


@app.post("/generate")
async def generate_image(request: Request) -> JSONResponse:
    settings: Settings = app.state.settings
    catalog: BackendCatalog = app.state.backend_catalog
    dispatcher: Dispatcher = app.state.dispatcher
    request_id: str = request.state.request_id

    try:
        body = await request.json()
    except Exception:
        return JSONResponse(status_code=400, content={"error": "Expected JSON body."})
    if not isinstance(body, dict):
        return JSONResponse(
            status_code=400, content={"error": "Expected a JSON object request body."}
        )

    credential = (
        body.get("credential") or body.get("apikey") or settings.openrouter_api_key or ""
    )
    prompt = body.get("prompt")
    images = body.get("images")
    if not credential:
        return JSONResponse(status_code=401, content={"error": "API key is not set."})
    has_prompt = isinstance(prompt, str) and bool(prompt.strip())
    if not has_prompt or not isinstance(images, list) or not images:
        return JSONResponse(
            status_code=400, content={"error": "Prompt and images are required."}
        )

    try:
        parts: list[Part] = [TextPart(value=prompt)]
        parts.extend(decode_data_uri(image) for image in images)
        window = (Message(role="user", parts=tuple(parts)),)
        result = await dispatcher.dispatch(
            window, str(credential), variant=catalog.get(), request_id=request_id
        )
    except GatewayError as exc:
        logger.warning(
            "generate_image_failed request_id=%s status=%d error=%s",
            request_id,
            exc.status_code,
            exc.message,
        )
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})
    except Exception as exc:
        logger.exception("generate_image_failed request_id=%s", request_id)
        return JSONResponse(status_code=500, content={"error": str(exc)})

    if result.is_image:
        return JSONResponse(content={"imageUrl": result.content})

    message = f"Model returned text instead of an image: {result.content}"
    logger.error("generate_image_text_reply request_id=%s", request_id)
    return JSONResponse(status_code=502, content={"error": message})


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    logger.info(
        "request_rejected request_id=%s path=%s status=%d type=%s",
        getattr(request.state, "request_id", "-"),
        request.url.path,
        exc.status_code,
        exc.error_type,
    )
    return _error_response(exc)


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "request_failed request_id=%s path=%s",
        getattr(request.state, "request_id", "-"),
        request.url.path,
    )
    return _error_response(GatewayError(str(exc) or exc.__class__.__name__))


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run("gemini_bridge.main:app", host=settings.host, port=settings.port, reload=False)


if __name__ == "__main__":
    run()
