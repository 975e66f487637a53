from __future__ import annotations

from typing import Any


class GatewayError(Exception):
    """Base class for failures surfaced to the caller as structured JSON."""

    status_code = 500
    error_status = "INTERNAL"
    error_type = "internal_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_payload(self) -> dict[str, Any]:
        return {
            "error": {
                "code": self.status_code,
                "message": self.message,
                "status": self.error_status,
                "type": self.error_type,
            },
        }


class MissingCredentialError(GatewayError):
    status_code = 401
    error_status = "UNAUTHENTICATED"
    error_type = "missing_credential"

    def __init__(self, message: str = "API key is missing.") -> None:
        super().__init__(message)


class InvalidRequestShapeError(GatewayError):
    status_code = 400
    error_status = "INVALID_ARGUMENT"
    error_type = "invalid_request"


class NoUserMessageError(InvalidRequestShapeError):
    error_type = "no_user_message"

    def __init__(self, message: str = "No user message found.") -> None:
        super().__init__(message)


class InvalidMediaEncodingError(GatewayError):
    status_code = 400
    error_status = "INVALID_ARGUMENT"
    error_type = "invalid_media_encoding"

    def __init__(self, value: str) -> None:
        preview = value if len(value) <= 48 else value[:48] + "..."
        self.value = value
        super().__init__(f"Malformed data URI: '{preview}'")


class UpstreamFailureError(GatewayError):
    status_code = 502
    error_status = "UNAVAILABLE"
    error_type = "upstream_error"

    def __init__(self, *, model: str, detail: str) -> None:
        self.model = model
        self.detail = detail
        super().__init__(f"Upstream API error with model {model}: {detail}")


class UnknownBackendError(GatewayError):
    status_code = 404
    error_status = "NOT_FOUND"
    error_type = "unknown_backend"

    def __init__(self, backend: str, available: list[str]) -> None:
        self.backend = backend
        self.available = available
        super().__init__(
            f"Backend '{backend}' is not configured. "
            f"Available backends: {', '.join(available) or 'none'}."
        )
