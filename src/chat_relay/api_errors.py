from __future__ import annotations

from typing import Any

from fastapi.responses import JSONResponse

from chat_relay.error_utils import sanitize_error_message, sanitize_payload


class ApiError(Exception):
    """Error that maps onto a JSON ``{"error", "code"}`` response."""

    status = 500
    code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str = "Internal Server Error",
        code: str | None = None,
        *,
        status: int | None = None,
        extra: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status is not None:
            self.status = status
        self.extra = extra or {}
        self.headers = headers

    def to_payload(self) -> dict[str, Any]:
        return {"error": self.message, "code": self.code, **self.extra}

    def to_response(self) -> JSONResponse:
        return JSONResponse(self.to_payload(), status_code=self.status, headers=self.headers)


class BadRequest(ApiError):
    status = 400
    code = "BAD_REQUEST"


class Unauthorized(ApiError):
    status = 401
    code = "UNAUTHENTICATED"


class NotFound(ApiError):
    status = 404
    code = "NOT_FOUND"


class Conflict(ApiError):
    status = 409
    code = "CONFLICT"


class ServerError(ApiError):
    status = 500
    code = "INTERNAL_ERROR"


class VersionAllocationFailed(ServerError):
    code = "VARIANT_VERSION_ALLOC_FAILED"

    def __init__(self, turn_id: str, attempts: int):
        super().__init__(
            "Failed to allocate variant version due to concurrency",
            extra={"retryable": True},
        )
        self.turn_id = turn_id
        self.attempts = attempts


class VariantVersionConflict(Conflict):
    code = "VARIANT_VERSION_CONFLICT"

    def __init__(self, turn_id: str, version: int):
        super().__init__("Variant version conflict due to concurrent request")
        self.turn_id = turn_id
        self.version = version


class UpstreamAborted(ServerError):
    code = "UPSTREAM_ABORTED"

    def __init__(self, message: str = "Upstream model request aborted"):
        super().__init__(message)


class UpstreamNoContent(ServerError):
    code = "UPSTREAM_NO_CONTENT"

    def __init__(self) -> None:
        super().__init__("No content received from API")


def api_key_not_configured() -> Unauthorized:
    return Unauthorized("API key not configured in settings", "API_KEY_NOT_CONFIGURED")


def upstream_error_response(status: int, payload: Any, message: str) -> JSONResponse:
    """Structured error for a failed upstream call, status passed through.

    The upstream body is echoed with every string masked, since providers
    quote the rejected key back in their error text.
    """
    payload = sanitize_payload(payload)
    details = payload if isinstance(payload, dict) else {}
    return JSONResponse(
        {
            "error": {
                "message": sanitize_error_message(message),
                "upstreamStatus": status,
                "type": details.get("type"),
                "code": details.get("code"),
            },
            "upstream": payload,
        },
        status_code=status,
    )
