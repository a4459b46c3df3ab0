from __future__ import annotations

from typing import Any

from fieldbill.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": _error_example(code=code, message=message, details=details),
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _response("Bad request", code="INVALID_IDENTIFIER", message="Invalid organization id"),
    401: _response("Unauthorized", code="AUTH_UNAUTHORIZED", message="X-Actor-Id and X-Role headers are required"),
    402: _response(
        "Payment required",
        code="USAGE_LIMIT_REACHED",
        message="Лимит исчерпан: 1/1",
        details={"kind": "projects", "plan": "basic", "limit": 1, "used": 1},
    ),
    403: _response("Forbidden", code="AUTH_FORBIDDEN", message="Insufficient role for this operation"),
    404: _response("Not found", code="NOT_FOUND", message="Resource not found"),
    409: _response("Conflict", code="GRACE_ALREADY_USED", message="Grace period already used this month"),
    422: _response("Validation error", code="REQUEST_VALIDATION_ERROR", message="Validation error"),
    500: _response("Internal server error", code="INTERNAL_ERROR", message="Internal server error"),
}
