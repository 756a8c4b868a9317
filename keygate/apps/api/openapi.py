from __future__ import annotations

from typing import Any

from keygate.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, code: str, message: str) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    401: _response("Unauthorized", "AUTH_UNAUTHORIZED", "Missing or invalid session"),
    403: _response("Forbidden", "AUTH_FORBIDDEN", "Admin role required"),
    404: _response("Not found", "NOT_FOUND", "Resource not found"),
    422: _response("Validation error", "REQUEST_VALIDATION_ERROR", "Validation error"),
    500: _response("Internal server error", "INTERNAL_ERROR", "Internal server error"),
    502: _response("Credential backend unavailable", "KEY_BACKEND_UNAVAILABLE", "Credential backend request failed"),
    503: _response("Service misconfigured", "SERVICE_MISCONFIGURED", "Service is not configured"),
}
