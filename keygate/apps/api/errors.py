from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from keygate.apps.api.response import error_response
from keygate.core.errors import ConfigError, KeyBackendError


logger = logging.getLogger(__name__)

# Codes used when a route raises HTTPException with a plain string detail.
_STATUS_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
}


def _render(
    request: Request,
    status_code: int,
    *,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Render ``HTTPException`` as the error envelope.

    Routes raise with ``detail={"code": ..., "message": ...}``; any other keys
    in that dict become ``error.details``. String details (framework 404/405)
    get a code derived from the status.
    """
    fallback_code = _STATUS_ERROR_CODES.get(exc.status_code, "HTTP_ERROR")
    if isinstance(exc.detail, dict):
        extra = {k: v for k, v in exc.detail.items() if k not in {"code", "message"}}
        return _render(
            request,
            exc.status_code,
            code=str(exc.detail.get("code") or fallback_code),
            message=str(exc.detail.get("message") or "Request failed"),
            details=extra or None,
            headers=exc.headers,
        )
    return _render(
        request,
        exc.status_code,
        code=fallback_code,
        message=str(exc.detail or "Request failed"),
        headers=exc.headers,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Field errors go to the admin settings form as-is.
    return _render(
        request,
        422,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )


async def key_backend_exception_handler(request: Request, exc: KeyBackendError) -> JSONResponse:
    # Backend error text can carry tokens or internal hosts; clients get a fixed message.
    logger.warning("key_backend_request_failed path=%s status=%s", request.url.path, exc.status_code)
    return _render(request, 502, code="KEY_BACKEND_UNAVAILABLE", message="Credential backend request failed")


async def config_exception_handler(request: Request, exc: ConfigError) -> JSONResponse:
    logger.error("service_misconfigured path=%s error=%s", request.url.path, exc)
    return _render(request, 503, code="SERVICE_MISCONFIGURED", message="Service is not configured")


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    return _render(request, 500, code="INTERNAL_ERROR", message="Internal server error")


def register_exception_handlers(app: FastAPI) -> None:
    # FastAPI's HTTPException subclasses Starlette's, so one handler covers both.
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(KeyBackendError, key_backend_exception_handler)
    app.add_exception_handler(ConfigError, config_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
