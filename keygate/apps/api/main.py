from __future__ import annotations

import time

from fastapi import FastAPI, Request
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.openapi.utils import get_openapi
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse

from keygate.apps.api.errors import register_exception_handlers
from keygate.apps.api.response import API_VERSION, REQUEST_ID_HEADER, get_request_id
from keygate.apps.api.routes.admin import router as admin_router
from keygate.apps.api.routes.auth import router as auth_router
from keygate.apps.api.routes.health import router as health_router
from keygate.apps.api.routes.user_key import router as user_key_router
from keygate.core.config import get_settings
from keygate.core.logging import configure_logging
from keygate.services.telemetry import record_request


PUBLIC_PATHS = frozenset(
    {
        "/v1/health",
        "/v1/health/ready",
        "/v1/auth/login",
        "/v1/auth/callback",
        "/v1/auth/logout",
    }
)


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    # Docs are served under the versioned prefix below.
    app = FastAPI(title=settings.app_name, docs_url=None, redoc_url=None, openapi_url=None)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = get_request_id(request)
        start = time.monotonic()
        response = await call_next(request)
        record_request(
            path=request.url.path,
            status_code=response.status_code,
            latency_ms=(time.monotonic() - start) * 1000.0,
        )
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response

    register_exception_handlers(app)

    # Mount versioned v1 API routes.
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(auth_router, prefix=f"/{API_VERSION}")
    app.include_router(user_key_router, prefix=f"/{API_VERSION}")
    # Admin routes re-check the stored role on every request.
    app.include_router(admin_router, prefix=f"/{API_VERSION}")

    @app.get("/v1/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get("/v1/docs", include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url="/v1/openapi.json", title=f"{app.title} {API_VERSION}")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url="/v1/docs")

    def custom_openapi() -> dict:
        # Document the session cookie and bearer fallback on protected routes.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(
            title=app.title,
            version=API_VERSION,
            routes=app.routes,
        )
        schema["servers"] = [{"url": settings.site_url}]
        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes["SessionCookie"] = {
            "type": "apiKey",
            "in": "cookie",
            "name": settings.session_cookie_name,
        }
        security_schemes["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        for path, operations in schema.get("paths", {}).items():
            if path in PUBLIC_PATHS:
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"SessionCookie": []}, {"BearerAuth": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi

    return app


app = create_app()
