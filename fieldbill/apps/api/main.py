from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.openapi.utils import get_openapi
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from fieldbill.apps.api.errors import (
    domain_exception_handler,
    http_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from fieldbill.apps.api.response import API_VERSION
from fieldbill.apps.api.routes.admin import router as admin_router
from fieldbill.apps.api.routes.health import router as health_router
from fieldbill.apps.api.routes.internal import router as internal_router
from fieldbill.apps.api.routes.org_billing import router as org_billing_router
from fieldbill.apps.api.routes.publications import router as publications_router
from fieldbill.apps.api.routes.storage import router as storage_router
from fieldbill.apps.api.routes.usage import router as usage_router
from fieldbill.apps.api.routes.wallet import router as wallet_router
from fieldbill.core.config import get_settings
from fieldbill.core.errors import FieldbillError
from fieldbill.core.logging import configure_logging


logger = logging.getLogger(__name__)

_PUBLIC_PATHS = {"/v1/health"}


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title="Fieldbill API")

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.info(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
            request_id,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(FieldbillError)
    async def _domain_exception_handler(request: Request, exc: FieldbillError):
        return await domain_exception_handler(request, exc)

    # Mount versioned v1 API routes.
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(usage_router, prefix=f"/{API_VERSION}")
    app.include_router(publications_router, prefix=f"/{API_VERSION}")
    app.include_router(storage_router, prefix=f"/{API_VERSION}")
    app.include_router(org_billing_router, prefix=f"/{API_VERSION}")
    app.include_router(wallet_router, prefix=f"/{API_VERSION}")
    # Scheduler-only endpoints guarded by the cron secret.
    app.include_router(internal_router, prefix=f"/{API_VERSION}")
    # Platform admin endpoints guarded by the admin token.
    app.include_router(admin_router, prefix=f"/{API_VERSION}")

    @app.get("/v1/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get("/v1/docs", include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url="/v1/openapi.json", title="Fieldbill API v1")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url="/v1/docs")

    def custom_openapi() -> dict:
        # Describe gateway identity headers and operator secrets as security schemes.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title="Fieldbill API", version=API_VERSION, routes=app.routes)
        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes["GatewayIdentity"] = {"type": "apiKey", "in": "header", "name": "X-Actor-Id"}
        security_schemes["CronSecret"] = {"type": "apiKey", "in": "header", "name": "X-Cron-Secret"}
        security_schemes["AdminToken"] = {"type": "apiKey", "in": "header", "name": "X-Admin-Token"}
        for path, operations in schema.get("paths", {}).items():
            if path in _PUBLIC_PATHS:
                continue
            if path.startswith("/v1/internal/"):
                scheme = "CronSecret"
            elif path.startswith("/v1/admin/"):
                scheme = "AdminToken"
            else:
                scheme = "GatewayIdentity"
            for operation in operations.values():
                operation.setdefault("security", [{scheme: []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi
    logger.info("app_created name=%s", settings.app_name)
    return app


app = create_app()
