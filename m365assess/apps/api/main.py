from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from m365assess.apps.api.errors import (
    assess_exception_handler,
    http_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from m365assess.apps.api.response import API_PREFIX, API_VERSION
from m365assess.apps.api.routes.app_registrations import router as app_registrations_router
from m365assess.apps.api.routes.assessments import router as assessments_router
from m365assess.apps.api.routes.consent import router as consent_router
from m365assess.apps.api.routes.customers import router as customers_router
from m365assess.apps.api.routes.health import router as health_router
from m365assess.apps.api.routes.maintenance import router as maintenance_router
from m365assess.core.config import Settings, get_settings
from m365assess.core.errors import AssessError
from m365assess.core.logging import configure_logging
from m365assess.services.graph.client import GraphClientFactory
from m365assess.services.tenant_resolver import TenantResolver


logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)
    app = FastAPI(title="M365 Assessment API", version=API_VERSION)
    # Shared collaborators are built once and swapped out in tests.
    app.state.settings = settings
    app.state.graph_factory = GraphClientFactory(settings)
    app.state.tenant_resolver = TenantResolver(settings)

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

    @app.exception_handler(AssessError)
    async def _assess_exception_handler(request: Request, exc: AssessError):
        return await assess_exception_handler(request, exc)

    app.include_router(health_router, prefix=API_PREFIX)
    app.include_router(customers_router, prefix=API_PREFIX)
    # Registration lifecycle: create, consent links, secret rotation, permissions.
    app.include_router(app_registrations_router, prefix=API_PREFIX)
    app.include_router(consent_router, prefix=API_PREFIX)
    app.include_router(assessments_router, prefix=API_PREFIX)
    app.include_router(maintenance_router, prefix=API_PREFIX)
    return app


app = create_app()
