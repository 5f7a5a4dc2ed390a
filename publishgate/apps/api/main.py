from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from publishgate.apps.api.errors import (
    http_exception_handler,
    publishgate_error_handler,
    tenant_predicate_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from publishgate.apps.api.response import API_VERSION
from publishgate.apps.api.routes.account_access_admin import router as account_access_admin_router
from publishgate.apps.api.routes.approvals import router as approvals_router
from publishgate.apps.api.routes.governance_admin import router as governance_admin_router
from publishgate.apps.api.routes.health import router as health_router
from publishgate.apps.api.routes.permissions_admin import router as permissions_admin_router
from publishgate.core.config import get_settings
from publishgate.core.errors import PublishGateError
from publishgate.core.logging import configure_logging
from publishgate.persistence.guards import TenantPredicateError
from publishgate.providers.crm.base import CrmReportProvider
from publishgate.services.governance.executors import ExecutorRegistry


logger = logging.getLogger(__name__)


def create_app(
    executors: ExecutorRegistry | None = None,
    crm_client: CrmReportProvider | None = None,
) -> FastAPI:
    """Build the API app.

    Embedders register the side effects behind governed actions through
    ``executors``; without one, governed actions fail validation.
    """
    settings = get_settings()
    configure_logging(settings.log_level)
    app = FastAPI(title=settings.app_name)
    app.state.executors = executors or ExecutorRegistry()
    app.state.crm_client = crm_client

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request ids or assign a new one for traceability.
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

    @app.exception_handler(PublishGateError)
    async def _publishgate_error_handler(request: Request, exc: PublishGateError):
        return await publishgate_error_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(TenantPredicateError)
    async def _tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError):
        return await tenant_predicate_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(permissions_admin_router, prefix=f"/{API_VERSION}")
    app.include_router(account_access_admin_router, prefix=f"/{API_VERSION}")
    app.include_router(governance_admin_router, prefix=f"/{API_VERSION}")
    app.include_router(approvals_router, prefix=f"/{API_VERSION}")
    return app
