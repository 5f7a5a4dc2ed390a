from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from publishgate.apps.api.response import error_response
from publishgate.core.errors import (
    ActionExecutionError,
    AuthorizationDeniedError,
    ConflictError,
    NotFoundError,
    PublishGateError,
    UpstreamDependencyError,
    ValidationFailedError,
)
from publishgate.persistence.guards import TenantPredicateError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    502: "UPSTREAM_UNAVAILABLE",
}

# Most specific class first; subclasses inherit their parent's status.
_DOMAIN_STATUS: tuple[tuple[type[PublishGateError], int], ...] = (
    (AuthorizationDeniedError, 403),
    (ValidationFailedError, 422),
    (ConflictError, 409),
    (NotFoundError, 404),
    (UpstreamDependencyError, 502),
    (ActionExecutionError, 500),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def status_for_error(exc: PublishGateError) -> int:
    for error_type, status_code in _DOMAIN_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


async def publishgate_error_handler(request: Request, exc: PublishGateError) -> JSONResponse:
    status_code = status_for_error(exc)
    details = exc.details or None
    if isinstance(exc, AuthorizationDeniedError):
        # Denials stay uniform; which grant was missing is only in the audit trail.
        details = None
    if status_code >= 500:
        logger.warning("request_failed path=%s code=%s message=%s", request.url.path, exc.code, exc.message)
    payload = error_response(request=request, code=exc.code, message=exc.message, details=jsonable_encoder(details))
    return JSONResponse(content=payload, status_code=status_code)


async def http_exception_handler(request: Request, exc: HTTPException | StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=422)


async def tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError) -> JSONResponse:
    logger.error("tenant_predicate_missing path=%s error=%s", request.url.path, exc.message)
    payload = error_response(request=request, code="TENANT_SCOPE_REQUIRED", message="Tenant scope is required")
    return JSONResponse(content=payload, status_code=500)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # No stack traces in responses; the log carries them.
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
