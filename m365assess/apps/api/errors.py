from __future__ import annotations

import logging
from typing import Any, Mapping

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from m365assess.apps.api.response import error_response, is_api_request
from m365assess.core.errors import AssessError, GraphApiError


logger = logging.getLogger(__name__)

# Fallback codes for errors raised without a structured detail payload.
STATUS_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    502: "UPSTREAM_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _parse_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Routes raise HTTPException(detail={"code", "message", ...extra}); extras become details.
    fallback = STATUS_CODES.get(status_code, "UNKNOWN_ERROR")
    if isinstance(detail, Mapping):
        extra = {key: value for key, value in detail.items() if key not in ("code", "message")}
        return str(detail.get("code") or fallback), str(detail.get("message") or "Request failed"), extra or None
    if isinstance(detail, str) and detail:
        return fallback, detail, None
    return fallback, "Request failed", None


def _json(
    request: Request,
    status_code: int,
    *,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: Mapping[str, str] | None = None,
) -> JSONResponse:
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code, headers=dict(headers) if headers else None)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return await starlette_http_exception_handler(request, exc)


async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Covers route-raised errors plus Starlette's own 404/405 for unknown paths.
    if not is_api_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _parse_detail(exc.detail, exc.status_code)
    return _json(request, exc.status_code, code=code, message=message, details=details, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = jsonable_encoder(exc.errors())
    if not is_api_request(request):
        return JSONResponse(content={"detail": errors}, status_code=422)
    return _json(
        request,
        422,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": errors},
    )


async def assess_exception_handler(request: Request, exc: AssessError) -> JSONResponse:
    # Domain errors carry their own status, code, and troubleshooting checklist.
    details: dict[str, Any] = {}
    if exc.troubleshooting:
        details["troubleshooting"] = exc.troubleshooting
    if isinstance(exc, GraphApiError) and exc.status is not None:
        details["graphStatus"] = exc.status
        if exc.graph_code:
            details["graphCode"] = exc.graph_code
    logger.warning("request_failed path=%s code=%s status=%s", request.url.path, exc.code, exc.status_code)
    return _json(request, exc.status_code, code=exc.code, message=exc.message, details=details or None)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Stack traces go to the log only.
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    if not is_api_request(request):
        return JSONResponse(content={"detail": "Internal Server Error"}, status_code=500)
    return _json(request, 500, code="INTERNAL_ERROR", message="Internal server error")
