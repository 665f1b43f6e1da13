from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, Field


API_PREFIX = "/api"
API_VERSION = "v1"

DataT = TypeVar("DataT")


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ResponseMeta(BaseModel):
    # Every /api payload carries the request id it was served under.
    request_id: str
    api_version: str = API_VERSION
    timestamp: str = Field(default_factory=_utc_now_iso)


class ErrorDetail(BaseModel):
    code: str
    message: str
    # Troubleshooting steps and Graph status details land here.
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[DataT]):
    data: DataT
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def get_request_id(request: Request) -> str:
    # The middleware normally assigns one; handlers that run earlier fall back here.
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    if not request_id:
        request_id = str(uuid4())
    request.state.request_id = request_id
    return request_id


def is_api_request(request: Request) -> bool:
    return request.url.path.startswith(API_PREFIX)


def _meta(request: Request) -> dict[str, Any]:
    return ResponseMeta(request_id=get_request_id(request)).model_dump()


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    return {"data": data, "meta": _meta(request)}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error = ErrorDetail(code=code, message=message, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": _meta(request)}
