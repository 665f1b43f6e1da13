from __future__ import annotations

from typing import Any

from m365assess.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1", "timestamp": "2024-01-01T00:00:00+00:00"},
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
    400: _response("Bad request", code="BAD_REQUEST", message="tenantName and tenantDomain are required"),
    403: _response(
        "Consent or Graph permission missing",
        code="CONSENT_REQUIRED",
        message="Admin consent is required for this application",
        details={"troubleshooting": ["Re-run the admin consent flow for this customer"]},
    ),
    404: _response("Not found", code="CUSTOMER_NOT_FOUND", message="Customer not found"),
    409: _response(
        "Conflict",
        code="APP_REGISTRATION_NEEDS_SETUP",
        message="App registration for Contoso needs setup: Placeholder applicationId: pending-1234",
        details={"troubleshooting": ["Run POST /api/create-multi-tenant-app for this customer"]},
    ),
    422: _response("Validation error", code="REQUEST_VALIDATION_ERROR", message="Validation error"),
    500: _response(
        "Internal or configuration error",
        code="PARTNER_CONFIG_MISSING",
        message="Partner service principal is not configured: missing AZURE_CLIENT_SECRET",
    ),
    502: _response("Graph API error", code="GRAPH_API_ERROR", message="Graph request failed"),
    503: _response("Graph unavailable", code="GRAPH_UNAVAILABLE", message="Graph request failed: ConnectTimeout"),
}
