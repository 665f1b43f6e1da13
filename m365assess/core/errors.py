from __future__ import annotations


class AssessError(Exception):
    """Base error for m365assess."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, *, troubleshooting: list[str] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.troubleshooting = list(troubleshooting or [])


class PartnerConfigError(AssessError):
    """Partner service principal or deployment configuration missing."""

    status_code = 500
    code = "PARTNER_CONFIG_MISSING"


class UnknownPermissionError(AssessError):
    """Requested Graph permission has no known application role."""

    status_code = 400
    code = "UNKNOWN_PERMISSION"


class TokenAcquisitionError(AssessError):
    """App-only token could not be issued for a tenant."""

    status_code = 401
    code = "TOKEN_ACQUISITION_FAILED"


class ConsentRequiredError(TokenAcquisitionError):
    """Tenant admin has not consented to the application."""

    status_code = 403
    code = "CONSENT_REQUIRED"


class GraphApiError(AssessError):
    """Graph request failed with a non-retryable status."""

    status_code = 502
    code = "GRAPH_API_ERROR"

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        graph_code: str | None = None,
        troubleshooting: list[str] | None = None,
    ) -> None:
        super().__init__(message, troubleshooting=troubleshooting)
        self.status = status
        self.graph_code = graph_code


class GraphTransientError(GraphApiError):
    """Graph throttling, 5xx, or transport failure."""

    status_code = 503
    code = "GRAPH_UNAVAILABLE"


class GraphPermissionError(GraphApiError):
    """Caller lacks the Graph permission required for the request."""

    status_code = 403
    code = "GRAPH_PERMISSION_DENIED"


class GraphNotFoundError(GraphApiError):
    """Graph resource does not exist."""

    status_code = 404
    code = "GRAPH_NOT_FOUND"


class AppRegistrationSetupError(AssessError):
    """Customer app registration is missing, corrupted, or a placeholder."""

    status_code = 409
    code = "APP_REGISTRATION_NEEDS_SETUP"


class ConsentStateError(AssessError):
    """Consent state token is malformed, forged, expired, or replayed."""

    status_code = 400
    code = "INVALID_CONSENT_STATE"


class CredentialStoreError(AssessError):
    """Client secret could not be stored or retrieved."""

    status_code = 500
    code = "CREDENTIAL_STORE_ERROR"
