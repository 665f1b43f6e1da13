from __future__ import annotations

import json
import logging
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from m365assess.domain.identifiers import is_guid, is_placeholder_id


logger = logging.getLogger(__name__)

ProvisioningMode = Literal["shared", "dedicated"]
SecretStorage = Literal["key_vault", "database", "database_encrypted", "partner", "none"]


class AppRegistration(BaseModel):
    """Application registration embedded in a customer record.

    Stored as camelCase JSON so rows written by older tooling stay readable.
    ``client_secret`` is only populated by the database fallback of the
    credential store and never leaves the service through the API.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    application_id: str | None = None
    client_id: str | None = None
    service_principal_id: str | None = None
    tenant_id: str | None = None
    client_secret: str | None = None
    secret_ref: str | None = None
    secret_key_id: str | None = None
    secret_storage: SecretStorage = "none"
    permissions: list[str] = []
    provisioning_mode: ProvisioningMode = "shared"
    is_real: bool = False
    needs_setup: bool = True
    setup_status: str = "pending_consent"
    consent_url: str | None = None
    auth_url: str | None = None
    redirect_uri: str | None = None
    created_date: str | None = None
    consented_date: str | None = None

    @property
    def effective_client_id(self) -> str | None:
        # Older rows carried only applicationId, which then held the app id.
        return self.client_id or self.application_id

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    def to_public(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, exclude={"client_secret"})


def _coerce_payload(value: Any) -> dict[str, Any] | None:
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return None
    if not isinstance(value, dict) or not value:
        return None
    return value


def validate_app_registration(value: Any) -> AppRegistration | None:
    """Parse a stored registration payload, returning None when it is unusable.

    Accepts dicts or JSON strings holding an object with a non-empty
    ``applicationId`` or ``clientId``. Anything else (null, empty objects,
    invalid JSON, JSON scalars, missing identifiers) is treated as absent.
    """
    payload = _coerce_payload(value)
    if payload is None:
        return None
    application_id = str(payload.get("applicationId") or "").strip()
    client_id = str(payload.get("clientId") or "").strip()
    if not application_id and not client_id:
        return None
    try:
        return AppRegistration.model_validate(payload)
    except ValidationError as exc:
        logger.warning("app_registration_invalid errors=%s", len(exc.errors()))
        return None


def registration_issue(value: Any) -> str | None:
    # Explain why a stored registration cannot be used without manual setup.
    if value is None:
        return "No app registration"
    if isinstance(value, str):
        if _coerce_payload(value) is None:
            return "App registration is not valid JSON"
    elif not isinstance(value, dict):
        return "App registration has an unexpected type"
    registration = validate_app_registration(value)
    if registration is None:
        return "Missing applicationId"
    client_id = registration.effective_client_id or ""
    if is_placeholder_id(registration.application_id) or is_placeholder_id(client_id):
        return f"Placeholder applicationId: {registration.application_id or client_id}"
    if not is_guid(client_id):
        return f"Invalid client id: {client_id}"
    return None


def is_real_registration(registration: AppRegistration | None) -> bool:
    if registration is None:
        return False
    return registration_issue(registration.to_record()) is None
