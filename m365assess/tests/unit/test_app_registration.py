from __future__ import annotations

import json

from m365assess.domain.app_registration import (
    AppRegistration,
    is_real_registration,
    registration_issue,
    validate_app_registration,
)
from m365assess.domain.identifiers import is_custom_domain, is_guid, is_placeholder_id
from m365assess.tests.utils.fakes import PARTNER_CLIENT_ID, shared_registration


def test_validate_rejects_unusable_payloads() -> None:
    # Null, empty, malformed, scalar, and id-less payloads all count as absent.
    assert validate_app_registration(None) is None
    assert validate_app_registration({}) is None
    assert validate_app_registration("{not json") is None
    assert validate_app_registration("42") is None
    assert validate_app_registration({"tenantId": "x"}) is None


def test_validate_accepts_json_string_and_dict() -> None:
    # Historical rows stored the registration as a JSON string.
    record = shared_registration()
    from_string = validate_app_registration(json.dumps(record))
    from_dict = validate_app_registration(record)
    assert from_string is not None and from_dict is not None
    assert from_string.effective_client_id == PARTNER_CLIENT_ID
    assert from_dict.provisioning_mode == "shared"


def test_effective_client_id_falls_back_to_application_id() -> None:
    # Legacy rows carry only applicationId.
    registration = validate_app_registration({"applicationId": PARTNER_CLIENT_ID})
    assert registration is not None
    assert registration.effective_client_id == PARTNER_CLIENT_ID


def test_registration_issue_reasons() -> None:
    # Each unusable shape reports a reason operators can act on.
    assert registration_issue(None) == "No app registration"
    assert registration_issue("nope") == "App registration is not valid JSON"
    assert registration_issue({"tenantId": "t"}) == "Missing applicationId"
    assert registration_issue({"applicationId": "pending-123"}).startswith("Placeholder applicationId")
    assert registration_issue({"clientId": "not-a-guid"}) == "Invalid client id: not-a-guid"
    assert registration_issue(shared_registration()) is None


def test_public_view_never_contains_client_secret() -> None:
    # Database-fallback secrets stay inside the service.
    registration = AppRegistration(client_id=PARTNER_CLIENT_ID, client_secret="s3cret", secret_storage="database")
    assert "clientSecret" in registration.to_record()
    assert "clientSecret" not in registration.to_public()
    assert is_real_registration(registration)


def test_identifier_helpers() -> None:
    assert is_guid("AAAAAAAA-bbbb-cccc-dddd-eeeeeeeeeeee")
    assert not is_guid("contoso.com")
    assert is_custom_domain("modernworkplace.tips")
    assert not is_custom_domain("contoso.onmicrosoft.com")
    assert not is_custom_domain(PARTNER_CLIENT_ID)
    assert is_placeholder_id("ERROR_no_app")
    assert not is_placeholder_id(None)
