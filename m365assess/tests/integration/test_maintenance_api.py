from __future__ import annotations

import json

import pytest
from httpx import ASGITransport, AsyncClient

from m365assess.tests.utils.app import build_test_app
from m365assess.tests.utils.fakes import make_settings, seed_customer, shared_registration


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_fix_app_registrations_reports_then_applies() -> None:
    # Report mode changes nothing; apply normalizes strings and flags placeholders.
    await seed_customer(tenant_domain="good.com", app_registration=shared_registration())
    stringy = await seed_customer(tenant_domain="string.com", app_registration=json.dumps(shared_registration()))
    placeholder = await seed_customer(
        tenant_name="Placeholder Co",
        tenant_domain="placeholder.com",
        app_registration={"applicationId": "pending-1", "clientId": "pending-1", "isReal": True, "needsSetup": False},
    )
    app = build_test_app(make_settings())
    async with _client(app) as client:
        report = await client.post("/api/fix-app-registrations")
        applied = await client.post("/api/fix-app-registrations", params={"apply": "true"})
        fixed_string = await client.get(f"/api/customers/{stringy.id}")
        fixed_placeholder = await client.get(f"/api/customers/{placeholder.id}")
        rerun = await client.post("/api/fix-app-registrations")

    data = report.json()["data"]
    assert data["applied"] is False
    assert data["totalCustomers"] == 3
    assert data["customersNeedingManualSetup"] == 1
    assert data["customersNormalized"] == 0
    reasons = {item["customerId"]: item["reason"] for item in data["customersNeedingFix"]}
    assert reasons[placeholder.id].startswith("Placeholder applicationId")
    assert stringy.id in reasons

    assert applied.json()["data"]["customersNormalized"] == 1
    assert fixed_string.json()["data"]["needsSetup"] is False
    registration = fixed_placeholder.json()["data"]["appRegistration"]
    assert registration["needsSetup"] is True
    assert registration["setupStatus"] == "manual_setup_required"
    # Normalized rows drop out; placeholders still need manual setup.
    assert [item["customerId"] for item in rerun.json()["data"]["customersNeedingFix"]] == [placeholder.id]
