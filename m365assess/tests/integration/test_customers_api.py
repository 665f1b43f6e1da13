from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from m365assess.domain.identifiers import is_guid
from m365assess.tests.utils.app import build_test_app
from m365assess.tests.utils.fakes import (
    CUSTOMER_TENANT_ID,
    PARTNER_CLIENT_ID,
    FakeVault,
    GraphStub,
    make_settings,
    seed_customer,
)


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_health_reports_configuration_readiness() -> None:
    app = build_test_app(make_settings(key_vault_url=None))
    async with _client(app) as client:
        response = await client.get("/api/health")
    assert response.status_code == 200
    body = response.json()
    assert body["data"]["status"] == "ok"
    assert body["data"]["partner_configured"] is True
    assert body["meta"]["api_version"] == "v1"
    assert response.headers["X-Request-Id"]


@pytest.mark.asyncio
async def test_unresolved_custom_domain_gets_common_consent_link() -> None:
    # Discovery fails, so the consent URL falls back to /common with a real client id.
    stub = GraphStub()
    app = build_test_app(make_settings(), stub)
    async with _client(app) as client:
        response = await client.post(
            "/api/customers",
            json={"tenantName": "Modern Workplace", "tenantDomain": "modernworkplace.tips"},
        )
    assert response.status_code == 201
    data = response.json()["data"]
    assert data["consentUrl"].startswith("https://login.microsoftonline.com/common/adminconsent?client_id=")
    assert data["tenantResolved"] is False
    assert data["warnings"]
    customer = data["customer"]
    assert customer["tenantId"] == "modernworkplace.tips"
    assert customer["consentStatus"] == "pending"
    assert is_guid(customer["appRegistration"]["clientId"])
    assert customer["appRegistration"]["clientId"] == PARTNER_CLIENT_ID
    assert "clientSecret" not in customer["appRegistration"]
    assert stub.requests == []


@pytest.mark.asyncio
async def test_resolved_domain_stores_tenant_guid() -> None:
    app = build_test_app(make_settings(), resolved_tenant_id=CUSTOMER_TENANT_ID)
    async with _client(app) as client:
        response = await client.post(
            "/api/customers",
            json={"tenantName": "Contoso", "tenantDomain": "Contoso.com", "contactEmail": "it@contoso.com"},
        )
    data = response.json()["data"]
    assert response.status_code == 201
    assert data["tenantResolved"] is True
    assert data["customer"]["tenantId"] == CUSTOMER_TENANT_ID
    assert data["customer"]["tenantDomain"] == "contoso.com"
    assert f"/{CUSTOMER_TENANT_ID}/adminconsent" in data["consentUrl"]


@pytest.mark.asyncio
async def test_missing_required_fields_return_400() -> None:
    app = build_test_app(make_settings())
    async with _client(app) as client:
        response = await client.post("/api/customers", json={"tenantName": "Only a name"})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "MISSING_REQUIRED_FIELDS"


@pytest.mark.asyncio
async def test_duplicate_domain_is_rejected_case_insensitively() -> None:
    existing = await seed_customer(tenant_domain="contoso.com")
    app = build_test_app(make_settings())
    async with _client(app) as client:
        response = await client.post("/api/customers", json={"tenantName": "Again", "tenantDomain": "CONTOSO.com"})
    assert response.status_code == 409
    error = response.json()["error"]
    assert error["code"] == "CUSTOMER_EXISTS"
    assert error["details"]["customerId"] == existing.id


@pytest.mark.asyncio
async def test_deleted_customer_domain_can_be_reused() -> None:
    await seed_customer(tenant_domain="contoso.com", status="deleted")
    app = build_test_app(make_settings(), resolved_tenant_id=CUSTOMER_TENANT_ID)
    async with _client(app) as client:
        response = await client.post("/api/customers", json={"tenantName": "Contoso", "tenantDomain": "contoso.com"})
    assert response.status_code == 201


@pytest.mark.asyncio
async def test_provisioning_failure_keeps_customer_with_guidance() -> None:
    # Without partner credentials the customer is saved and the response explains what to fix.
    app = build_test_app(make_settings(azure_client_secret=None), resolved_tenant_id=CUSTOMER_TENANT_ID)
    async with _client(app) as client:
        response = await client.post("/api/customers", json={"tenantName": "Contoso", "tenantDomain": "contoso.com"})
        listing = await client.get("/api/customers")
    assert response.status_code == 201
    data = response.json()["data"]
    assert data["consentUrl"] is None
    assert data["customer"]["appRegistration"] is None
    assert data["customer"]["needsSetup"] is True
    assert any("AZURE_CLIENT_SECRET" in item for item in data["troubleshooting"])
    assert listing.json()["data"]["total"] == 1


@pytest.mark.asyncio
async def test_skip_auto_registration() -> None:
    app = build_test_app(make_settings(), resolved_tenant_id=CUSTOMER_TENANT_ID)
    async with _client(app) as client:
        response = await client.post(
            "/api/customers",
            json={"tenantName": "Contoso", "tenantDomain": "contoso.com", "skipAutoAppRegistration": True},
        )
    data = response.json()["data"]
    assert data["customer"]["appRegistration"] is None
    assert data["nextSteps"]


@pytest.mark.asyncio
async def test_get_list_and_soft_delete() -> None:
    customer = await seed_customer(
        app_registration={
            "applicationId": "obj-1",
            "clientId": "12345678-1234-1234-1234-123456789abc",
            "provisioningMode": "dedicated",
            "secretStorage": "key_vault",
            "secretRef": "customer-1-client-secret",
        }
    )
    vault = FakeVault()
    vault.secrets["customer-1-client-secret"] = "value"
    app = build_test_app(make_settings(), vault=vault)
    async with _client(app) as client:
        fetched = await client.get(f"/api/customers/{customer.id}")
        deleted = await client.delete(f"/api/customers/{customer.id}")
        missing = await client.get(f"/api/customers/{customer.id}")
        active = await client.get("/api/customers")
        everything = await client.get("/api/customers", params={"includeDeleted": "true"})
    assert fetched.status_code == 200
    assert fetched.json()["data"]["id"] == customer.id
    assert deleted.json()["data"]["status"] == "deleted"
    assert vault.secrets == {}
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "CUSTOMER_NOT_FOUND"
    assert active.json()["data"]["total"] == 0
    assert everything.json()["data"]["total"] == 1


@pytest.mark.asyncio
async def test_unknown_route_uses_error_envelope() -> None:
    app = build_test_app(make_settings())
    async with _client(app) as client:
        response = await client.get("/api/does-not-exist")
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"
