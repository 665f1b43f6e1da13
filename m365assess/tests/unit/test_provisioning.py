from __future__ import annotations

import asyncio

import httpx
import pytest

from m365assess.core.errors import (
    GraphPermissionError,
    GraphTransientError,
    PartnerConfigError,
    UnknownPermissionError,
)
from m365assess.domain.models import Customer
from m365assess.persistence.db import SessionLocal
from m365assess.persistence.repos import customers as customers_repo
from m365assess.services.graph.permissions import (
    DEFAULT_PERMISSIONS,
    MICROSOFT_GRAPH_APP_ID,
    build_required_resource_access,
    normalize_permissions,
)
from m365assess.services.provisioning import (
    create_app_registration,
    provision_customer,
    rotate_client_secret,
)
from m365assess.services.credentials import secret_name
from m365assess.tests.utils.fakes import (
    CUSTOMER_TENANT_ID,
    DEDICATED_APP_ID,
    PARTNER_CLIENT_ID,
    FakeVault,
    GraphStub,
    TokenRecorder,
    graph_factory,
    json_response,
    make_settings,
    request_json,
    resolver_for,
    seed_customer,
)


def _customer() -> Customer:
    return Customer(id="cust-1", tenant_name="Contoso Ltd", tenant_domain="contoso.com", tenant_id=CUSTOMER_TENANT_ID)


def _provisioning_stub(create_responses: list | None = None) -> GraphStub:
    created = json_response(201, {"id": "app-object-1", "appId": DEDICATED_APP_ID})
    return (
        GraphStub()
        .add("POST", "/applications", create_responses or [created])
        .add("POST", "/servicePrincipals", json_response(201, {"id": "sp-1", "appId": DEDICATED_APP_ID}))
        .add(
            "POST",
            "/applications/app-object-1/addPassword",
            json_response(200, {"secretText": "generated-secret", "keyId": "key-1"}),
        )
    )


def test_permissions_default_and_map_to_app_roles() -> None:
    assert normalize_permissions(None) == list(DEFAULT_PERMISSIONS)
    assert normalize_permissions([" User.Read.All ", "User.Read.All", ""]) == ["User.Read.All"]
    access = build_required_resource_access(["Organization.Read.All"])
    assert access[0]["resourceAppId"] == MICROSOFT_GRAPH_APP_ID
    assert access[0]["resourceAccess"][0]["type"] == "Role"
    with pytest.raises(UnknownPermissionError):
        build_required_resource_access(["Mail.Send.Everywhere"])


@pytest.mark.asyncio
async def test_missing_partner_config_fails_before_any_call() -> None:
    # No token request and no Graph request happen without partner credentials.
    settings = make_settings(azure_client_id=None, azure_tenant_id="")
    stub = _provisioning_stub()
    tokens = TokenRecorder()
    with pytest.raises(PartnerConfigError) as excinfo:
        await create_app_registration(
            "Contoso",
            None,
            customer=_customer(),
            settings=settings,
            graph_factory=graph_factory(settings, stub, tokens),
            resolver=resolver_for(settings),
        )
    assert "AZURE_CLIENT_ID" in excinfo.value.message
    assert "AZURE_TENANT_ID" in excinfo.value.message
    assert stub.requests == []
    assert tokens.calls == []


@pytest.mark.asyncio
async def test_create_app_registration_builds_multi_tenant_app() -> None:
    settings = make_settings()
    stub = _provisioning_stub()
    tokens = TokenRecorder()
    app = await create_app_registration(
        "Contoso Ltd",
        ["Organization.Read.All", "Reports.Read.All"],
        customer=_customer(),
        settings=settings,
        graph_factory=graph_factory(settings, stub, tokens),
        resolver=resolver_for(settings),
    )
    payload = request_json(stub.calls("POST", "/applications")[0])
    assert payload["signInAudience"] == "AzureADMultipleOrgs"
    assert payload["displayName"] == "M365-Security-Assessment-Contoso-Ltd"
    assert payload["web"]["redirectUris"] == [settings.redirect_uri]
    assert len(payload["requiredResourceAccess"][0]["resourceAccess"]) == 2
    assert app.client_id == DEDICATED_APP_ID
    assert app.client_secret == "generated-secret"
    assert app.consent_url.startswith(
        f"https://login.microsoftonline.com/{CUSTOMER_TENANT_ID}/adminconsent?client_id={DEDICATED_APP_ID}"
    )
    # Provisioning authenticates as the partner in the partner tenant.
    assert tokens.calls[0].client_id == PARTNER_CLIENT_ID
    assert tokens.calls[0].tenant_id == settings.azure_tenant_id


@pytest.mark.asyncio
async def test_application_create_is_retried_on_transient_errors() -> None:
    settings = make_settings()
    stub = _provisioning_stub(
        [
            json_response(503, {"error": {"code": "ServiceUnavailable", "message": "busy"}}),
            json_response(201, {"id": "app-object-1", "appId": DEDICATED_APP_ID}),
        ]
    )
    app = await create_app_registration(
        "Contoso",
        None,
        customer=_customer(),
        settings=settings,
        graph_factory=graph_factory(settings, stub),
        resolver=resolver_for(settings),
    )
    assert app.application_id == "app-object-1"
    assert len(stub.calls("POST", "/applications")) == 2


@pytest.mark.asyncio
async def test_slow_application_create_is_not_posted_twice() -> None:
    # A create that outlives the call timeout may already exist in the partner tenant.
    settings = make_settings(ext_call_timeout_ms=100)

    async def _slow_create(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(0.3)
        return json_response(201, {"id": "app-object-1", "appId": DEDICATED_APP_ID})

    stub = _provisioning_stub().add("POST", "/applications", _slow_create)
    with pytest.raises(GraphTransientError) as excinfo:
        await create_app_registration(
            "Contoso",
            None,
            customer=_customer(),
            settings=settings,
            graph_factory=graph_factory(settings, stub),
            resolver=resolver_for(settings),
        )
    assert len(stub.calls("POST", "/applications")) == 1
    assert any("M365-Security-Assessment-Contoso" in step for step in excinfo.value.troubleshooting)
    assert stub.calls("POST", "/servicePrincipals") == []


@pytest.mark.asyncio
async def test_insufficient_privileges_surface_remediation_steps() -> None:
    # 403 from Graph explains which permission the partner principal lacks.
    settings = make_settings()
    stub = _provisioning_stub(
        [
            json_response(
                403,
                {"error": {"code": "Authorization_RequestDenied", "message": "Insufficient privileges to complete the operation."}},
            )
        ]
    )
    with pytest.raises(GraphPermissionError) as excinfo:
        await create_app_registration(
            "Contoso",
            None,
            customer=_customer(),
            settings=settings,
            graph_factory=graph_factory(settings, stub),
            resolver=resolver_for(settings),
        )
    assert "Application.ReadWrite.All" in excinfo.value.message
    assert any("Application.ReadWrite.All" in step for step in excinfo.value.troubleshooting)
    assert len(stub.calls("POST", "/applications")) == 1


@pytest.mark.asyncio
async def test_shared_provisioning_reuses_partner_app_without_graph_calls() -> None:
    settings = make_settings(provisioning_mode="shared")
    stub = GraphStub()
    customer = await seed_customer(tenant_id="contoso.com")
    async with SessionLocal() as session:
        loaded = await customers_repo.get_customer(session, customer.id)
        result = await provision_customer(
            session,
            loaded,
            settings=settings,
            graph_factory=graph_factory(settings, stub),
            resolver=resolver_for(settings, CUSTOMER_TENANT_ID),
            vault=None,
        )
        await session.commit()
    assert result.mode == "shared"
    assert result.client_id == PARTNER_CLIENT_ID
    assert result.secret_stored is False
    assert stub.requests == []
    assert loaded.tenant_id == CUSTOMER_TENANT_ID
    assert loaded.consent_status == "pending"
    assert loaded.app_registration["secretStorage"] == "partner"
    assert f"/{CUSTOMER_TENANT_ID}/adminconsent" in result.consent_url


@pytest.mark.asyncio
async def test_dedicated_provisioning_stores_secret_in_vault() -> None:
    settings = make_settings()
    vault = FakeVault()
    stub = _provisioning_stub()
    customer = await seed_customer()
    async with SessionLocal() as session:
        loaded = await customers_repo.get_customer(session, customer.id)
        result = await provision_customer(
            session,
            loaded,
            settings=settings,
            graph_factory=graph_factory(settings, stub),
            resolver=resolver_for(settings),
            vault=vault,
            mode="dedicated",
        )
        await session.commit()
    assert result.mode == "dedicated"
    assert result.secret_stored is True
    assert vault.secrets[secret_name(customer.id)] == "generated-secret"
    assert loaded.app_registration["clientId"] == DEDICATED_APP_ID
    assert loaded.app_registration["secretStorage"] == "key_vault"
    assert "clientSecret" not in loaded.app_registration


@pytest.mark.asyncio
async def test_rotation_replaces_secret_and_removes_previous_key() -> None:
    settings = make_settings()
    vault = FakeVault()
    stub = _provisioning_stub().add("POST", "/applications/app-object-1/removePassword", json_response(204))
    customer = await seed_customer(
        app_registration={
            "applicationId": "app-object-1",
            "clientId": DEDICATED_APP_ID,
            "provisioningMode": "dedicated",
            "secretKeyId": "old-key",
            "secretStorage": "key_vault",
            "secretRef": "customer-x-client-secret",
        }
    )
    async with SessionLocal() as session:
        loaded = await customers_repo.get_customer(session, customer.id)
        result = await rotate_client_secret(
            session, loaded, settings=settings, graph_factory=graph_factory(settings, stub), vault=vault
        )
        await session.commit()
    assert result.secret_stored is True
    assert result.warnings == []
    assert loaded.app_registration["secretKeyId"] == "key-1"
    assert request_json(stub.calls("POST", "/applications/app-object-1/removePassword")[0]) == {"keyId": "old-key"}
