from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

import httpx
from azure.core.exceptions import ServiceRequestError

from m365assess.core.config import Settings
from m365assess.domain.models import Customer
from m365assess.persistence.db import SessionLocal
from m365assess.services.graph.auth import ClientCredentials
from m365assess.services.graph.client import GraphClientFactory
from m365assess.services.tenant_resolver import TenantResolver


PARTNER_CLIENT_ID = "11111111-2222-3333-4444-555555555555"
PARTNER_TENANT_ID = "99999999-8888-7777-6666-555555555555"
CUSTOMER_TENANT_ID = "aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee"
DEDICATED_APP_ID = "12345678-1234-1234-1234-123456789abc"
GRAPH_BASE = "https://graph.microsoft.com/v1.0"

Handler = Callable[[httpx.Request], httpx.Response]


def make_settings(**overrides: Any) -> Settings:
    # Partner credentials are configured and retries are fast by default.
    values: dict[str, Any] = {
        "azure_client_id": PARTNER_CLIENT_ID,
        "azure_client_secret": "partner-secret",
        "azure_tenant_id": PARTNER_TENANT_ID,
        "consent_state_secret": "test-consent-state-secret",
        "redirect_uri": "https://assess.example.com/api/consent-callback",
        "consent_result_url": "https://assess.example.com/consent-result",
        "ext_retry_backoff_ms": 1,
        "ext_call_timeout_ms": 2000,
        "redis_url": None,
        "key_vault_url": None,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def json_response(status_code: int, body: Any = None, headers: dict[str, str] | None = None) -> httpx.Response:
    return httpx.Response(status_code, json=body if body is not None else {}, headers=headers)


@dataclass
class GraphStub:
    """Route table for an httpx.MockTransport keyed by (method, path).

    A route value is either a response, a list of responses consumed in order
    (the last one repeats), or a callable taking the request.
    """

    routes: dict[tuple[str, str], Any] = field(default_factory=dict)
    requests: list[httpx.Request] = field(default_factory=list)

    def add(self, method: str, path: str, response: Any) -> "GraphStub":
        self.routes[(method.upper(), path)] = response
        return self

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [
            request
            for request in self.requests
            if request.method == method.upper() and _route_path(request) == path
        ]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, _route_path(request)))
        if route is None:
            return json_response(404, {"error": {"code": "Request_ResourceNotFound", "message": "not stubbed"}})
        if callable(route):
            return route(request)
        if isinstance(route, list):
            route = route.pop(0) if len(route) > 1 else route[0]
        # Hand out a fresh response each time; stubs may be served repeatedly.
        return httpx.Response(route.status_code, content=route.content, headers=route.headers)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def _route_path(request: httpx.Request) -> str:
    path = request.url.path
    prefix = "/v1.0"
    return path[len(prefix):] if path.startswith(prefix) else path


def request_json(request: httpx.Request) -> Any:
    return json.loads(request.content.decode("utf-8")) if request.content else None


class TokenRecorder:
    # Stand-in for msal: hands out fixed tokens and records who asked.
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls: list[ClientCredentials] = []

    async def __call__(self, credentials: ClientCredentials) -> str:
        self.calls.append(credentials)
        if self.error is not None:
            raise self.error
        return f"token-{credentials.client_id}-{credentials.tenant_id}"


def graph_factory(settings: Settings, stub: GraphStub, tokens: TokenRecorder | None = None) -> GraphClientFactory:
    return GraphClientFactory(settings, token_acquirer=tokens or TokenRecorder(), transport=stub.transport())


def resolver_for(settings: Settings, tenant_id: str | None = None) -> TenantResolver:
    # Discovery answers with tenant_id when given, otherwise every lookup fails.
    def _handler(request: httpx.Request) -> httpx.Response:
        if tenant_id and request.url.path.endswith("/.well-known/openid-configuration"):
            return json_response(
                200, {"issuer": f"https://login.microsoftonline.com/{tenant_id}/v2.0"}
            )
        return json_response(400, {"error": "invalid_tenant"})

    return TenantResolver(settings, transport=httpx.MockTransport(_handler))


class FakeVault:
    # In-memory secret vault; failing=True simulates an unreachable Key Vault.
    def __init__(self, *, failing: bool = False) -> None:
        self.failing = failing
        self.secrets: dict[str, str] = {}
        self.metadata: dict[str, dict[str, Any]] = {}

    async def set_secret(
        self,
        name: str,
        value: str,
        *,
        content_type: str | None = None,
        tags: dict[str, str] | None = None,
        expires_on: datetime | None = None,
    ) -> None:
        if self.failing:
            raise ServiceRequestError("vault unreachable")
        self.secrets[name] = value
        self.metadata[name] = {"content_type": content_type, "tags": tags, "expires_on": expires_on}

    async def get_secret(self, name: str) -> str | None:
        if self.failing:
            raise ServiceRequestError("vault unreachable")
        return self.secrets.get(name)

    async def delete_secret(self, name: str) -> None:
        if self.failing:
            raise ServiceRequestError("vault unreachable")
        self.secrets.pop(name, None)


async def seed_customer(
    *,
    tenant_name: str = "Contoso",
    tenant_domain: str = "contoso.com",
    tenant_id: str | None = CUSTOMER_TENANT_ID,
    app_registration: Any = None,
    consent_status: str = "pending",
    status: str = "active",
) -> Customer:
    # Insert a customer row directly, bypassing provisioning.
    async with SessionLocal() as session:
        customer = Customer(
            tenant_name=tenant_name,
            tenant_domain=tenant_domain,
            tenant_id=tenant_id,
            app_registration=app_registration,
            consent_status=consent_status,
            status=status,
            total_assessments=0,
        )
        session.add(customer)
        await session.commit()
        return customer


def shared_registration(**overrides: Any) -> dict[str, Any]:
    record: dict[str, Any] = {
        "applicationId": PARTNER_CLIENT_ID,
        "clientId": PARTNER_CLIENT_ID,
        "tenantId": CUSTOMER_TENANT_ID,
        "secretStorage": "partner",
        "provisioningMode": "shared",
        "isReal": True,
        "needsSetup": False,
        "setupStatus": "completed",
    }
    record.update(overrides)
    return record


def tenant_stub() -> GraphStub:
    # Healthy tenant answering every collector query.
    return (
        GraphStub()
        .add("GET", "/organization", json_response(200, {"value": [{"id": "t1", "displayName": "Contoso", "verifiedDomains": [{"name": "contoso.com"}]}]}))
        .add("GET", "/subscribedSkus", json_response(200, {"value": [{"skuPartNumber": "E3", "prepaidUnits": {"enabled": 10}, "consumedUnits": 8}]}))
        .add(
            "GET",
            "/security/secureScores",
            json_response(200, {"value": [{"currentScore": 30, "maxScore": 60, "controlScores": [{"controlName": "MFA", "score": 1}]}]}),
        )
        .add("GET", "/security/secureScoreControlProfiles", json_response(200, {"value": [{"id": "MFA", "title": "Require MFA", "maxScore": 9}]}))
        .add(
            "GET",
            "/reports/authenticationMethods/userRegistrationDetails",
            json_response(200, {"value": [{"isMfaRegistered": True, "isMfaCapable": True}]}),
        )
        .add("GET", "/identity/conditionalAccess/policies", json_response(200, {"value": [{"state": "enabled"}]}))
        .add(
            "GET",
            "/directoryRoles",
            json_response(200, {"value": [{"displayName": "Global Administrator", "members": [{"id": "u1"}]}]}),
        )
    )
