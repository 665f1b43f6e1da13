from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from m365assess.core.config import Settings
from m365assess.core.errors import AppRegistrationSetupError, AssessError
from m365assess.domain.app_registration import AppRegistration, validate_app_registration
from m365assess.domain.identifiers import is_guid
from m365assess.domain.models import Customer
from m365assess.persistence.repos import customers as customers_repo
from m365assess.services.consent import issue_consent_links
from m365assess.services.credentials import store_client_secret
from m365assess.services.graph import applications
from m365assess.services.graph.auth import ClientCredentials
from m365assess.services.graph.client import GraphClient, GraphClientFactory
from m365assess.services.graph.permissions import build_required_resource_access, normalize_permissions
from m365assess.services.resilience import RetryPolicy
from m365assess.services.tenant_resolver import TenantResolution, TenantResolver
from m365assess.services.vault import SecretVault


logger = logging.getLogger(__name__)

# Application creation is retried a fixed number of times on throttling/5xx.
APP_CREATE_MAX_ATTEMPTS = 3


@dataclass
class ProvisionedApp:
    application_id: str
    client_id: str
    service_principal_id: str | None
    client_secret: str
    secret_key_id: str | None
    display_name: str
    tenant: TenantResolution
    permissions: list[str]
    consent_url: str
    auth_url: str


@dataclass
class ProvisioningResult:
    client_id: str
    tenant_id: str
    consent_url: str
    auth_url: str
    secret_stored: bool
    mode: str
    registration: AppRegistration
    warnings: list[str] = field(default_factory=list)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _app_create_policy(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        timeout_ms=settings.ext_call_timeout_ms,
        max_attempts=APP_CREATE_MAX_ATTEMPTS,
        backoff_ms=settings.ext_retry_backoff_ms,
    )


def _consent_tenant(resolution: TenantResolution) -> str | None:
    return resolution.tenant_id if resolution.resolved else None


async def create_app_registration(
    tenant_name_or_domain: str,
    required_permissions: Iterable[str] | None,
    *,
    customer: Customer,
    settings: Settings,
    graph_factory: GraphClientFactory,
    resolver: TenantResolver,
) -> ProvisionedApp:
    """Create a dedicated multi-tenant application for one customer.

    Creates the application object, its service principal in the partner
    tenant, and a client secret. The returned secret is only visible once;
    callers must persist it immediately.
    """
    partner = settings.partner_credentials()
    permissions = normalize_permissions(required_permissions)
    # Unknown permission names fail here, before any network call.
    build_required_resource_access(permissions)

    resolution = await resolver.resolve(customer.tenant_id or customer.tenant_domain)
    display_name = applications.app_display_name(tenant_name_or_domain)
    partner_credentials = ClientCredentials.for_partner(partner)
    token = await graph_factory.acquire_token(partner_credentials)
    async with graph_factory.client(partner_credentials, token=token) as graph:
        application = await applications.create_application(
            graph,
            display_name=display_name,
            redirect_uri=settings.redirect_uri,
            permissions=permissions,
            tags=[customer.tenant_domain, resolution.tenant_id],
            policy=_app_create_policy(settings),
        )
        app_id = str(application.get("appId") or "")
        object_id = str(application.get("id") or "")
        if not is_guid(app_id) or not object_id:
            raise AppRegistrationSetupError("Graph returned an application without a valid appId")
        service_principal = await applications.create_service_principal(graph, app_id=app_id)
        credential = await applications.add_password(
            graph,
            application_object_id=object_id,
            app_name=display_name,
            lifetime_days=settings.client_secret_lifetime_days,
        )

    consent_url, auth_url = issue_consent_links(
        customer, app_id, _consent_tenant(resolution), settings=settings
    )
    logger.info(
        "app_registration_created customer_id=%s app_id=%s tenant_resolved=%s",
        customer.id,
        app_id,
        resolution.resolved,
    )
    return ProvisionedApp(
        application_id=object_id,
        client_id=app_id,
        service_principal_id=service_principal.get("id"),
        client_secret=str(credential["secretText"]),
        secret_key_id=credential.get("keyId"),
        display_name=display_name,
        tenant=resolution,
        permissions=permissions,
        consent_url=consent_url,
        auth_url=auth_url,
    )


async def _provision_shared(
    customer: Customer,
    permissions: list[str],
    *,
    settings: Settings,
    resolver: TenantResolver,
) -> ProvisioningResult:
    partner = settings.partner_credentials()
    build_required_resource_access(permissions)
    resolution = await resolver.resolve(customer.tenant_id or customer.tenant_domain)
    consent_url, auth_url = issue_consent_links(
        customer, partner.client_id, _consent_tenant(resolution), settings=settings
    )
    registration = AppRegistration(
        application_id=partner.client_id,
        client_id=partner.client_id,
        tenant_id=resolution.tenant_id,
        secret_storage="partner",
        permissions=permissions,
        provisioning_mode="shared",
        is_real=True,
        needs_setup=True,
        setup_status="pending_consent",
        consent_url=consent_url,
        auth_url=auth_url,
        redirect_uri=settings.redirect_uri,
        created_date=_utc_now_iso(),
    )
    customers_repo.set_app_registration(customer, registration.to_record())
    return ProvisioningResult(
        client_id=partner.client_id,
        tenant_id=resolution.tenant_id,
        consent_url=consent_url,
        auth_url=auth_url,
        secret_stored=False,
        mode="shared",
        registration=registration,
    )


async def provision_customer(
    session: AsyncSession,
    customer: Customer,
    *,
    settings: Settings,
    graph_factory: GraphClientFactory,
    resolver: TenantResolver,
    vault: SecretVault | None,
    mode: str | None = None,
    required_permissions: Iterable[str] | None = None,
) -> ProvisioningResult:
    """Attach a shared or dedicated app registration to a customer.

    The customer returns to ``pending`` consent; the registration keeps
    ``needsSetup`` until the consent callback completes it.
    """
    selected_mode = (mode or settings.provisioning_mode or "shared").strip().lower()
    permissions = normalize_permissions(required_permissions)
    previous = validate_app_registration(customer.app_registration)

    if selected_mode == "shared":
        result = await _provision_shared(customer, permissions, settings=settings, resolver=resolver)
    elif selected_mode == "dedicated":
        provisioned = await create_app_registration(
            customer.tenant_name,
            permissions,
            customer=customer,
            settings=settings,
            graph_factory=graph_factory,
            resolver=resolver,
        )
        registration = AppRegistration(
            application_id=provisioned.application_id,
            client_id=provisioned.client_id,
            service_principal_id=provisioned.service_principal_id,
            tenant_id=provisioned.tenant.tenant_id,
            secret_key_id=provisioned.secret_key_id,
            permissions=provisioned.permissions,
            provisioning_mode="dedicated",
            is_real=True,
            needs_setup=True,
            setup_status="pending_consent",
            consent_url=provisioned.consent_url,
            auth_url=provisioned.auth_url,
            redirect_uri=settings.redirect_uri,
            created_date=_utc_now_iso(),
        )
        customers_repo.set_app_registration(customer, registration.to_record())
        await session.flush()
        secret_stored = await store_client_secret(
            session,
            customer.id,
            provisioned.client_secret,
            settings=settings,
            vault=vault,
            key_id=provisioned.secret_key_id,
        )
        result = ProvisioningResult(
            client_id=provisioned.client_id,
            tenant_id=provisioned.tenant.tenant_id,
            consent_url=provisioned.consent_url,
            auth_url=provisioned.auth_url,
            secret_stored=secret_stored,
            mode="dedicated",
            registration=validate_app_registration(customer.app_registration) or registration,
        )
        if previous is not None and previous.provisioning_mode == "dedicated" and previous.application_id:
            result.warnings.extend(
                await _retire_dedicated_app(previous, settings=settings, graph_factory=graph_factory)
            )
    else:
        raise AssessError(f"Unknown provisioning mode: {selected_mode}")

    if is_guid(result.tenant_id) and not is_guid(customer.tenant_id):
        customer.tenant_id = result.tenant_id.lower()
    customer.consent_status = "pending"
    customer.consented_at = None
    await session.flush()
    logger.info(
        "customer_provisioned customer_id=%s mode=%s client_id=%s",
        customer.id,
        result.mode,
        result.client_id,
    )
    return result


async def _retire_dedicated_app(
    previous: AppRegistration, *, settings: Settings, graph_factory: GraphClientFactory
) -> list[str]:
    # Replaced apps are removed best-effort; failures are reported, not raised.
    try:
        await delete_app_registration(
            previous.application_id or "", settings=settings, graph_factory=graph_factory
        )
    except AssessError as exc:
        logger.warning("previous_app_delete_failed object_id=%s error=%s", previous.application_id, exc.code)
        return [f"Previous application {previous.application_id} could not be deleted: {exc.message}"]
    return []


async def _partner_graph(settings: Settings, graph_factory: GraphClientFactory) -> GraphClient:
    partner = ClientCredentials.for_partner(settings.partner_credentials())
    token = await graph_factory.acquire_token(partner)
    return graph_factory.client(partner, token=token)


async def update_app_permissions(
    application_object_id: str,
    permissions: Iterable[str],
    *,
    settings: Settings,
    graph_factory: GraphClientFactory,
) -> list[str]:
    normalized = normalize_permissions(permissions)
    build_required_resource_access(normalized)
    async with await _partner_graph(settings, graph_factory) as graph:
        await applications.update_required_permissions(
            graph, application_object_id=application_object_id, permissions=normalized
        )
    logger.info("app_permissions_updated object_id=%s count=%s", application_object_id, len(normalized))
    return normalized


async def delete_app_registration(
    application_object_id: str,
    *,
    settings: Settings,
    graph_factory: GraphClientFactory,
) -> bool:
    async with await _partner_graph(settings, graph_factory) as graph:
        return await applications.delete_application(graph, application_object_id=application_object_id)


async def rotate_client_secret(
    session: AsyncSession,
    customer: Customer,
    *,
    settings: Settings,
    graph_factory: GraphClientFactory,
    vault: SecretVault | None,
) -> ProvisioningResult:
    """Issue a new client secret for a dedicated app and retire the old one."""
    registration = validate_app_registration(customer.app_registration)
    if registration is None or registration.provisioning_mode != "dedicated" or not registration.application_id:
        raise AppRegistrationSetupError(
            "Secret rotation requires a dedicated app registration",
            troubleshooting=["Shared registrations use the partner secret; rotate AZURE_CLIENT_SECRET instead"],
        )
    previous_key_id = registration.secret_key_id
    async with await _partner_graph(settings, graph_factory) as graph:
        credential = await applications.add_password(
            graph,
            application_object_id=registration.application_id,
            app_name=applications.app_display_name(customer.tenant_name),
            lifetime_days=settings.client_secret_lifetime_days,
        )
        stored = await store_client_secret(
            session,
            customer.id,
            str(credential["secretText"]),
            settings=settings,
            vault=vault,
            key_id=credential.get("keyId"),
        )
        warnings: list[str] = []
        if stored and previous_key_id:
            try:
                await applications.remove_password(
                    graph, application_object_id=registration.application_id, key_id=previous_key_id
                )
            except AssessError as exc:
                logger.warning("old_secret_remove_failed customer_id=%s error=%s", customer.id, exc.code)
                warnings.append(f"Previous secret {previous_key_id} could not be removed: {exc.message}")
    logger.info("client_secret_rotated customer_id=%s stored=%s", customer.id, stored)
    updated = validate_app_registration(customer.app_registration) or registration
    return ProvisioningResult(
        client_id=updated.effective_client_id or "",
        tenant_id=customer.tenant_id or customer.tenant_domain,
        consent_url=updated.consent_url or "",
        auth_url=updated.auth_url or "",
        secret_stored=stored,
        mode="dedicated",
        registration=updated,
        warnings=warnings,
    )
