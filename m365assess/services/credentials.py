from __future__ import annotations

import hashlib
import logging
from base64 import urlsafe_b64encode
from datetime import datetime, timedelta, timezone

from azure.core.exceptions import AzureError
from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy.ext.asyncio import AsyncSession

from m365assess.core.config import Settings
from m365assess.core.errors import AppRegistrationSetupError, CredentialStoreError
from m365assess.domain.app_registration import (
    AppRegistration,
    registration_issue,
    validate_app_registration,
)
from m365assess.domain.models import Customer
from m365assess.persistence.repos import customers as customers_repo
from m365assess.services.graph.auth import ClientCredentials
from m365assess.services.vault import SecretVault


logger = logging.getLogger(__name__)

SECRET_CONTENT_TYPE = "application/x-client-secret"


def secret_name(customer_id: str) -> str:
    return f"customer-{customer_id}-client-secret"


def _build_fernet(settings: Settings) -> Fernet | None:
    source = (settings.credential_encryption_key or "").strip()
    if not source:
        return None
    digest = hashlib.sha256(source.encode("utf-8")).digest()
    return Fernet(urlsafe_b64encode(digest))


def customer_tenant(customer: Customer, registration: AppRegistration | None = None) -> str:
    # Prefer the resolved tenant GUID; a domain still works as an authority.
    return (
        customer.tenant_id
        or (registration.tenant_id if registration is not None else None)
        or customer.tenant_domain
    )


async def get_app_registration(session: AsyncSession, customer_id: str) -> AppRegistration | None:
    customer = await customers_repo.get_customer(session, customer_id)
    if customer is None:
        return None
    return validate_app_registration(customer.app_registration)


async def store_client_secret(
    session: AsyncSession,
    customer_id: str,
    secret_value: str,
    *,
    settings: Settings,
    vault: SecretVault | None,
    key_id: str | None = None,
) -> bool:
    """Persist a customer's client secret, preferring the vault.

    Vault failures fall back to the customer record. The fallback value is
    Fernet-encrypted when ``CREDENTIAL_ENCRYPTION_KEY`` is configured and kept
    as plaintext otherwise. Returns False when the customer does not exist.
    """
    customer = await customers_repo.get_customer(session, customer_id)
    if customer is None:
        logger.warning("secret_store_customer_missing customer_id=%s", customer_id)
        return False
    registration = validate_app_registration(customer.app_registration) or AppRegistration()
    if key_id:
        registration.secret_key_id = key_id

    if vault is not None:
        name = secret_name(customer_id)
        try:
            await vault.set_secret(
                name,
                secret_value,
                content_type=SECRET_CONTENT_TYPE,
                tags={
                    "customerId": customer_id,
                    "tenantDomain": customer.tenant_domain,
                    "type": "client-secret",
                    "createdBy": "m365assess",
                },
                expires_on=datetime.now(timezone.utc) + timedelta(days=settings.vault_secret_lifetime_days),
            )
        except AzureError as exc:
            logger.warning(
                "vault_store_failed customer_id=%s error=%s fallback=database",
                customer_id,
                type(exc).__name__,
            )
        else:
            registration.secret_ref = name
            registration.secret_storage = "key_vault"
            registration.client_secret = None
            customers_repo.set_app_registration(customer, registration.to_record())
            await session.flush()
            logger.info("client_secret_stored customer_id=%s storage=key_vault", customer_id)
            return True

    fernet = _build_fernet(settings)
    if fernet is not None:
        registration.client_secret = fernet.encrypt(secret_value.encode("utf-8")).decode("utf-8")
        registration.secret_storage = "database_encrypted"
    else:
        logger.warning("client_secret_plaintext_fallback customer_id=%s", customer_id)
        registration.client_secret = secret_value
        registration.secret_storage = "database"
    registration.secret_ref = None
    customers_repo.set_app_registration(customer, registration.to_record())
    await session.flush()
    logger.info("client_secret_stored customer_id=%s storage=%s", customer_id, registration.secret_storage)
    return True


async def read_client_secret(
    registration: AppRegistration,
    *,
    settings: Settings,
    vault: SecretVault | None,
) -> str | None:
    if registration.secret_storage == "key_vault":
        if vault is None or not registration.secret_ref:
            logger.warning("vault_secret_unreachable ref=%s", registration.secret_ref)
            return None
        try:
            return await vault.get_secret(registration.secret_ref)
        except AzureError as exc:
            raise CredentialStoreError(
                "Client secret could not be read from Key Vault",
                troubleshooting=["Check the service identity has get permission on the vault secrets"],
            ) from exc
    if registration.secret_storage == "database_encrypted":
        fernet = _build_fernet(settings)
        if fernet is None or not registration.client_secret:
            raise CredentialStoreError("Encrypted client secret present but CREDENTIAL_ENCRYPTION_KEY is not set")
        try:
            return fernet.decrypt(registration.client_secret.encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            raise CredentialStoreError("Stored client secret could not be decrypted") from exc
    if registration.secret_storage == "database":
        return registration.client_secret
    return None


async def get_client_secret(
    session: AsyncSession,
    customer_id: str,
    *,
    settings: Settings,
    vault: SecretVault | None,
) -> str | None:
    registration = await get_app_registration(session, customer_id)
    if registration is None:
        return None
    return await read_client_secret(registration, settings=settings, vault=vault)


async def delete_client_secret(customer: Customer, *, vault: SecretVault | None) -> None:
    # Missing vault secrets count as deleted.
    registration = validate_app_registration(customer.app_registration)
    if registration is None:
        return
    if registration.secret_storage == "key_vault" and vault is not None and registration.secret_ref:
        await vault.delete_secret(registration.secret_ref)
    registration.client_secret = None
    registration.secret_ref = None
    registration.secret_storage = "none"
    customers_repo.set_app_registration(customer, registration.to_record())


async def credentials_for_registration(
    registration: AppRegistration,
    tenant_id: str,
    *,
    settings: Settings,
    vault: SecretVault | None,
    label: str = "customer",
) -> ClientCredentials:
    """Return app credentials that authenticate a registration against a tenant.

    Raises AppRegistrationSetupError before any network call when the
    registration is a placeholder, corrupted, or lacks its secret.
    """
    issue = registration_issue(registration.to_record())
    if issue is not None:
        raise AppRegistrationSetupError(
            f"App registration for {label} needs setup: {issue}",
            troubleshooting=[
                "Run POST /api/create-multi-tenant-app for this customer",
                "Complete admin consent using the generated consent URL",
                "Run POST /api/fix-app-registrations to review other customers",
            ],
        )
    if registration.provisioning_mode == "shared":
        partner = settings.partner_credentials()
        if registration.effective_client_id != partner.client_id:
            raise AppRegistrationSetupError(
                "Stored client id does not match the configured shared application",
                troubleshooting=["Re-provision the customer so it uses the current AZURE_CLIENT_ID"],
            )
        return ClientCredentials(
            tenant_id=tenant_id,
            client_id=partner.client_id,
            client_secret=partner.client_secret,
        )
    secret = await read_client_secret(registration, settings=settings, vault=vault)
    if not secret:
        raise AppRegistrationSetupError(
            "Client secret for the customer application is missing",
            troubleshooting=["Rotate the client secret with POST /api/customers/{id}/rotate-secret"],
        )
    return ClientCredentials(
        tenant_id=tenant_id,
        client_id=registration.effective_client_id or "",
        client_secret=secret,
    )


async def resolve_customer_credentials(
    customer: Customer,
    *,
    settings: Settings,
    vault: SecretVault | None,
) -> tuple[AppRegistration, ClientCredentials]:
    # Corrupted rows fail here with the stored-payload reason instead of a Graph error.
    issue = registration_issue(customer.app_registration)
    registration = validate_app_registration(customer.app_registration)
    if issue is not None or registration is None:
        raise AppRegistrationSetupError(
            f"App registration for {customer.tenant_name} needs setup: {issue or 'Missing applicationId'}",
            troubleshooting=[
                "Run POST /api/create-multi-tenant-app for this customer",
                "Complete admin consent using the generated consent URL",
                "Run POST /api/fix-app-registrations to review other customers",
            ],
        )
    credentials = await credentials_for_registration(
        registration,
        customer_tenant(customer, registration),
        settings=settings,
        vault=vault,
        label=customer.tenant_name,
    )
    return registration, credentials
