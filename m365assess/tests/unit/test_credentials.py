from __future__ import annotations

import pytest

from m365assess.core.errors import AppRegistrationSetupError, PartnerConfigError
from m365assess.domain.app_registration import AppRegistration, validate_app_registration
from m365assess.persistence.db import SessionLocal
from m365assess.persistence.repos import customers as customers_repo
from m365assess.services.credentials import (
    credentials_for_registration,
    get_client_secret,
    resolve_customer_credentials,
    secret_name,
    store_client_secret,
)
from m365assess.tests.utils.fakes import (
    CUSTOMER_TENANT_ID,
    DEDICATED_APP_ID,
    PARTNER_CLIENT_ID,
    FakeVault,
    make_settings,
    seed_customer,
    shared_registration,
)


def _dedicated_record() -> dict:
    return {
        "applicationId": "app-object-1",
        "clientId": DEDICATED_APP_ID,
        "provisioningMode": "dedicated",
        "isReal": True,
        "needsSetup": False,
    }


@pytest.mark.asyncio
async def test_secret_round_trips_through_vault() -> None:
    # Vault storage keeps only a reference on the customer record.
    settings = make_settings()
    vault = FakeVault()
    customer = await seed_customer(app_registration=_dedicated_record())
    async with SessionLocal() as session:
        stored = await store_client_secret(session, customer.id, "vault-secret", settings=settings, vault=vault, key_id="k1")
        await session.commit()
        assert stored is True
        value = await get_client_secret(session, customer.id, settings=settings, vault=vault)
        reloaded = await customers_repo.get_customer(session, customer.id)
    assert value == "vault-secret"
    assert vault.secrets[secret_name(customer.id)] == "vault-secret"
    assert vault.metadata[secret_name(customer.id)]["tags"]["customerId"] == customer.id
    assert "clientSecret" not in reloaded.app_registration
    assert reloaded.app_registration["secretStorage"] == "key_vault"
    assert reloaded.app_registration["secretKeyId"] == "k1"


@pytest.mark.asyncio
async def test_vault_failure_falls_back_to_plaintext_record() -> None:
    settings = make_settings(credential_encryption_key=None)
    vault = FakeVault(failing=True)
    customer = await seed_customer(app_registration=_dedicated_record())
    async with SessionLocal() as session:
        assert await store_client_secret(session, customer.id, "db-secret", settings=settings, vault=vault)
        await session.commit()
        registration = validate_app_registration((await customers_repo.get_customer(session, customer.id)).app_registration)
        value = await get_client_secret(session, customer.id, settings=settings, vault=vault)
    assert registration.secret_storage == "database"
    assert registration.client_secret == "db-secret"
    assert value == "db-secret"


@pytest.mark.asyncio
async def test_fallback_is_encrypted_when_key_configured() -> None:
    # With an encryption key the stored value is a Fernet token, not the secret.
    settings = make_settings(credential_encryption_key="local-encryption-key")
    customer = await seed_customer(app_registration=_dedicated_record())
    async with SessionLocal() as session:
        assert await store_client_secret(session, customer.id, "db-secret", settings=settings, vault=None)
        await session.commit()
        registration = validate_app_registration((await customers_repo.get_customer(session, customer.id)).app_registration)
        value = await get_client_secret(session, customer.id, settings=settings, vault=None)
    assert registration.secret_storage == "database_encrypted"
    assert registration.client_secret != "db-secret"
    assert value == "db-secret"


@pytest.mark.asyncio
async def test_store_for_unknown_customer_returns_false() -> None:
    async with SessionLocal() as session:
        assert await store_client_secret(session, "missing", "x", settings=make_settings(), vault=None) is False


@pytest.mark.asyncio
async def test_shared_registration_uses_partner_secret_in_customer_tenant() -> None:
    registration = AppRegistration.model_validate(shared_registration())
    credentials = await credentials_for_registration(
        registration, CUSTOMER_TENANT_ID, settings=make_settings(), vault=None
    )
    assert credentials.client_id == PARTNER_CLIENT_ID
    assert credentials.client_secret == "partner-secret"
    assert credentials.tenant_id == CUSTOMER_TENANT_ID


@pytest.mark.asyncio
async def test_shared_registration_requires_partner_config() -> None:
    registration = AppRegistration.model_validate(shared_registration())
    with pytest.raises(PartnerConfigError):
        await credentials_for_registration(
            registration, CUSTOMER_TENANT_ID, settings=make_settings(azure_client_secret=None), vault=None
        )


@pytest.mark.asyncio
async def test_shared_registration_for_other_app_is_rejected() -> None:
    # A stored client id that is not the configured partner app cannot reuse its secret.
    registration = AppRegistration.model_validate(shared_registration(clientId=DEDICATED_APP_ID))
    with pytest.raises(AppRegistrationSetupError):
        await credentials_for_registration(registration, CUSTOMER_TENANT_ID, settings=make_settings(), vault=None)


@pytest.mark.asyncio
async def test_dedicated_registration_without_secret_needs_setup() -> None:
    registration = AppRegistration.model_validate(_dedicated_record())
    with pytest.raises(AppRegistrationSetupError, match="secret"):
        await credentials_for_registration(registration, CUSTOMER_TENANT_ID, settings=make_settings(), vault=FakeVault())


@pytest.mark.asyncio
async def test_placeholder_registration_fails_with_setup_guidance() -> None:
    # Placeholders are caught before any token request is attempted.
    customer = await seed_customer(app_registration={"applicationId": "pending-1234", "clientId": "pending-1234"})
    with pytest.raises(AppRegistrationSetupError) as excinfo:
        await resolve_customer_credentials(customer, settings=make_settings(), vault=None)
    assert "Placeholder applicationId" in excinfo.value.message
    assert excinfo.value.troubleshooting
