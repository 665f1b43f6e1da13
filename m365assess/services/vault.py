from __future__ import annotations

import logging
from datetime import datetime
from typing import Protocol

from azure.core.exceptions import ResourceNotFoundError
from azure.identity.aio import DefaultAzureCredential
from azure.keyvault.secrets.aio import SecretClient

from m365assess.core.config import Settings


logger = logging.getLogger(__name__)


class SecretVault(Protocol):
    async def set_secret(
        self,
        name: str,
        value: str,
        *,
        content_type: str | None = None,
        tags: dict[str, str] | None = None,
        expires_on: datetime | None = None,
    ) -> None:
        ...

    async def get_secret(self, name: str) -> str | None:
        ...

    async def delete_secret(self, name: str) -> None:
        ...


class KeyVaultSecretVault:
    """Azure Key Vault backend authenticated with DefaultAzureCredential."""

    def __init__(self, vault_url: str) -> None:
        self.vault_url = vault_url

    async def set_secret(
        self,
        name: str,
        value: str,
        *,
        content_type: str | None = None,
        tags: dict[str, str] | None = None,
        expires_on: datetime | None = None,
    ) -> None:
        async with DefaultAzureCredential() as credential:
            async with SecretClient(vault_url=self.vault_url, credential=credential) as client:
                await client.set_secret(
                    name,
                    value,
                    content_type=content_type,
                    tags=tags,
                    expires_on=expires_on,
                )

    async def get_secret(self, name: str) -> str | None:
        async with DefaultAzureCredential() as credential:
            async with SecretClient(vault_url=self.vault_url, credential=credential) as client:
                try:
                    secret = await client.get_secret(name)
                except ResourceNotFoundError:
                    return None
        return secret.value

    async def delete_secret(self, name: str) -> None:
        async with DefaultAzureCredential() as credential:
            async with SecretClient(vault_url=self.vault_url, credential=credential) as client:
                try:
                    await client.delete_secret(name)
                except ResourceNotFoundError:
                    logger.info("vault_secret_absent name=%s", name)


def get_secret_vault(settings: Settings) -> SecretVault | None:
    # Vault storage is optional; without a URL secrets use the database fallback.
    vault_url = (settings.key_vault_url or "").strip()
    if not vault_url:
        return None
    return KeyVaultSecretVault(vault_url)
