from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from m365assess.core.config import Settings
from m365assess.persistence.db import get_session
from m365assess.services.graph.client import GraphClientFactory
from m365assess.services.tenant_resolver import TenantResolver
from m365assess.services.vault import SecretVault, get_secret_vault


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def get_app_settings(request: Request) -> Settings:
    # Settings are injected once at app construction.
    return request.app.state.settings


def get_graph_factory(request: Request) -> GraphClientFactory:
    return request.app.state.graph_factory


def get_tenant_resolver(request: Request) -> TenantResolver:
    return request.app.state.tenant_resolver


def get_vault(settings: Settings = Depends(get_app_settings)) -> SecretVault | None:
    return get_secret_vault(settings)
