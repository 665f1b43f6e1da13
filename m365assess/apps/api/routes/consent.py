from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from m365assess.apps.api.deps import get_app_settings, get_db, get_graph_factory, get_vault
from m365assess.core.config import Settings
from m365assess.services.consent import handle_consent_callback
from m365assess.services.graph.client import GraphClientFactory
from m365assess.services.vault import SecretVault


router = APIRouter(tags=["consent"])


@router.get("/consent-callback", response_class=RedirectResponse, status_code=302)
async def consent_callback(
    admin_consent: str | None = Query(default=None),
    tenant: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    error_description: str | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    graph_factory: GraphClientFactory = Depends(get_graph_factory),
    vault: SecretVault | None = Depends(get_vault),
) -> RedirectResponse:
    # Azure AD redirects the admin's browser here; always answer with a redirect.
    outcome = await handle_consent_callback(
        db,
        admin_consent=admin_consent,
        tenant=tenant,
        state=state,
        error=error,
        error_description=error_description,
        settings=settings,
        graph_factory=graph_factory,
        vault=vault,
    )
    return RedirectResponse(url=outcome.redirect_url(settings.consent_result_url), status_code=302)
