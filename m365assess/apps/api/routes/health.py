from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from m365assess.apps.api.deps import get_app_settings
from m365assess.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from m365assess.apps.api.response import SuccessEnvelope, success_response
from m365assess.core.config import Settings

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    provisioning_mode: str
    key_vault_configured: bool
    partner_configured: bool


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request, settings: Settings = Depends(get_app_settings)) -> dict:
    # Report configuration readiness without exposing any values.
    partner_configured = all(
        (value or "").strip()
        for value in (settings.azure_client_id, settings.azure_client_secret, settings.azure_tenant_id)
    )
    payload = HealthResponse(
        status="ok",
        provisioning_mode=settings.provisioning_mode,
        key_vault_configured=bool((settings.key_vault_url or "").strip()),
        partner_configured=partner_configured,
    )
    return success_response(request=request, data=payload)
