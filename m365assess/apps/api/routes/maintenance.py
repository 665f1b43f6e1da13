from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from m365assess.apps.api.deps import get_db
from m365assess.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from m365assess.apps.api.response import SuccessEnvelope, success_response
from m365assess.apps.api.schemas import ApiModel
from m365assess.services.maintenance import fix_app_registrations


router = APIRouter(tags=["maintenance"], responses=DEFAULT_ERROR_RESPONSES)


class RegistrationFindingOut(ApiModel):
    customer_id: str
    tenant_name: str
    reason: str


class FixRegistrationsResponse(ApiModel):
    total_customers: int
    customers_needing_manual_setup: int
    customers_normalized: int
    customers_needing_fix: list[RegistrationFindingOut]
    applied: bool


@router.post("/fix-app-registrations", response_model=SuccessEnvelope[FixRegistrationsResponse])
async def fix_registrations(
    request: Request,
    apply: bool = Query(default=False),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Report-only unless apply=true.
    audit = await fix_app_registrations(db, apply=apply)
    payload = FixRegistrationsResponse(
        total_customers=audit.total_customers,
        customers_needing_manual_setup=audit.customers_needing_manual_setup,
        customers_normalized=audit.customers_normalized,
        customers_needing_fix=[
            RegistrationFindingOut(
                customer_id=finding.customer_id,
                tenant_name=finding.tenant_name,
                reason=finding.reason,
            )
            for finding in audit.customers_needing_fix
        ],
        applied=audit.applied,
    )
    return success_response(request=request, data=payload)
