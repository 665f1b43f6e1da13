from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from m365assess.apps.api.deps import get_app_settings, get_db, get_graph_factory, get_vault
from m365assess.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from m365assess.apps.api.response import SuccessEnvelope, success_response
from m365assess.apps.api.schemas import ApiModel, AssessmentOut, assessment_out
from m365assess.core.config import Settings
from m365assess.persistence.repos import assessments as assessments_repo
from m365assess.persistence.repos import customers as customers_repo
from m365assess.services.assessments import run_assessment
from m365assess.services.graph.client import GraphClientFactory
from m365assess.services.vault import SecretVault


router = APIRouter(tags=["assessments"], responses=DEFAULT_ERROR_RESPONSES)


class AssessmentRequest(ApiModel):
    customer_id: str
    tenant_id: str | None = None
    included_categories: list[str] = []


class AssessmentList(ApiModel):
    items: list[AssessmentOut]


@router.post(
    "/assessments",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[AssessmentOut],
)
async def create_assessment(
    payload: AssessmentRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    graph_factory: GraphClientFactory = Depends(get_graph_factory),
    vault: SecretVault | None = Depends(get_vault),
) -> dict:
    assessment = await run_assessment(
        db,
        payload.customer_id,
        categories=payload.included_categories,
        settings=settings,
        graph_factory=graph_factory,
        vault=vault,
        tenant_id=payload.tenant_id,
    )
    return success_response(request=request, data=assessment_out(assessment))


@router.get("/assessments/{assessment_id}", response_model=SuccessEnvelope[AssessmentOut])
async def get_assessment(
    assessment_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict:
    assessment = await assessments_repo.get_assessment(db, assessment_id)
    if assessment is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "ASSESSMENT_NOT_FOUND", "message": "Assessment not found"},
        )
    return success_response(request=request, data=assessment_out(assessment))


@router.get("/customers/{customer_id}/assessments", response_model=SuccessEnvelope[AssessmentList])
async def list_customer_assessments(
    customer_id: str,
    request: Request,
    limit: int = Query(default=20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
) -> dict:
    customer = await customers_repo.get_customer(db, customer_id, include_deleted=True)
    if customer is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "CUSTOMER_NOT_FOUND", "message": "Customer not found"},
        )
    assessments = await assessments_repo.list_for_customer(db, customer.id, limit=limit)
    return success_response(
        request=request,
        data=AssessmentList(items=[assessment_out(item) for item in assessments]),
    )
