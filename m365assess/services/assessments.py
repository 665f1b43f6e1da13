from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from m365assess.core.config import Settings
from m365assess.domain.models import Assessment
from m365assess.persistence.repos import assessments as assessments_repo
from m365assess.persistence.repos import customers as customers_repo
from m365assess.services import scoring
from m365assess.services.collector import GraphDataCollector, normalize_categories
from m365assess.services.credentials import resolve_customer_credentials
from m365assess.services.graph.client import GraphClientFactory
from m365assess.services.vault import SecretVault


logger = logging.getLogger(__name__)


async def run_assessment(
    session: AsyncSession,
    customer_id: str,
    *,
    categories: list[str] | None,
    settings: Settings,
    graph_factory: GraphClientFactory,
    vault: SecretVault | None,
    tenant_id: str | None = None,
) -> Assessment:
    """Collect Graph metrics for a consented customer and persist the result.

    Setup problems (missing customer, placeholder registration, missing
    secret, missing consent) raise before any metric is collected. Individual
    metric failures are recorded inline and mark the assessment ``partial``.
    """
    customer = await customers_repo.get_customer(session, customer_id)
    if customer is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "CUSTOMER_NOT_FOUND", "message": "Customer not found"},
        )
    _registration, credentials = await resolve_customer_credentials(customer, settings=settings, vault=vault)
    requested_tenant = (tenant_id or "").strip().lower()
    if requested_tenant and requested_tenant != credentials.tenant_id.lower():
        # Data is always collected from the tenant the customer consented from.
        logger.warning("assessment_tenant_mismatch customer_id=%s", customer.id)
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "code": "TENANT_MISMATCH",
                "message": "tenantId does not match the customer's tenant",
                "customerId": customer.id,
            },
        )

    selected = normalize_categories(categories)
    # Acquire the token up front so consent/secret problems fail the whole request.
    token = await graph_factory.acquire_token(credentials)
    async with graph_factory.client(credentials, token=token) as graph:
        metrics = await GraphDataCollector(graph).collect(selected)

    score = scoring.overall_score(metrics)
    advice = scoring.recommendations(metrics, selected)
    run_status = "partial" if metrics.unavailable_count() else "completed"
    assessment = await assessments_repo.create_assessment(
        session,
        customer_id=customer.id,
        tenant_id=credentials.tenant_id,
        status=run_status,
        score=score,
        categories=selected,
        metrics=metrics.to_record(),
        recommendations=advice,
    )
    customers_repo.record_assessment_run(customer, datetime.now(timezone.utc))
    await session.commit()
    logger.info(
        "assessment_completed customer_id=%s assessment_id=%s status=%s score=%s",
        customer.id,
        assessment.id,
        run_status,
        score,
    )
    return assessment
