from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from m365assess.domain.models import Assessment


async def get_assessment(session: AsyncSession, assessment_id: str) -> Assessment | None:
    result = await session.execute(select(Assessment).where(Assessment.id == assessment_id))
    return result.scalar_one_or_none()


async def list_for_customer(
    session: AsyncSession, customer_id: str, *, limit: int = 50
) -> list[Assessment]:
    result = await session.execute(
        select(Assessment)
        .where(Assessment.customer_id == customer_id)
        .order_by(Assessment.created_date.desc(), Assessment.id)
        .limit(limit)
    )
    return list(result.scalars().all())


async def create_assessment(
    session: AsyncSession,
    *,
    customer_id: str,
    tenant_id: str | None,
    status: str,
    score: float,
    categories: list[str],
    metrics: dict[str, Any],
    recommendations: list[str],
) -> Assessment:
    assessment = Assessment(
        customer_id=customer_id,
        tenant_id=tenant_id,
        status=status,
        score=score,
        categories=list(categories),
        metrics=metrics,
        recommendations=list(recommendations),
    )
    session.add(assessment)
    await session.flush()
    return assessment
