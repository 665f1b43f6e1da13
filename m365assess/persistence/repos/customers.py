from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from m365assess.domain.models import Customer


def normalize_domain(domain: str) -> str:
    return domain.strip().lower()


async def get_customer(
    session: AsyncSession, customer_id: str, *, include_deleted: bool = False
) -> Customer | None:
    query = select(Customer).where(Customer.id == customer_id)
    if not include_deleted:
        query = query.where(Customer.status != "deleted")
    result = await session.execute(query)
    return result.scalar_one_or_none()


async def get_customer_by_domain(session: AsyncSession, domain: str) -> Customer | None:
    # Domains are unique among customers that have not been soft-deleted.
    result = await session.execute(
        select(Customer).where(
            func.lower(Customer.tenant_domain) == normalize_domain(domain),
            Customer.status != "deleted",
        )
    )
    return result.scalars().first()


async def list_customers(session: AsyncSession, *, include_deleted: bool = False) -> list[Customer]:
    # Newest first with id as a tiebreaker keeps listings stable.
    query = select(Customer)
    if not include_deleted:
        query = query.where(Customer.status != "deleted")
    result = await session.execute(query.order_by(Customer.created_date.desc(), Customer.id))
    return list(result.scalars().all())


async def create_customer(
    session: AsyncSession,
    *,
    tenant_name: str,
    tenant_domain: str,
    tenant_id: str | None,
    contact_email: str | None = None,
    notes: str | None = None,
) -> Customer:
    customer = Customer(
        tenant_name=tenant_name.strip(),
        tenant_domain=normalize_domain(tenant_domain),
        tenant_id=tenant_id,
        contact_email=contact_email,
        notes=notes,
        status="active",
        consent_status="pending",
        total_assessments=0,
    )
    session.add(customer)
    await session.flush()
    return customer


def set_app_registration(customer: Customer, record: dict[str, Any] | None) -> None:
    # Assign a fresh dict so the JSON column is always flagged dirty.
    customer.app_registration = dict(record) if record is not None else None


def soft_delete(customer: Customer) -> None:
    customer.status = "deleted"
    customer.deleted_date = datetime.now(timezone.utc)


def record_assessment_run(customer: Customer, when: datetime) -> None:
    customer.total_assessments = int(customer.total_assessments or 0) + 1
    customer.last_assessment_date = when
