from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from m365assess.domain.app_registration import registration_issue, validate_app_registration
from m365assess.domain.models import Assessment, Customer


class ApiModel(BaseModel):
    # camelCase on the wire; snake_case is accepted on input too.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CustomerOut(ApiModel):
    id: str
    tenant_name: str
    tenant_domain: str
    tenant_id: str | None
    contact_email: str | None
    notes: str | None
    status: str
    consent_status: str
    consented_at: datetime | None
    created_date: datetime | None
    last_assessment_date: datetime | None
    total_assessments: int
    app_registration: dict[str, Any] | None
    needs_setup: bool
    setup_issue: str | None


class AssessmentOut(ApiModel):
    id: str
    customer_id: str
    tenant_id: str | None
    status: str
    score: float
    categories: list[str]
    metrics: dict[str, Any]
    recommendations: list[str]
    created_date: datetime | None
    updated_date: datetime | None


def customer_out(customer: Customer) -> CustomerOut:
    registration = validate_app_registration(customer.app_registration)
    issue = registration_issue(customer.app_registration)
    return CustomerOut(
        id=customer.id,
        tenant_name=customer.tenant_name,
        tenant_domain=customer.tenant_domain,
        tenant_id=customer.tenant_id,
        contact_email=customer.contact_email,
        notes=customer.notes,
        status=customer.status,
        consent_status=customer.consent_status,
        consented_at=customer.consented_at,
        created_date=customer.created_date,
        last_assessment_date=customer.last_assessment_date,
        total_assessments=int(customer.total_assessments or 0),
        app_registration=registration.to_public() if registration is not None else None,
        needs_setup=issue is not None or registration is None or registration.needs_setup,
        setup_issue=issue,
    )


def assessment_out(assessment: Assessment) -> AssessmentOut:
    return AssessmentOut(
        id=assessment.id,
        customer_id=assessment.customer_id,
        tenant_id=assessment.tenant_id,
        status=assessment.status,
        score=float(assessment.score or 0),
        categories=list(assessment.categories or []),
        metrics=dict(assessment.metrics or {}),
        recommendations=list(assessment.recommendations or []),
        created_date=assessment.created_date,
        updated_date=assessment.updated_date,
    )
