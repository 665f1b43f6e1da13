from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession

from m365assess.domain.app_registration import registration_issue, validate_app_registration
from m365assess.persistence.repos import customers as customers_repo


logger = logging.getLogger(__name__)


@dataclass
class RegistrationFinding:
    customer_id: str
    tenant_name: str
    reason: str


@dataclass
class RegistrationAudit:
    total_customers: int = 0
    customers_needing_manual_setup: int = 0
    customers_normalized: int = 0
    customers_needing_fix: list[RegistrationFinding] = field(default_factory=list)
    applied: bool = False


async def fix_app_registrations(session: AsyncSession, *, apply: bool = False) -> RegistrationAudit:
    """Validate every stored app registration.

    With ``apply`` set, registrations stored as JSON strings are rewritten as
    objects and unusable ones are flagged ``needsSetup`` so assessments refuse
    them with setup guidance instead of failing against Graph.
    """
    audit = RegistrationAudit(applied=apply)
    customers = await customers_repo.list_customers(session)
    audit.total_customers = len(customers)
    for customer in customers:
        raw = customer.app_registration
        issue = registration_issue(raw)
        registration = validate_app_registration(raw)
        if issue is None and registration is not None:
            if isinstance(raw, str):
                audit.customers_needing_fix.append(
                    RegistrationFinding(customer.id, customer.tenant_name, "App registration stored as JSON string")
                )
                if apply:
                    customers_repo.set_app_registration(customer, registration.to_record())
                    audit.customers_normalized += 1
            continue

        audit.customers_needing_manual_setup += 1
        audit.customers_needing_fix.append(
            RegistrationFinding(customer.id, customer.tenant_name, issue or "Missing applicationId")
        )
        if apply and registration is not None and (not registration.needs_setup or registration.is_real):
            registration.needs_setup = True
            registration.is_real = False
            registration.setup_status = "manual_setup_required"
            customers_repo.set_app_registration(customer, registration.to_record())
    if apply:
        await session.commit()
    logger.info(
        "app_registration_audit total=%s manual_setup=%s normalized=%s applied=%s",
        audit.total_customers,
        audit.customers_needing_manual_setup,
        audit.customers_normalized,
        apply,
    )
    return audit
