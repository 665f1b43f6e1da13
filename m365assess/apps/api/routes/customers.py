from __future__ import annotations

import logging

from azure.core.exceptions import AzureError
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from m365assess.apps.api.deps import (
    get_app_settings,
    get_db,
    get_graph_factory,
    get_tenant_resolver,
    get_vault,
)
from m365assess.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from m365assess.apps.api.response import SuccessEnvelope, success_response
from m365assess.apps.api.schemas import ApiModel, CustomerOut, customer_out
from m365assess.core.config import Settings
from m365assess.core.errors import AssessError
from m365assess.persistence.repos import customers as customers_repo
from m365assess.services.credentials import delete_client_secret
from m365assess.services.graph.client import GraphClientFactory
from m365assess.services.provisioning import provision_customer
from m365assess.services.tenant_resolver import TenantResolver
from m365assess.services.vault import SecretVault


logger = logging.getLogger(__name__)

router = APIRouter(tags=["customers"], responses=DEFAULT_ERROR_RESPONSES)


class CustomerCreateRequest(ApiModel):
    # Required fields are checked in the handler so omissions return 400.
    tenant_name: str | None = None
    tenant_domain: str | None = None
    tenant_id: str | None = None
    contact_email: str | None = None
    notes: str | None = None
    skip_auto_app_registration: bool = False
    required_permissions: list[str] | None = None


class CustomerCreateResponse(ApiModel):
    customer: CustomerOut
    consent_url: str | None = None
    auth_url: str | None = None
    provisioning_mode: str | None = None
    secret_stored: bool = False
    tenant_resolved: bool = False
    next_steps: list[str] = []
    warnings: list[str] = []
    troubleshooting: list[str] = []


class CustomerList(ApiModel):
    items: list[CustomerOut]
    total: int


def _not_found() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"code": "CUSTOMER_NOT_FOUND", "message": "Customer not found"},
    )


@router.post(
    "/customers",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[CustomerCreateResponse],
)
async def create_customer(
    payload: CustomerCreateRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    resolver: TenantResolver = Depends(get_tenant_resolver),
    graph_factory: GraphClientFactory = Depends(get_graph_factory),
    vault: SecretVault | None = Depends(get_vault),
) -> dict:
    tenant_name = (payload.tenant_name or "").strip()
    tenant_domain = (payload.tenant_domain or "").strip()
    if not tenant_name or not tenant_domain:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "MISSING_REQUIRED_FIELDS", "message": "tenantName and tenantDomain are required"},
        )
    existing = await customers_repo.get_customer_by_domain(db, tenant_domain)
    if existing is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "code": "CUSTOMER_EXISTS",
                "message": f"A customer with domain {customers_repo.normalize_domain(tenant_domain)} already exists",
                "customerId": existing.id,
            },
        )

    explicit_tenant = (payload.tenant_id or "").strip()
    if explicit_tenant:
        resolution = await resolver.resolve(explicit_tenant)
    else:
        resolution = await resolver.resolve(tenant_domain)
    customer = await customers_repo.create_customer(
        db,
        tenant_name=tenant_name,
        tenant_domain=tenant_domain,
        tenant_id=resolution.tenant_id.lower(),
        contact_email=payload.contact_email,
        notes=payload.notes,
    )
    response = CustomerCreateResponse(customer=customer_out(customer), tenant_resolved=resolution.resolved)
    if not resolution.resolved:
        response.warnings.append(
            f"Tenant id for {tenant_domain} could not be resolved; the consent link uses the common endpoint"
        )

    if payload.skip_auto_app_registration:
        response.next_steps = ["Create the app registration with POST /api/create-multi-tenant-app"]
    else:
        try:
            result = await provision_customer(
                db,
                customer,
                settings=settings,
                graph_factory=graph_factory,
                resolver=resolver,
                vault=vault,
                required_permissions=payload.required_permissions,
            )
        except AssessError as exc:
            # The customer is kept without a registration; setup is completed manually.
            logger.warning("customer_provisioning_failed customer_id=%s code=%s", customer.id, exc.code)
            response.warnings.append(f"App registration was not created: {exc.message}")
            response.troubleshooting = exc.troubleshooting
            response.next_steps = [
                "Fix the reported problem",
                "Create the app registration with POST /api/create-multi-tenant-app",
            ]
        else:
            response.consent_url = result.consent_url
            response.auth_url = result.auth_url
            response.provisioning_mode = result.mode
            response.secret_stored = result.secret_stored
            response.warnings.extend(result.warnings)
            response.next_steps = [
                "Send the consent URL to a Global Administrator of the customer tenant",
                "After consent completes, run an assessment with POST /api/assessments",
            ]
    await db.commit()
    response.customer = customer_out(customer)
    logger.info("customer_created customer_id=%s domain=%s", customer.id, customer.tenant_domain)
    return success_response(request=request, data=response)


@router.get("/customers", response_model=SuccessEnvelope[CustomerList])
async def list_customers(
    request: Request,
    include_deleted: bool = Query(default=False, alias="includeDeleted"),
    db: AsyncSession = Depends(get_db),
) -> dict:
    customers = await customers_repo.list_customers(db, include_deleted=include_deleted)
    items = [customer_out(customer) for customer in customers]
    return success_response(request=request, data=CustomerList(items=items, total=len(items)))


@router.get("/customers/{customer_id}", response_model=SuccessEnvelope[CustomerOut])
async def get_customer(
    customer_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict:
    customer = await customers_repo.get_customer(db, customer_id)
    if customer is None:
        raise _not_found()
    return success_response(request=request, data=customer_out(customer))


@router.delete("/customers/{customer_id}", response_model=SuccessEnvelope[CustomerOut])
async def delete_customer(
    customer_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    vault: SecretVault | None = Depends(get_vault),
) -> dict:
    customer = await customers_repo.get_customer(db, customer_id)
    if customer is None:
        raise _not_found()
    try:
        await delete_client_secret(customer, vault=vault)
    except AzureError as exc:
        # The record is still soft-deleted; the vault secret expires on its own.
        logger.warning("customer_secret_delete_failed customer_id=%s error=%s", customer.id, type(exc).__name__)
    customers_repo.soft_delete(customer)
    await db.commit()
    logger.info("customer_deleted customer_id=%s", customer.id)
    return success_response(request=request, data=customer_out(customer))
