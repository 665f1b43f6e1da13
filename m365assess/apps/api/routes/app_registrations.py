from __future__ import annotations

import logging
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Request, status
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
from m365assess.apps.api.schemas import ApiModel
from m365assess.core.config import Settings
from m365assess.core.errors import AppRegistrationSetupError
from m365assess.domain.app_registration import validate_app_registration
from m365assess.domain.models import Customer
from m365assess.persistence.repos import customers as customers_repo
from m365assess.services.consent import refresh_consent_url
from m365assess.services.graph.client import GraphClientFactory
from m365assess.services.provisioning import (
    ProvisioningResult,
    provision_customer,
    rotate_client_secret,
    update_app_permissions,
)
from m365assess.services.tenant_resolver import TenantResolver
from m365assess.services.vault import SecretVault


logger = logging.getLogger(__name__)

router = APIRouter(tags=["app-registrations"], responses=DEFAULT_ERROR_RESPONSES)


class CreateAppRequest(ApiModel):
    customer_id: str
    required_permissions: list[str] | None = None
    mode: Literal["shared", "dedicated"] | None = None


class AppRegistrationResponse(ApiModel):
    customer_id: str
    client_id: str
    tenant_id: str
    consent_url: str
    auth_url: str
    secret_stored: bool
    provisioning_mode: str
    permissions: list[str]
    warnings: list[str] = []


class ConsentUrlResponse(ApiModel):
    customer_id: str
    client_id: str
    consent_url: str
    auth_url: str | None = None


class PermissionsRequest(ApiModel):
    permissions: list[str]


class PermissionsResponse(ApiModel):
    customer_id: str
    permissions: list[str]
    consent_url: str | None = None


async def _load_customer(db: AsyncSession, customer_id: str) -> Customer:
    customer = await customers_repo.get_customer(db, customer_id)
    if customer is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "CUSTOMER_NOT_FOUND", "message": "Customer not found"},
        )
    return customer


def _registration_response(customer: Customer, result: ProvisioningResult) -> AppRegistrationResponse:
    return AppRegistrationResponse(
        customer_id=customer.id,
        client_id=result.client_id,
        tenant_id=result.tenant_id,
        consent_url=result.consent_url,
        auth_url=result.auth_url,
        secret_stored=result.secret_stored,
        provisioning_mode=result.mode,
        permissions=result.registration.permissions,
        warnings=result.warnings,
    )


@router.post(
    "/create-multi-tenant-app",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[AppRegistrationResponse],
)
async def create_multi_tenant_app(
    payload: CreateAppRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    resolver: TenantResolver = Depends(get_tenant_resolver),
    graph_factory: GraphClientFactory = Depends(get_graph_factory),
    vault: SecretVault | None = Depends(get_vault),
) -> dict:
    customer = await _load_customer(db, payload.customer_id)
    result = await provision_customer(
        db,
        customer,
        settings=settings,
        graph_factory=graph_factory,
        resolver=resolver,
        vault=vault,
        mode=payload.mode,
        required_permissions=payload.required_permissions,
    )
    await db.commit()
    return success_response(request=request, data=_registration_response(customer, result))


@router.get("/customers/{customer_id}/consent-url", response_model=SuccessEnvelope[ConsentUrlResponse])
async def get_consent_url(
    customer_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> dict:
    customer = await _load_customer(db, customer_id)
    if validate_app_registration(customer.app_registration) is None:
        raise AppRegistrationSetupError(
            "Customer has no app registration to consent to",
            troubleshooting=["Create the app registration with POST /api/create-multi-tenant-app"],
        )
    registration = refresh_consent_url(customer, settings=settings)
    await db.commit()
    return success_response(
        request=request,
        data=ConsentUrlResponse(
            customer_id=customer.id,
            client_id=registration.effective_client_id or "",
            consent_url=registration.consent_url or "",
            auth_url=registration.auth_url,
        ),
    )


@router.post("/customers/{customer_id}/rotate-secret", response_model=SuccessEnvelope[AppRegistrationResponse])
async def rotate_secret(
    customer_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    graph_factory: GraphClientFactory = Depends(get_graph_factory),
    vault: SecretVault | None = Depends(get_vault),
) -> dict:
    customer = await _load_customer(db, customer_id)
    result = await rotate_client_secret(
        db, customer, settings=settings, graph_factory=graph_factory, vault=vault
    )
    await db.commit()
    return success_response(request=request, data=_registration_response(customer, result))


@router.put("/customers/{customer_id}/permissions", response_model=SuccessEnvelope[PermissionsResponse])
async def replace_permissions(
    customer_id: str,
    payload: PermissionsRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    graph_factory: GraphClientFactory = Depends(get_graph_factory),
) -> dict:
    customer = await _load_customer(db, customer_id)
    registration = validate_app_registration(customer.app_registration)
    if registration is None or registration.provisioning_mode != "dedicated" or not registration.application_id:
        raise AppRegistrationSetupError(
            "Permissions can only be changed on a dedicated app registration",
            troubleshooting=["Shared registrations inherit the partner application's permissions"],
        )
    permissions = await update_app_permissions(
        registration.application_id,
        payload.permissions,
        settings=settings,
        graph_factory=graph_factory,
    )
    registration.permissions = permissions
    customers_repo.set_app_registration(customer, registration.to_record())
    # New application roles only take effect after the customer consents again.
    registration = refresh_consent_url(customer, settings=settings)
    customer.consent_status = "pending"
    await db.commit()
    logger.info("customer_permissions_replaced customer_id=%s count=%s", customer.id, len(permissions))
    return success_response(
        request=request,
        data=PermissionsResponse(
            customer_id=customer.id,
            permissions=registration.permissions,
            consent_url=registration.consent_url,
        ),
    )
