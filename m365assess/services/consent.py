from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from urllib.parse import parse_qsl, quote, urlencode, urlparse, urlunparse

from sqlalchemy.ext.asyncio import AsyncSession

from m365assess.core.config import Settings
from m365assess.core.errors import AssessError, ConsentStateError
from m365assess.domain.app_registration import AppRegistration, validate_app_registration
from m365assess.domain.identifiers import is_custom_domain, is_guid
from m365assess.domain.models import Customer
from m365assess.persistence.repos import customers as customers_repo
from m365assess.services.consent_state import (
    ConsentState,
    claim_state_nonce,
    decode_consent_state,
    encode_consent_state,
)
from m365assess.services.credentials import credentials_for_registration
from m365assess.services.graph.applications import ensure_service_principal
from m365assess.services.graph.client import GraphClientFactory
from m365assess.services.vault import SecretVault


logger = logging.getLogger(__name__)

LOGIN_BASE_URL = "https://login.microsoftonline.com"
GRAPH_DEFAULT_SCOPE = "https://graph.microsoft.com/.default"

# Messages shown on the consent result page, keyed by error code.
CONSENT_ERROR_MESSAGES: dict[str, str] = {
    "missing_parameters": "The consent response was missing required parameters. Please restart the consent process.",
    "customer_not_found": "The customer for this consent request could not be found.",
    "graph_api_failure": "Consent was granted but the application could not be configured in your tenant. Please try again.",
    "consent_denied": "Admin consent was denied or cancelled. The assessment cannot access your tenant without it.",
    "invalid_state": "The consent link is invalid, expired, or was already used. Request a new consent link.",
}
# Azure AD error values that mean the admin declined.
_DENIAL_ERRORS = {"access_denied", "consent_required", "consent_denied"}


def consent_authority(tenant_id_or_common: str | None) -> str:
    # Vanity domains cannot address /adminconsent, so fall back to the common endpoint.
    value = (tenant_id_or_common or "").strip()
    if not value or is_custom_domain(value):
        return "common"
    return value


def generate_consent_url(
    client_id: str,
    tenant_id_or_common: str | None,
    redirect_uri: str,
    customer_id: str,
    *,
    secret: str,
    issued_at: int | None = None,
    nonce: str | None = None,
    login_base_url: str = LOGIN_BASE_URL,
) -> str:
    authority = consent_authority(tenant_id_or_common)
    state = encode_consent_state(
        customer_id=customer_id,
        client_id=client_id,
        tenant_id=(tenant_id_or_common or None),
        secret=secret,
        issued_at=issued_at,
        nonce=nonce,
    )
    query = urlencode(
        {"client_id": client_id, "redirect_uri": redirect_uri, "state": state},
        quote_via=quote,
        safe="",
    )
    return f"{login_base_url.rstrip('/')}/{authority}/adminconsent?{query}"


def build_authorize_url(
    client_id: str,
    tenant_id_or_common: str | None,
    redirect_uri: str,
    state: str,
    *,
    login_base_url: str = LOGIN_BASE_URL,
) -> str:
    authority = consent_authority(tenant_id_or_common)
    query = urlencode(
        {
            "client_id": client_id,
            "response_type": "code",
            "redirect_uri": redirect_uri,
            "scope": GRAPH_DEFAULT_SCOPE,
            "state": state,
            "prompt": "admin_consent",
        },
        quote_via=quote,
        safe="",
    )
    return f"{login_base_url.rstrip('/')}/{authority}/oauth2/v2.0/authorize?{query}"


def issue_consent_links(
    customer: Customer,
    client_id: str,
    tenant_id_or_common: str | None,
    *,
    settings: Settings,
) -> tuple[str, str]:
    consent_url = generate_consent_url(
        client_id,
        tenant_id_or_common,
        settings.redirect_uri,
        customer.id,
        secret=settings.consent_state_secret,
        login_base_url=settings.login_base_url,
    )
    state = encode_consent_state(
        customer_id=customer.id,
        client_id=client_id,
        tenant_id=tenant_id_or_common,
        secret=settings.consent_state_secret,
    )
    auth_url = build_authorize_url(
        client_id,
        tenant_id_or_common,
        settings.redirect_uri,
        state,
        login_base_url=settings.login_base_url,
    )
    return consent_url, auth_url


def refresh_consent_url(customer: Customer, *, settings: Settings) -> AppRegistration:
    """Issue fresh consent links for a customer's current registration."""
    registration = validate_app_registration(customer.app_registration)
    if registration is None or not registration.effective_client_id:
        raise ConsentStateError("Customer has no app registration to consent to")
    tenant = customer.tenant_id if customer.tenant_id and not is_custom_domain(customer.tenant_id) else None
    consent_url, auth_url = issue_consent_links(
        customer, registration.effective_client_id, tenant, settings=settings
    )
    registration.consent_url = consent_url
    registration.auth_url = auth_url
    customers_repo.set_app_registration(customer, registration.to_record())
    return registration


def append_query_params(url: str, params: dict[str, str]) -> str:
    # Append query params to redirect URLs without clobbering existing ones.
    parsed = urlparse(url)
    query = dict(parse_qsl(parsed.query))
    query.update(params)
    return urlunparse(parsed._replace(query=urlencode(query)))


@dataclass(frozen=True)
class ConsentOutcome:
    status: str
    message: str
    error_code: str | None = None
    customer_id: str | None = None
    app_id: str | None = None

    @classmethod
    def failure(cls, error_code: str, *, customer_id: str | None = None, detail: str | None = None) -> "ConsentOutcome":
        message = CONSENT_ERROR_MESSAGES[error_code]
        if detail:
            message = f"{message} ({detail})"
        return cls(status="error", message=message, error_code=error_code, customer_id=customer_id)

    def redirect_url(self, result_url: str) -> str:
        params = {"status": self.status, "message": self.message}
        if self.error_code:
            params["error"] = self.error_code
        if self.customer_id:
            params["customer"] = self.customer_id
        if self.app_id:
            params["appId"] = self.app_id
        return append_query_params(result_url, params)


def _decode_state(state: str, *, settings: Settings) -> ConsentState:
    return decode_consent_state(
        state,
        secret=settings.consent_state_secret,
        ttl_seconds=settings.consent_state_ttl_seconds,
    )


async def _claim_state(decoded: ConsentState, *, settings: Settings) -> None:
    claimed = await claim_state_nonce(
        decoded.nonce,
        ttl_seconds=settings.consent_state_ttl_seconds,
        redis_url=settings.redis_url,
    )
    if not claimed:
        raise ConsentStateError("Consent state was already used")


async def _record_denial(session: AsyncSession, state: str | None, *, settings: Settings) -> str | None:
    # Denials only touch the customer when the state proves which one it was.
    if not state:
        return None
    try:
        decoded = _decode_state(state, settings=settings)
        await _claim_state(decoded, settings=settings)
    except ConsentStateError as exc:
        logger.info("consent_denial_state_rejected reason=%s", exc.message)
        return None
    customer = await customers_repo.get_customer(session, decoded.customer_id)
    if customer is None:
        return None
    if customer.consent_status != "consented":
        customer.consent_status = "denied"
        # The denied link is spent; store a new one so the admin can try again.
        if validate_app_registration(customer.app_registration) is not None:
            refresh_consent_url(customer, settings=settings)
        await session.commit()
    return customer.id


async def handle_consent_callback(
    session: AsyncSession,
    *,
    admin_consent: str | None,
    tenant: str | None,
    state: str | None,
    error: str | None,
    error_description: str | None,
    settings: Settings,
    graph_factory: GraphClientFactory,
    vault: SecretVault | None,
) -> ConsentOutcome:
    """Apply an Azure AD admin-consent redirect to the customer it belongs to.

    Moves the customer from ``pending`` to ``consented`` or ``denied`` and
    returns the outcome to render on the result page. Failures never raise;
    they come back as an error outcome with a code from CONSENT_ERROR_MESSAGES.
    """
    if error:
        customer_id = await _record_denial(session, state, settings=settings)
        logger.info("consent_denied error=%s customer_id=%s", error, customer_id)
        detail = error if error not in _DENIAL_ERRORS else None
        return ConsentOutcome.failure("consent_denied", customer_id=customer_id, detail=detail)

    if (admin_consent or "").strip().lower() != "true" or not tenant or not state:
        logger.info("consent_callback_incomplete admin_consent=%s tenant=%s", admin_consent, bool(tenant))
        return ConsentOutcome.failure("missing_parameters")

    try:
        decoded = _decode_state(state, settings=settings)
    except ConsentStateError as exc:
        logger.warning("consent_state_rejected reason=%s", exc.message)
        return ConsentOutcome.failure("invalid_state")

    customer = await customers_repo.get_customer(session, decoded.customer_id)
    if customer is None:
        logger.warning("consent_customer_missing customer_id=%s", decoded.customer_id)
        return ConsentOutcome.failure("customer_not_found")

    registration = validate_app_registration(customer.app_registration)
    if registration is None:
        registration = AppRegistration(
            application_id=decoded.client_id,
            client_id=decoded.client_id,
            provisioning_mode="shared",
            secret_storage="partner",
        )
    elif registration.effective_client_id != decoded.client_id:
        logger.warning("consent_client_mismatch customer_id=%s", customer.id)
        return ConsentOutcome.failure("invalid_state", customer_id=customer.id)

    consenting_tenant = tenant.strip()
    if settings.consent_ensure_service_principal:
        try:
            credentials = await credentials_for_registration(
                registration,
                consenting_tenant,
                settings=settings,
                vault=vault,
                label=customer.tenant_name,
            )
            async with graph_factory.client(credentials) as graph:
                registration.service_principal_id = (
                    await ensure_service_principal(graph, app_id=decoded.client_id) or None
                )
        except AssessError as exc:
            logger.warning(
                "consent_service_principal_failed customer_id=%s error=%s",
                customer.id,
                exc.code,
            )
            return ConsentOutcome.failure("graph_api_failure", customer_id=customer.id)

    # Claimed only once the tenant side is set up, so a failed attempt can be retried.
    try:
        await _claim_state(decoded, settings=settings)
    except ConsentStateError as exc:
        logger.warning("consent_state_rejected customer_id=%s reason=%s", customer.id, exc.message)
        return ConsentOutcome.failure("invalid_state", customer_id=customer.id)

    now = datetime.now(timezone.utc)
    if is_guid(consenting_tenant):
        customer.tenant_id = consenting_tenant.lower()
    registration.tenant_id = customer.tenant_id
    registration.is_real = True
    registration.needs_setup = False
    registration.setup_status = "completed"
    registration.consented_date = now.isoformat()
    customers_repo.set_app_registration(customer, registration.to_record())
    customer.consent_status = "consented"
    customer.consented_at = now
    customer.status = "active"
    await session.commit()
    logger.info("consent_granted customer_id=%s tenant=%s", customer.id, customer.tenant_id)
    return ConsentOutcome(
        status="success",
        message="Admin consent granted. The assessment application is ready to use.",
        customer_id=customer.id,
        app_id=decoded.client_id,
    )

