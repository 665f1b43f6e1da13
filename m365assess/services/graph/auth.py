from __future__ import annotations

import asyncio
import hashlib
import logging
import threading
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import msal
import requests

from m365assess.core.config import PartnerCredentials
from m365assess.core.errors import ConsentRequiredError, TokenAcquisitionError


logger = logging.getLogger(__name__)

GRAPH_SCOPES = ["https://graph.microsoft.com/.default"]
DEFAULT_LOGIN_BASE_URL = "https://login.microsoftonline.com"

_apps: dict[tuple[str, str, str], msal.ConfidentialClientApplication] = {}
_apps_lock = threading.Lock()


@dataclass(frozen=True)
class ClientCredentials:
    # App identity used for a client-credentials grant against one tenant.
    tenant_id: str
    client_id: str
    client_secret: str

    @classmethod
    def for_partner(cls, partner: PartnerCredentials) -> "ClientCredentials":
        return cls(
            tenant_id=partner.tenant_id,
            client_id=partner.client_id,
            client_secret=partner.client_secret,
        )


TokenAcquirer = Callable[[ClientCredentials], Awaitable[str]]


def build_authority(tenant_id: str, login_base_url: str = DEFAULT_LOGIN_BASE_URL) -> str:
    return f"{login_base_url.rstrip('/')}/{tenant_id}"


def map_token_error(description: str, *, tenant_id: str | None = None) -> TokenAcquisitionError:
    """Translate AADSTS codes from a failed token request into actionable errors."""
    text = description or ""
    if "AADSTS700016" in text:
        return ConsentRequiredError(
            "Application not found in the customer tenant; the customer admin must grant consent first",
            troubleshooting=[
                "Open the consent URL for this customer and sign in as a Global Administrator",
                "Confirm the consent was granted to the same client id stored for the customer",
            ],
        )
    if "AADSTS65001" in text or "consent_required" in text:
        return ConsentRequiredError(
            "Admin consent is required for this application",
            troubleshooting=["Re-run the admin consent flow for this customer"],
        )
    if "AADSTS7000215" in text or "AADSTS70002" in text or "AADSTS70008" in text:
        return TokenAcquisitionError(
            "Invalid or expired client secret",
            troubleshooting=["Rotate the client secret and store the new value"],
        )
    if "AADSTS650057" in text:
        return TokenAcquisitionError(
            "Invalid client: the application is not configured for the requested resource",
            troubleshooting=["Check the application's Microsoft Graph permissions"],
        )
    if "AADSTS90002" in text or "invalid_tenant" in text:
        return TokenAcquisitionError(
            f"Tenant not found: {tenant_id or 'unknown'}",
            troubleshooting=["Verify the customer tenant id or domain"],
        )
    return TokenAcquisitionError(text or "Token acquisition failed")


def _get_app(credentials: ClientCredentials, login_base_url: str) -> msal.ConfidentialClientApplication:
    # Reuse msal apps per identity so their in-memory token caches are effective.
    secret_digest = hashlib.sha256(credentials.client_secret.encode("utf-8")).hexdigest()
    authority = build_authority(credentials.tenant_id, login_base_url)
    key = (authority, credentials.client_id, secret_digest)
    with _apps_lock:
        app = _apps.get(key)
        if app is None:
            app = msal.ConfidentialClientApplication(
                client_id=credentials.client_id,
                client_credential=credentials.client_secret,
                authority=authority,
            )
            _apps[key] = app
        return app


def _acquire_sync(credentials: ClientCredentials, login_base_url: str) -> dict[str, Any]:
    app = _get_app(credentials, login_base_url)
    return app.acquire_token_for_client(scopes=GRAPH_SCOPES)


async def acquire_app_token(
    credentials: ClientCredentials, *, login_base_url: str = DEFAULT_LOGIN_BASE_URL
) -> str:
    # msal is synchronous; run it in a worker thread to keep the event loop free.
    try:
        result = await asyncio.to_thread(_acquire_sync, credentials, login_base_url)
    except requests.exceptions.RequestException as exc:
        logger.warning("token_request_failed tenant=%s error=%s", credentials.tenant_id, type(exc).__name__)
        raise TokenAcquisitionError("Could not reach the Microsoft identity platform") from exc
    except ValueError as exc:
        # msal raises ValueError for malformed or unknown authorities.
        raise map_token_error(str(exc), tenant_id=credentials.tenant_id) from exc
    token = result.get("access_token") if isinstance(result, dict) else None
    if not token:
        description = ""
        if isinstance(result, dict):
            description = str(result.get("error_description") or result.get("error") or "")
        logger.warning(
            "token_acquisition_failed tenant=%s client_id=%s error=%s",
            credentials.tenant_id,
            credentials.client_id,
            (result or {}).get("error") if isinstance(result, dict) else None,
        )
        raise map_token_error(description, tenant_id=credentials.tenant_id)
    return str(token)
