from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Literal
from urllib.parse import quote

import httpx

from m365assess.core.config import Settings, get_settings
from m365assess.domain.identifiers import is_guid, is_onmicrosoft_domain


logger = logging.getLogger(__name__)

_ISSUER_PATTERN = re.compile(r"https://login\.microsoftonline\.com/([^/]+)/v2\.0")

ResolutionSource = Literal["guid", "onmicrosoft", "openid", "userrealm", "unresolved"]


@dataclass(frozen=True)
class TenantResolution:
    tenant_id: str
    resolved: bool
    source: ResolutionSource


class TenantResolver:
    """Resolve customer domains to Azure AD tenant ids.

    OpenID discovery is tried first, then the user-realm endpoint. A domain
    neither lookup can resolve comes back unchanged with ``resolved=False`` so
    callers can fall back to the ``common`` consent endpoint.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._transport = transport

    async def _fetch_json(self, url: str, timeout_ms: int) -> dict[str, Any] | None:
        try:
            async with httpx.AsyncClient(timeout=timeout_ms / 1000.0, transport=self._transport) as client:
                response = await client.get(url)
        except httpx.HTTPError as exc:
            logger.info("tenant_lookup_failed url=%s error=%s", url, type(exc).__name__)
            return None
        if response.status_code >= 400:
            logger.info("tenant_lookup_failed url=%s status=%s", url, response.status_code)
            return None
        try:
            body = response.json()
        except ValueError:
            return None
        return body if isinstance(body, dict) else None

    async def _from_openid_configuration(self, domain: str) -> str | None:
        base = self._settings.login_base_url.rstrip("/")
        url = f"{base}/{quote(domain, safe='')}/v2.0/.well-known/openid-configuration"
        body = await self._fetch_json(url, self._settings.tenant_discovery_timeout_ms)
        issuer = str((body or {}).get("issuer") or "")
        match = _ISSUER_PATTERN.search(issuer)
        if match and is_guid(match.group(1)):
            return match.group(1).lower()
        return None

    async def _from_user_realm(self, domain: str) -> str | None:
        base = self._settings.login_base_url.rstrip("/")
        url = f"{base}/common/userrealm/{quote(domain, safe='')}?api-version=2.1"
        body = await self._fetch_json(url, self._settings.tenant_realm_timeout_ms)
        if not body:
            return None
        candidate = str(body.get("TenantId") or body.get("tenant_id") or "")
        return candidate.lower() if is_guid(candidate) else None

    async def resolve(self, value: str) -> TenantResolution:
        candidate = (value or "").strip()
        if not candidate:
            raise ValueError("Tenant domain or id is required")
        if is_guid(candidate):
            return TenantResolution(tenant_id=candidate, resolved=True, source="guid")
        if is_onmicrosoft_domain(candidate):
            return TenantResolution(tenant_id=candidate, resolved=True, source="onmicrosoft")

        tenant_id = await self._from_openid_configuration(candidate)
        if tenant_id:
            logger.info("tenant_resolved domain=%s source=openid", candidate)
            return TenantResolution(tenant_id=tenant_id, resolved=True, source="openid")
        tenant_id = await self._from_user_realm(candidate)
        if tenant_id:
            logger.info("tenant_resolved domain=%s source=userrealm", candidate)
            return TenantResolution(tenant_id=tenant_id, resolved=True, source="userrealm")

        logger.warning("tenant_resolution_unresolved domain=%s", candidate)
        return TenantResolution(tenant_id=candidate, resolved=False, source="unresolved")


async def resolve_domain_to_tenant_id(value: str, *, resolver: TenantResolver | None = None) -> str:
    resolution = await (resolver or TenantResolver()).resolve(value)
    return resolution.tenant_id
