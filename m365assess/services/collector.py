from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

from m365assess.core.errors import AssessError, GraphPermissionError
from m365assess.domain.metrics import (
    ALL_CATEGORIES,
    AssessmentMetrics,
    ConditionalAccessMetrics,
    IdentityMetrics,
    LicenseMetrics,
    MfaMetrics,
    OrganizationInfo,
    PrivilegedRoleMetrics,
    SecureScoreMetrics,
    Unavailable,
    skipped,
)
from m365assess.services import scoring
from m365assess.services.graph.client import GraphClient


logger = logging.getLogger(__name__)

T = TypeVar("T")

# Permission each query depends on, used to explain 403 responses.
_REQUIRED_PERMISSION = {
    "organization": "Organization.Read.All",
    "license": "Organization.Read.All",
    "secureScore": "SecurityEvents.Read.All",
    "mfa": "Reports.Read.All",
    "conditionalAccess": "Policy.Read.All",
    "privilegedRoles": "Directory.Read.All",
}


def normalize_categories(categories: list[str] | None) -> list[str]:
    # Unknown names are dropped; an empty selection means every category.
    selected = [category for category in (categories or []) if category in ALL_CATEGORIES]
    return selected or list(ALL_CATEGORIES)


async def _isolated(name: str, fetch: Callable[[], Awaitable[T]]) -> T | Unavailable:
    # One failing query degrades only its own metric.
    try:
        return await fetch()
    except GraphPermissionError:
        permission = _REQUIRED_PERMISSION.get(name, "the required Graph permission")
        logger.info("metric_unavailable metric=%s reason=permission", name)
        return Unavailable(reason=f"Access denied; grant {permission} and re-consent", code="permission_denied")
    except AssessError as exc:
        logger.info("metric_unavailable metric=%s reason=%s", name, exc.code)
        return Unavailable(reason=exc.message, code=exc.code.lower())
    except (ValueError, KeyError, TypeError) as exc:
        logger.warning("metric_parse_failed metric=%s error=%s", name, type(exc).__name__)
        return Unavailable(reason="Unexpected Graph response shape", code="invalid_response")


class GraphDataCollector:
    """Read-only Graph queries for one consented customer tenant."""

    def __init__(self, graph: GraphClient) -> None:
        self._graph = graph

    async def organization(self) -> OrganizationInfo:
        body = await self._graph.get_json("/organization", params={"$select": "id,displayName,verifiedDomains"})
        org: dict[str, Any] = (body.get("value") or [{}])[0]
        return OrganizationInfo(
            display_name=org.get("displayName"),
            tenant_id=org.get("id"),
            verified_domains=[str(item.get("name")) for item in org.get("verifiedDomains") or [] if item.get("name")],
        )

    async def license(self) -> LicenseMetrics:
        skus = await self._graph.get_all("/subscribedSkus")
        return scoring.license_metrics(skus)

    async def secure_score(self) -> SecureScoreMetrics | Unavailable:
        body = await self._graph.get_json("/security/secureScores", params={"$top": "1"})
        scores = body.get("value") or []
        if not scores:
            return Unavailable(reason="No secure score has been calculated for this tenant", code="no_data")
        # Control profiles only enrich titles; a failure there keeps the score itself.
        try:
            profiles = await self._graph.get_all("/security/secureScoreControlProfiles")
        except AssessError as exc:
            logger.info("secure_score_profiles_unavailable reason=%s", exc.code)
            profiles = []
        return scoring.secure_score_metrics(scores[0], profiles)

    async def mfa(self) -> MfaMetrics:
        details = await self._graph.get_all("/reports/authenticationMethods/userRegistrationDetails")
        return scoring.mfa_metrics(details)

    async def conditional_access(self) -> ConditionalAccessMetrics:
        policies = await self._graph.get_all("/identity/conditionalAccess/policies")
        return scoring.conditional_access_metrics(policies)

    async def privileged_roles(self) -> PrivilegedRoleMetrics:
        roles = await self._graph.get_all(
            "/directoryRoles",
            params={"$expand": "members($select=id)", "$select": "id,displayName"},
        )
        return scoring.privileged_role_metrics(roles)

    async def identity(self) -> IdentityMetrics:
        mfa, conditional_access, privileged_roles = await asyncio.gather(
            _isolated("mfa", self.mfa),
            _isolated("conditionalAccess", self.conditional_access),
            _isolated("privilegedRoles", self.privileged_roles),
        )
        return IdentityMetrics(mfa=mfa, conditional_access=conditional_access, privileged_roles=privileged_roles)

    async def collect(self, categories: list[str]) -> AssessmentMetrics:
        selected = normalize_categories(categories)

        async def _skip(category: str) -> Unavailable:
            return skipped(category)

        organization, license_result, secure_result, identity_result = await asyncio.gather(
            _isolated("organization", self.organization),
            _isolated("license", self.license) if "license" in selected else _skip("license"),
            _isolated("secureScore", self.secure_score) if "secureScore" in selected else _skip("secureScore"),
            _isolated("identity", self.identity) if "identity" in selected else _skip("identity"),
        )
        return AssessmentMetrics(
            organization=organization,
            license=license_result,
            secure_score=secure_result,
            identity=identity_result,
        )
