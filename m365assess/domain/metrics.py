from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


MetricCategory = Literal["license", "secureScore", "identity"]
ALL_CATEGORIES: tuple[str, ...] = ("license", "secureScore", "identity")


class _MetricModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Unavailable(_MetricModel):
    # Explicit marker for a metric whose Graph query failed or was not requested.
    status: Literal["unavailable", "skipped"] = "unavailable"
    skipped: bool = True
    reason: str
    code: str | None = None


class SkuSummary(_MetricModel):
    sku_part_number: str
    enabled: int
    consumed: int


class LicenseMetrics(_MetricModel):
    status: Literal["available"] = "available"
    total_licenses: int
    assigned_licenses: int
    available_licenses: int
    utilization_rate: int
    skus: list[SkuSummary] = []
    summary: str


class ControlSummary(_MetricModel):
    control_id: str
    title: str
    score: float
    max_score: float


class SecureScoreMetrics(_MetricModel):
    status: Literal["available"] = "available"
    current_score: float
    max_score: float
    percentage: int
    measured_at: str | None = None
    low_scoring_controls: list[ControlSummary] = []


class MfaMetrics(_MetricModel):
    status: Literal["available"] = "available"
    total_users: int
    mfa_registered: int
    mfa_capable: int
    registration_rate: int


class ConditionalAccessMetrics(_MetricModel):
    status: Literal["available"] = "available"
    total_policies: int
    enabled_policies: int
    report_only_policies: int


class RoleSummary(_MetricModel):
    display_name: str
    member_count: int


class PrivilegedRoleMetrics(_MetricModel):
    status: Literal["available"] = "available"
    global_admins: int
    privileged_assignments: int
    roles: list[RoleSummary] = []


class OrganizationInfo(_MetricModel):
    status: Literal["available"] = "available"
    display_name: str | None = None
    tenant_id: str | None = None
    verified_domains: list[str] = []


MfaResult = Annotated[Union[MfaMetrics, Unavailable], Field(discriminator="status")]
ConditionalAccessResult = Annotated[
    Union[ConditionalAccessMetrics, Unavailable], Field(discriminator="status")
]
PrivilegedRoleResult = Annotated[Union[PrivilegedRoleMetrics, Unavailable], Field(discriminator="status")]


class IdentityMetrics(_MetricModel):
    status: Literal["available"] = "available"
    mfa: MfaResult
    conditional_access: ConditionalAccessResult
    privileged_roles: PrivilegedRoleResult

    @property
    def degraded(self) -> bool:
        return any(
            isinstance(part, Unavailable)
            for part in (self.mfa, self.conditional_access, self.privileged_roles)
        )


LicenseResult = Annotated[Union[LicenseMetrics, Unavailable], Field(discriminator="status")]
SecureScoreResult = Annotated[Union[SecureScoreMetrics, Unavailable], Field(discriminator="status")]
IdentityResult = Annotated[Union[IdentityMetrics, Unavailable], Field(discriminator="status")]
OrganizationResult = Annotated[Union[OrganizationInfo, Unavailable], Field(discriminator="status")]


class AssessmentMetrics(_MetricModel):
    organization: OrganizationResult
    license: LicenseResult
    secure_score: SecureScoreResult
    identity: IdentityResult

    def unavailable_count(self) -> int:
        count = 0
        for result in (self.license, self.secure_score, self.identity):
            if isinstance(result, Unavailable):
                if result.status == "unavailable":
                    count += 1
            elif isinstance(result, IdentityMetrics) and result.degraded:
                count += 1
        return count

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


def skipped(category: str) -> Unavailable:
    return Unavailable(status="skipped", reason=f"Category '{category}' was not requested", code="not_requested")
