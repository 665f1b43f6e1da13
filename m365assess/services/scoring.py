from __future__ import annotations

from typing import Any

from m365assess.domain.metrics import (
    AssessmentMetrics,
    ConditionalAccessMetrics,
    ControlSummary,
    IdentityMetrics,
    LicenseMetrics,
    MfaMetrics,
    PrivilegedRoleMetrics,
    SecureScoreMetrics,
    SkuSummary,
)


LICENSE_WEIGHT = 0.4
SECURE_SCORE_WEIGHT = 0.6
LOW_UTILIZATION = 70
HIGH_UTILIZATION = 95
SECURE_SCORE_TARGET = 70
MAX_CONTROL_RECOMMENDATIONS = 3
MAX_GLOBAL_ADMINS = 4
# Controls scoring below this share of their maximum are called out.
LOW_CONTROL_RATIO = 0.5


def _percent(part: float, whole: float) -> int:
    if whole <= 0:
        return 0
    return int(round(part / whole * 100))


def license_metrics(skus: list[dict[str, Any]]) -> LicenseMetrics:
    summaries: list[SkuSummary] = []
    total = 0
    assigned = 0
    for sku in skus:
        enabled = int((sku.get("prepaidUnits") or {}).get("enabled") or 0)
        consumed = int(sku.get("consumedUnits") or 0)
        total += enabled
        assigned += consumed
        summaries.append(
            SkuSummary(
                sku_part_number=str(sku.get("skuPartNumber") or sku.get("skuId") or "unknown"),
                enabled=enabled,
                consumed=consumed,
            )
        )
    utilization = _percent(assigned, total)
    return LicenseMetrics(
        total_licenses=total,
        assigned_licenses=assigned,
        available_licenses=max(total - assigned, 0),
        utilization_rate=utilization,
        skus=summaries,
        summary=f"{assigned} of {total} licenses assigned ({utilization}% utilization)",
    )


def secure_score_metrics(score: dict[str, Any], profiles: list[dict[str, Any]]) -> SecureScoreMetrics:
    current = float(score.get("currentScore") or 0)
    maximum = float(score.get("maxScore") or 0)
    profile_index = {str(profile.get("id")): profile for profile in profiles if profile.get("id")}
    low: list[ControlSummary] = []
    for control in score.get("controlScores") or []:
        name = str(control.get("controlName") or "")
        profile = profile_index.get(name, {})
        control_max = float(profile.get("maxScore") or 0)
        control_score = float(control.get("score") or 0)
        if control_max > 0 and control_score / control_max < LOW_CONTROL_RATIO:
            low.append(
                ControlSummary(
                    control_id=name,
                    title=str(profile.get("title") or name),
                    score=control_score,
                    max_score=control_max,
                )
            )
    # Largest missing points first.
    low.sort(key=lambda item: item.max_score - item.score, reverse=True)
    return SecureScoreMetrics(
        current_score=current,
        max_score=maximum,
        percentage=_percent(current, maximum),
        measured_at=score.get("createdDateTime"),
        low_scoring_controls=low[:MAX_CONTROL_RECOMMENDATIONS],
    )


def mfa_metrics(details: list[dict[str, Any]]) -> MfaMetrics:
    users = [item for item in details if item.get("userType", "member") != "guest"]
    registered = sum(1 for item in users if item.get("isMfaRegistered"))
    capable = sum(1 for item in users if item.get("isMfaCapable"))
    return MfaMetrics(
        total_users=len(users),
        mfa_registered=registered,
        mfa_capable=capable,
        registration_rate=_percent(registered, len(users)),
    )


def conditional_access_metrics(policies: list[dict[str, Any]]) -> ConditionalAccessMetrics:
    return ConditionalAccessMetrics(
        total_policies=len(policies),
        enabled_policies=sum(1 for policy in policies if policy.get("state") == "enabled"),
        report_only_policies=sum(
            1 for policy in policies if policy.get("state") == "enabledForReportingButNotEnforced"
        ),
    )


def privileged_role_metrics(roles: list[dict[str, Any]]) -> PrivilegedRoleMetrics:
    summaries = []
    global_admins = 0
    assignments = 0
    for role in roles:
        members = role.get("members") or []
        name = str(role.get("displayName") or "")
        assignments += len(members)
        if name in ("Global Administrator", "Company Administrator"):
            global_admins = len(members)
        summaries.append({"display_name": name, "member_count": len(members)})
    return PrivilegedRoleMetrics(
        global_admins=global_admins,
        privileged_assignments=assignments,
        roles=[item for item in summaries if item["member_count"] > 0],
    )


def overall_score(metrics: AssessmentMetrics) -> float:
    """Weighted blend of license utilization and secure score.

    Weights are renormalized over the categories that produced data, so an
    unavailable category does not drag the score to zero.
    """
    parts: list[tuple[float, float]] = []
    if isinstance(metrics.license, LicenseMetrics) and metrics.license.total_licenses > 0:
        parts.append((LICENSE_WEIGHT, float(metrics.license.utilization_rate)))
    if isinstance(metrics.secure_score, SecureScoreMetrics) and metrics.secure_score.max_score > 0:
        parts.append((SECURE_SCORE_WEIGHT, float(metrics.secure_score.percentage)))
    total_weight = sum(weight for weight, _value in parts)
    if total_weight <= 0:
        return 0.0
    score = sum(weight * value for weight, value in parts) / total_weight
    return float(max(0, min(100, round(score))))


def recommendations(metrics: AssessmentMetrics, categories: list[str]) -> list[str]:
    items: list[str] = []
    license_result = metrics.license
    if isinstance(license_result, LicenseMetrics) and license_result.total_licenses > 0:
        if license_result.utilization_rate < LOW_UTILIZATION:
            items.append("Review and reallocate unused licenses to optimize costs")
        if license_result.utilization_rate > HIGH_UTILIZATION:
            items.append("Consider purchasing additional licenses to avoid capacity issues")

    secure = metrics.secure_score
    if isinstance(secure, SecureScoreMetrics):
        if secure.percentage < SECURE_SCORE_TARGET:
            items.append("Implement basic security controls to improve secure score")
        for control in secure.low_scoring_controls:
            items.append(f'Improve "{control.title}" security control implementation')
    elif "secureScore" in categories:
        items.append("Complete admin consent to enable detailed security assessment")
        items.append("Grant SecurityEvents.Read.All permission for comprehensive security metrics")

    identity = metrics.identity
    if isinstance(identity, IdentityMetrics):
        if isinstance(identity.mfa, MfaMetrics) and identity.mfa.total_users and identity.mfa.registration_rate < 100:
            missing = identity.mfa.total_users - identity.mfa.mfa_registered
            items.append(f"Require MFA registration for the {missing} users without a registered method")
        if isinstance(identity.conditional_access, ConditionalAccessMetrics) and not identity.conditional_access.enabled_policies:
            items.append("Create baseline Conditional Access policies (require MFA, block legacy authentication)")
        if isinstance(identity.privileged_roles, PrivilegedRoleMetrics) and identity.privileged_roles.global_admins > MAX_GLOBAL_ADMINS:
            items.append(
                f"Reduce Global Administrators from {identity.privileged_roles.global_admins} "
                f"to {MAX_GLOBAL_ADMINS} or fewer"
            )

    if not items:
        items.append("Regular security assessment monitoring recommended")
        items.append("Review Microsoft 365 security center for latest recommendations")
    return items
