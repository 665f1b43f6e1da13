from __future__ import annotations

from typing import Any, Iterable

from m365assess.core.errors import UnknownPermissionError


MICROSOFT_GRAPH_APP_ID = "00000003-0000-0000-c000-000000000000"

# Microsoft Graph application role ids (app-only permissions).
GRAPH_APP_ROLES: dict[str, str] = {
    "Organization.Read.All": "498476ce-e0fe-48b0-b801-37ba7e2685c6",
    "Reports.Read.All": "230c1aed-a721-4c5d-9cb4-a90514e508ef",
    "Directory.Read.All": "7ab1d382-f21e-4acd-a863-ba3e13f7da61",
    "Policy.Read.All": "246dd0d5-5bd0-4def-940b-0421030a5b68",
    "SecurityEvents.Read.All": "bf394140-e372-4bf9-a898-299cfc7564e5",
    "IdentityRiskyUser.Read.All": "dc5007c0-2d7d-4c42-879c-2dab87571379",
    "DeviceManagementManagedDevices.Read.All": "2f51be20-0bb4-4fed-bf7b-db946066c75e",
    "AuditLog.Read.All": "b0afded3-3588-46d8-8b3d-9842eff778da",
    "User.Read.All": "df021288-bdef-4463-88db-98f22de89214",
    "UserAuthenticationMethod.Read.All": "38d9df27-64da-44fd-b7c5-a6fbac20248f",
    "RoleManagement.Read.Directory": "483bed4a-2ad3-4361-a73b-c83ccdbdc53c",
    "Directory.ReadWrite.All": "19dbc75e-c2e2-444c-a770-ec69d8559fc7",
}

# Read-only set needed by the assessment collector.
DEFAULT_PERMISSIONS: tuple[str, ...] = (
    "Organization.Read.All",
    "Reports.Read.All",
    "Directory.Read.All",
    "Policy.Read.All",
    "SecurityEvents.Read.All",
    "IdentityRiskyUser.Read.All",
    "DeviceManagementManagedDevices.Read.All",
    "AuditLog.Read.All",
)


def normalize_permissions(permissions: Iterable[str] | None) -> list[str]:
    # Preserve caller order, drop blanks and duplicates, default when empty.
    seen: list[str] = []
    for permission in permissions or ():
        name = (permission or "").strip()
        if name and name not in seen:
            seen.append(name)
    return seen or list(DEFAULT_PERMISSIONS)


def permission_role_id(permission: str) -> str:
    role_id = GRAPH_APP_ROLES.get(permission)
    if role_id is None:
        raise UnknownPermissionError(
            f"Unknown Microsoft Graph permission: {permission}",
            troubleshooting=[f"Supported permissions: {', '.join(sorted(GRAPH_APP_ROLES))}"],
        )
    return role_id


def build_required_resource_access(permissions: Iterable[str]) -> list[dict[str, Any]]:
    return [
        {
            "resourceAppId": MICROSOFT_GRAPH_APP_ID,
            "resourceAccess": [
                {"id": permission_role_id(permission), "type": "Role"} for permission in permissions
            ],
        }
    ]
