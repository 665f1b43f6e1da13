from __future__ import annotations

import asyncio
import logging
import re
import time
from datetime import datetime, timedelta, timezone
from typing import Any

from m365assess.core.errors import (
    GraphApiError,
    GraphNotFoundError,
    GraphPermissionError,
    GraphTransientError,
)
from m365assess.services.graph.client import GraphClient
from m365assess.services.graph.permissions import build_required_resource_access
from m365assess.services.resilience import RetryPolicy, is_rejected_write, retry_async


logger = logging.getLogger(__name__)

APP_NAME_PREFIX = "M365-Security-Assessment-"
_APP_TAGS = ["M365Assessment", "SecurityAssessment"]
_SERVICE_PRINCIPAL_TAGS = ["WindowsAzureActiveDirectoryIntegratedApp", "M365Assessment"]

_REMEDIATION_STEPS = [
    "Grant the partner service principal the Application.ReadWrite.All application permission",
    "Have a Global Administrator grant admin consent for that permission in the partner tenant",
    "Wait a few minutes for the permission to propagate, then retry",
]


def app_display_name(tenant_name: str) -> str:
    return APP_NAME_PREFIX + re.sub(r"\s+", "-", tenant_name.strip())


def _is_privilege_error(exc: GraphApiError) -> bool:
    text = (exc.message or "").lower()
    return (
        isinstance(exc, GraphPermissionError)
        or exc.graph_code == "Authorization_RequestDenied"
        or "insufficient privileges" in text
    )


def _permission_remediation(exc: GraphApiError) -> GraphPermissionError:
    return GraphPermissionError(
        "The partner service principal is not allowed to create applications "
        "(Application.ReadWrite.All is required)",
        status=exc.status,
        graph_code=exc.graph_code,
        troubleshooting=list(_REMEDIATION_STEPS),
    )


async def create_application(
    graph: GraphClient,
    *,
    display_name: str,
    redirect_uri: str,
    permissions: list[str],
    tags: list[str],
    policy: RetryPolicy,
) -> dict[str, Any]:
    payload = {
        "displayName": display_name,
        "signInAudience": "AzureADMultipleOrgs",
        "web": {
            "redirectUris": [redirect_uri],
            "implicitGrantSettings": {"enableIdTokenIssuance": False, "enableAccessTokenIssuance": False},
        },
        "requiredResourceAccess": build_required_resource_access(permissions),
        "tags": [*_APP_TAGS, *[tag for tag in tags if tag]],
    }
    try:
        application = await retry_async(
            lambda: graph.post_json("/applications", payload),
            policy=policy,
            retryable=is_rejected_write,
            operation="create_application",
        )
    except asyncio.TimeoutError as exc:
        # Graph may still have created the app, so it is not posted again.
        logger.warning("application_create_timeout display_name=%s", display_name)
        raise GraphTransientError(
            f"Creating application {display_name} timed out",
            troubleshooting=[
                f"Check the partner tenant for an application named {display_name} before retrying",
                "Delete any duplicate application left behind by the timed out request",
            ],
        ) from exc
    except GraphApiError as exc:
        if _is_privilege_error(exc):
            raise _permission_remediation(exc) from exc
        raise
    logger.info("application_created app_id=%s object_id=%s", application.get("appId"), application.get("id"))
    return application


async def create_service_principal(graph: GraphClient, *, app_id: str) -> dict[str, Any]:
    try:
        return await graph.post_json("/servicePrincipals", {"appId": app_id, "tags": _SERVICE_PRINCIPAL_TAGS})
    except GraphApiError as exc:
        if _is_privilege_error(exc):
            raise _permission_remediation(exc) from exc
        raise


async def find_service_principal(graph: GraphClient, *, app_id: str) -> str | None:
    body = await graph.get_json(
        "/servicePrincipals",
        params={"$filter": f"appId eq '{app_id}'", "$select": "id,appId"},
    )
    for item in body.get("value") or []:
        if item.get("id"):
            return str(item["id"])
    return None


async def ensure_service_principal(graph: GraphClient, *, app_id: str) -> str:
    # After admin consent the enterprise application normally already exists.
    existing = await find_service_principal(graph, app_id=app_id)
    if existing:
        return existing
    created = await graph.post_json("/servicePrincipals", {"appId": app_id, "tags": _SERVICE_PRINCIPAL_TAGS})
    logger.info("service_principal_created app_id=%s", app_id)
    return str(created.get("id") or "")


async def add_password(
    graph: GraphClient,
    *,
    application_object_id: str,
    app_name: str,
    lifetime_days: int,
) -> dict[str, Any]:
    end = datetime.now(timezone.utc) + timedelta(days=lifetime_days)
    payload = {
        "passwordCredential": {
            "displayName": f"{app_name}-Secret-{int(time.time() * 1000)}",
            "endDateTime": end.isoformat().replace("+00:00", "Z"),
        }
    }
    credential = await graph.post_json(f"/applications/{application_object_id}/addPassword", payload)
    if not credential.get("secretText"):
        raise GraphApiError("Graph did not return a client secret value")
    return credential


async def remove_password(graph: GraphClient, *, application_object_id: str, key_id: str) -> None:
    await graph.post_json(f"/applications/{application_object_id}/removePassword", {"keyId": key_id})


async def update_required_permissions(
    graph: GraphClient, *, application_object_id: str, permissions: list[str]
) -> None:
    await graph.patch_json(
        f"/applications/{application_object_id}",
        {"requiredResourceAccess": build_required_resource_access(permissions)},
    )


async def get_application(graph: GraphClient, *, application_object_id: str) -> dict[str, Any]:
    return await graph.get_json(f"/applications/{application_object_id}")


async def delete_application(graph: GraphClient, *, application_object_id: str) -> bool:
    # Already-deleted applications are not an error.
    try:
        await graph.delete(f"/applications/{application_object_id}")
    except GraphNotFoundError:
        logger.info("application_already_deleted object_id=%s", application_object_id)
        return False
    return True
