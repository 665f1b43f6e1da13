from __future__ import annotations

import re


GUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)
ONMICROSOFT_SUFFIX = ".onmicrosoft.com"
# Values written by earlier provisioning paths that never produced a real app.
PLACEHOLDER_PREFIXES = ("pending-", "placeholder-", "ERROR_")


def is_guid(value: str | None) -> bool:
    return bool(value) and bool(GUID_PATTERN.match(value.strip()))


def is_onmicrosoft_domain(value: str | None) -> bool:
    return bool(value) and value.strip().lower().endswith(ONMICROSOFT_SUFFIX)


def is_custom_domain(value: str | None) -> bool:
    # A bare vanity domain cannot address a tenant-specific consent endpoint.
    if not value:
        return False
    candidate = value.strip()
    return "." in candidate and not is_onmicrosoft_domain(candidate) and not is_guid(candidate)


def is_placeholder_id(value: str | None) -> bool:
    return bool(value) and value.strip().startswith(PLACEHOLDER_PREFIXES)
