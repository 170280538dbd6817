"""Resource naming conventions.

All names are derived from (organization code, environment, region, index)
so that re-running onboarding for the same tenant targets the same objects.

    rg-neo-abc-dev-uks-01          resource group
    sg-neo-abc-dev-uks-01-admins   security group
    app-neo-abc-dev-uks-01         app registration
    kv-neo-abc-dev-uks-01          key vault          (max 24)
    stneoabcdevuks01               storage account    (max 24, alnum only)
    id-neo-abc-dev-uks-01-runtime  managed identity

Names that exceed a kind's length limit are cut down to the first N
characters, then stripped of trailing separators.
"""

from __future__ import annotations

import re

from .backend import ResourceKind

PRODUCT_CODE = "neo"

# Prefixes per resource kind
KIND_PREFIXES: dict[ResourceKind, str] = {
    ResourceKind.RESOURCE_GROUP: "rg",
    ResourceKind.SECURITY_GROUP: "sg",
    ResourceKind.APP_REGISTRATION: "app",
    ResourceKind.KEY_VAULT: "kv",
    ResourceKind.STORAGE_ACCOUNT: "st",
    ResourceKind.BLOB_CONTAINER: "data",
    ResourceKind.MANAGED_IDENTITY: "id",
}

# Azure name length limits
MAX_NAME_LENGTHS: dict[ResourceKind, int] = {
    ResourceKind.RESOURCE_GROUP: 90,
    ResourceKind.SECURITY_GROUP: 256,
    ResourceKind.APP_REGISTRATION: 120,
    ResourceKind.KEY_VAULT: 24,
    ResourceKind.STORAGE_ACCOUNT: 24,
    ResourceKind.BLOB_CONTAINER: 63,
    ResourceKind.MANAGED_IDENTITY: 128,
}

# Kinds whose names may only contain lowercase letters and digits
ALPHANUMERIC_ONLY: frozenset[ResourceKind] = frozenset({ResourceKind.STORAGE_ACCOUNT})

# Short codes for Azure regions used in names
REGION_CODES: dict[str, str] = {
    "uksouth": "uks",
    "ukwest": "ukw",
    "northeurope": "neu",
    "westeurope": "weu",
    "francecentral": "frc",
    "germanywestcentral": "gwc",
    "swedencentral": "sdc",
    "switzerlandnorth": "chn",
    "eastus": "eus",
    "eastus2": "eus2",
    "centralus": "cus",
    "westus": "wus",
    "westus2": "wus2",
    "westus3": "wus3",
    "canadacentral": "cac",
    "australiaeast": "aue",
    "southeastasia": "sea",
    "japaneast": "jpe",
}

_SEPARATOR_PATTERN = re.compile(r"[^a-z0-9-]")


def region_code(location: str) -> str:
    """Map an Azure location (e.g. "uksouth") to its short code.

    Raises:
        ValueError: If the location has no known short code.
    """
    code = REGION_CODES.get(location.lower().replace(" ", ""))
    if code is None:
        raise ValueError(
            f"No region code for location '{location}'. Known: {sorted(REGION_CODES)}"
        )
    return code


def truncate(name: str, max_length: int) -> str:
    """Keep the first max_length characters, without a trailing separator."""
    if len(name) <= max_length:
        return name
    return name[:max_length].rstrip("-")


def resource_name(
    kind: ResourceKind,
    organization: str,
    environment: str,
    location: str,
    index: int,
    suffix: str | None = None,
) -> str:
    """Build the name for a resource of the given kind.

    Args:
        kind: Resource kind (selects prefix and length/charset rules).
        organization: Three-character organization code.
        environment: Environment tag (dev, prd).
        location: Azure location; converted to its region code.
        index: Environment index, 1-99, rendered as two digits.
        suffix: Optional role/purpose suffix (e.g. "admins", "runtime").

    Returns:
        Lowercase name satisfying the kind's limits.

    Raises:
        ValueError: If the kind has no naming rule or index is out of range.
    """
    prefix = KIND_PREFIXES.get(kind)
    if prefix is None:
        raise ValueError(f"No naming rule for {kind.value}")
    if not 1 <= index <= 99:
        raise ValueError(f"index must be between 1 and 99: {index}")

    parts = [
        prefix,
        PRODUCT_CODE,
        organization,
        environment,
        region_code(location),
        f"{index:02d}",
    ]
    if suffix:
        parts.append(suffix)

    if kind in ALPHANUMERIC_ONLY:
        name = re.sub(r"[^a-z0-9]", "", "".join(parts).lower())
    else:
        name = _SEPARATOR_PATTERN.sub("-", "-".join(parts).lower())

    return truncate(name, MAX_NAME_LENGTHS[kind])


def secret_name(app_name: str) -> str:
    """Key vault secret name holding an app registration's client secret."""
    return truncate(f"{app_name}-client-secret", 127)
