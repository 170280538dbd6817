"""Pydantic model for the onboarding input.

The onboarding spec is a small YAML document describing one customer
environment. Validation happens here, at the boundary; the provisioning
core consumes an OnboardingSpec that is already known to be valid.

Example:

    organizationCode: abc
    environment: dev
    location: uksouth
    environmentIndex: 1
    operatorObjectId: 00000000-0000-0000-0000-000000000001
    guestEmails:
      - support@partner.example
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Annotated

from pydantic import BaseModel, Field, field_validator

from .backend import ResourceKind
from .naming import REGION_CODES, resource_name

VALID_GUID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
MAX_RESOURCE_GROUP_NAME_LENGTH = 90
MAX_GUESTS = 50


class Environment(str, Enum):
    """Environment tag used in names and tags."""

    DEV = "dev"
    PROD = "prd"


class OnboardingSpec(BaseModel):
    """Validated onboarding input."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    organization_code: Annotated[
        str, Field(alias="organizationCode", pattern=r"^[A-Za-z0-9]{3}$")
    ]
    environment: Environment
    location: Annotated[str, Field(min_length=2)]
    environment_index: Annotated[int, Field(alias="environmentIndex", ge=1, le=99)]
    resource_group_name: str | None = Field(
        None, alias="resourceGroupName", max_length=MAX_RESOURCE_GROUP_NAME_LENGTH
    )
    operator_object_id: Annotated[str, Field(alias="operatorObjectId")]
    guest_emails: list[str] = Field(
        default_factory=list, alias="guestEmails", max_length=MAX_GUESTS
    )
    tags: dict[str, str] = Field(default_factory=dict)

    @field_validator("organization_code")
    @classmethod
    def lowercase_organization(cls, v: str) -> str:
        return v.lower()

    @field_validator("location")
    @classmethod
    def validate_location(cls, v: str) -> str:
        location = v.lower().replace(" ", "")
        if location not in REGION_CODES:
            raise ValueError(f"location must be one of {sorted(REGION_CODES)}")
        return location

    @field_validator("operator_object_id")
    @classmethod
    def validate_operator_object_id(cls, v: str) -> str:
        if not re.match(VALID_GUID_PATTERN, v.lower()):
            raise ValueError(f"operatorObjectId must be a GUID: {v}")
        return v.lower()

    @field_validator("guest_emails")
    @classmethod
    def validate_guest_emails(cls, v: list[str]) -> list[str]:
        invalid = [e for e in v if not re.match(VALID_EMAIL_PATTERN, e)]
        if invalid:
            raise ValueError(f"invalid guest email addresses: {invalid}")
        # Preserve order, drop duplicates
        seen: dict[str, None] = {}
        for email in v:
            seen.setdefault(email.lower(), None)
        return list(seen)

    def name_for(self, kind: ResourceKind, suffix: str | None = None) -> str:
        """Derive the conventional name of a resource for this environment."""
        return resource_name(
            kind,
            self.organization_code,
            self.environment.value,
            self.location,
            self.environment_index,
            suffix,
        )

    @property
    def effective_resource_group_name(self) -> str:
        return self.resource_group_name or self.name_for(ResourceKind.RESOURCE_GROUP)

    def resource_tags(self) -> dict[str, str]:
        return {
            **self.tags,
            "organization": self.organization_code,
            "environment": self.environment.value,
            "managedBy": "neo-onboarding",
        }
