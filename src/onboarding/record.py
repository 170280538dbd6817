"""Onboarding record: the single output artifact of a run.

Each orchestrator step returns a StepContribution; the record is an
immutable value rebuilt by merging contributions in order. It is serialized
once, with a stable field order, and never carries secret values, only
where they are stored.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TextIO

from .backend import ResourceKind
from .binder import BindingResult
from .reconciler import ReconciliationResult

logger = logging.getLogger(__name__)

RECORD_SCHEMA_VERSION = "1"


class Severity(str, Enum):
    """How a step failure affects the run."""

    FATAL = "fatal"  # Abort the run
    DEGRADED = "degraded"  # Log, record and continue


class StepStatus(str, Enum):
    SUCCEEDED = "succeeded"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class StepOutcome:
    """Per-step status line in the record."""

    step: str
    severity: Severity
    status: StepStatus = StepStatus.SUCCEEDED
    detail: str | None = None


@dataclass(frozen=True)
class SecretReference:
    """Where a secret was stored. Never the value."""

    vault_name: str
    vault_uri: str
    secret_name: str
    secret_id: str | None = None


@dataclass(frozen=True)
class CredentialMetadata:
    """Metadata of a minted client secret. Never the value.

    previous_key_ids lists client secrets the app already held, so operators
    can revoke the ones earlier runs left behind.
    """

    app_id: str
    key_id: str
    display_name: str
    expires_at: datetime
    previous_key_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class StepContribution:
    """What a single step adds to the record."""

    resources: tuple[ReconciliationResult, ...] = ()
    bindings: tuple[BindingResult, ...] = ()
    secrets: tuple[SecretReference, ...] = ()
    credentials: tuple[CredentialMetadata, ...] = ()
    outcomes: tuple[StepOutcome, ...] = ()


@dataclass(frozen=True)
class OnboardingRecord:
    """Aggregate of everything an onboarding run provisioned."""

    organization: str
    environment: str
    location: str
    environment_index: int
    subscription_id: str
    tenant_id: str
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None
    resources: tuple[ReconciliationResult, ...] = ()
    bindings: tuple[BindingResult, ...] = ()
    secrets: tuple[SecretReference, ...] = ()
    credentials: tuple[CredentialMetadata, ...] = ()
    outcomes: tuple[StepOutcome, ...] = ()

    def merge(self, contribution: StepContribution) -> OnboardingRecord:
        """Return a new record with contribution appended."""
        return replace(
            self,
            resources=self.resources + contribution.resources,
            bindings=self.bindings + contribution.bindings,
            secrets=self.secrets + contribution.secrets,
            credentials=self.credentials + contribution.credentials,
            outcomes=self.outcomes + contribution.outcomes,
        )

    def finish(self) -> OnboardingRecord:
        return replace(self, finished_at=datetime.now(UTC))

    def find(self, kind: ResourceKind, name: str) -> ReconciliationResult:
        """Get the reconciled resource of kind with the given name.

        Raises:
            KeyError: If no such resource is in the record.
        """
        for result in self.resources:
            if result.spec.kind == kind and result.spec.desired_name == name:
                return result
        raise KeyError(f"{kind.value} '{name}' not in onboarding record")

    @property
    def degraded_steps(self) -> list[StepOutcome]:
        return [o for o in self.outcomes if o.status == StepStatus.DEGRADED]

    @property
    def created_count(self) -> int:
        return sum(1 for r in self.resources if not r.existed)

    def summary(self) -> str:
        degraded = len(self.degraded_steps)
        if degraded:
            return f"succeeded with {degraded} degraded step(s)"
        return "succeeded"

    def to_dict(self) -> dict[str, Any]:
        """Serialize in a stable field order."""
        return {
            "schemaVersion": RECORD_SCHEMA_VERSION,
            "organization": self.organization,
            "environment": self.environment,
            "location": self.location,
            "environmentIndex": self.environment_index,
            "subscriptionId": self.subscription_id,
            "tenantId": self.tenant_id,
            "startedAt": _timestamp(self.started_at),
            "finishedAt": _timestamp(self.finished_at),
            "status": self.summary(),
            "resources": [
                {
                    "kind": r.spec.kind.value,
                    "name": r.spec.desired_name,
                    "scope": r.spec.scope,
                    "existed": r.existed,
                    "id": r.id,
                    "properties": dict(r.properties),
                }
                for r in self.resources
            ],
            "roleBindings": [
                {
                    "principalId": b.binding.principal_id,
                    "roleName": b.binding.role_name,
                    "scopeId": b.binding.scope_id,
                    "scopeKind": b.binding.scope_kind.value,
                    "created": b.created,
                    "attempts": b.attempts,
                }
                for b in self.bindings
            ],
            "secrets": [
                {
                    "vaultName": s.vault_name,
                    "vaultUri": s.vault_uri,
                    "secretName": s.secret_name,
                    "secretId": s.secret_id,
                }
                for s in self.secrets
            ],
            "credentials": [
                {
                    "appId": c.app_id,
                    "keyId": c.key_id,
                    "displayName": c.display_name,
                    "expiresAt": _timestamp(c.expires_at),
                    "previousKeyIds": list(c.previous_key_ids),
                }
                for c in self.credentials
            ],
            "steps": [
                {
                    "step": o.step,
                    "severity": o.severity.value,
                    "status": o.status.value,
                    "detail": o.detail,
                }
                for o in self.outcomes
            ],
        }


def _timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat().replace("+00:00", "Z")


def write_record(record: OnboardingRecord, sink: TextIO) -> None:
    """Serialize record as JSON to sink.

    The record is checked against the minted secret value by
    Onboarder.run() before it is returned, which is the only place that
    value is in scope.

    Args:
        record: The finished record.
        sink: Writable text stream (file, stdout).
    """
    text = json.dumps(record.to_dict(), indent=2, default=str)
    sink.write(text)
    sink.write("\n")
    logger.info(
        "Onboarding record written",
        extra={"resources": len(record.resources), "bindings": len(record.bindings)},
    )
