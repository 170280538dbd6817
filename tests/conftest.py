"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for azure_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from azure_mock import OPERATOR_ID, SUBSCRIPTION_ID, TENANT_ID, MockCloudBackend  # noqa: E402
from onboarding.config import Config  # noqa: E402
from onboarding.models import OnboardingSpec  # noqa: E402

SPEC_DATA = {
    "organizationCode": "abc",
    "environment": "dev",
    "location": "uksouth",
    "environmentIndex": 1,
    "operatorObjectId": OPERATOR_ID,
}

SPEC_YAML = f"""\
organizationCode: abc
environment: dev
location: uksouth
environmentIndex: 1
operatorObjectId: {OPERATOR_ID}
guestEmails:
  - guest@partner.example
"""


@pytest.fixture
def backend() -> MockCloudBackend:
    return MockCloudBackend()


@pytest.fixture
def config() -> Config:
    """Config with no waiting between attempts."""
    return Config(
        subscription_id=SUBSCRIPTION_ID,
        tenant_id=TENANT_ID,
        provider_poll_interval_seconds=0,
        provider_max_retries=3,
        resource_backoff_seconds=0,
        rbac_max_attempts=3,
        rbac_backoff_seconds=0,
        secret_write_max_attempts=3,
        secret_write_backoff_seconds=0,
    )


@pytest.fixture
def onboarding_spec() -> OnboardingSpec:
    return OnboardingSpec.model_validate(SPEC_DATA)


@pytest.fixture
def spec_file(tmp_path: Path) -> Path:
    path = tmp_path / "onboarding.yaml"
    path.write_text(SPEC_YAML)
    return path
