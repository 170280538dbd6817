"""Tests for the Pydantic models."""

import pytest
from pydantic import ValidationError

from onboarding.backend import ResourceKind
from onboarding.models import Environment, OnboardingSpec

OPERATOR = "00000000-0000-0000-0000-000000000001"


def spec_data(**overrides: object) -> dict:
    data = {
        "organizationCode": "abc",
        "environment": "dev",
        "location": "uksouth",
        "environmentIndex": 1,
        "operatorObjectId": OPERATOR,
    }
    data.update(overrides)
    return data


class TestOnboardingSpec:
    """Tests for OnboardingSpec model."""

    def test_valid_spec(self) -> None:
        """Test parsing a valid onboarding spec."""
        spec = OnboardingSpec.model_validate(
            spec_data(guestEmails=["a@partner.example"], tags={"costCenter": "42"})
        )

        assert spec.organization_code == "abc"
        assert spec.environment == Environment.DEV
        assert spec.environment_index == 1
        assert spec.guest_emails == ["a@partner.example"]
        assert spec.resource_group_name is None

    def test_normalization(self) -> None:
        """Test that codes, locations and ids are normalized."""
        spec = OnboardingSpec.model_validate(
            spec_data(
                organizationCode="ABC",
                location="UK South",
                operatorObjectId=OPERATOR.upper(),
            )
        )

        assert spec.organization_code == "abc"
        assert spec.location == "uksouth"
        assert spec.operator_object_id == OPERATOR

    @pytest.mark.parametrize("code", ["ab", "abcd", "a-c"])
    def test_invalid_organization_code(self, code: str) -> None:
        """Test that the organization code must be three alphanumerics."""
        with pytest.raises(ValidationError) as exc_info:
            OnboardingSpec.model_validate(spec_data(organizationCode=code))

        assert "organizationCode" in str(exc_info.value)

    def test_invalid_environment(self) -> None:
        """Test that only dev and prd are accepted."""
        with pytest.raises(ValidationError):
            OnboardingSpec.model_validate(spec_data(environment="staging"))

    def test_unknown_location(self) -> None:
        """Test that a region without a short code is rejected."""
        with pytest.raises(ValidationError) as exc_info:
            OnboardingSpec.model_validate(spec_data(location="marsnorth"))

        assert "location must be one of" in str(exc_info.value)

    @pytest.mark.parametrize("index", [0, 100])
    def test_index_out_of_range(self, index: int) -> None:
        """Test that the environment index is 1-99."""
        with pytest.raises(ValidationError):
            OnboardingSpec.model_validate(spec_data(environmentIndex=index))

    def test_operator_must_be_guid(self) -> None:
        """Test that operatorObjectId must be a GUID."""
        with pytest.raises(ValidationError) as exc_info:
            OnboardingSpec.model_validate(spec_data(operatorObjectId="me@contoso.com"))

        assert "must be a GUID" in str(exc_info.value)

    def test_guest_emails_deduplicated(self) -> None:
        """Test that guest emails are lowercased and de-duplicated in order."""
        spec = OnboardingSpec.model_validate(
            spec_data(guestEmails=["B@partner.example", "a@partner.example", "b@partner.example"])
        )

        assert spec.guest_emails == ["b@partner.example", "a@partner.example"]

    def test_invalid_guest_email(self) -> None:
        """Test that malformed guest emails are rejected."""
        with pytest.raises(ValidationError) as exc_info:
            OnboardingSpec.model_validate(spec_data(guestEmails=["not-an-email"]))

        assert "invalid guest email" in str(exc_info.value)

    def test_extra_field_ignored(self) -> None:
        """Test that unknown fields are ignored."""
        spec = OnboardingSpec.model_validate(spec_data(unknownField="x"))
        assert not hasattr(spec, "unknownField")


class TestNamingHelpers:
    """Tests for names and tags derived from the spec."""

    def test_name_for(self) -> None:
        """Test that names follow the convention."""
        spec = OnboardingSpec.model_validate(spec_data(environment="prd", environmentIndex=2))

        assert spec.name_for(ResourceKind.KEY_VAULT) == "kv-neo-abc-prd-uks-02"
        assert spec.effective_resource_group_name == "rg-neo-abc-prd-uks-02"

    def test_resource_group_override(self) -> None:
        """Test that an explicit resource group name is used as-is."""
        spec = OnboardingSpec.model_validate(spec_data(resourceGroupName="rg-existing"))
        assert spec.effective_resource_group_name == "rg-existing"

    def test_resource_tags(self) -> None:
        """Test that managed tags override user tags of the same name."""
        spec = OnboardingSpec.model_validate(
            spec_data(tags={"costCenter": "42", "managedBy": "someone"})
        )

        assert spec.resource_tags() == {
            "costCenter": "42",
            "organization": "abc",
            "environment": "dev",
            "managedBy": "neo-onboarding",
        }
