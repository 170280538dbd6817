"""Tests for resource naming conventions."""

from __future__ import annotations

import pytest

from onboarding.backend import ResourceKind
from onboarding.naming import region_code, resource_name, secret_name, truncate


class TestResourceName:
    """Tests for resource_name."""

    def test_resource_group(self) -> None:
        """Test the canonical resource group name."""
        name = resource_name(ResourceKind.RESOURCE_GROUP, "abc", "dev", "uksouth", 1)
        assert name == "rg-neo-abc-dev-uks-01"

    def test_suffix(self) -> None:
        """Test that the suffix is appended last."""
        name = resource_name(ResourceKind.SECURITY_GROUP, "abc", "prd", "westeurope", 12, "admins")
        assert name == "sg-neo-abc-prd-weu-12-admins"

    def test_storage_account_is_alphanumeric(self) -> None:
        """Test that storage account names drop separators."""
        name = resource_name(ResourceKind.STORAGE_ACCOUNT, "ABC", "dev", "uksouth", 1)
        assert name == "stneoabcdevuks01"

    def test_lowercased(self) -> None:
        """Test that names are lowercase."""
        name = resource_name(ResourceKind.KEY_VAULT, "AbC", "DEV", "UK South", 3)
        assert name == "kv-neo-abc-dev-uks-03"

    def test_key_vault_truncated_to_24(self) -> None:
        """Test that long vault names keep the first 24 characters."""
        name = resource_name(
            ResourceKind.KEY_VAULT, "abc", "dev", "germanywestcentral", 1, "secrets"
        )
        assert len(name) <= 24
        assert name.startswith("kv-neo-abc-dev-gwc-01")
        assert not name.endswith("-")

    def test_deterministic(self) -> None:
        """Test that the same inputs always give the same name."""
        args = (ResourceKind.MANAGED_IDENTITY, "abc", "dev", "uksouth", 1, "runtime")
        assert resource_name(*args) == resource_name(*args) == "id-neo-abc-dev-uks-01-runtime"

    @pytest.mark.parametrize("index", [0, 100])
    def test_index_out_of_range(self, index: int) -> None:
        """Test that the environment index must be 1-99."""
        with pytest.raises(ValueError):
            resource_name(ResourceKind.RESOURCE_GROUP, "abc", "dev", "uksouth", index)

    def test_service_principal_has_no_naming_rule(self) -> None:
        """Test that service principals reuse the app name instead."""
        with pytest.raises(ValueError):
            resource_name(ResourceKind.SERVICE_PRINCIPAL, "abc", "dev", "uksouth", 1)


class TestHelpers:
    """Tests for naming helpers."""

    def test_truncate_strips_trailing_separator(self) -> None:
        """Test that truncation never leaves a trailing hyphen."""
        assert truncate("abcd-efgh", 5) == "abcd"

    def test_truncate_short_name_unchanged(self) -> None:
        """Test that short names pass through."""
        assert truncate("abc", 24) == "abc"

    def test_unknown_region(self) -> None:
        """Test that unknown regions are rejected."""
        with pytest.raises(ValueError, match="No region code"):
            region_code("marsnorth")

    def test_secret_name(self) -> None:
        """Test the client secret name."""
        assert secret_name("app-neo-abc-dev-uks-01") == "app-neo-abc-dev-uks-01-client-secret"
