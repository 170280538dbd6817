"""Tests for loading onboarding YAML files."""

from __future__ import annotations

from pathlib import Path

import pytest

from onboarding.spec_loader import MAX_SPEC_FILE_SIZE_BYTES, SpecLoadError, load_spec


class TestLoadSpec:
    """Tests for load_spec."""

    def test_flat_document(self, spec_file: Path) -> None:
        """Test loading a plain onboarding document."""
        spec = load_spec(spec_file)

        assert spec.organization_code == "abc"
        assert spec.guest_emails == ["guest@partner.example"]

    def test_wrapped_document(self, tmp_path: Path) -> None:
        """Test loading a document with an apiVersion/spec wrapper."""
        path = tmp_path / "wrapped.yaml"
        path.write_text(
            "apiVersion: onboarding/v1\n"
            "kind: Onboarding\n"
            "spec:\n"
            "  organizationCode: xyz\n"
            "  environment: prd\n"
            "  location: westeurope\n"
            "  environmentIndex: 3\n"
            "  operatorObjectId: 00000000-0000-0000-0000-000000000001\n"
        )

        spec = load_spec(path)

        assert spec.organization_code == "xyz"
        assert spec.environment_index == 3

    def test_missing_file(self, tmp_path: Path) -> None:
        """Test that a missing file is reported."""
        with pytest.raises(SpecLoadError, match="not found"):
            load_spec(tmp_path / "absent.yaml")

    def test_oversized_file(self, tmp_path: Path) -> None:
        """Test that huge files are refused before parsing."""
        path = tmp_path / "big.yaml"
        path.write_text("#" * (MAX_SPEC_FILE_SIZE_BYTES + 1))

        with pytest.raises(SpecLoadError, match="maximum size"):
            load_spec(path)

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        """Test that malformed YAML is reported."""
        path = tmp_path / "bad.yaml"
        path.write_text("organizationCode: [unclosed\n")

        with pytest.raises(SpecLoadError, match="Invalid YAML"):
            load_spec(path)

    def test_not_a_mapping(self, tmp_path: Path) -> None:
        """Test that a top-level list is rejected."""
        path = tmp_path / "list.yaml"
        path.write_text("- abc\n- dev\n")

        with pytest.raises(SpecLoadError, match="YAML mapping"):
            load_spec(path)

    def test_wrapper_spec_not_a_mapping(self, tmp_path: Path) -> None:
        """Test that a wrapper whose spec is a scalar is rejected."""
        path = tmp_path / "wrapped.yaml"
        path.write_text("apiVersion: onboarding/v1\nspec: abc\n")

        with pytest.raises(SpecLoadError, match="must be a mapping"):
            load_spec(path)

    def test_validation_errors_listed(self, tmp_path: Path) -> None:
        """Test that each validation failure is listed by field."""
        path = tmp_path / "invalid.yaml"
        path.write_text("organizationCode: toolong\nenvironment: dev\n")

        with pytest.raises(SpecLoadError) as exc_info:
            load_spec(path)

        message = str(exc_info.value)
        assert "Validation failed" in message
        assert "  - organizationCode:" in message
        assert "  - location:" in message
