"""Tests for the onboard CLI."""

from __future__ import annotations

import json
from collections.abc import Iterator
from pathlib import Path
from unittest import mock

import pytest
from click.testing import CliRunner

from azure_mock import MockAzureContext
from onboarding.cli import cli


@pytest.fixture(autouse=True)
def quiet_logging() -> Iterator[None]:
    with mock.patch("onboarding.main.setup_logging"):
        yield


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


class TestValidate:
    """Tests for `onboard validate`."""

    def test_valid(self, runner: CliRunner, spec_file: Path) -> None:
        """Test that a valid spec is reported with its identity."""
        result = runner.invoke(cli, ["validate", "--spec", str(spec_file)])

        assert result.exit_code == 0
        assert "is valid: abc/dev in uksouth (index 01)" in result.output

    def test_invalid(self, runner: CliRunner, tmp_path: Path) -> None:
        """Test that validation errors exit non-zero with the field listed."""
        path = tmp_path / "bad.yaml"
        path.write_text("organizationCode: toolong\n")

        result = runner.invoke(cli, ["validate", "--spec", str(path)])

        assert result.exit_code == 1
        assert "organizationCode" in result.output


class TestNames:
    """Tests for `onboard names`."""

    def test_names(self, runner: CliRunner, spec_file: Path) -> None:
        """Test that planned names are printed as JSON."""
        result = runner.invoke(cli, ["names", "-s", str(spec_file)])

        assert result.exit_code == 0
        names = json.loads(result.output)
        assert names["keyVault"] == "kv-neo-abc-dev-uks-01"
        assert names["storageAccount"] == "stneoabcdevuks01"

    def test_missing_spec(self, runner: CliRunner, tmp_path: Path) -> None:
        """Test that a missing spec is reported."""
        result = runner.invoke(cli, ["names", "-s", str(tmp_path / "absent.yaml")])

        assert result.exit_code == 1
        assert "not found" in result.output


class TestRun:
    """Tests for `onboard run`."""

    def test_run_to_file(self, runner: CliRunner, spec_file: Path, tmp_path: Path) -> None:
        """Test a full run through the CLI with the record written to a file."""
        output = tmp_path / "record.json"

        with MockAzureContext() as ctx:
            result = runner.invoke(
                cli, ["run", "--spec", str(spec_file), "--output", str(output)]
            )

        assert result.exit_code == 0
        assert json.loads(output.read_text())["organization"] == "abc"
        assert ctx.backend.count("set_secret") == 1

    def test_run_bad_config(self, runner: CliRunner, spec_file: Path) -> None:
        """Test that the process exit code follows main()."""
        with MockAzureContext(env={"AZURE_SUBSCRIPTION_ID": ""}):
            result = runner.invoke(cli, ["run", "--spec", str(spec_file)])

        assert result.exit_code == 1

    def test_version(self, runner: CliRunner) -> None:
        """Test the version option."""
        result = runner.invoke(cli, ["--version"])

        assert result.exit_code == 0
        assert "0.1.0" in result.output
