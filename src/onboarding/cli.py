"""Onboarding CLI (onboard).

Usage:
    onboard run --spec onboarding.yaml             # Provision, record to stdout
    onboard run --spec onboarding.yaml -o rec.json # Provision, record to file
    onboard validate --spec onboarding.yaml        # Validate input only
    onboard names --spec onboarding.yaml           # Print derived resource names

Tenant and subscription come from AZURE_TENANT_ID and AZURE_SUBSCRIPTION_ID.
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

import click

from .config import DEFAULT_SPEC_PATH
from .main import main
from .orchestrator import planned_names
from .spec_loader import SpecLoadError, load_spec

SPEC_OPTION_HELP = "Onboarding YAML file"


@click.group()
@click.version_option(version="0.1.0", prog_name="onboard")
def cli() -> None:
    """Tenant onboarding provisioner."""
    pass


@cli.command("run")
@click.option(
    "--spec",
    "-s",
    "spec_path",
    type=click.Path(path_type=Path),
    default=None,
    help=f"{SPEC_OPTION_HELP} (default: $ONBOARDING_SPEC or {DEFAULT_SPEC_PATH})",
)
@click.option(
    "--output",
    "-o",
    "output_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write the onboarding record here instead of stdout",
)
@click.option("--plain-logs", is_flag=True, help="Human-readable logs instead of JSON")
def run_cmd(spec_path: Path | None, output_path: Path | None, plain_logs: bool) -> None:
    """Provision the environment described by the spec."""
    exit_code = asyncio.run(
        main(spec_path=spec_path, output_path=output_path, plain_logs=plain_logs)
    )
    sys.exit(exit_code)


@cli.command("validate")
@click.option(
    "--spec",
    "-s",
    "spec_path",
    type=click.Path(path_type=Path),
    default=DEFAULT_SPEC_PATH,
    help=SPEC_OPTION_HELP,
)
def validate_cmd(spec_path: Path) -> None:
    """Validate an onboarding spec without contacting Azure."""
    try:
        spec = load_spec(spec_path)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e
    click.secho(
        f"✓ {spec_path} is valid: {spec.organization_code}/{spec.environment.value} "
        f"in {spec.location} (index {spec.environment_index:02d})",
        fg="green",
    )


@cli.command("names")
@click.option(
    "--spec",
    "-s",
    "spec_path",
    type=click.Path(path_type=Path),
    default=DEFAULT_SPEC_PATH,
    help=SPEC_OPTION_HELP,
)
def names_cmd(spec_path: Path) -> None:
    """Print the resource names a run would use."""
    try:
        spec = load_spec(spec_path)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e
    click.echo(json.dumps(planned_names(spec), indent=2))


if __name__ == "__main__":
    cli()
