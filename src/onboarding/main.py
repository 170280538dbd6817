"""Entry point for a tenant onboarding run.

OPERATOR IDENTITY:
Onboarding runs as the signed-in human operator. The operator's own object
id receives Key Vault Secrets Officer during the run, and the secret write
depends on that grant, so service principal credentials in the environment
are refused (exit code 2).

OUTPUT:
The onboarding record is the only thing written to stdout (or to the
--output file). Logs go to stderr so the record can be piped.

Exit codes:
    0  success, including runs with degraded steps
    1  configuration, input or provisioning failure
    2  permission denied, or a non-operator credential in the environment
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path

from .azure_backend import AzureCloudBackend
from .backend import CloudBackend
from .config import Config, ConfigurationError
from .errors import EXIT_FAILURE, EXIT_PERMISSION_DENIED, EXIT_SUCCESS, OnboardingError
from .orchestrator import Onboarder
from .record import write_record
from .security import OperatorCredentialError, SecretLeakError, get_operator_credential
from .spec_loader import SpecLoadError, load_spec

# LogRecord attributes that are not user-supplied extra fields
_STANDARD_RECORD_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)

PLAIN_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _STANDARD_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(json_format: bool = True) -> None:
    """Configure structured logging on stderr."""
    handler = logging.StreamHandler(sys.stderr)
    if json_format:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(PLAIN_LOG_FORMAT))

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.INFO)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def create_backend(config: Config) -> CloudBackend:
    """Build the Azure backend with the operator's credential.

    Raises:
        OperatorCredentialError: If service principal variables are set.
    """
    credential = get_operator_credential(config.tenant_id)
    return AzureCloudBackend(credential, config.subscription_id, config.tenant_id)


async def main(
    spec_path: Path | None = None,
    output_path: Path | None = None,
    plain_logs: bool = False,
) -> int:
    """Run one onboarding.

    Args:
        spec_path: Onboarding YAML; overrides ONBOARDING_SPEC.
        output_path: Record destination; overrides ONBOARDING_OUTPUT.
        plain_logs: Human-readable logs instead of JSON.

    Returns:
        Exit code.
    """
    json_logs = not plain_logs and os.environ.get("LOG_FORMAT", "json").lower() != "text"
    setup_logging(json_format=json_logs)
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_FAILURE

    if spec_path is not None:
        config = replace(config, spec_path=spec_path)
    if output_path is not None:
        config = replace(config, output_path=output_path)

    try:
        spec = load_spec(config.spec_path)
    except SpecLoadError as e:
        logger.error(
            "Onboarding spec loading failed",
            extra={"error": str(e), "spec_path": str(config.spec_path)},
        )
        return EXIT_FAILURE

    logger.info(
        "Starting tenant onboarding",
        extra={
            "subscription_id": config.subscription_id,
            "tenant_id": config.tenant_id,
            "organization": spec.organization_code,
            "environment": spec.environment.value,
        },
    )

    try:
        backend = create_backend(config)
    except OperatorCredentialError as e:
        # SECURITY: Non-operator credential detected - fatal security error
        logger.critical(
            "Security violation: non-operator credentials in environment",
            extra={"error": str(e)},
        )
        return EXIT_PERMISSION_DENIED

    try:
        record = await Onboarder(spec, config, backend).run()
    except OnboardingError as e:
        logger.error(
            "Onboarding failed",
            extra={
                "step": e.step,
                "failure_class": e.failure_class.value,
                "error_kind": e.cause.kind.value,
                "missing_privilege": e.cause.missing_privilege,
                "scope": e.cause.scope,
            },
        )
        return e.exit_code
    except SecretLeakError as e:
        logger.critical("Onboarding record failed secret check", extra={"error": str(e)})
        return EXIT_FAILURE
    except Exception as e:
        # Unexpected error - log with full traceback for debugging
        logger.exception("Onboarding failed unexpectedly", extra={"error": str(e)})
        return EXIT_FAILURE

    try:
        if config.output_path is not None:
            with config.output_path.open("w", encoding="utf-8") as sink:
                write_record(record, sink)
        else:
            write_record(record, sys.stdout)
    except OSError as e:
        logger.error(
            "Failed to write onboarding record",
            extra={"error": str(e), "output_path": str(config.output_path)},
        )
        return EXIT_FAILURE

    logger.info(f"Onboarding {record.summary()}")
    return EXIT_SUCCESS


def run() -> None:
    """Entry point for `python -m onboarding.main`."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
