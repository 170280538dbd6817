"""Bounded, fixed-backoff retry for provisioning calls.

The orchestrator is the only component that retries. It wraps single-shot
reconciler and backend calls in call_with_retry() with a RetryPolicy whose
predicate decides which classified errors are worth another attempt.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from .errors import ErrorKind, ProvisioningError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient(error: ProvisioningError) -> bool:
    """Default predicate: retry replication lag, but never a partial create."""
    return error.kind == ErrorKind.TRANSIENT and not error.partial


def is_transient_or_permission(error: ProvisioningError) -> bool:
    """Predicate for data-plane writes right after a role grant.

    A freshly assigned data-plane role answers 403 until it propagates, so
    permission errors are retried here too.
    """
    return error.kind in (ErrorKind.TRANSIENT, ErrorKind.PERMISSION) and not error.partial


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget, fixed delay between attempts, and retry predicate."""

    max_attempts: int
    backoff_seconds: float
    retryable: Callable[[ProvisioningError], bool] = is_transient

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1: {self.max_attempts}")
        if self.backoff_seconds < 0:
            raise ValueError(f"backoff_seconds cannot be negative: {self.backoff_seconds}")


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    description: str,
) -> T:
    """Run operation until it succeeds, fails non-retryably, or the budget runs out.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt.
        policy: Retry budget and predicate.
        description: Human-readable operation name for logging.

    Returns:
        The operation's result.

    Raises:
        ProvisioningError: The first non-retryable error, or an exhausted
            error of the last observed kind once max_attempts is reached.
    """
    last_error: ProvisioningError | None = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await operation()
        except ProvisioningError as e:
            if not policy.retryable(e):
                raise
            last_error = e

            if attempt < policy.max_attempts:
                logger.warning(
                    f"{description} failed, retrying",
                    extra={
                        "attempt": attempt,
                        "max_attempts": policy.max_attempts,
                        "wait_seconds": policy.backoff_seconds,
                        "error_kind": e.kind.value,
                        "error": e.message,
                    },
                )
                await asyncio.sleep(policy.backoff_seconds)

    assert last_error is not None, "Retry loop completed without setting last_error"
    raise ProvisioningError(
        f"{description} did not succeed: {last_error.message}",
        kind=last_error.kind,
        resource=last_error.resource,
        exhausted=True,
        attempts=policy.max_attempts,
        missing_privilege=last_error.missing_privilege,
        scope=last_error.scope,
    ) from last_error
