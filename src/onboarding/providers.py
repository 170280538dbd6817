"""Resource provider registration waiter.

Azure subscriptions must have a resource provider (e.g. Microsoft.KeyVault)
registered before resources of that namespace can be created. Registration
is asynchronous: the register call returns immediately and the provider
moves Registering -> Registered over the next few minutes.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum

from azure.core.exceptions import AzureError

from .backend import CloudBackend
from .errors import ErrorKind, ProvisioningError, RegistrationTimeout, to_provisioning_error

logger = logging.getLogger(__name__)

# Constants
PROVIDER_POLL_INTERVAL_SECONDS = 10
PROVIDER_MAX_RETRIES = 20  # ~200s budget


class RegistrationState(str, Enum):
    """Registration states reported by ARM."""

    REGISTERED = "Registered"
    REGISTERING = "Registering"
    NOT_REGISTERED = "NotRegistered"
    UNREGISTERED = "Unregistered"
    UNREGISTERING = "Unregistering"


_NEEDS_REGISTRATION = frozenset({
    RegistrationState.NOT_REGISTERED.value,
    RegistrationState.UNREGISTERED.value,
})


class ProviderRegistrationWaiter:
    """Ensure a resource provider is registered, polling until it is."""

    def __init__(
        self,
        backend: CloudBackend,
        *,
        poll_interval_seconds: float = PROVIDER_POLL_INTERVAL_SECONDS,
        max_retries: int = PROVIDER_MAX_RETRIES,
    ) -> None:
        self._backend = backend
        self._poll_interval_seconds = poll_interval_seconds
        self._max_retries = max_retries

    async def ensure_registered(self, namespace: str) -> bool:
        """Register namespace if needed and wait for it.

        Args:
            namespace: Provider namespace, e.g. "Microsoft.Storage".

        Returns:
            True if a register call was issued, False if already registered
            or a registration was already in flight.

        Raises:
            RegistrationTimeout: Still Registering after max_retries polls.
            ProvisioningError: Registration entered an unexpected state, or
                the backend call failed.
        """
        state = await self._get_state(namespace)
        if state == RegistrationState.REGISTERED.value:
            logger.debug(f"Provider '{namespace}' already registered")
            return False

        registered = False
        if state in _NEEDS_REGISTRATION:
            logger.info(f"Registering resource provider '{namespace}'")
            try:
                await self._backend.register_provider(namespace)
            except AzureError as e:
                raise to_provisioning_error(
                    e,
                    resource=namespace,
                    privilege="Microsoft.Resources/subscriptions/providers/register/action",
                ) from e
            registered = True
        elif state != RegistrationState.REGISTERING.value:
            raise self._unexpected_state(namespace, state)

        for attempt in range(1, self._max_retries + 1):
            await asyncio.sleep(self._poll_interval_seconds)
            state = await self._get_state(namespace)

            if state == RegistrationState.REGISTERED.value:
                logger.info(
                    f"Provider '{namespace}' registered",
                    extra={"provider": namespace, "polls": attempt},
                )
                return registered
            if state != RegistrationState.REGISTERING.value:
                raise self._unexpected_state(namespace, state)

            logger.debug(
                f"Provider '{namespace}' still registering",
                extra={"attempt": attempt, "max_retries": self._max_retries},
            )

        logger.error(
            f"Timeout waiting for provider '{namespace}'",
            extra={"provider": namespace, "last_state": state},
        )
        raise RegistrationTimeout(namespace, state, self._max_retries)

    async def _get_state(self, namespace: str) -> str:
        try:
            return await self._backend.get_provider_state(namespace)
        except AzureError as e:
            raise to_provisioning_error(
                e,
                resource=namespace,
                privilege="Microsoft.Resources/subscriptions/providers/read",
            ) from e

    @staticmethod
    def _unexpected_state(namespace: str, state: str) -> ProvisioningError:
        return ProvisioningError(
            f"Provider '{namespace}' is in unexpected registration state '{state}'",
            kind=ErrorKind.FATAL,
            resource=namespace,
        )
