"""Azure mocks for onboarding tests.

Key Features:
- In-memory CloudBackend with ordered call log
- Per-method error injection (replication lag, 403, hard failures)
- Scripted resource provider registration states
- Context manager swapping the backend used by the entry point

Usage:
    from azure_mock import MockCloudBackend, transient_error

    backend = MockCloudBackend()
    backend.fail("create_role_assignment", transient_error())
"""

from .backend import (
    OPERATOR_ID,
    SUBSCRIPTION_ID,
    TENANT_ID,
    MockCall,
    MockCloudBackend,
    directory_roles,
    fatal_error,
    permission_error,
    transient_error,
)
from .context import FAST_ENV, MockAzureContext

__all__ = [
    "FAST_ENV",
    "OPERATOR_ID",
    "SUBSCRIPTION_ID",
    "TENANT_ID",
    "MockAzureContext",
    "MockCall",
    "MockCloudBackend",
    "directory_roles",
    "fatal_error",
    "permission_error",
    "transient_error",
]
