"""Credential acquisition for Azure Resource Manager calls.

Credentials come from azure-identity only:
- A user-assigned managed identity when AZURE_CLIENT_ID is configured
- DefaultAzureCredential otherwise (managed identity, workload identity,
  Azure CLI login on a workstation)

SECURITY INVARIANTS:
1. Service principal secrets, certificates and passwords must never be
   present in the environment; startup is refused when they are
2. No credential material is ever written to state or logs
"""

from __future__ import annotations

import logging
import os

from azure.core.credentials import TokenCredential
from azure.identity import DefaultAzureCredential, ManagedIdentityCredential

logger = logging.getLogger(__name__)

# Environment variables that indicate credential leakage
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)

SECRETLESS_VIOLATION_MESSAGE = (
    "Credential environment variable {env_var} is set. Secret-based "
    "authentication is not allowed: remove it and use a managed identity "
    "or an Azure CLI login instead."
)


class SecretlessViolationError(Exception):
    """Raised when credential secrets are found in the environment."""

    pass


def enforce_secretless_environment() -> None:
    """Refuse to run when credential secrets are present in the environment.

    Raises:
        SecretlessViolationError: If any credential environment variable is set.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Secretless environment violation",
                extra={
                    "security_event": "credential_detected",
                    "env_var": env_var,
                    "action": "startup_blocked",
                },
            )
            raise SecretlessViolationError(SECRETLESS_VIOLATION_MESSAGE.format(env_var=env_var))


def get_credential(client_id: str | None = None) -> TokenCredential:
    """Return the credential used for every ARM call.

    Args:
        client_id: Client ID of a user-assigned managed identity. Falls back
            to AZURE_CLIENT_ID; if neither is set DefaultAzureCredential is used.

    Raises:
        SecretlessViolationError: If credential environment variables are set.
    """
    enforce_secretless_environment()

    client_id = client_id or os.environ.get("AZURE_CLIENT_ID") or None
    if client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id},
        )
        return ManagedIdentityCredential(client_id=client_id)

    logger.info("Using default Azure credential chain")
    return DefaultAzureCredential()
