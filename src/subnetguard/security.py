"""Credential acquisition for an already-authenticated session.

This tool never handles secrets itself. It delegates authentication to:
- the Azure CLI session of the operator running it (``az login``), or
- a managed identity when it runs inside Azure (automation, pipelines)

SECURITY INVARIANTS:
1. AZURE_CLIENT_SECRET and similar variables must never be present
2. Only AzureCliCredential and ManagedIdentityCredential are used
3. Every mutating call is recorded with a security audit log line
"""

from __future__ import annotations

import logging
import os

from azure.core.credentials import TokenCredential
from azure.identity import AzureCliCredential, ManagedIdentityCredential

logger = logging.getLogger(__name__)

# Environment variables that indicate credential leakage
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)

SECRETLESS_VIOLATION_MESSAGE = """
╔══════════════════════════════════════════════════════════════════════════════╗
║                         SECURITY VIOLATION DETECTED                          ║
╠══════════════════════════════════════════════════════════════════════════════╣
║  subnetguard only uses an existing Azure CLI session or a managed identity.  ║
║                                                                              ║
║  Detected: {env_var}                                                         ║
║                                                                              ║
║  RESOLUTION:                                                                 ║
║  1. Remove all credential environment variables                              ║
║  2. Sign in with 'az login', or run with --managed-identity inside Azure     ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""


class SecretlessViolationError(Exception):
    """Raised when credential secrets are found in the environment.

    This is a fatal error; the run must not proceed.
    """

    pass


def enforce_secretless_architecture() -> None:
    """Enforce that no credential secrets are present in the environment.

    Raises:
        SecretlessViolationError: If any credential environment variables detected.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            error_message = SECRETLESS_VIOLATION_MESSAGE.format(env_var=env_var)
            logger.critical(
                "Secretless architecture violation",
                extra={
                    "security_event": "credential_detected",
                    "env_var": env_var,
                    "action": "startup_blocked",
                },
            )
            raise SecretlessViolationError(error_message)

    logger.debug(
        "Secretless architecture verified",
        extra={"security_event": "secretless_verified"},
    )


def get_session_credential(
    use_managed_identity: bool = False,
    client_id: str | None = None,
) -> TokenCredential:
    """Get a credential for the already-authenticated session.

    Args:
        use_managed_identity: Use the managed identity of the host instead of
            the Azure CLI session.
        client_id: Optional client ID for a user-assigned managed identity.

    Returns:
        A token credential. No token is requested here; connectivity is
        verified separately so the failure can be reported precisely.

    Raises:
        SecretlessViolationError: If credential environment variables detected.
    """
    enforce_secretless_architecture()

    if use_managed_identity:
        if client_id:
            logger.info(
                "Using user-assigned managed identity",
                extra={"client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id},
            )
            return ManagedIdentityCredential(client_id=client_id)

        logger.info("Using system-assigned managed identity")
        return ManagedIdentityCredential()

    logger.info("Using Azure CLI session credential")
    return AzureCliCredential()


def log_security_audit_event(
    event_type: str,
    principal: str | None,
    target_resource: str | None = None,
    action: str | None = None,
    result: str | None = None,
) -> None:
    """Log a security-relevant audit event.

    Args:
        event_type: Type of event (nsg_association, role_assignment, ...).
        principal: Identity performing the change.
        target_resource: Azure resource being changed.
        action: Action being performed.
        result: Result of the action (success, failure, preview).
    """
    logger.info(
        f"Security audit: {event_type}",
        extra={
            "security_audit": True,
            "event_type": event_type,
            "principal": principal,
            "target_resource": target_resource,
            "action": action,
            "result": result,
        },
    )
