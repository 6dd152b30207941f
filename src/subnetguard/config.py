"""Configuration management with validation.

All run parameters are validated at construction time so that a bad
invocation fails before any Azure API call is made.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Azure reserved subnet names. Platform services own these subnets and reject
# or break on NSG associations, so they are excluded unless overridden.
DEFAULT_EXCLUDED_SUBNETS: tuple[str, ...] = (
    "GatewaySubnet",
    "AzureFirewallSubnet",
    "AzureFirewallManagementSubnet",
    "AzureBastionSubnet",
    "RouteServerSubnet",
)

# Security constraints - enforced limits to prevent abuse
MAX_POLICY_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max policy file
MAX_REGION_POLICIES = 100
MAX_ROLE_GRANTS = 500
MAX_SUBNET_NAME_LENGTH = 80

# API versions used for generic resource lookups
NSG_API_VERSION = "2023-09-01"

# Input validation patterns
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"


@dataclass(frozen=True)
class Config:
    """Run configuration for a reconciliation or grant run.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Required fields
    subscription_id: str
    policy_file: Path

    # Behavior
    preview: bool = False
    force: bool = False

    # None means "use the policy file's list, or the reserved defaults"
    excluded_subnets: tuple[str, ...] | None = None

    # Optional CSV export of per-region statistics
    export_path: Path | None = None

    # Authentication: Azure CLI session by default, managed identity on request
    use_managed_identity: bool = False
    managed_identity_client_id: str | None = None

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.subscription_id:
            errors.append("AZURE_SUBSCRIPTION_ID is required")
        elif not re.match(VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if not self.policy_file.exists():
            errors.append(f"Policy file does not exist: {self.policy_file}")
        elif not self.policy_file.is_file():
            errors.append(f"Policy file is not a regular file: {self.policy_file}")

        if self.excluded_subnets is not None:
            for name in self.excluded_subnets:
                if not name or not name.strip():
                    errors.append("Excluded subnet names must not be empty")
                    break
                if len(name) > MAX_SUBNET_NAME_LENGTH:
                    errors.append(
                        f"Excluded subnet name exceeds {MAX_SUBNET_NAME_LENGTH} characters: {name}"
                    )

        if self.export_path is not None and not self.export_path.parent.exists():
            errors.append(f"Export directory does not exist: {self.export_path.parent}")

        if self.managed_identity_client_id and not self.use_managed_identity:
            errors.append("MANAGED_IDENTITY_CLIENT_ID requires managed identity authentication")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def interactive(self) -> bool:
        """Whether per-subnet confirmation prompts are required."""
        return not (self.force or self.preview)

    def effective_exclusions(self, declared: list[str] | None = None) -> frozenset[str]:
        """Resolve the exclusion set for a run.

        Precedence: explicit configuration, then the policy file's declared
        list, then the reserved subnet defaults.
        """
        if self.excluded_subnets is not None:
            return frozenset(self.excluded_subnets)
        if declared:
            return frozenset(declared)
        return frozenset(DEFAULT_EXCLUDED_SUBNETS)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            AZURE_SUBSCRIPTION_ID: Target Azure subscription
            SUBNETGUARD_POLICY_FILE: Path to the YAML policy file
            SUBNETGUARD_PREVIEW: If "true", report changes without applying
            SUBNETGUARD_FORCE: If "true", skip per-subnet confirmation
            SUBNETGUARD_EXCLUDED_SUBNETS: Comma-separated subnet names to skip
            SUBNETGUARD_EXPORT_PATH: Optional CSV export path
            SUBNETGUARD_USE_MANAGED_IDENTITY: If "true", authenticate with MI
            MANAGED_IDENTITY_CLIENT_ID: Client ID of a user-assigned identity
        """

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_list(key: str) -> tuple[str, ...] | None:
            value = os.environ.get(key)
            if value is None:
                return None
            return tuple(item.strip() for item in value.split(",") if item.strip())

        def get_path(key: str) -> Path | None:
            value = os.environ.get(key)
            return Path(value) if value else None

        return cls(
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID", ""),
            policy_file=Path(os.environ.get("SUBNETGUARD_POLICY_FILE", "policy.yaml")),
            preview=get_bool("SUBNETGUARD_PREVIEW", False),
            force=get_bool("SUBNETGUARD_FORCE", False),
            excluded_subnets=get_list("SUBNETGUARD_EXCLUDED_SUBNETS"),
            export_path=get_path("SUBNETGUARD_EXPORT_PATH"),
            use_managed_identity=get_bool("SUBNETGUARD_USE_MANAGED_IDENTITY", False),
            managed_identity_client_id=os.environ.get("MANAGED_IDENTITY_CLIENT_ID") or None,
        )
