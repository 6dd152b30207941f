"""Pydantic models for the policy file with validation.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. Lookup helpers used by target resolution and grant reconciliation
"""

from __future__ import annotations

import os
import re
from typing import Annotated, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from .config import MAX_REGION_POLICIES, MAX_ROLE_GRANTS, MAX_SUBNET_NAME_LENGTH

# Roles that grant full control or the ability to grant access to others
HIGH_PRIVILEGE_ROLES: set[str] = {
    "Owner",
    "User Access Administrator",
    "Role Based Access Control Administrator",
}

# Scopes that resolve to the tenant root management group
ROOT_MG_PATTERNS: tuple[str, ...] = (
    "/providers/Microsoft.Management/managementGroups/root",
    "/providers/Microsoft.Management/managementGroups/Tenant Root Group",
)

VALID_GUID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
NSG_ID_PATTERN = (
    r"^/subscriptions/[^/]+/resourcegroups/[^/]+"
    r"/providers/microsoft\.network/networksecuritygroups/[^/]+$"
)


SubnetName = Annotated[str, Field(min_length=1, max_length=MAX_SUBNET_NAME_LENGTH)]


def _env_flag(key: str) -> bool:
    return os.environ.get(key, "").lower() in ("true", "1", "yes")


def normalize_region(region: str) -> str:
    """Normalize a region name so display and programmatic names compare equal.

    "East US", "eastus" and "EastUS" all normalize to "eastus".
    """
    return "".join(region.split()).lower()


# =============================================================================
# Security group association
# =============================================================================


class SecurityGroupRef(BaseModel):
    """Reference to the network security group a region should use.

    Any combination of name, resource group and resource ID is accepted;
    resolution tries the most specific lookup first and falls back from there.
    """

    model_config = {"extra": "ignore", "populate_by_name": True, "frozen": True}

    name: Annotated[str, Field(min_length=1, max_length=80)] | None = None
    resource_group: Annotated[str, Field(min_length=1, max_length=90)] | None = Field(
        None, alias="resourceGroup"
    )
    resource_id: str | None = Field(None, alias="resourceId")

    @field_validator("resource_id")
    @classmethod
    def validate_resource_id(cls, v: str | None) -> str | None:
        if v is not None and not re.match(NSG_ID_PATTERN, v.lower()):
            raise ValueError(
                "resourceId must be a network security group ID "
                "(/subscriptions/{id}/resourceGroups/{rg}/providers/"
                "Microsoft.Network/networkSecurityGroups/{name})"
            )
        return v

    @model_validator(mode="after")
    def require_name_or_id(self) -> SecurityGroupRef:
        if not self.name and not self.resource_id:
            raise ValueError("networkSecurityGroup requires a name or a resourceId")
        return self

    @property
    def display_name(self) -> str:
        """Best human-readable name for logs and reports."""
        if self.name:
            return self.name
        # resource_id is guaranteed when name is missing
        return (self.resource_id or "").rsplit("/", 1)[-1]


class RegionPolicy(BaseModel):
    """Desired security group for every subnet in one region."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    region: Annotated[str, Field(min_length=1, max_length=64)]
    network_security_group: SecurityGroupRef = Field(alias="networkSecurityGroup")

    @property
    def normalized_region(self) -> str:
        return normalize_region(self.region)


# =============================================================================
# Role grants
# =============================================================================


class RoleGrant(BaseModel):
    """RBAC role assignment to create for a principal at a scope.

    SECURITY: Validates that role grants follow least-privilege principles:
    - Denies high-privilege roles (Owner, UAA) by default
    - Denies assignments at tenant root or root management group scopes
    - Requires explicit scope (subscription, RG, resource or child MG)
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    principal_id: Annotated[str, Field(min_length=1, alias="principalId")]
    principal_type: Literal["User", "Group", "ServicePrincipal", "ForeignGroup", "Device"] = (
        Field("Group", alias="principalType")
    )
    role_definition_name: Annotated[str, Field(min_length=1, alias="roleDefinitionName")]
    scope: Annotated[str, Field(min_length=1)]
    description: str | None = None

    @field_validator("principal_id")
    @classmethod
    def validate_principal_id(cls, v: str) -> str:
        if not re.match(VALID_GUID_PATTERN, v.lower()):
            raise ValueError(f"principalId must be an object ID (GUID): {v}")
        return v.lower()

    @field_validator("role_definition_name")
    @classmethod
    def validate_role_not_high_privilege(cls, v: str) -> str:
        """Deny high-privilege roles unless explicitly allowed.

        To override, set ALLOW_HIGH_PRIVILEGE_ROLES=true.
        """
        if not _env_flag("ALLOW_HIGH_PRIVILEGE_ROLES") and v in HIGH_PRIVILEGE_ROLES:
            raise ValueError(
                f"Role '{v}' is a high-privilege role and is denied by default. "
                f"Use a more specific role (e.g., 'Network Contributor', 'Reader') "
                f"or set ALLOW_HIGH_PRIVILEGE_ROLES=true to override."
            )
        return v

    @field_validator("scope")
    @classmethod
    def validate_scope_not_too_broad(cls, v: str) -> str:
        """Deny overly broad scopes.

        To override, set ALLOW_BROAD_RBAC_SCOPES=true.
        """
        if _env_flag("ALLOW_BROAD_RBAC_SCOPES"):
            return v

        scope_lower = v.lower().strip()

        if scope_lower in ("/", ""):
            raise ValueError(
                "Role assignment scope '/' (tenant root) is denied. "
                "Use a subscription or resource group scope instead."
            )

        for root_pattern in ROOT_MG_PATTERNS:
            if scope_lower == root_pattern.lower():
                raise ValueError(
                    f"Role assignment at root management group '{root_pattern}' is denied. "
                    f"Scope to a child management group or subscription instead."
                )

        if not scope_lower.startswith("/subscriptions/"):
            if scope_lower.startswith("/providers/microsoft.management/managementgroups/"):
                parts = v.split("/")
                if len(parts) < 5 or not parts[4]:
                    raise ValueError(
                        "Management group scope must include the management group ID. "
                        "Example: /providers/Microsoft.Management/managementGroups/mg-platform"
                    )
            else:
                raise ValueError(
                    f"Invalid scope format: '{v}'. "
                    f"Scope must start with '/subscriptions/' or be a valid management group path."
                )

        return v.rstrip("/")


# =============================================================================
# Policy document
# =============================================================================


class PolicySpec(BaseModel):
    """Top-level policy document.

    Example:
        regions:
          - region: East US
            networkSecurityGroup:
              name: nsg-eastus-baseline
              resourceGroup: rg-network-eastus
        excludedSubnets: [GatewaySubnet, AzureBastionSubnet]
        roleAssignments:
          - principalId: 11111111-2222-3333-4444-555555555555
            roleDefinitionName: Network Contributor
            scope: /subscriptions/.../resourceGroups/rg-network-eastus
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    regions: list[RegionPolicy] = Field(default_factory=list, max_length=MAX_REGION_POLICIES)
    excluded_subnets: list[SubnetName] | None = Field(None, alias="excludedSubnets")
    role_assignments: list[RoleGrant] = Field(
        default_factory=list, alias="roleAssignments", max_length=MAX_ROLE_GRANTS
    )

    @model_validator(mode="after")
    def validate_unique_regions(self) -> PolicySpec:
        """Each region must map to exactly one security group."""
        seen: dict[str, str] = {}
        for policy in self.regions:
            key = policy.normalized_region
            if key in seen:
                raise ValueError(
                    f"Region '{policy.region}' is declared more than once "
                    f"(conflicts with '{seen[key]}')"
                )
            seen[key] = policy.region
        return self

    def policy_for(self, region: str) -> RegionPolicy | None:
        """Get the region policy matching a region name in any spelling."""
        key = normalize_region(region)
        for policy in self.regions:
            if policy.normalized_region == key:
                return policy
        return None

    def target_for(self, region: str) -> SecurityGroupRef | None:
        """Get the declared security group for a region, if mapped."""
        policy = self.policy_for(region)
        return policy.network_security_group if policy is not None else None

    @property
    def region_names(self) -> list[str]:
        return [policy.region for policy in self.regions]
