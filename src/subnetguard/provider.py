"""Azure Resource Manager access for networks, security groups and RBAC.

This module is the only place that talks to Azure. It converts SDK models
into small immutable records and translates SDK exceptions into the
errors the reconciler understands:

- ConnectivityError: no usable session (fatal)
- SubscriptionError: subscription missing, disabled or not accessible (fatal)
- ApplyFailure: a mutating call was rejected (recoverable, per item)

Lookups return None when the resource does not exist and let any other
Azure error propagate so callers decide whether it is fatal.
"""

from __future__ import annotations

import base64
import json
import logging
from dataclasses import dataclass
from typing import Any

from azure.core.credentials import TokenCredential
from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    HttpResponseError,
    ResourceNotFoundError,
)
from azure.mgmt.authorization import AuthorizationManagementClient
from azure.mgmt.authorization.models import RoleAssignmentCreateParameters
from azure.mgmt.network import NetworkManagementClient
from azure.mgmt.network.models import NetworkSecurityGroup as NetworkSecurityGroupModel
from azure.mgmt.resource import ResourceManagementClient, SubscriptionClient

from .config import NSG_API_VERSION
from .models import normalize_region

logger = logging.getLogger(__name__)

MANAGEMENT_SCOPE = "https://management.azure.com/.default"
NSG_RESOURCE_TYPE = "microsoft.network/networksecuritygroups"

# Subscription states in which no changes can be made
INACTIVE_SUBSCRIPTION_STATES: frozenset[str] = frozenset({"disabled", "deleted", "expired"})


class ProviderError(Exception):
    """Base class for errors raised at the Azure boundary."""

    pass


class ConnectivityError(ProviderError):
    """Raised when there is no usable authenticated session."""

    pass


class SubscriptionError(ProviderError):
    """Raised when the subscription is invalid or inaccessible."""

    pass


class ApplyFailure(ProviderError):
    """Raised when Azure rejects or fails a mutating call."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


# =============================================================================
# Records
# =============================================================================


@dataclass(frozen=True)
class SessionIdentity:
    """Identity behind the current session, decoded from the access token."""

    principal_id: str | None
    display_name: str
    tenant_id: str | None = None


@dataclass(frozen=True)
class SubscriptionInfo:
    subscription_id: str
    display_name: str
    state: str
    tenant_id: str | None = None


@dataclass(frozen=True)
class SecurityGroup:
    """A network security group that exists in Azure.

    Attributes:
        id: Full ARM resource ID
        name: Resource name
        resource_group: Resource group name
        location: Azure region (programmatic form, e.g. eastus)
    """

    id: str
    name: str
    resource_group: str
    location: str

    def matches(self, association_id: str | None) -> bool:
        """Check whether a subnet's bound NSG ID is this security group."""
        return same_resource(self.id, association_id)


@dataclass(frozen=True)
class Subnet:
    """A subnet as discovered. Only its association is ever changed."""

    name: str
    address_range: str
    current_association: str | None = None


@dataclass(frozen=True)
class Network:
    """A virtual network with its subnets in declaration order."""

    id: str
    name: str
    resource_group: str
    region: str
    subnets: tuple[Subnet, ...] = ()

    @property
    def normalized_region(self) -> str:
        return normalize_region(self.region)


@dataclass(frozen=True)
class RoleAssignmentInfo:
    id: str
    principal_id: str
    role_definition_id: str
    scope: str


# =============================================================================
# Helpers
# =============================================================================


def same_resource(left: str | None, right: str | None) -> bool:
    """Compare ARM resource IDs, which are case-insensitive."""
    if not left or not right:
        return False
    return left.rstrip("/").lower() == right.rstrip("/").lower()


def parse_resource_group(resource_id: str | None) -> str:
    """Extract the resource group name from an ARM resource ID.

    Returns an empty string when the ID has no resource group segment.
    """
    if not resource_id:
        return ""
    segments = resource_id.strip("/").split("/")
    for index, segment in enumerate(segments[:-1]):
        if segment.lower() == "resourcegroups":
            return segments[index + 1]
    return ""


def _enum_value(value: Any) -> str:
    return str(getattr(value, "value", value) or "")


def _decode_token_claims(token: str) -> dict[str, Any]:
    """Decode the payload of a JWT access token without verifying it.

    The token comes straight from the credential; the claims are only used
    to label audit log lines with the acting principal.
    """
    try:
        payload = token.split(".")[1]
        padded = payload + "=" * (-len(payload) % 4)
        claims = json.loads(base64.urlsafe_b64decode(padded))
    except (IndexError, ValueError) as e:
        logger.debug("Access token is not a decodable JWT", extra={"error": str(e)})
        return {}
    return claims if isinstance(claims, dict) else {}


def _to_security_group(model: Any) -> SecurityGroup:
    return SecurityGroup(
        id=model.id,
        name=model.name,
        resource_group=parse_resource_group(model.id),
        location=model.location or "",
    )


def _to_network(model: Any) -> Network:
    subnets = []
    for subnet in model.subnets or []:
        address_range = subnet.address_prefix or ", ".join(subnet.address_prefixes or [])
        nsg = subnet.network_security_group
        subnets.append(
            Subnet(
                name=subnet.name,
                address_range=address_range,
                current_association=nsg.id if nsg is not None else None,
            )
        )
    return Network(
        id=model.id,
        name=model.name,
        resource_group=parse_resource_group(model.id),
        region=model.location or "",
        subnets=tuple(subnets),
    )


# =============================================================================
# Provider
# =============================================================================


class AzureProvider:
    """Azure API access bound to one authenticated session.

    Usage:
        provider = AzureProvider(credential)
        provider.get_session_identity()
        provider.get_subscription(subscription_id)
        provider.set_subscription(subscription_id)
        networks = provider.list_virtual_networks()
    """

    def __init__(self, credential: TokenCredential) -> None:
        self._credential = credential
        self._subscription_client = SubscriptionClient(credential)

        # Set by set_subscription()
        self._subscription_id: str | None = None
        self._network_client: NetworkManagementClient | None = None
        self._resource_client: ResourceManagementClient | None = None
        self._authorization_client: AuthorizationManagementClient | None = None

    @property
    def subscription_id(self) -> str | None:
        return self._subscription_id

    # -------------------------------------------------------------------------
    # Session and subscription context
    # -------------------------------------------------------------------------

    def get_session_identity(self) -> SessionIdentity:
        """Verify the session can obtain an ARM token and report who it is.

        Raises:
            ConnectivityError: If no token can be obtained.
        """
        try:
            access_token = self._credential.get_token(MANAGEMENT_SCOPE)
        except ClientAuthenticationError as e:
            raise ConnectivityError(
                f"No authenticated Azure session: {e.message}. Run 'az login' first."
            ) from e
        except AzureError as e:
            raise ConnectivityError(f"Failed to acquire Azure access token: {e}") from e

        claims = _decode_token_claims(access_token.token)
        display_name = (
            claims.get("upn")
            or claims.get("unique_name")
            or claims.get("appid")
            or claims.get("oid")
            or "unknown"
        )
        return SessionIdentity(
            principal_id=claims.get("oid"),
            display_name=display_name,
            tenant_id=claims.get("tid"),
        )

    def get_subscription(self, subscription_id: str) -> SubscriptionInfo:
        """Resolve a subscription by ID.

        Raises:
            SubscriptionError: If the subscription is missing, not visible to
                the session, or not in an active state.
        """
        try:
            subscription = self._subscription_client.subscriptions.get(subscription_id)
        except ResourceNotFoundError as e:
            raise SubscriptionError(f"Subscription not found: {subscription_id}") from e
        except HttpResponseError as e:
            raise SubscriptionError(
                f"Subscription {subscription_id} is not accessible ({e.status_code}): {e.message}"
            ) from e
        except AzureError as e:
            raise SubscriptionError(f"Failed to read subscription {subscription_id}: {e}") from e

        state = _enum_value(subscription.state)
        if state.lower() in INACTIVE_SUBSCRIPTION_STATES:
            raise SubscriptionError(f"Subscription {subscription_id} is {state}")

        return SubscriptionInfo(
            subscription_id=subscription.subscription_id or subscription_id,
            display_name=subscription.display_name or subscription_id,
            state=state,
            tenant_id=getattr(subscription, "tenant_id", None),
        )

    def set_subscription(self, subscription_id: str) -> None:
        """Make a subscription the active context for all later calls."""
        self._subscription_id = subscription_id
        self._network_client = NetworkManagementClient(
            credential=self._credential,
            subscription_id=subscription_id,
        )
        self._resource_client = ResourceManagementClient(
            credential=self._credential,
            subscription_id=subscription_id,
        )
        self._authorization_client = AuthorizationManagementClient(
            credential=self._credential,
            subscription_id=subscription_id,
        )
        logger.info("Active subscription set", extra={"subscription_id": subscription_id})

    def _network(self) -> NetworkManagementClient:
        if self._network_client is None:
            raise RuntimeError("No active subscription; call set_subscription() first")
        return self._network_client

    def _resources(self) -> ResourceManagementClient:
        if self._resource_client is None:
            raise RuntimeError("No active subscription; call set_subscription() first")
        return self._resource_client

    def _authorization(self) -> AuthorizationManagementClient:
        if self._authorization_client is None:
            raise RuntimeError("No active subscription; call set_subscription() first")
        return self._authorization_client

    # -------------------------------------------------------------------------
    # Discovery and lookup
    # -------------------------------------------------------------------------

    def list_virtual_networks(self) -> list[Network]:
        """List every virtual network in the active subscription."""
        return [_to_network(vnet) for vnet in self._network().virtual_networks.list_all()]

    def get_network_security_group(self, resource_group: str, name: str) -> SecurityGroup | None:
        """Get an NSG by resource group and name, or None if it does not exist."""
        try:
            model = self._network().network_security_groups.get(
                resource_group_name=resource_group,
                network_security_group_name=name,
            )
        except ResourceNotFoundError:
            return None
        return _to_security_group(model)

    def get_resource_by_id(self, resource_id: str) -> SecurityGroup | None:
        """Get an NSG through the generic resource API by its full ID."""
        try:
            resource = self._resources().resources.get_by_id(
                resource_id=resource_id,
                api_version=NSG_API_VERSION,
            )
        except ResourceNotFoundError:
            return None

        if (resource.type or "").lower() != NSG_RESOURCE_TYPE:
            logger.warning(
                "Resource is not a network security group",
                extra={"resource_id": resource_id, "resource_type": resource.type},
            )
            return None
        return _to_security_group(resource)

    def list_network_security_groups(self) -> list[SecurityGroup]:
        """List every NSG in the active subscription."""
        groups = self._network().network_security_groups.list_all()
        return [_to_security_group(nsg) for nsg in groups]

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def set_subnet_association(
        self,
        network: Network,
        subnet_name: str,
        group: SecurityGroup,
    ) -> None:
        """Bind a subnet to a security group.

        The network is re-read, the subnet's configuration is replaced inside
        the network object, and the whole network is persisted.

        Raises:
            ApplyFailure: If the subnet is gone or Azure rejects the update.
        """
        client = self._network()
        try:
            vnet = client.virtual_networks.get(
                resource_group_name=network.resource_group,
                virtual_network_name=network.name,
            )
            for subnet in vnet.subnets or []:
                if subnet.name == subnet_name:
                    subnet.network_security_group = NetworkSecurityGroupModel(id=group.id)
                    break
            else:
                raise ApplyFailure(
                    f"Subnet '{subnet_name}' no longer exists in network '{network.name}'"
                )

            poller = client.virtual_networks.begin_create_or_update(
                resource_group_name=network.resource_group,
                virtual_network_name=network.name,
                parameters=vnet,
            )
            poller.result()
        except HttpResponseError as e:
            error_code = e.error.code if e.error else None
            logger.debug(
                "Network update rejected",
                extra={"status_code": e.status_code, "error_code": error_code},
            )
            raise ApplyFailure(
                f"Azure API error ({e.status_code}): {e.message}", status_code=e.status_code
            ) from e
        except AzureError as e:
            raise ApplyFailure(f"Azure error: {e}") from e

    def role_definition_resource_id(self, role_definition_guid: str) -> str:
        """Build the subscription-scoped resource ID of a role definition."""
        if self._subscription_id is None:
            raise RuntimeError("No active subscription; call set_subscription() first")
        return (
            f"/subscriptions/{self._subscription_id}"
            f"/providers/Microsoft.Authorization/roleDefinitions/{role_definition_guid}"
        )

    def list_role_assignments(self, scope: str) -> list[RoleAssignmentInfo]:
        """List role assignments defined exactly at a scope.

        The atScope() filter also returns assignments inherited from parent
        scopes; those are dropped here.
        """
        assignments = self._authorization().role_assignments.list_for_scope(
            scope=scope,
            filter="atScope()",
        )
        return [
            RoleAssignmentInfo(
                id=assignment.id,
                principal_id=(assignment.principal_id or "").lower(),
                role_definition_id=assignment.role_definition_id or "",
                scope=assignment.scope or scope,
            )
            for assignment in assignments
            if same_resource(assignment.scope or scope, scope)
        ]

    def create_role_assignment(
        self,
        scope: str,
        assignment_name: str,
        role_definition_id: str,
        principal_id: str,
        principal_type: str,
        description: str | None = None,
    ) -> str:
        """Create a role assignment for a principal at a scope.

        Returns:
            The ID of the created assignment.

        Raises:
            ApplyFailure: If Azure rejects the assignment (409 when it exists).
        """
        parameters = RoleAssignmentCreateParameters(
            role_definition_id=role_definition_id,
            principal_id=principal_id,
            principal_type=principal_type,
            description=description,
        )
        try:
            assignment = self._authorization().role_assignments.create(
                scope=scope,
                role_assignment_name=assignment_name,
                parameters=parameters,
            )
        except HttpResponseError as e:
            raise ApplyFailure(
                f"Azure API error ({e.status_code}): {e.message}", status_code=e.status_code
            ) from e
        except AzureError as e:
            raise ApplyFailure(f"Azure error: {e}") from e
        return assignment.id
