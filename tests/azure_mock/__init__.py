"""Azure API Mock for Integration Testing.

This module provides a mock implementation of the Azure management APIs
subnetguard calls, so that reconciliation can be tested end to end without
Azure connectivity.

Key Features:
- In-memory subscriptions, NSGs, virtual networks and role assignments
- Real azure.mgmt.network models for networks and subnets
- Recording of every persisted subnet association and role assignment
- Error injection per network and per operation
- Session credential simulation with decodable JWT tokens

Usage:
    from azure_mock import MockAzureContext

    with MockAzureContext() as ctx:
        nsg_id = ctx.state.add_security_group("nsg-eastus", "rg-net")
        ctx.state.add_network("vnet-a", "rg-net", subnets=[("web", "10.0.1.0/24", None)])

        exit_code = run_reconcile(config)

        assert ctx.state.association("vnet-a", "web") == nsg_id
"""

from .context import MockAzureContext, mock_azure_context
from .credential import MockSessionCredential, create_mock_credential, make_jwt
from .resources import (
    DEFAULT_SUBSCRIPTION_ID,
    MockAzureState,
    MockLROPoller,
    MockNetworkClient,
    MockSubnetUpdate,
    http_error,
)

__all__ = [
    "DEFAULT_SUBSCRIPTION_ID",
    "MockAzureContext",
    "MockAzureState",
    "MockLROPoller",
    "MockNetworkClient",
    "MockSessionCredential",
    "MockSubnetUpdate",
    "create_mock_credential",
    "http_error",
    "make_jwt",
    "mock_azure_context",
]
