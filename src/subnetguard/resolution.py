"""Resolution of declared security group references to live resources.

A reference is resolved by trying an ordered chain of lookup strategies
and taking the first hit:

1. Scoped lookup: resource group + name
2. Global lookup: full resource ID through the generic resource API
3. Full scan: every NSG in the subscription, matched by name

Propagation delay and RBAC scoping can make the obvious lookup fail
transiently, so an Azure error inside one strategy is logged and treated
as "not found by this strategy".
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence

from azure.core.exceptions import AzureError

from .models import PolicySpec, SecurityGroupRef, normalize_region
from .provider import AzureProvider, SecurityGroup

logger = logging.getLogger(__name__)

# A strategy maps a reference to a security group, or None if it cannot
ResolutionStrategy = Callable[[SecurityGroupRef], SecurityGroup | None]


class TargetValidationError(Exception):
    """Raised at startup when declared targets do not exist.

    Attributes:
        failures: Mapping of region to failure reason for every bad region.
    """

    def __init__(self, failures: dict[str, str]) -> None:
        self.failures = dict(failures)
        lines = [f"  - {region}: {reason}" for region, reason in sorted(self.failures.items())]
        super().__init__("Target validation failed:\n" + "\n".join(lines))


class ResolutionFailure(Exception):
    """Raised when a region has no usable target during reconciliation."""

    def __init__(self, region: str, reason: str) -> None:
        super().__init__(f"Cannot resolve target for region '{region}': {reason}")
        self.region = region
        self.reason = reason


def scoped_lookup(provider: AzureProvider) -> ResolutionStrategy:
    """Look up by resource group and name."""

    def strategy(ref: SecurityGroupRef) -> SecurityGroup | None:
        if not ref.resource_group or not ref.name:
            return None
        return provider.get_network_security_group(ref.resource_group, ref.name)

    strategy.__name__ = "scoped_lookup"
    return strategy


def id_lookup(provider: AzureProvider) -> ResolutionStrategy:
    """Look up by full resource ID."""

    def strategy(ref: SecurityGroupRef) -> SecurityGroup | None:
        if not ref.resource_id:
            return None
        return provider.get_resource_by_id(ref.resource_id)

    strategy.__name__ = "id_lookup"
    return strategy


def scan_by_name(provider: AzureProvider) -> ResolutionStrategy:
    """Scan every NSG in the subscription and match by name.

    When the reference also names a resource group, only groups in it
    match. Ambiguous names (several NSGs with the same name) resolve to
    nothing rather than an arbitrary pick.
    """

    def strategy(ref: SecurityGroupRef) -> SecurityGroup | None:
        name = ref.display_name.lower()
        scope = (ref.resource_group or "").lower()
        candidates = [
            group
            for group in provider.list_network_security_groups()
            if group.name.lower() == name
            and (not scope or group.resource_group.lower() == scope)
        ]
        if len(candidates) > 1:
            logger.warning(
                "Ambiguous security group name in subscription scan",
                extra={"target": ref.display_name, "matches": [g.id for g in candidates]},
            )
            return None
        return candidates[0] if candidates else None

    strategy.__name__ = "scan_by_name"
    return strategy


def default_strategies(provider: AzureProvider) -> list[ResolutionStrategy]:
    return [scoped_lookup(provider), id_lookup(provider), scan_by_name(provider)]


class TargetResolver:
    """Resolves region targets from the policy using a strategy chain."""

    def __init__(
        self,
        policy: PolicySpec,
        strategies: Sequence[ResolutionStrategy],
    ) -> None:
        self._policy = policy
        self._strategies = list(strategies)

    @classmethod
    def for_provider(cls, policy: PolicySpec, provider: AzureProvider) -> TargetResolver:
        return cls(policy, default_strategies(provider))

    def resolve(self, ref: SecurityGroupRef) -> SecurityGroup | None:
        """Try each strategy in order and return the first hit."""
        for strategy in self._strategies:
            name = getattr(strategy, "__name__", repr(strategy))
            try:
                group = strategy(ref)
            except AzureError as e:
                logger.warning(
                    "Security group lookup failed, trying next strategy",
                    extra={"strategy": name, "target": ref.display_name, "error": str(e)},
                )
                continue

            if group is not None:
                logger.debug(
                    "Resolved security group",
                    extra={"strategy": name, "target": ref.display_name, "resource_id": group.id},
                )
                return group
        return None

    def resolve_region(self, region: str) -> SecurityGroup:
        """Resolve the target for a region.

        Raises:
            ResolutionFailure: If the region is unmapped or no strategy finds
                the declared security group.
        """
        ref = self._policy.target_for(region)
        if ref is None:
            raise ResolutionFailure(region, "region is not mapped in the policy")

        group = self.resolve(ref)
        if group is None:
            raise ResolutionFailure(region, f"security group '{ref.display_name}' not found")

        if group.location and normalize_region(group.location) != normalize_region(region):
            logger.warning(
                "Security group is in a different region than its subnets",
                extra={"region": region, "target": group.id, "target_region": group.location},
            )
        return group

    def validate_targets(self) -> dict[str, SecurityGroup]:
        """Resolve every declared target before any change is made.

        Returns:
            Mapping of normalized region name to its resolved security group.

        Raises:
            TargetValidationError: If any declared target cannot be resolved.
        """
        resolved: dict[str, SecurityGroup] = {}
        failures: dict[str, str] = {}

        for policy in self._policy.regions:
            ref = policy.network_security_group
            group = self.resolve(ref)
            if group is None:
                failures[policy.region] = f"security group '{ref.display_name}' not found"
                logger.error(
                    "Declared security group does not exist",
                    extra={"region": policy.region, "target": ref.display_name},
                )
                continue
            resolved[policy.normalized_region] = group
            logger.info(
                "Validated target for region",
                extra={"region": policy.region, "target": group.id},
            )

        if failures:
            raise TargetValidationError(failures)
        return resolved
