"""Core reconciliation loop for subnet security group associations.

For every region declared in the policy, every subnet of every virtual
network in that region is brought into conformance with the region's
security group:

1. Validate that every declared security group exists (fatal if not)
2. Discover all virtual networks and group them by region
3. Resolve the region's target (skip the region if that fails)
4. Decide per subnet: excluded, already conformant, or needs change
5. Confirm (unless forced or preview), then apply or preview
6. Count every outcome once in the run and region statistics

The loop is single-threaded and synchronous. A failed update is logged,
counted and the loop moves on; nothing is retried.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from enum import Enum

from .confirmation import Confirmation, Confirmer
from .models import PolicySpec
from .provider import (
    ApplyFailure,
    AzureProvider,
    Network,
    SecurityGroup,
    SessionIdentity,
    Subnet,
    SubscriptionInfo,
)
from .resolution import ResolutionFailure, TargetResolver
from .security import log_security_audit_event
from .stats import Outcome, RunStatistics

logger = logging.getLogger(__name__)


class Decision(str, Enum):
    """Reconciliation decision for one subnet."""

    EXCLUDED = "excluded"
    ALREADY_CONFORMANT = "already_conformant"
    NEEDS_CHANGE = "needs_change"  # No security group bound
    REPLACE = "replace"  # A different security group is bound

    @property
    def needs_change(self) -> bool:
        return self in (Decision.NEEDS_CHANGE, Decision.REPLACE)


@dataclass(frozen=True)
class RunMode:
    """How changes are applied. Threaded through the loop, never shared.

    Attributes:
        preview: Report intended changes without calling Azure.
        force: Apply without asking for per-subnet confirmation.
    """

    preview: bool = False
    force: bool = False

    @property
    def requires_confirmation(self) -> bool:
        return not (self.preview or self.force)

    def forced(self) -> RunMode:
        return replace(self, force=True)


@dataclass(frozen=True)
class SubnetResult:
    """What happened to one subnet."""

    region: str
    network: str
    subnet: str
    decision: Decision
    outcome: Outcome
    target: str | None = None
    previous_association: str | None = None
    error: str | None = None


@dataclass
class ReconcileResult:
    """Result of one reconciliation run."""

    mode: RunMode
    statistics: RunStatistics = field(default_factory=RunStatistics)
    results: list[SubnetResult] = field(default_factory=list)
    unmapped_regions: list[str] = field(default_factory=list)

    @property
    def applied(self) -> list[SubnetResult]:
        return [r for r in self.results if r.outcome in (Outcome.APPLIED, Outcome.PREVIEWED)]

    @property
    def failed(self) -> list[SubnetResult]:
        return [r for r in self.results if r.outcome == Outcome.FAILED]


def decide(subnet: Subnet, exclusions: Iterable[str], target: SecurityGroup) -> Decision:
    """Classify a subnet against the exclusion set and the target.

    Exclusion names match case-insensitively, like Azure subnet names.
    """
    excluded = {name.lower() for name in exclusions}
    if subnet.name.lower() in excluded:
        return Decision.EXCLUDED
    if target.matches(subnet.current_association):
        return Decision.ALREADY_CONFORMANT
    if subnet.current_association:
        return Decision.REPLACE
    return Decision.NEEDS_CHANGE


def group_by_region(networks: Iterable[Network]) -> dict[str, list[Network]]:
    """Group networks by normalized region, keeping discovery order."""
    grouped: dict[str, list[Network]] = {}
    for network in networks:
        grouped.setdefault(network.normalized_region, []).append(network)
    return grouped


def establish_context(
    provider: AzureProvider,
    subscription_id: str,
) -> tuple[SessionIdentity, SubscriptionInfo]:
    """Check the session, resolve the subscription and make it active.

    Raises:
        ConnectivityError: If there is no authenticated session.
        SubscriptionError: If the subscription is invalid or inaccessible.
    """
    identity = provider.get_session_identity()
    logger.info(
        "Authenticated session",
        extra={"principal": identity.display_name, "tenant_id": identity.tenant_id},
    )

    subscription = provider.get_subscription(subscription_id)
    provider.set_subscription(subscription.subscription_id)
    logger.info(
        "Using subscription",
        extra={
            "subscription_id": subscription.subscription_id,
            "subscription_name": subscription.display_name,
            "state": subscription.state,
        },
    )
    return identity, subscription


class Reconciler:
    """Brings subnet security group associations into conformance.

    Usage:
        reconciler = Reconciler(provider, policy, exclusions, confirmer, RunMode(force=True))
        result = reconciler.run()
    """

    def __init__(
        self,
        provider: AzureProvider,
        policy: PolicySpec,
        exclusions: Iterable[str],
        confirmer: Confirmer,
        mode: RunMode,
        resolver: TargetResolver | None = None,
        principal: str | None = None,
    ) -> None:
        self._provider = provider
        self._policy = policy
        self._exclusions = frozenset(exclusions)
        self._confirmer = confirmer
        self._mode = mode
        self._resolver = resolver or TargetResolver.for_provider(policy, provider)
        self._principal = principal

    def run(self) -> ReconcileResult:
        """Validate targets, discover networks and reconcile every subnet.

        Raises:
            TargetValidationError: If a declared security group does not
                exist. Raised before any subnet is examined.
        """
        # Result unused: each region is resolved again when reached, so a
        # target deleted after validation skips only its own region.
        self._resolver.validate_targets()

        result = ReconcileResult(mode=self._mode)
        stats = result.statistics

        networks = self._provider.list_virtual_networks()
        logger.info("Discovered virtual networks", extra={"count": len(networks)})

        mode = self._mode
        for region_networks in group_by_region(networks).values():
            region_policy = self._policy.policy_for(region_networks[0].region)
            if region_policy is None:
                result.unmapped_regions.append(region_networks[0].region)
                logger.info(
                    "Region has no policy, skipping",
                    extra={"region": region_networks[0].region, "networks": len(region_networks)},
                )
                continue

            region = region_policy.region
            try:
                target = self._resolver.resolve_region(region)
            except ResolutionFailure as e:
                logger.warning(
                    "Skipping region without usable target",
                    extra={"region": region, "reason": e.reason},
                )
                self._skip_region(result, region, region_networks, e.reason)
                continue

            stats.region(region).target = target.name
            logger.info(
                "Reconciling region",
                extra={"region": region, "target": target.id, "networks": len(region_networks)},
            )

            for network in region_networks:
                stats.record_network(region)
                for subnet in network.subnets:
                    subnet_result, mode = self._reconcile_subnet(
                        region, network, subnet, target, mode
                    )
                    stats.record(region, subnet_result.outcome)
                    result.results.append(subnet_result)

        result.mode = mode
        stats.finish()
        self._log_summary(result)
        return result

    def _skip_region(
        self,
        result: ReconcileResult,
        region: str,
        networks: list[Network],
        reason: str,
    ) -> None:
        stats = result.statistics
        stats.region(region).resolution_error = reason
        excluded = {name.lower() for name in self._exclusions}
        for network in networks:
            stats.record_network(region)
            for subnet in network.subnets:
                if subnet.name.lower() in excluded:
                    decision, outcome = Decision.EXCLUDED, Outcome.EXCLUDED
                else:
                    decision, outcome = Decision.NEEDS_CHANGE, Outcome.UNRESOLVED
                stats.record(region, outcome)
                result.results.append(
                    SubnetResult(
                        region=region,
                        network=network.name,
                        subnet=subnet.name,
                        decision=decision,
                        outcome=outcome,
                        previous_association=subnet.current_association,
                        error=reason if outcome == Outcome.UNRESOLVED else None,
                    )
                )

    def _reconcile_subnet(
        self,
        region: str,
        network: Network,
        subnet: Subnet,
        target: SecurityGroup,
        mode: RunMode,
    ) -> tuple[SubnetResult, RunMode]:
        """Reconcile one subnet.

        Returns:
            The subnet result and the mode for the remaining subnets, which
            switches to forced when the operator answers "all".
        """
        decision = decide(subnet, self._exclusions, target)
        log_extra = {"region": region, "network": network.name, "subnet": subnet.name}

        def finish(outcome: Outcome, error: str | None = None) -> SubnetResult:
            return SubnetResult(
                region=region,
                network=network.name,
                subnet=subnet.name,
                decision=decision,
                outcome=outcome,
                target=target.name,
                previous_association=subnet.current_association,
                error=error,
            )

        if decision == Decision.EXCLUDED:
            logger.info("Subnet excluded", extra=log_extra)
            return finish(Outcome.EXCLUDED), mode

        if decision == Decision.ALREADY_CONFORMANT:
            logger.info("Subnet already associated with target", extra=log_extra)
            return finish(Outcome.ALREADY_CONFORMANT), mode

        if decision == Decision.REPLACE:
            logger.info(
                "Subnet is bound to a different security group, it will be replaced",
                extra={**log_extra, "current": subnet.current_association},
            )

        if mode.requires_confirmation:
            answer = self._confirmer.confirm(f"{network.name}/{subnet.name}", target.name)
            if answer == Confirmation.DECLINE:
                logger.info("Subnet skipped by operator", extra=log_extra)
                return finish(Outcome.USER_SKIPPED), mode
            if answer == Confirmation.AFFIRM_ALL:
                mode = mode.forced()
                logger.info("Confirmation disabled for remaining subnets", extra=log_extra)

        if mode.preview:
            logger.info(
                "Preview: would associate subnet with target",
                extra={**log_extra, "target": target.id},
            )
            self._audit(network, subnet, target, "preview")
            return finish(Outcome.PREVIEWED), mode

        try:
            self._provider.set_subnet_association(network, subnet.name, target)
        except ApplyFailure as e:
            logger.error(
                "Failed to associate subnet with target",
                extra={**log_extra, "target": target.id, "error": str(e)},
            )
            self._audit(network, subnet, target, "failure")
            return finish(Outcome.FAILED, error=str(e)), mode

        logger.info("Associated subnet with target", extra={**log_extra, "target": target.id})
        self._audit(network, subnet, target, "success")
        return finish(Outcome.APPLIED), mode

    def _audit(self, network: Network, subnet: Subnet, target: SecurityGroup, result: str) -> None:
        log_security_audit_event(
            event_type="nsg_association",
            principal=self._principal,
            target_resource=f"{network.id}/subnets/{subnet.name}",
            action=f"associate:{target.id}",
            result=result,
        )

    def _log_summary(self, result: ReconcileResult) -> None:
        totals = result.statistics.totals
        logger.info(
            "Reconciliation complete",
            extra={
                **totals.as_dict(),
                "preview": result.mode.preview,
                "unmapped_regions": result.unmapped_regions,
                "duration_seconds": result.statistics.duration_seconds,
            },
        )

