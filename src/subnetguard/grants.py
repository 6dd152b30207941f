"""Reconciliation of declared RBAC role grants.

Each grant in the policy is brought into existence at its scope:

1. Resolve the role name to a role definition GUID
2. List the assignments defined exactly at the scope
3. Already conformant if the principal holds that role there
4. Otherwise confirm, then create (or preview) the assignment

Assignment names are deterministic (uuid5 of principal, role and scope), so
re-running never creates duplicates and a 409 conflict means the assignment
already exists.
"""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field

from azure.core.exceptions import AzureError

from .confirmation import Confirmation, Confirmer
from .models import VALID_GUID_PATTERN, PolicySpec, RoleGrant
from .provider import ApplyFailure, AzureProvider
from .reconciler import RunMode
from .security import log_security_audit_event
from .stats import Outcome, RunStatistics

logger = logging.getLogger(__name__)

# Well-known Azure built-in role GUIDs, identical across all tenants
BUILTIN_ROLES: dict[str, str] = {
    "Owner": "8e3af657-a8ff-443c-a75c-2fe8c4bcb635",
    "Contributor": "b24988ac-6180-42a0-ab88-20f7382dd24c",
    "Reader": "acdd72a7-3385-48ef-bd42-f606fba81ae7",
    "User Access Administrator": "18d7d88d-d35e-4fb5-a5c3-7773c20a72d9",
    "Network Contributor": "4d97b98b-1d4f-4787-a291-c67834d212e7",
    "Security Admin": "fb1c8493-542b-48eb-b624-b4c8fea62acd",
    "Security Reader": "39bc4728-0917-49c7-9d2c-d95423bc2eb4",
    "Log Analytics Contributor": "92aaf0da-9dab-42b6-94a3-d43ce8d16293",
    "Log Analytics Reader": "73c42c96-874c-492b-b04d-ab87d138a893",
    "Monitoring Contributor": "749f88d5-cbae-40b8-bcfc-e573ddc772fa",
    "Private DNS Zone Contributor": "b12aa53e-6015-4669-85d0-8515ebb3ae7f",
    "Resource Policy Contributor": "36243c78-bf99-498c-9df9-86d9f8d28608",
}


def role_definition_guid(role_name: str) -> str:
    """Map a built-in role name to its GUID, or accept a custom role GUID.

    Raises:
        ValueError: If the name is neither a known built-in role nor a GUID.
    """
    if role_name in BUILTIN_ROLES:
        return BUILTIN_ROLES[role_name]

    if not re.match(VALID_GUID_PATTERN, role_name.lower()):
        raise ValueError(
            f"Role '{role_name}' is not a recognized built-in role and is not a valid GUID. "
            f"Custom roles must be specified as GUIDs (xxxxxxxx-xxxx-xxxx-xxxx-xxxxxxxxxxxx)."
        )

    logger.debug("Using role name as custom role definition GUID", extra={"role": role_name})
    return role_name.lower()


def assignment_name(grant: RoleGrant) -> str:
    """Deterministic assignment name: same inputs, same assignment."""
    return str(
        uuid.uuid5(
            uuid.NAMESPACE_DNS,
            f"{grant.principal_id}:{grant.role_definition_name}:{grant.scope}",
        )
    )


@dataclass(frozen=True)
class GrantResult:
    """What happened to one declared grant."""

    grant: RoleGrant
    outcome: Outcome
    assignment_id: str | None = None
    error: str | None = None


@dataclass
class GrantRunResult:
    """Result of one grant run. Statistics are keyed by scope."""

    mode: RunMode
    statistics: RunStatistics = field(default_factory=RunStatistics)
    results: list[GrantResult] = field(default_factory=list)

    @property
    def failed(self) -> list[GrantResult]:
        return [r for r in self.results if r.outcome == Outcome.FAILED]


class GrantReconciler:
    """Creates the role assignments declared in the policy.

    Usage:
        grants = GrantReconciler(provider, policy, AutoConfirmer(), RunMode(force=True))
        result = grants.run()
    """

    def __init__(
        self,
        provider: AzureProvider,
        policy: PolicySpec,
        confirmer: Confirmer,
        mode: RunMode,
        principal: str | None = None,
    ) -> None:
        self._provider = provider
        self._policy = policy
        self._confirmer = confirmer
        self._mode = mode
        self._principal = principal

    def run(self) -> GrantRunResult:
        result = GrantRunResult(mode=self._mode)
        mode = self._mode

        for grant in self._policy.role_assignments:
            grant_result, mode = self._reconcile_grant(grant, mode)
            result.statistics.record(grant.scope, grant_result.outcome)
            result.results.append(grant_result)

        result.mode = mode
        result.statistics.finish()
        logger.info(
            "Role grant reconciliation complete",
            extra={
                **result.statistics.totals.as_dict(),
                "preview": mode.preview,
                "duration_seconds": result.statistics.duration_seconds,
            },
        )
        return result

    def _reconcile_grant(self, grant: RoleGrant, mode: RunMode) -> tuple[GrantResult, RunMode]:
        log_extra = {
            "principal_id": grant.principal_id,
            "role": grant.role_definition_name,
            "scope": grant.scope,
        }

        try:
            role_definition_id = self._provider.role_definition_resource_id(
                role_definition_guid(grant.role_definition_name)
            )
        except ValueError as e:
            logger.error("Unknown role definition", extra={**log_extra, "error": str(e)})
            return GrantResult(grant, Outcome.FAILED, error=str(e)), mode

        try:
            if self._has_assignment(grant, role_definition_id):
                logger.info("Role assignment already exists", extra=log_extra)
                return GrantResult(grant, Outcome.ALREADY_CONFORMANT), mode
        except AzureError as e:
            logger.error(
                "Failed to list role assignments at scope", extra={**log_extra, "error": str(e)}
            )
            return GrantResult(grant, Outcome.FAILED, error=str(e)), mode

        if mode.requires_confirmation:
            answer = self._confirmer.confirm(
                f"{grant.principal_type} {grant.principal_id} at {grant.scope}",
                grant.role_definition_name,
            )
            if answer == Confirmation.DECLINE:
                logger.info("Role assignment skipped by operator", extra=log_extra)
                return GrantResult(grant, Outcome.USER_SKIPPED), mode
            if answer == Confirmation.AFFIRM_ALL:
                mode = mode.forced()

        if mode.preview:
            logger.info("Preview: would create role assignment", extra=log_extra)
            self._audit(grant, "preview")
            return GrantResult(grant, Outcome.PREVIEWED), mode

        try:
            assignment_id = self._provider.create_role_assignment(
                scope=grant.scope,
                assignment_name=assignment_name(grant),
                role_definition_id=role_definition_id,
                principal_id=grant.principal_id,
                principal_type=grant.principal_type,
                description=grant.description or "Managed by subnetguard",
            )
        except ApplyFailure as e:
            if e.status_code == 409:
                logger.info("Role assignment already exists (conflict)", extra=log_extra)
                return GrantResult(grant, Outcome.ALREADY_CONFORMANT), mode
            logger.error("Failed to create role assignment", extra={**log_extra, "error": str(e)})
            self._audit(grant, "failure")
            return GrantResult(grant, Outcome.FAILED, error=str(e)), mode

        logger.info(
            "Created role assignment", extra={**log_extra, "assignment_id": assignment_id}
        )
        self._audit(grant, "success")
        return GrantResult(grant, Outcome.APPLIED, assignment_id=assignment_id), mode

    def _has_assignment(self, grant: RoleGrant, role_definition_id: str) -> bool:
        wanted_role = role_definition_id.rsplit("/", 1)[-1].lower()
        for assignment in self._provider.list_role_assignments(grant.scope):
            if (
                assignment.principal_id == grant.principal_id
                and assignment.role_definition_id.rsplit("/", 1)[-1].lower() == wanted_role
            ):
                return True
        return False

    def _audit(self, grant: RoleGrant, result: str) -> None:
        log_security_audit_event(
            event_type="role_assignment",
            principal=self._principal,
            target_resource=grant.scope,
            action=f"assign:{grant.role_definition_name}:{grant.principal_id}",
            result=result,
        )
