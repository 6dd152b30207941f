"""End-to-end tests for the command line interface.

Commands run through click's CliRunner against MockAzureContext, so the
whole flow from option parsing to exit code is exercised.
"""

from __future__ import annotations

import csv
import logging
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import pytest
from azure_mock import DEFAULT_SUBSCRIPTION_ID, MockAzureContext
from click.testing import CliRunner

from subnetguard.cli import cli
from subnetguard.main import (
    EXIT_CONFIG_ERROR,
    EXIT_CONNECTIVITY_ERROR,
    EXIT_OK,
    EXIT_SECURITY_VIOLATION,
    EXIT_SUBSCRIPTION_ERROR,
    EXIT_TARGET_VALIDATION_ERROR,
)

PolicyWriter = Callable[..., Path]


@pytest.fixture(autouse=True)
def _drop_log_handler() -> Generator[None, None, None]:
    """Remove the handler the CLI installs on the runner's stderr."""
    yield
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        if handler.get_name() == "subnetguard":
            root_logger.removeHandler(handler)


@pytest.fixture
def azure() -> Generator[MockAzureContext, None, None]:
    with MockAzureContext() as ctx:
        ctx.state.add_security_group("nsg-eastus", "rg-network", location="eastus")
        ctx.state.add_network(
            "vnet-eastus",
            "rg-network",
            location="eastus",
            subnets=[
                ("GatewaySubnet", "10.0.0.0/27", None),
                ("web-subnet", "10.0.1.0/24", None),
            ],
        )
        yield ctx


@pytest.fixture
def policy_path(write_policy: PolicyWriter, east_us_policy: dict[str, Any]) -> Path:
    return write_policy(east_us_policy)


def _invoke(*args: str, input: str | None = None, env: dict[str, str] | None = None) -> Any:
    return CliRunner().invoke(cli, list(args), input=input, env=env, catch_exceptions=False)


def _reconcile(policy_path: Path, *extra: str, **kwargs: Any) -> Any:
    return _invoke(
        "reconcile",
        "--subscription",
        DEFAULT_SUBSCRIPTION_ID,
        "--policy-file",
        str(policy_path),
        *extra,
        **kwargs,
    )


class TestReconcileCommand:
    """Tests for `subnetguard reconcile`."""

    def test_force_applies(self, azure: MockAzureContext, policy_path: Path) -> None:
        result = _reconcile(policy_path, "--force")

        assert result.exit_code == EXIT_OK
        assert azure.state.association("vnet-eastus", "web-subnet") is not None
        assert azure.state.association("vnet-eastus", "GatewaySubnet") is None
        assert "✓ 1 change(s) applied" in result.output

    def test_preview_changes_nothing(self, azure: MockAzureContext, policy_path: Path) -> None:
        result = _reconcile(policy_path, "--preview")

        assert result.exit_code == EXIT_OK
        assert azure.state.updates == []
        assert "✓ 1 change(s) previewed" in result.output

    def test_interactive_decline(self, azure: MockAzureContext, policy_path: Path) -> None:
        result = _reconcile(policy_path, input="n\n")

        assert result.exit_code == EXIT_OK
        assert azure.state.updates == []
        assert "Apply 'nsg-eastus' to vnet-eastus/web-subnet?" in result.output

    def test_interactive_affirm(self, azure: MockAzureContext, policy_path: Path) -> None:
        result = _reconcile(policy_path, input="y\n")

        assert result.exit_code == EXIT_OK
        assert azure.state.association("vnet-eastus", "web-subnet") is not None

    def test_exclude_option_overrides_defaults(
        self, azure: MockAzureContext, policy_path: Path
    ) -> None:
        result = _reconcile(policy_path, "--force", "--exclude", "web-subnet")

        assert result.exit_code == EXIT_OK
        assert azure.state.association("vnet-eastus", "web-subnet") is None
        assert azure.state.association("vnet-eastus", "GatewaySubnet") is not None

    def test_exclude_accepts_comma_separated_names(
        self, azure: MockAzureContext, policy_path: Path
    ) -> None:
        result = _reconcile(policy_path, "--force", "-x", "web-subnet,GatewaySubnet")

        assert result.exit_code == EXIT_OK
        assert azure.state.updates == []

    def test_exclusions_from_environment(
        self, azure: MockAzureContext, policy_path: Path
    ) -> None:
        result = _reconcile(
            policy_path, "--force", env={"SUBNETGUARD_EXCLUDED_SUBNETS": "web-subnet, other"}
        )

        assert result.exit_code == EXIT_OK
        assert azure.state.association("vnet-eastus", "web-subnet") is None
        assert azure.state.association("vnet-eastus", "GatewaySubnet") is not None

    def test_export_path_from_environment(
        self, azure: MockAzureContext, policy_path: Path, tmp_path: Path
    ) -> None:
        export = tmp_path / "regions.csv"

        result = _reconcile(policy_path, "--force", env={"SUBNETGUARD_EXPORT_PATH": str(export)})

        assert result.exit_code == EXIT_OK
        assert export.exists()

    def test_export_writes_csv(
        self, azure: MockAzureContext, policy_path: Path, tmp_path: Path
    ) -> None:
        export = tmp_path / "regions.csv"

        result = _reconcile(policy_path, "--force", "--export", str(export))

        assert result.exit_code == EXIT_OK
        with export.open(newline="", encoding="utf-8") as handle:
            rows = list(csv.DictReader(handle))
        assert [(r["Region"], r["Succeeded"]) for r in rows] == [("East US", "1")]

    def test_missing_target_exit_code(
        self, azure: MockAzureContext, write_policy: PolicyWriter
    ) -> None:
        path = write_policy(
            {"regions": [{"region": "East US", "networkSecurityGroup": {"name": "nsg-missing"}}]}
        )

        result = _reconcile(path, "--force")

        assert result.exit_code == EXIT_TARGET_VALIDATION_ERROR
        assert azure.state.updates == []

    def test_no_session_exit_code(self, policy_path: Path) -> None:
        with MockAzureContext(fail_auth=True):
            result = _reconcile(policy_path, "--force")

        assert result.exit_code == EXIT_CONNECTIVITY_ERROR

    def test_unknown_subscription_exit_code(self, policy_path: Path) -> None:
        with MockAzureContext(subscription_id="99999999-9999-9999-9999-999999999999"):
            result = _reconcile(policy_path, "--force")

        assert result.exit_code == EXIT_SUBSCRIPTION_ERROR

    def test_credential_in_environment_exit_code(
        self,
        azure: MockAzureContext,
        policy_path: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setenv("AZURE_CLIENT_SECRET", "not-allowed")

        result = _reconcile(policy_path, "--force")

        assert result.exit_code == EXIT_SECURITY_VIOLATION
        assert azure.state.updates == []

    def test_invalid_policy_exit_code(
        self, azure: MockAzureContext, write_policy: PolicyWriter
    ) -> None:
        path = write_policy({"regions": [{"region": "East US"}]})

        result = _reconcile(path, "--force")

        assert result.exit_code == EXIT_CONFIG_ERROR

    def test_invalid_subscription_is_usage_error(self, policy_path: Path) -> None:
        result = _invoke("reconcile", "--subscription", "not-a-guid", "-p", str(policy_path))

        assert result.exit_code == 1
        assert "must be a valid GUID" in result.output

    def test_subscription_is_required(
        self, policy_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.delenv("AZURE_SUBSCRIPTION_ID", raising=False)

        result = _invoke("reconcile", "-p", str(policy_path))

        assert result.exit_code == 2
        assert "--subscription" in result.output


class TestGrantCommand:
    """Tests for `subnetguard grant`."""

    SCOPE = f"/subscriptions/{DEFAULT_SUBSCRIPTION_ID}/resourceGroups/rg-network"

    def test_creates_assignment(self, azure: MockAzureContext, write_policy: PolicyWriter) -> None:
        path = write_policy(
            {
                "roleAssignments": [
                    {
                        "principalId": "11111111-2222-3333-4444-555555555555",
                        "roleDefinitionName": "Network Contributor",
                        "scope": self.SCOPE,
                    }
                ]
            }
        )

        result = _invoke(
            "grant", "--subscription", DEFAULT_SUBSCRIPTION_ID, "-p", str(path), "--force"
        )

        assert result.exit_code == EXIT_OK
        assert len(azure.state.created_assignments) == 1
        assert "Role grants" in result.output

    def test_no_grants_declared(
        self, azure: MockAzureContext, policy_path: Path
    ) -> None:
        result = _invoke(
            "grant", "--subscription", DEFAULT_SUBSCRIPTION_ID, "-p", str(policy_path), "--force"
        )

        assert result.exit_code == EXIT_OK
        assert azure.state.created_assignments == []


class TestValidateCommand:
    """Tests for `subnetguard validate`."""

    def test_valid_policy(self, policy_path: Path) -> None:
        result = _invoke("validate", "-p", str(policy_path))

        assert result.exit_code == EXIT_OK
        assert "is valid" in result.output
        assert "East US: nsg-eastus" in result.output
        assert "GatewaySubnet" in result.output

    def test_invalid_policy(self, write_policy: PolicyWriter) -> None:
        path = write_policy({"regions": [{"region": "East US"}]})

        result = _invoke("validate", "-p", str(path))

        assert result.exit_code == EXIT_CONFIG_ERROR
        assert "✗" in result.output

    def test_missing_file(self, tmp_path: Path) -> None:
        result = _invoke("validate", "-p", str(tmp_path / "absent.yaml"))

        assert result.exit_code == EXIT_CONFIG_ERROR
