"""Tests for logging setup and the environment-driven entry point."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any
from unittest import mock

import pytest
from azure_mock import DEFAULT_SUBSCRIPTION_ID, MockAzureContext

from subnetguard.config import Config
from subnetguard.main import (
    EXIT_CONFIG_ERROR,
    EXIT_OK,
    JsonFormatter,
    TextFormatter,
    main,
    run_reconcile,
    setup_logging,
)


@pytest.fixture(autouse=True)
def _restore_root_logger() -> Generator[None, None, None]:
    root_logger = logging.getLogger()
    level = root_logger.level
    yield
    for handler in list(root_logger.handlers):
        if handler.get_name() == "subnetguard":
            root_logger.removeHandler(handler)
    root_logger.setLevel(level)


def _record(**extra: object) -> logging.LogRecord:
    record = logging.LogRecord(
        name="subnetguard.reconciler",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="Associated subnet",
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJsonFormatter:
    """Tests for structured log output."""

    def test_includes_extra_fields(self) -> None:
        line = JsonFormatter().format(_record(subnet="web", region="eastus"))

        data = json.loads(line)
        assert data["message"] == "Associated subnet"
        assert data["level"] == "INFO"
        assert data["logger"] == "subnetguard.reconciler"
        assert data["subnet"] == "web"
        assert data["timestamp"].endswith("Z")
        assert "lineno" not in data

    def test_non_serializable_values(self) -> None:
        line = JsonFormatter().format(_record(path=Path("/tmp/x.csv")))

        assert json.loads(line)["path"] == "/tmp/x.csv"


class TestTextFormatter:
    def test_appends_key_values(self) -> None:
        line = TextFormatter().format(_record(subnet="web"))

        assert "Associated subnet" in line
        assert line.endswith("subnet=web")


class TestSetupLogging:
    """Tests for handler installation."""

    def test_repeated_setup_keeps_one_handler(self) -> None:
        setup_logging()
        setup_logging(log_format="text", verbose=True)

        handlers = [h for h in logging.getLogger().handlers if h.get_name() == "subnetguard"]
        assert len(handlers) == 1
        assert isinstance(handlers[0].formatter, TextFormatter)
        assert logging.getLogger().level == logging.DEBUG

    def test_quiets_azure_sdk(self) -> None:
        setup_logging()

        assert logging.getLogger("azure").level == logging.WARNING


class TestMain:
    """Tests for the environment-configured run."""

    def test_missing_configuration(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("AZURE_SUBSCRIPTION_ID", raising=False)

        assert main() == EXIT_CONFIG_ERROR

    def test_forced_run_from_environment(
        self,
        monkeypatch: pytest.MonkeyPatch,
        write_policy: Callable[..., Path],
        east_us_policy: dict[str, Any],
    ) -> None:
        monkeypatch.setenv("AZURE_SUBSCRIPTION_ID", DEFAULT_SUBSCRIPTION_ID)
        monkeypatch.setenv("SUBNETGUARD_POLICY_FILE", str(write_policy(east_us_policy)))
        monkeypatch.setenv("SUBNETGUARD_FORCE", "true")

        with MockAzureContext() as ctx:
            ctx.state.add_security_group("nsg-eastus", "rg-network")
            ctx.state.add_network(
                "vnet-eastus", "rg-network", subnets=[("web", "10.0.1.0/24", None)]
            )

            assert main() == EXIT_OK
            assert ctx.state.association("vnet-eastus", "web") is not None


class TestRunReconcileExport:
    """Tests for the CSV export step of a reconciliation run."""

    def test_export_failure_keeps_exit_code(
        self,
        tmp_path: Path,
        write_policy: Callable[..., Path],
        east_us_policy: dict[str, Any],
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        config = Config(
            subscription_id=DEFAULT_SUBSCRIPTION_ID,
            policy_file=write_policy(east_us_policy),
            force=True,
            export_path=tmp_path / "regions.csv",
        )

        with MockAzureContext() as ctx:
            ctx.state.add_security_group("nsg-eastus", "rg-network")
            ctx.state.add_network(
                "vnet-eastus", "rg-network", subnets=[("web", "10.0.1.0/24", None)]
            )
            with mock.patch(
                "subnetguard.main.write_region_csv", side_effect=PermissionError("denied")
            ):
                exit_code = run_reconcile(config)

            assert ctx.state.association("vnet-eastus", "web") is not None

        assert exit_code == EXIT_OK
        messages = [r.getMessage() for r in caplog.records]
        assert "Failed to export region statistics" in messages
        assert "Run failed unexpectedly" not in messages
