"""Run orchestration and entry point for subnetguard.

SECRETLESS ARCHITECTURE:
subnetguard never handles credentials itself. It runs on top of an
existing Azure CLI session or a managed identity, and refuses to start
when credential secrets are present in the environment.

Each run is one-shot: validate configuration and policy, establish the
session and subscription context, reconcile, report, exit. Fatal errors
map to distinct exit codes; per-subnet failures do not change the exit
code and are reported in the summary instead.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

from .config import Config, ConfigurationError
from .confirmation import AutoConfirmer, ConsoleConfirmer, Confirmer
from .grants import GrantReconciler
from .policy_loader import PolicyLoadError, load_policy
from .provider import AzureProvider, ConnectivityError, SubscriptionError
from .reconciler import Reconciler, RunMode, establish_context
from .report import render_summary, write_region_csv
from .resolution import TargetValidationError
from .security import SecretlessViolationError, get_session_credential
from .stats import RunStatistics

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_SECURITY_VIOLATION = 2
EXIT_CONNECTIVITY_ERROR = 3
EXIT_SUBSCRIPTION_ERROR = 4
EXIT_TARGET_VALIDATION_ERROR = 5

# LogRecord attributes that are not user-supplied extra fields
_RESERVED_RECORD_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable log lines with extra fields appended as key=value."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)-8s %(message)s", datefmt="%H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extras = [
            f"{key}={value}"
            for key, value in record.__dict__.items()
            if key not in _RESERVED_RECORD_ATTRS and key != "asctime"
        ]
        return f"{line}  {' '.join(extras)}" if extras else line


def setup_logging(log_format: str = "json", verbose: bool = False) -> None:
    """Configure logging on stderr so the console summary stays on stdout.

    Calling it again replaces the handler installed by the previous call.
    """
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter() if log_format == "json" else TextFormatter())
    handler.set_name("subnetguard")

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        if existing.get_name() == "subnetguard":
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def _guarded(action: Callable[[], int]) -> int:
    """Run an action and map fatal errors to exit codes."""
    try:
        return action()

    except (ConfigurationError, PolicyLoadError) as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_CONFIG_ERROR

    except SecretlessViolationError as e:
        # SECURITY: Credential detected in environment - fatal security error
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"error": str(e)},
        )
        return EXIT_SECURITY_VIOLATION

    except ConnectivityError as e:
        logger.error("No usable Azure session", extra={"error": str(e)})
        return EXIT_CONNECTIVITY_ERROR

    except SubscriptionError as e:
        logger.error("Subscription is not usable", extra={"error": str(e)})
        return EXIT_SUBSCRIPTION_ERROR

    except TargetValidationError as e:
        logger.error(
            "Target validation failed, no subnet was changed",
            extra={"failures": e.failures},
        )
        return EXIT_TARGET_VALIDATION_ERROR

    except Exception as e:
        logger.exception("Run failed unexpectedly", extra={"error": str(e)})
        return EXIT_CONFIG_ERROR


def _export(stats: RunStatistics, path: Path) -> None:
    """Write the CSV export. A failure here does not change the exit code.

    Changes are already committed when the export runs, so the run still
    completes normally and the failure is logged.
    """
    try:
        write_region_csv(stats, path)
    except OSError as e:
        logger.error(
            "Failed to export region statistics",
            extra={"path": str(path), "error": str(e)},
        )


def _default_confirmer(config: Config) -> Confirmer:
    return ConsoleConfirmer() if config.interactive else AutoConfirmer()


def run_reconcile(config: Config, confirmer: Confirmer | None = None) -> int:
    """Reconcile subnet associations for one subscription.

    Returns:
        Exit code (0 for success, non-zero for fatal errors).
    """

    def action() -> int:
        policy = load_policy(config.policy_file)
        credential = get_session_credential(
            use_managed_identity=config.use_managed_identity,
            client_id=config.managed_identity_client_id,
        )
        provider = AzureProvider(credential)
        identity, _ = establish_context(provider, config.subscription_id)

        exclusions = config.effective_exclusions(policy.excluded_subnets)
        logger.info(
            "Starting subnet reconciliation",
            extra={
                "subscription_id": config.subscription_id,
                "regions": policy.region_names,
                "exclusions": sorted(exclusions),
                "preview": config.preview,
                "force": config.force,
            },
        )

        reconciler = Reconciler(
            provider=provider,
            policy=policy,
            exclusions=exclusions,
            confirmer=confirmer or _default_confirmer(config),
            mode=RunMode(preview=config.preview, force=config.force),
            principal=identity.display_name,
        )
        result = reconciler.run()

        render_summary(result.statistics, title="Subnet reconciliation", preview=config.preview)
        if result.unmapped_regions:
            logger.info(
                "Regions without a policy were ignored",
                extra={"unmapped_regions": result.unmapped_regions},
            )
        if config.export_path is not None:
            _export(result.statistics, config.export_path)
        return EXIT_OK

    return _guarded(action)


def run_grants(config: Config, confirmer: Confirmer | None = None) -> int:
    """Create the role assignments declared in the policy.

    Returns:
        Exit code (0 for success, non-zero for fatal errors).
    """

    def action() -> int:
        policy = load_policy(config.policy_file)
        if not policy.role_assignments:
            logger.info("Policy declares no role assignments")
            return EXIT_OK

        credential = get_session_credential(
            use_managed_identity=config.use_managed_identity,
            client_id=config.managed_identity_client_id,
        )
        provider = AzureProvider(credential)
        identity, _ = establish_context(provider, config.subscription_id)

        grants = GrantReconciler(
            provider=provider,
            policy=policy,
            confirmer=confirmer or _default_confirmer(config),
            mode=RunMode(preview=config.preview, force=config.force),
            principal=identity.display_name,
        )
        result = grants.run()
        render_summary(
            result.statistics, title="Role grants", preview=config.preview, key_label="Scope"
        )
        return EXIT_OK

    return _guarded(action)


def main() -> int:
    """Run a reconciliation configured entirely from the environment.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging(
        log_format=os.environ.get("SUBNETGUARD_LOG_FORMAT", "json"),
        verbose=os.environ.get("SUBNETGUARD_VERBOSE", "").lower() in ("true", "1", "yes"),
    )

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_CONFIG_ERROR

    return run_reconcile(config)


def run() -> None:
    """Entry point for unattended runs."""
    sys.exit(main())


if __name__ == "__main__":
    run()
