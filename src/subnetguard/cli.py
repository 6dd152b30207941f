"""subnetguard command line interface.

Usage:
    subnetguard reconcile --subscription ID --policy-file policy.yaml --preview
    subnetguard reconcile --subscription ID --policy-file policy.yaml --force
    subnetguard grant --subscription ID --policy-file policy.yaml
    subnetguard validate --policy-file policy.yaml
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

import click

from .config import DEFAULT_EXCLUDED_SUBNETS, Config, ConfigurationError
from .main import EXIT_CONFIG_ERROR, run_grants, run_reconcile, setup_logging
from .policy_loader import PolicyLoadError, load_policy

LOG_FORMATS = ("text", "json")


def run_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Options shared by every command that talks to Azure."""
    options = [
        click.option(
            "--subscription",
            "subscription_id",
            envvar="AZURE_SUBSCRIPTION_ID",
            required=True,
            help="Target subscription ID (or AZURE_SUBSCRIPTION_ID)",
        ),
        click.option(
            "--policy-file",
            "-p",
            envvar="SUBNETGUARD_POLICY_FILE",
            default="policy.yaml",
            show_default=True,
            type=click.Path(path_type=Path),
            help="YAML policy file",
        ),
        click.option("--preview", is_flag=True, help="Report changes without applying them"),
        click.option("--force", "-f", is_flag=True, help="Apply without per-item confirmation"),
        click.option(
            "--managed-identity",
            is_flag=True,
            envvar="SUBNETGUARD_USE_MANAGED_IDENTITY",
            help="Authenticate with the host's managed identity instead of the Azure CLI",
        ),
        click.option(
            "--client-id",
            envvar="MANAGED_IDENTITY_CLIENT_ID",
            help="Client ID of a user-assigned managed identity",
        ),
        click.option(
            "--log-format",
            type=click.Choice(LOG_FORMATS),
            default="text",
            show_default=True,
            help="Log line format",
        ),
        click.option("--verbose", "-v", is_flag=True, help="Debug logging"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _split_names(
    ctx: click.Context, param: click.Parameter, value: tuple[str, ...]
) -> tuple[str, ...]:
    """Accept "a,b" as well as repeated options, like SUBNETGUARD_EXCLUDED_SUBNETS."""
    return tuple(name.strip() for item in value for name in item.split(",") if name.strip())


def build_config(**kwargs: Any) -> Config:
    """Build a validated Config, turning validation errors into usage errors."""
    try:
        return Config(**kwargs)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


@click.group()
@click.version_option(package_name="subnetguard")
def cli() -> None:
    """subnetguard: bulk NSG association and RBAC grants for Azure subnets.

    \b
    Quick Start:
        az login
        subnetguard validate -p policy.yaml
        subnetguard reconcile --subscription <id> -p policy.yaml --preview
    """
    pass


@cli.command()
@run_options
@click.option(
    "--exclude",
    "-x",
    "excluded",
    multiple=True,
    envvar="SUBNETGUARD_EXCLUDED_SUBNETS",
    callback=_split_names,
    help="Subnet name(s) to leave untouched; repeatable or comma separated "
    "(default: Azure reserved subnets)",
)
@click.option(
    "--export",
    "export_path",
    envvar="SUBNETGUARD_EXPORT_PATH",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Write per-region statistics to this CSV file",
)
@click.pass_context
def reconcile(
    ctx: click.Context,
    subscription_id: str,
    policy_file: Path,
    preview: bool,
    force: bool,
    managed_identity: bool,
    client_id: str | None,
    log_format: str,
    verbose: bool,
    excluded: tuple[str, ...],
    export_path: Path | None,
) -> None:
    """Associate every subnet in each mapped region with its region's NSG."""
    setup_logging(log_format=log_format, verbose=verbose)
    config = build_config(
        subscription_id=subscription_id,
        policy_file=policy_file,
        preview=preview,
        force=force,
        excluded_subnets=excluded or None,
        export_path=export_path,
        use_managed_identity=managed_identity,
        managed_identity_client_id=client_id,
    )
    ctx.exit(run_reconcile(config))


@cli.command()
@run_options
@click.pass_context
def grant(
    ctx: click.Context,
    subscription_id: str,
    policy_file: Path,
    preview: bool,
    force: bool,
    managed_identity: bool,
    client_id: str | None,
    log_format: str,
    verbose: bool,
) -> None:
    """Create the role assignments declared in the policy file."""
    setup_logging(log_format=log_format, verbose=verbose)
    config = build_config(
        subscription_id=subscription_id,
        policy_file=policy_file,
        preview=preview,
        force=force,
        use_managed_identity=managed_identity,
        managed_identity_client_id=client_id,
    )
    ctx.exit(run_grants(config))


@cli.command()
@click.option(
    "--policy-file",
    "-p",
    envvar="SUBNETGUARD_POLICY_FILE",
    default="policy.yaml",
    show_default=True,
    type=click.Path(path_type=Path),
    help="YAML policy file",
)
@click.pass_context
def validate(ctx: click.Context, policy_file: Path) -> None:
    """Validate a policy file without contacting Azure."""
    try:
        policy = load_policy(policy_file)
    except PolicyLoadError as e:
        click.secho(f"✗ {e}", fg="red", err=True)
        ctx.exit(EXIT_CONFIG_ERROR)

    click.secho(f"✓ {policy_file} is valid", fg="green")
    for region in policy.regions:
        click.echo(f"  {region.region}: {region.network_security_group.display_name}")
    exclusions = policy.excluded_subnets or list(DEFAULT_EXCLUDED_SUBNETS)
    click.echo(f"  Excluded subnets: {', '.join(exclusions)}")
    if policy.role_assignments:
        click.echo(f"  Role assignments: {len(policy.role_assignments)}")


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
