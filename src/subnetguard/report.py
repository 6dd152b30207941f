"""Console summary and CSV export of run statistics."""

from __future__ import annotations

import csv
import logging
from datetime import UTC, datetime
from pathlib import Path

import click

from .stats import Counters, RunStatistics

logger = logging.getLogger(__name__)

CSV_COLUMNS: tuple[str, ...] = (
    "Region",
    "VNets",
    "Subnets",
    "Processed",
    "Succeeded",
    "Failed",
    "Skipped",
    "Excluded",
    "AlreadyConformant",
    "TargetNSG",
    "Timestamp",
)

_TABLE_COLUMNS: tuple[tuple[str, str], ...] = (
    ("VNets", "vnets"),
    ("Subnets", "subnets"),
    ("Processed", "processed"),
    ("Succeeded", "succeeded"),
    ("Failed", "failed"),
    ("Skipped", "skipped"),
    ("Excluded", "excluded"),
    ("Conformant", "already_conformant"),
)


def _row(label: str, counters: Counters, width: int) -> str:
    cells = [f"{getattr(counters, attr):>{len(header)}}" for header, attr in _TABLE_COLUMNS]
    return f"{label:<{width}}  " + "  ".join(cells)


def render_summary(
    stats: RunStatistics,
    title: str = "Summary",
    preview: bool = False,
    key_label: str = "Region",
) -> None:
    """Print a table keyed by region (or scope) and the totals to the console."""
    width = max([len("TOTAL"), len(key_label), *(len(name) for name in stats.regions)])
    header = f"{key_label:<{width}}  " + "  ".join(h for h, _ in _TABLE_COLUMNS)

    click.echo("")
    click.secho(f"{title} (preview)" if preview else title, bold=True)
    click.echo(header)
    click.echo("-" * len(header))
    for name, region in stats.regions.items():
        click.echo(_row(name, region, width))
        if region.resolution_error:
            click.secho(f"  ! {region.resolution_error}", fg="yellow")
    click.echo("-" * len(header))
    click.echo(_row("TOTAL", stats.totals, width))

    totals = stats.totals
    if totals.failed:
        click.secho(f"✗ {totals.failed} change(s) failed", fg="red")
    elif totals.processed:
        verb = "previewed" if preview else "applied"
        click.secho(f"✓ {totals.succeeded} change(s) {verb}", fg="green")
    else:
        click.secho("✓ Nothing to change", fg="green")


def write_region_csv(stats: RunStatistics, path: Path) -> bool:
    """Write one row per region to a CSV file.

    Nothing is written when no subnet was processed.

    Returns:
        True if the file was written.
    """
    if stats.totals.processed == 0:
        logger.info("No subnets processed, skipping CSV export", extra={"path": str(path)})
        return False

    timestamp = (stats.finished_at or datetime.now(UTC)).isoformat().replace("+00:00", "Z")
    with path.open("w", newline="", encoding="utf-8") as handle:
        writer = csv.writer(handle)
        writer.writerow(CSV_COLUMNS)
        for name, region in stats.regions.items():
            writer.writerow(
                [
                    name,
                    region.vnets,
                    region.subnets,
                    region.processed,
                    region.succeeded,
                    region.failed,
                    region.skipped,
                    region.excluded,
                    region.already_conformant,
                    region.target or "",
                    timestamp,
                ]
            )

    logger.info(
        "Exported region statistics",
        extra={"path": str(path), "regions": len(stats.regions)},
    )
    return True
