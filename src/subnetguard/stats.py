"""Run statistics: aggregate and per-region counters.

Counters only ever increase. Every outcome is recorded through
RunStatistics.record(), which updates the run totals and the region's
counters together, so the totals always equal the sum over regions.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import UTC, datetime
from enum import Enum


class Outcome(str, Enum):
    """Final classification of one subnet (or grant) in a run."""

    EXCLUDED = "excluded"
    ALREADY_CONFORMANT = "already_conformant"
    APPLIED = "applied"
    PREVIEWED = "previewed"  # Simulated success in preview mode
    FAILED = "failed"
    USER_SKIPPED = "user_skipped"
    UNRESOLVED = "unresolved"  # Region skipped: no usable target

    @property
    def is_change(self) -> bool:
        """Whether the item needed a change (was processed)."""
        return self in (Outcome.APPLIED, Outcome.PREVIEWED, Outcome.FAILED, Outcome.USER_SKIPPED)


@dataclass
class Counters:
    """Counter set shared by the run totals and each region."""

    vnets: int = 0
    subnets: int = 0
    processed: int = 0
    skipped: int = 0
    excluded: int = 0
    succeeded: int = 0
    failed: int = 0
    already_conformant: int = 0

    def count(self, outcome: Outcome) -> None:
        self.subnets += 1
        if outcome.is_change:
            self.processed += 1

        match outcome:
            case Outcome.EXCLUDED:
                self.excluded += 1
            case Outcome.ALREADY_CONFORMANT:
                self.already_conformant += 1
            case Outcome.APPLIED | Outcome.PREVIEWED:
                self.succeeded += 1
            case Outcome.FAILED:
                self.failed += 1
            case Outcome.USER_SKIPPED | Outcome.UNRESOLVED:
                self.skipped += 1

    def as_dict(self) -> dict[str, int]:
        return {f.name: getattr(self, f.name) for f in fields(Counters)}


COUNTER_NAMES: tuple[str, ...] = tuple(f.name for f in fields(Counters))


@dataclass
class RegionStatistics(Counters):
    """Counters for one region plus the target that was applied there."""

    region: str = ""
    target: str | None = None
    resolution_error: str | None = None


@dataclass
class RunStatistics:
    """Statistics for a whole run, built fresh per run."""

    totals: Counters = field(default_factory=Counters)
    regions: dict[str, RegionStatistics] = field(default_factory=dict)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None

    def region(self, name: str) -> RegionStatistics:
        """Get a region's counters, creating them on first use."""
        if name not in self.regions:
            self.regions[name] = RegionStatistics(region=name)
        return self.regions[name]

    def record_network(self, region: str) -> None:
        self.totals.vnets += 1
        self.region(region).vnets += 1

    def record(self, region: str, outcome: Outcome) -> None:
        """Record one subnet outcome in the totals and its region."""
        self.totals.count(outcome)
        self.region(region).count(outcome)

    def finish(self) -> None:
        self.finished_at = datetime.now(UTC)

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def is_consistent(self) -> bool:
        """Check that every total equals the sum of its per-region counters."""
        for name in COUNTER_NAMES:
            regional = sum(getattr(stats, name) for stats in self.regions.values())
            if regional != getattr(self.totals, name):
                return False
        return True
