"""Pydantic models for reconciliation reports."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field

from driftwatch_core.mst.models import DivergenceKind


class Verdict(str, Enum):
    """What an operator may conclude from a run.

    ``unverified`` means the run could not finish (fetch failure, timeout or
    a limit) before confirming anything; it never means "identical".
    """

    identical = "identical"
    divergent = "divergent"
    unverified = "unverified"


class ReportLimits(BaseModel):
    """Bounds that keep a report finite on massive drift."""

    max_entries: int | None = Field(default=1000, gt=0)
    max_divergences: int | None = Field(default=None, gt=0)
    time_budget: float | None = Field(default=None, gt=0)


class ReportEntry(BaseModel):
    key: int
    category: DivergenceKind
    left: str | None = None
    right: str | None = None


class UnverifiedRange(BaseModel):
    """A key range that could not be compared. Bounds are None for a whole tree."""

    side: str
    low: int | None = None
    high: int | None = None
    reason: str
    timed_out: bool = False


def _zero_counts() -> dict[DivergenceKind, int]:
    return {kind: 0 for kind in DivergenceKind}


class ReconciliationReport(BaseModel):
    """Categorized outcome of diffing two trees."""

    left_root: str
    right_root: str
    ruleset: str | None = None
    verdict: Verdict
    complete: bool
    truncated: bool = False
    counts: dict[DivergenceKind, int] = Field(default_factory=_zero_counts)
    entries: list[ReportEntry] = Field(default_factory=list)
    unverified: list[UnverifiedRange] = Field(default_factory=list)
    error: str | None = None
    stats: dict[str, int] = Field(default_factory=dict)
    generated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    @property
    def missing_left(self) -> int:
        return self.counts[DivergenceKind.missing_left]

    @property
    def missing_right(self) -> int:
        return self.counts[DivergenceKind.missing_right]

    @property
    def hash_mismatch(self) -> int:
        return self.counts[DivergenceKind.hash_mismatch]
