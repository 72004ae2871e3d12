"""Reconciliation reports built from differ output."""

from driftwatch_core.report.builder import (
    ReportBuilder,
    abuild_report,
    areconcile,
    build_report,
    reconcile,
)
from driftwatch_core.report.models import (
    ReconciliationReport,
    ReportEntry,
    ReportLimits,
    UnverifiedRange,
    Verdict,
)

__all__ = [
    "ReconciliationReport",
    "ReportBuilder",
    "ReportEntry",
    "ReportLimits",
    "UnverifiedRange",
    "Verdict",
    "abuild_report",
    "areconcile",
    "build_report",
    "reconcile",
]
