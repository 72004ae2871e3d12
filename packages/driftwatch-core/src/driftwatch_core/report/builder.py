"""Turns a lazy stream of divergent keys into a bounded report."""

from __future__ import annotations

import dataclasses
import logging
import time
from collections.abc import AsyncIterator, Callable, Iterable
from typing import TYPE_CHECKING

from driftwatch_core.fetch.local import LocalNodeFetcher
from driftwatch_core.fetch.protocol import TreeManifest, ensure_comparable
from driftwatch_core.mst.differ import AsyncMerkleDiffer, MerkleDiffer
from driftwatch_core.mst.hashing import from_hex, to_hex
from driftwatch_core.mst.models import DiffStats, DivergentKey, FetchFailure
from driftwatch_core.report.models import (
    ReconciliationReport,
    ReportEntry,
    ReportLimits,
    UnverifiedRange,
    Verdict,
    _zero_counts,
)

if TYPE_CHECKING:
    from driftwatch_core.fetch.interfaces import AsyncNodeFetcher
    from driftwatch_core.mst.tree import MerkleSearchTree

logger = logging.getLogger(__name__)


class ReportBuilder:
    """Accumulates divergences under ReportLimits.

    ``add`` returns False once the walk should stop. Counts keep growing
    after ``max_entries`` is reached; only the entry list is capped.
    """

    def __init__(
        self,
        left_root: bytes,
        right_root: bytes,
        limits: ReportLimits | None = None,
        ruleset: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.limits = limits or ReportLimits()
        self._left_root = left_root
        self._right_root = right_root
        self._ruleset = ruleset
        self._clock = clock
        self._started = clock()
        self._counts = _zero_counts()
        self._entries: list[ReportEntry] = []
        self._unverified: list[UnverifiedRange] = []
        self._error: str | None = None
        self._stopped = False

    @property
    def total(self) -> int:
        return sum(self._counts.values())

    def add(self, item: DivergentKey) -> bool:
        self._counts[item.kind] += 1
        if self.limits.max_entries is None or len(self._entries) < self.limits.max_entries:
            self._entries.append(
                ReportEntry(
                    key=item.key,
                    category=item.kind,
                    left=to_hex(item.left) if item.left is not None else None,
                    right=to_hex(item.right) if item.right is not None else None,
                )
            )
        if self.limits.max_divergences is not None and self.total >= self.limits.max_divergences:
            logger.info("Report stopped after %d divergences", self.total)
            self._stopped = True
        else:
            self.out_of_time()
        return not self._stopped

    def out_of_time(self) -> bool:
        """True once the time budget is spent (or the report already stopped).

        Diff drivers call this between fetches, so a long walk that finds
        little still stops on time.
        """
        if self._stopped or self.limits.time_budget is None:
            return self._stopped
        if self._clock() - self._started >= self.limits.time_budget:
            logger.info("Report stopped after %.1fs time budget", self.limits.time_budget)
            self._stopped = True
        return self._stopped

    def consume(self, divergences: Iterable[DivergentKey]) -> None:
        """Add items until a limit stops the walk or a FetchFailure ends it."""
        iterator = iter(divergences)
        try:
            for item in iterator:
                if not self.add(item):
                    break
        except FetchFailure as e:
            self.fail(e)
        finally:
            close = getattr(iterator, "close", None)
            if close is not None:
                close()

    async def aconsume(self, divergences: AsyncIterator[DivergentKey]) -> None:
        try:
            async for item in divergences:
                if not self.add(item):
                    break
        except FetchFailure as e:
            self.fail(e)
        finally:
            aclose = getattr(divergences, "aclose", None)
            if aclose is not None:
                await aclose()

    def fail(self, error: FetchFailure) -> None:
        logger.warning("Diff could not finish: %s", error)
        rng = error.key_range
        self._unverified.append(
            UnverifiedRange(
                side=error.side,
                low=rng.low if rng else None,
                high=rng.high if rng else None,
                reason=str(error),
                timed_out=error.timed_out,
            )
        )
        self._error = str(error)

    def finish(self, stats: DiffStats | None = None) -> ReconciliationReport:
        complete = not self._stopped and self._error is None
        if self.total:
            verdict = Verdict.divergent
        elif complete:
            verdict = Verdict.identical
        else:
            verdict = Verdict.unverified
        stat_values = {}
        if stats is not None:
            stat_values = {k: v for k, v in dataclasses.asdict(stats).items() if isinstance(v, int)}
        return ReconciliationReport(
            left_root=to_hex(self._left_root),
            right_root=to_hex(self._right_root),
            ruleset=self._ruleset,
            verdict=verdict,
            complete=complete,
            truncated=self._stopped or len(self._entries) < self.total,
            counts=self._counts,
            entries=self._entries,
            unverified=self._unverified,
            error=self._error,
            stats=stat_values,
        )


def build_report(
    divergences: Iterable[DivergentKey],
    left_root: bytes,
    right_root: bytes,
    limits: ReportLimits | None = None,
    ruleset: str | None = None,
    stats: DiffStats | None = None,
) -> ReconciliationReport:
    """Consume *divergences* lazily, stopping early when a limit is hit."""
    builder = ReportBuilder(left_root, right_root, limits, ruleset)
    builder.consume(divergences)
    return builder.finish(stats)


async def abuild_report(
    divergences: AsyncIterator[DivergentKey],
    left_root: bytes,
    right_root: bytes,
    limits: ReportLimits | None = None,
    ruleset: str | None = None,
    stats: DiffStats | None = None,
) -> ReconciliationReport:
    """Async counterpart of build_report."""
    builder = ReportBuilder(left_root, right_root, limits, ruleset)
    await builder.aconsume(divergences)
    return builder.finish(stats)


def reconcile(
    left: MerkleSearchTree,
    right: MerkleSearchTree,
    limits: ReportLimits | None = None,
) -> ReconciliationReport:
    """Diff two local trees and report. Raises RulesetMismatch on skewed rulesets."""
    ensure_comparable(left.manifest(), right.manifest())
    builder = ReportBuilder(left.root_hash, right.root_hash, limits, ruleset=left.ruleset)
    differ = MerkleDiffer(LocalNodeFetcher(left.store), LocalNodeFetcher(right.store))
    builder.consume(differ.diff(left.root_hash, right.root_hash, should_stop=builder.out_of_time))
    return builder.finish(differ.stats)


async def areconcile(
    left_manifest: TreeManifest,
    left_fetcher: AsyncNodeFetcher,
    right_manifest: TreeManifest,
    right_fetcher: AsyncNodeFetcher,
    limits: ReportLimits | None = None,
    fetch_timeout: float | None = 10.0,
    diff_timeout: float | None = None,
) -> ReconciliationReport:
    """Diff two trees reachable through async fetchers (e.g. a local tree and a peer)."""
    ensure_comparable(left_manifest, right_manifest)
    left_root = from_hex(left_manifest.root_hash)
    right_root = from_hex(right_manifest.root_hash)
    builder = ReportBuilder(left_root, right_root, limits, ruleset=left_manifest.ruleset)
    differ = AsyncMerkleDiffer(
        left_fetcher, right_fetcher, fetch_timeout=fetch_timeout, diff_timeout=diff_timeout
    )
    await builder.aconsume(differ.diff(left_root, right_root, should_stop=builder.out_of_time))
    return builder.finish(differ.stats)
