"""Lockstep diff of two Merkle Search Trees.

The walk itself is a generator that never performs I/O: it yields a
``FetchRequest`` whenever it needs node contents and receives the fetched
nodes back through ``send()``, and it yields ``DivergentKey`` values as it
confirms them. ``MerkleDiffer`` drives it with synchronous fetchers,
``AsyncMerkleDiffer`` with coroutine fetchers (timeouts, concurrent fetch of
both sides). Either way, subtree pairs with equal hashes are skipped with a
single comparison, so work grows with the size of the difference rather than
the size of the trees.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator, Callable, Generator, Iterator
from dataclasses import dataclass
from typing import TYPE_CHECKING

from driftwatch_core.mst.hashing import EMPTY_ROOT_HASH
from driftwatch_core.mst.models import (
    ChildRef,
    DiffStats,
    DivergenceKind,
    DivergentKey,
    FetchFailure,
    KeyRange,
    Leaf,
    Node,
)

if TYPE_CHECKING:
    from driftwatch_core.fetch.interfaces import AsyncNodeFetcher, NodeFetcher

logger = logging.getLogger(__name__)

LEFT = "left"
RIGHT = "right"


@dataclass(frozen=True)
class Want:
    """A node the walk needs, and the parent's summary of it (None for roots)."""

    side: str
    hash: bytes
    ref: ChildRef | None = None

    @property
    def key_range(self) -> KeyRange | None:
        return None if self.ref is None else KeyRange(self.ref.min_key, self.ref.max_key)


@dataclass(frozen=True)
class FetchRequest:
    wants: tuple[Want, ...]


Step = FetchRequest | DivergentKey
Walk = Generator[Step, "list[Node] | None", None]


def _want(side: str, ref: ChildRef) -> Want:
    return Want(side, ref.hash, ref)


def _one_sided(item: Leaf, side: str) -> DivergentKey:
    if side == LEFT:
        return DivergentKey(item.key, DivergenceKind.missing_right, left=item.fingerprint)
    return DivergentKey(item.key, DivergenceKind.missing_left, right=item.fingerprint)


def merge_walk(left_root: bytes, right_root: bytes, stats: DiffStats) -> Walk:
    """Yield fetch requests and divergences in ascending key order."""
    stats.comparisons += 1
    if left_root == right_root:
        stats.pruned += 1
        return

    fronts: dict[str, deque] = {LEFT: deque(), RIGHT: deque()}
    roots = [Want(side, h) for side, h in ((LEFT, left_root), (RIGHT, right_root)) if h != EMPTY_ROOT_HASH]
    if roots:
        nodes = yield FetchRequest(tuple(roots))
        for want, node in zip(roots, nodes):
            fronts[want.side].extend(node.entries)

    left, right = fronts[LEFT], fronts[RIGHT]

    def expand(*sides: str) -> Walk:
        wants = tuple(_want(side, fronts[side].popleft()) for side in sides)
        fetched = yield FetchRequest(wants)
        for want, node in zip(wants, fetched):
            fronts[want.side].extendleft(reversed(node.entries))

    while left and right:
        a, b = left[0], right[0]
        stats.comparisons += 1

        if isinstance(a, ChildRef) and isinstance(b, ChildRef) and a.hash == b.hash:
            left.popleft()
            right.popleft()
            stats.pruned += 1
            continue

        # Disjoint ranges: the lower item has no counterpart on the other side.
        # A ChildRef's range is only a claim until its node is fetched and
        # checked, so a leaf is reported one-sided only against another leaf.
        if a.max_key < b.min_key:
            if isinstance(a, ChildRef):
                yield from expand(LEFT)
            elif isinstance(b, ChildRef):
                yield from expand(RIGHT)
            else:
                yield _one_sided(left.popleft(), LEFT)
            continue
        if b.max_key < a.min_key:
            if isinstance(b, ChildRef):
                yield from expand(RIGHT)
            elif isinstance(a, ChildRef):
                yield from expand(LEFT)
            else:
                yield _one_sided(right.popleft(), RIGHT)
            continue

        if isinstance(a, Leaf) and isinstance(b, Leaf):
            # Overlapping single-key ranges: same key.
            left.popleft()
            right.popleft()
            if a.fingerprint != b.fingerprint:
                yield DivergentKey(
                    a.key, DivergenceKind.hash_mismatch, left=a.fingerprint, right=b.fingerprint
                )
        elif isinstance(a, Leaf):
            yield from expand(RIGHT)
        elif isinstance(b, Leaf):
            yield from expand(LEFT)
        elif a.height > b.height:
            yield from expand(LEFT)
        elif b.height > a.height:
            yield from expand(RIGHT)
        else:
            yield from expand(LEFT, RIGHT)

    for side, front in ((LEFT, left), (RIGHT, right)):
        while front:
            if isinstance(front[0], Leaf):
                yield _one_sided(front.popleft(), side)
            else:
                yield from expand(side)


def _summary_error(want: Want, node: Node) -> str | None:
    """Why *node* does not match what its parent claimed about it, if it doesn't.

    Node hashes above height 1 cover only child hashes, so the ranges and
    counts a parent advertises are checked here, before the walk relies on
    them.
    """
    if node.hash != want.hash:
        return f"peer returned node {node.hash.hex()[:16]} instead"
    for prev, nxt in zip(node.entries, node.entries[1:]):
        if prev.max_key >= nxt.min_key:
            return f"entries out of key order at {prev.max_key}..{nxt.min_key}"
    ref = want.ref
    if ref is None:
        return None
    claimed = (ref.height, ref.min_key, ref.max_key, ref.tail_level, ref.leaf_count)
    actual = (node.height, node.min_key, node.max_key, node.tail_level, node.leaf_count)
    if claimed != actual:
        return f"parent summary {claimed} does not match node {actual}"
    return None


def _verified(want: Want, node: Node) -> Node:
    error = _summary_error(want, node)
    if error is not None:
        raise FetchFailure(want.side, want.hash, want.key_range, cause=ValueError(error))
    return node


class MerkleDiffer:
    """Diffs two trees through synchronous node fetchers.

    Each call to ``diff`` starts a fresh walk; the returned iterator is lazy
    and may be abandoned at any point.
    """

    def __init__(self, left: NodeFetcher, right: NodeFetcher) -> None:
        self._fetchers = {LEFT: left, RIGHT: right}
        self.stats = DiffStats()

    def _fetch(self, want: Want) -> Node:
        try:
            node = self._fetchers[want.side].fetch(want.hash)
        except FetchFailure:
            raise
        except Exception as e:
            raise FetchFailure(want.side, want.hash, want.key_range, cause=e) from e
        self.stats.fetches += 1
        self.stats.fetched_by_side[want.side] += 1
        return _verified(want, node)

    def diff(
        self,
        left_root: bytes,
        right_root: bytes,
        should_stop: Callable[[], bool] | None = None,
    ) -> Iterator[DivergentKey]:
        """Lazily yield divergences. *should_stop* is polled before each fetch."""
        self.stats = DiffStats()
        return self._drive(merge_walk(left_root, right_root, self.stats), should_stop)

    def _drive(self, walk: Walk, should_stop: Callable[[], bool] | None) -> Iterator[DivergentKey]:
        reply: list[Node] | None = None
        while True:
            try:
                step = walk.send(reply)
            except StopIteration:
                break
            if isinstance(step, FetchRequest):
                if should_stop is not None and should_stop():
                    walk.close()
                    logger.debug("Diff stopped by caller after %d fetches", self.stats.fetches)
                    return
                reply = [self._fetch(want) for want in step.wants]
            else:
                reply = None
                self.stats.emitted += 1
                yield step
        logger.debug(
            "Diff done: %d divergent, %d fetches, %d comparisons, %d pruned",
            self.stats.emitted,
            self.stats.fetches,
            self.stats.comparisons,
            self.stats.pruned,
        )


class AsyncMerkleDiffer:
    """Diffs two trees through coroutine fetchers, typically remote peers.

    ``fetch_timeout`` bounds each fetch and ``diff_timeout`` the time spent
    fetching over the whole walk; either expiring raises ``FetchFailure``
    with ``timed_out`` set. Closing the iterator (or cancelling the task
    consuming it) abandons the walk; both trees are only read.
    """

    def __init__(
        self,
        left: AsyncNodeFetcher,
        right: AsyncNodeFetcher,
        fetch_timeout: float | None = 10.0,
        diff_timeout: float | None = None,
    ) -> None:
        self._fetchers = {LEFT: left, RIGHT: right}
        self._fetch_timeout = fetch_timeout
        self._diff_timeout = diff_timeout
        self.stats = DiffStats()

    async def _fetch(self, want: Want, deadline: float | None) -> Node:
        timeout = self._fetch_timeout
        if deadline is not None:
            remaining = deadline - asyncio.get_running_loop().time()
            if remaining <= 0:
                raise FetchFailure(want.side, want.hash, want.key_range, timed_out=True)
            timeout = remaining if timeout is None else min(timeout, remaining)
        try:
            node = await asyncio.wait_for(self._fetchers[want.side].fetch(want.hash), timeout)
        except TimeoutError as e:
            raise FetchFailure(want.side, want.hash, want.key_range, cause=e, timed_out=True) from e
        except FetchFailure:
            raise
        except Exception as e:
            raise FetchFailure(want.side, want.hash, want.key_range, cause=e) from e
        self.stats.fetches += 1
        self.stats.fetched_by_side[want.side] += 1
        return _verified(want, node)

    async def _fetch_all(self, wants: tuple[Want, ...], deadline: float | None) -> list[Node]:
        results = await asyncio.gather(
            *(self._fetch(want, deadline) for want in wants), return_exceptions=True
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return list(results)

    def diff(
        self,
        left_root: bytes,
        right_root: bytes,
        should_stop: Callable[[], bool] | None = None,
    ) -> AsyncIterator[DivergentKey]:
        self.stats = DiffStats()
        return self._drive(merge_walk(left_root, right_root, self.stats), should_stop)

    async def _drive(
        self, walk: Walk, should_stop: Callable[[], bool] | None
    ) -> AsyncIterator[DivergentKey]:
        deadline = None
        if self._diff_timeout is not None:
            deadline = asyncio.get_running_loop().time() + self._diff_timeout
        reply: list[Node] | None = None
        while True:
            try:
                step = walk.send(reply)
            except StopIteration:
                break
            if isinstance(step, FetchRequest):
                if should_stop is not None and should_stop():
                    walk.close()
                    logger.debug("Async diff stopped by caller after %d fetches", self.stats.fetches)
                    return
                reply = await self._fetch_all(step.wants, deadline)
            else:
                reply = None
                self.stats.emitted += 1
                yield step
        logger.debug(
            "Async diff done: %d divergent, %d fetches, %d pruned",
            self.stats.emitted,
            self.stats.fetches,
            self.stats.pruned,
        )
