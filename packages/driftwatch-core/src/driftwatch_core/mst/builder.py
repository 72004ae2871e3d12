"""Deterministic construction of a Merkle Search Tree from a leaf set."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from functools import lru_cache

from driftwatch_core.config.models import TreeConfig
from driftwatch_core.mst.hashing import EMPTY_ROOT_HASH, leaf_level
from driftwatch_core.mst.models import ChildRef, DuplicateKeyError, Leaf, Node

logger = logging.getLogger(__name__)


@lru_cache(maxsize=65536)
def _cached_level(key: int, fingerprint: bytes, fanout_bits: int) -> int:
    return leaf_level(key, fingerprint, fanout_bits)


def boundary_level(item: Leaf | ChildRef, params: TreeConfig) -> int:
    """Level at which *item* closes a group: its own level, or its last leaf's."""
    if isinstance(item, Leaf):
        return _cached_level(item.key, item.fingerprint, params.fanout_bits)
    return item.tail_level


def check_key(key: int, params: TreeConfig) -> None:
    if not 0 <= key <= params.max_key:
        raise ValueError(
            f"key {key} outside {params.key_width}-byte key domain [0, {params.max_key}]"
        )


def sort_leaves(leaves: Iterable[Leaf], params: TreeConfig) -> list[Leaf]:
    """Sort by key, rejecting duplicates and out-of-domain keys."""
    ordered = sorted(leaves, key=lambda leaf: leaf.key)
    for i, leaf in enumerate(ordered):
        check_key(leaf.key, params)
        if i and ordered[i - 1].key == leaf.key:
            raise DuplicateKeyError(leaf.key)
    return ordered


def chunk(
    items: Sequence[Leaf] | Sequence[ChildRef],
    height: int,
    params: TreeConfig,
) -> list[Node]:
    """Group consecutive *items* into height-*height* nodes.

    A group closes right after an item whose boundary level is >= height,
    and at the end of the sequence. Because boundary levels come from leaf
    content only, the grouping of a key-ordered sequence never depends on
    how that sequence was produced.
    """
    nodes: list[Node] = []
    start = 0
    for i, item in enumerate(items):
        level = boundary_level(item, params)
        if level >= height:
            nodes.append(Node(height=height, entries=tuple(items[start : i + 1]), tail_level=level))
            start = i + 1
    if start < len(items):
        tail = boundary_level(items[-1], params)
        nodes.append(Node(height=height, entries=tuple(items[start:]), tail_level=tail))
    return nodes


def build_levels(
    nodes: list[Node],
    height: int,
    params: TreeConfig,
    created: dict[bytes, Node],
) -> bytes:
    """Keep chunking *nodes* (all of *height*) upward until one root remains."""
    while len(nodes) > 1:
        height += 1
        nodes = chunk([n.to_ref() for n in nodes], height, params)
        created.update((n.hash, n) for n in nodes)
    return nodes[0].hash if nodes else EMPTY_ROOT_HASH


def build_nodes(
    leaves: Iterable[Leaf],
    params: TreeConfig,
) -> tuple[bytes, dict[bytes, Node]]:
    """Build every node for *leaves*; returns (root_hash, nodes by hash).

    Input order is irrelevant. An empty input yields EMPTY_ROOT_HASH and no
    nodes.
    """
    ordered = sort_leaves(leaves, params)
    created: dict[bytes, Node] = {}
    if not ordered:
        return EMPTY_ROOT_HASH, created

    bottom = chunk(ordered, 1, params)
    created.update((n.hash, n) for n in bottom)
    root_hash = build_levels(bottom, 1, params, created)
    logger.debug(
        "Built MST: %d leaves, %d nodes, root %s",
        len(ordered),
        len(created),
        root_hash.hex()[:16],
    )
    return root_hash, created
