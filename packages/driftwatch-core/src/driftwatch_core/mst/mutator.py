"""Point edits on an immutable Merkle Search Tree version.

An edit never touches nodes in place. The height-1 node holding the key is
re-chunked together with as many right-hand neighbours as needed to reach a
group boundary again; the resulting nodes are spliced into their parents,
which are re-chunked the same way, up to the root. Everything left of the
edit and right of the widened window is reused as is.

The result is always the tree the builder would produce for the new leaf
set, whatever the edit history.
"""

from __future__ import annotations

import logging
from bisect import bisect_left
from dataclasses import dataclass
from enum import Enum

from driftwatch_core.config.models import TreeConfig
from driftwatch_core.mst.builder import boundary_level, build_levels, build_nodes, check_key, chunk
from driftwatch_core.mst.hashing import EMPTY_ROOT_HASH
from driftwatch_core.mst.models import KeyExistsError, KeyNotFoundError, Leaf, Node
from driftwatch_core.mst.store import NodeStore

logger = logging.getLogger(__name__)


class Op(str, Enum):
    insert = "insert"
    update = "update"
    upsert = "upsert"
    delete = "delete"


@dataclass(frozen=True)
class Change:
    """One edit in a batch. ``fingerprint`` is ignored for deletes."""

    op: Op
    key: int
    fingerprint: bytes | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "op", Op(self.op))
        if self.op is not Op.delete and self.fingerprint is None:
            raise ValueError(f"{self.op.value} of key {self.key} needs a fingerprint")

    @property
    def leaf(self) -> Leaf:
        assert self.fingerprint is not None
        return Leaf(self.key, self.fingerprint)


@dataclass(frozen=True)
class _Frame:
    node: Node
    index: int  # position within the parent's entries


def _child_index(node: Node, key: int) -> int:
    """First child whose range can hold *key*, or the last child."""
    idx = bisect_left(node.entries, key, key=lambda ref: ref.max_key)
    return min(idx, len(node.entries) - 1)


def _descend(store: NodeStore, root: Node, key: int) -> list[_Frame]:
    """Path of frames indexed by height, from the root down to height 1."""
    path: list[_Frame] = [None] * (root.height + 1)  # type: ignore[list-item]
    path[root.height] = _Frame(root, 0)
    node = root
    for h in range(root.height, 1, -1):
        idx = _child_index(node, key)
        node = store.get(node.entries[idx].hash)
        path[h - 1] = _Frame(node, idx)
    return path


def _advance(path: list[_Frame], height: int, store: NodeStore) -> bool:
    """Move ``path[height]`` to the next node at that height, if any."""
    if height >= len(path) - 1:
        return False
    parent = path[height + 1].node
    idx = path[height].index + 1
    if idx >= len(parent.entries):
        if not _advance(path, height + 1, store):
            return False
        parent = path[height + 1].node
        idx = 0
    path[height] = _Frame(store.get(parent.entries[idx].hash), idx)
    return True


def _spans_level(left: list[_Frame], right: list[_Frame], height: int) -> bool:
    """True when left..right covers every node at *height*."""
    for h in range(height, len(left) - 1):
        if left[h].index != 0:
            return False
        if right[h].index != len(right[h + 1].node.entries) - 1:
            return False
    return True


def _collapse(root_hash: bytes, store: NodeStore, created: dict[bytes, Node]) -> bytes:
    """Descend through single-child roots.

    A delete that empties the rightmost window can leave one node at a
    height; the root is then the lowest such node, as the builder makes it.
    """
    while root_hash != EMPTY_ROOT_HASH:
        node = created.get(root_hash) or store.get(root_hash)
        if node.height == 1 or len(node.entries) > 1:
            break
        root_hash = node.entries[0].hash
    return root_hash


def apply_change(
    root_hash: bytes,
    store: NodeStore,
    params: TreeConfig,
    change: Change,
) -> tuple[bytes, dict[bytes, Node]]:
    """Apply *change* to the version rooted at *root_hash*.

    Returns the new root hash and the nodes created for it. Nothing is
    written to *store*; on error the caller's version is untouched.
    """
    check_key(change.key, params)
    if root_hash == EMPTY_ROOT_HASH:
        if change.op in (Op.update, Op.delete):
            raise KeyNotFoundError(change.key)
        return build_nodes([change.leaf], params)

    root = store.get(root_hash)
    left = _descend(store, root, change.key)
    right = list(left)

    leaves: list = list(left[1].node.entries)
    i = bisect_left(leaves, change.key, key=lambda leaf: leaf.key)
    found = i < len(leaves) and leaves[i].key == change.key

    if change.op is Op.insert and found:
        raise KeyExistsError(change.key)
    if change.op in (Op.update, Op.delete) and not found:
        raise KeyNotFoundError(change.key)

    if change.op is Op.delete:
        del leaves[i]
    elif found:
        if leaves[i].fingerprint == change.fingerprint:
            return root_hash, {}
        leaves[i] = change.leaf
    else:
        leaves.insert(i, change.leaf)

    created: dict[bytes, Node] = {}
    items: list = leaves
    height = 1
    while True:
        # Widen right until the window ends on a group boundary again.
        while (not items or boundary_level(items[-1], params) < height) and _advance(
            right, height, store
        ):
            items.extend(right[height].node.entries)

        nodes = chunk(items, height, params)
        created.update((n.hash, n) for n in nodes)

        if _spans_level(left, right, height):
            new_root = _collapse(build_levels(nodes, height, params, created), store, created)
            logger.debug(
                "%s key=%d: %d new nodes, root %s",
                change.op.value,
                change.key,
                len(created),
                new_root.hex()[:16],
            )
            return new_root, created

        prefix = left[height + 1].node.entries[: left[height].index]
        suffix = right[height + 1].node.entries[right[height].index + 1 :]
        items = [*prefix, *(n.to_ref() for n in nodes), *suffix]
        height += 1
