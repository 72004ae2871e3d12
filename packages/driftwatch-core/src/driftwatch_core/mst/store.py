"""Content-addressed node arena shared by every version of a tree."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Mapping

from driftwatch_core.mst.hashing import EMPTY_ROOT_HASH
from driftwatch_core.mst.models import MissingNodeError, Node

logger = logging.getLogger(__name__)


class NodeStore:
    """Maps node hash -> immutable Node.

    Nodes are only ever added or garbage collected, never replaced, so a
    reader holding an old root keeps seeing the same subtree while a writer
    builds new versions next to it. Identical subtrees across versions are
    stored once.
    """

    def __init__(self, nodes: Mapping[bytes, Node] | None = None) -> None:
        self._nodes: dict[bytes, Node] = dict(nodes or {})

    def get(self, node_hash: bytes) -> Node:
        try:
            return self._nodes[node_hash]
        except KeyError:
            raise MissingNodeError(node_hash) from None

    def put(self, node: Node) -> bytes:
        self._nodes.setdefault(node.hash, node)
        return node.hash

    def put_many(self, nodes: Iterable[Node]) -> None:
        for node in nodes:
            self._nodes.setdefault(node.hash, node)

    def __contains__(self, node_hash: object) -> bool:
        return node_hash in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[bytes]:
        return iter(self._nodes)

    # ------------------------------------------------------------------
    # Garbage collection
    # ------------------------------------------------------------------

    def reachable(self, roots: Iterable[bytes]) -> set[bytes]:
        """Hashes of every node reachable from *roots*."""
        seen: set[bytes] = set()
        stack = [r for r in roots if r != EMPTY_ROOT_HASH]
        while stack:
            h = stack.pop()
            if h in seen:
                continue
            seen.add(h)
            node = self.get(h)
            if node.height > 1:
                stack.extend(ref.hash for ref in node.entries)
        return seen

    def retain(self, roots: Iterable[bytes]) -> int:
        """Drop nodes not reachable from *roots*. Returns how many were removed.

        Only call this once no reader still walks a dropped version.
        """
        live = self.reachable(roots)
        dead = [h for h in self._nodes if h not in live]
        for h in dead:
            del self._nodes[h]
        logger.debug("Node store GC: kept %d, removed %d", len(live), len(dead))
        return len(dead)
