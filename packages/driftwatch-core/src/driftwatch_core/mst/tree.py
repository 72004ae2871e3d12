"""Immutable Merkle Search Tree versions over a shared node store."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Iterator
from pathlib import Path

from driftwatch_core.config.models import TreeConfig
from driftwatch_core.mst.builder import build_nodes
from driftwatch_core.mst.differ import MerkleDiffer
from driftwatch_core.mst.hashing import EMPTY_ROOT_HASH, from_hex, to_hex
from driftwatch_core.mst.models import CorruptTreeError, DivergentKey, Leaf, Node
from driftwatch_core.mst.mutator import Change, Op, apply_change
from driftwatch_core.mst.store import NodeStore

logger = logging.getLogger(__name__)


class MerkleSearchTree:
    """One version of a tree: a root hash into a node store.

    Mutating methods return a new version and leave this one readable.
    Versions derived from each other share their store and every subtree
    the edit did not touch.
    """

    version: int = 1
    algorithm: str = "sha256"

    def __init__(
        self,
        root_hash: bytes = EMPTY_ROOT_HASH,
        store: NodeStore | None = None,
        params: TreeConfig | None = None,
        ruleset: str | None = None,
    ) -> None:
        self.root_hash = root_hash
        self.store = store if store is not None else NodeStore()
        self.params = params or TreeConfig()
        self.ruleset = ruleset
        if root_hash != EMPTY_ROOT_HASH and root_hash not in self.store:
            raise CorruptTreeError(f"root {to_hex(root_hash)} is not in the node store")

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def empty(
        cls,
        params: TreeConfig | None = None,
        ruleset: str | None = None,
        store: NodeStore | None = None,
    ) -> MerkleSearchTree:
        return cls(EMPTY_ROOT_HASH, store, params, ruleset)

    @classmethod
    def build(
        cls,
        leaves: Iterable[Leaf],
        params: TreeConfig | None = None,
        ruleset: str | None = None,
        store: NodeStore | None = None,
    ) -> MerkleSearchTree:
        """Build from an unordered leaf collection. Duplicate keys raise DuplicateKeyError."""
        params = params or TreeConfig()
        store = store if store is not None else NodeStore()
        root_hash, nodes = build_nodes(leaves, params)
        store.put_many(nodes.values())
        return cls(root_hash, store, params, ruleset)

    def _derive(self, root_hash: bytes) -> MerkleSearchTree:
        return MerkleSearchTree(root_hash, self.store, self.params, self.ruleset)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    @property
    def is_empty(self) -> bool:
        return self.root_hash == EMPTY_ROOT_HASH

    @property
    def root(self) -> Node | None:
        return None if self.is_empty else self.store.get(self.root_hash)

    @property
    def height(self) -> int:
        root = self.root
        return root.height if root else 0

    def __len__(self) -> int:
        root = self.root
        return root.leaf_count if root else 0

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, MerkleSearchTree):
            return NotImplemented
        return self.root_hash == other.root_hash

    def __hash__(self) -> int:
        return hash(self.root_hash)

    def __repr__(self) -> str:
        return f"MerkleSearchTree(root={to_hex(self.root_hash)[:16]}, leaves={len(self)})"

    def get(self, key: int) -> Leaf | None:
        node = self.root
        while node is not None and node.height > 1:
            child = next((ref for ref in node.entries if key <= ref.max_key), None)
            if child is None or key < child.min_key:
                return None
            node = self.store.get(child.hash)
        if node is None:
            return None
        return next((leaf for leaf in node.entries if leaf.key == key), None)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, int) and self.get(key) is not None

    def nodes(self) -> Iterator[Node]:
        """Every node of this version, depth first in key order."""
        if self.is_empty:
            return
        stack = [self.root_hash]
        while stack:
            node = self.store.get(stack.pop())
            yield node
            if node.height > 1:
                stack.extend(ref.hash for ref in reversed(node.entries))

    def leaves(self) -> Iterator[Leaf]:
        for node in self.nodes():
            if node.height == 1:
                yield from node.entries

    def manifest(self):
        """TreeManifest advertised to peers for this version."""
        from driftwatch_core.fetch.protocol import TreeManifest

        return TreeManifest.from_tree(self)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def apply(self, changes: Iterable[Change]) -> MerkleSearchTree:
        """Apply *changes* in order and return the resulting version.

        If any change fails, the exception propagates and no node of the
        partial batch reaches the store.
        """
        staged = NodeStore()
        root_hash = self.root_hash
        for change in changes:
            root_hash, created = apply_change(root_hash, _Overlay(self.store, staged), self.params, change)
            staged.put_many(created.values())
        if root_hash == self.root_hash:
            return self
        self.store.put_many(_staged_path(root_hash, staged))
        return self._derive(root_hash)

    def insert(self, leaf: Leaf) -> MerkleSearchTree:
        return self.apply([Change(Op.insert, leaf.key, leaf.fingerprint)])

    def update(self, leaf: Leaf) -> MerkleSearchTree:
        return self.apply([Change(Op.update, leaf.key, leaf.fingerprint)])

    def upsert(self, leaf: Leaf) -> MerkleSearchTree:
        return self.apply([Change(Op.upsert, leaf.key, leaf.fingerprint)])

    def delete(self, key: int) -> MerkleSearchTree:
        return self.apply([Change(Op.delete, key)])

    # ------------------------------------------------------------------
    # Diff
    # ------------------------------------------------------------------

    def diff(self, other: MerkleSearchTree) -> Iterator[DivergentKey]:
        """Divergent keys between *self* (left) and *other* (right), in key order."""
        from driftwatch_core.fetch.local import LocalNodeFetcher

        differ = MerkleDiffer(LocalNodeFetcher(self.store), LocalNodeFetcher(other.store))
        return differ.diff(self.root_hash, other.root_hash)

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_json(self) -> str:
        """Serialize leaves plus the parameters needed to rebuild this exact root."""
        data = {
            "version": self.version,
            "algorithm": self.algorithm,
            "key_width": self.params.key_width,
            "fanout_bits": self.params.fanout_bits,
            "ruleset": self.ruleset,
            "root_hash": to_hex(self.root_hash),
            "leaf_count": len(self),
            "leaves": [[leaf.key, to_hex(leaf.fingerprint)] for leaf in self.leaves()],
        }
        return json.dumps(data, indent=2)

    @classmethod
    def from_json(cls, data: str, store: NodeStore | None = None) -> MerkleSearchTree:
        """Rebuild a tree and check it reproduces the recorded root hash."""
        try:
            obj = json.loads(data)
        except json.JSONDecodeError as e:
            raise CorruptTreeError(f"tree document is not JSON: {e}") from e
        if obj.get("version") != cls.version or obj.get("algorithm") != cls.algorithm:
            raise CorruptTreeError(
                f"unsupported tree format {obj.get('version')!r}/{obj.get('algorithm')!r}"
            )
        try:
            params = TreeConfig(key_width=obj["key_width"], fanout_bits=obj["fanout_bits"])
            leaves = [Leaf(int(key), from_hex(fp)) for key, fp in obj["leaves"]]
            expected = from_hex(obj["root_hash"])
        except (KeyError, TypeError, ValueError) as e:
            raise CorruptTreeError(f"malformed tree document: {e}") from e

        tree = cls.build(leaves, params=params, ruleset=obj.get("ruleset"), store=store)
        if tree.root_hash != expected:
            raise CorruptTreeError(
                f"rebuilt root {to_hex(tree.root_hash)} does not match recorded {to_hex(expected)}"
            )
        return tree

    def save(self, path: Path) -> None:
        """Write the tree to a JSON file."""
        path.write_text(self.to_json())

    @classmethod
    def load(cls, path: Path, store: NodeStore | None = None) -> MerkleSearchTree:
        """Read a tree from a JSON file."""
        tree = cls.from_json(path.read_text(), store=store)
        logger.debug("Loaded tree %s (%d leaves) from %s", to_hex(tree.root_hash)[:12], len(tree), path)
        return tree


def _staged_path(root_hash: bytes, staged: NodeStore) -> list[Node]:
    """Staged nodes the new root still uses.

    The walk stops at the first hash not in *staged*: that subtree is
    already committed, so the cost follows the edited paths, not the tree.
    Staged nodes superseded later in the batch are left out.
    """
    keep: list[Node] = []
    seen: set[bytes] = set()
    stack = [root_hash] if root_hash in staged else []
    while stack:
        h = stack.pop()
        if h in seen:
            continue
        seen.add(h)
        node = staged.get(h)
        keep.append(node)
        if node.height > 1:
            stack.extend(ref.hash for ref in node.entries if ref.hash in staged)
    return keep


class _Overlay:
    """Read-through view: staged nodes first, then the base store.

    Writes go to the staging store only.
    """

    def __init__(self, base: NodeStore, staged: NodeStore) -> None:
        self._base = base
        self._staged = staged

    def get(self, node_hash: bytes) -> Node:
        if node_hash in self._staged:
            return self._staged.get(node_hash)
        return self._base.get(node_hash)

    def __contains__(self, node_hash: object) -> bool:
        return node_hash in self._staged or node_hash in self._base

    def put(self, node: Node) -> bytes:
        return self._staged.put(node)

    def put_many(self, nodes: Iterable[Node]) -> None:
        self._staged.put_many(nodes)
