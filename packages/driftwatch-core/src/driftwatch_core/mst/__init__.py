"""Merkle Search Tree engine: build, mutate and diff content-addressed trees."""

from driftwatch_core.mst.differ import AsyncMerkleDiffer, MerkleDiffer
from driftwatch_core.mst.hashing import EMPTY_ROOT_HASH, from_hex, leaf_level, to_hex
from driftwatch_core.mst.models import (
    ChildRef,
    CorruptTreeError,
    DiffStats,
    DivergenceKind,
    DivergentKey,
    DriftError,
    DuplicateKeyError,
    FetchFailure,
    KeyExistsError,
    KeyNotFoundError,
    KeyRange,
    Leaf,
    MissingNodeError,
    Node,
    NondeterministicFingerprintError,
    RulesetMismatch,
)
from driftwatch_core.mst.mutator import Change, Op
from driftwatch_core.mst.store import NodeStore
from driftwatch_core.mst.tree import MerkleSearchTree


def build_tree(*args, **kwargs) -> MerkleSearchTree:
    """Convenience wrapper around MerkleSearchTree.build()."""
    return MerkleSearchTree.build(*args, **kwargs)


__all__ = [
    "AsyncMerkleDiffer",
    "Change",
    "ChildRef",
    "CorruptTreeError",
    "DiffStats",
    "DivergenceKind",
    "DivergentKey",
    "DriftError",
    "DuplicateKeyError",
    "EMPTY_ROOT_HASH",
    "FetchFailure",
    "KeyExistsError",
    "KeyNotFoundError",
    "KeyRange",
    "Leaf",
    "MerkleDiffer",
    "MerkleSearchTree",
    "MissingNodeError",
    "Node",
    "NodeStore",
    "NondeterministicFingerprintError",
    "Op",
    "RulesetMismatch",
    "build_tree",
    "from_hex",
    "leaf_level",
    "to_hex",
]
