"""Driftwatch Core - Merkle Search Tree engine for cross-service drift detection."""

from driftwatch_core.config import DriftwatchConfig, TreeConfig
from driftwatch_core.fetch import HttpNodeFetcher, LocalNodeFetcher, NodeFetchHandler, TreeManifest
from driftwatch_core.fingerprint import LeafSet, Ruleset, RulesetContract
from driftwatch_core.mst import (
    AsyncMerkleDiffer,
    Change,
    DivergenceKind,
    DivergentKey,
    Leaf,
    MerkleDiffer,
    MerkleSearchTree,
    NodeStore,
    Op,
    build_tree,
)
from driftwatch_core.report import ReconciliationReport, ReportLimits, Verdict, reconcile

__version__ = "0.1.0"

__all__ = [
    "AsyncMerkleDiffer",
    "Change",
    "DivergenceKind",
    "DivergentKey",
    "DriftwatchConfig",
    "HttpNodeFetcher",
    "Leaf",
    "LeafSet",
    "LocalNodeFetcher",
    "MerkleDiffer",
    "MerkleSearchTree",
    "NodeFetchHandler",
    "NodeStore",
    "Op",
    "ReconciliationReport",
    "ReportLimits",
    "Ruleset",
    "RulesetContract",
    "TreeConfig",
    "TreeManifest",
    "Verdict",
    "build_tree",
    "reconcile",
]
