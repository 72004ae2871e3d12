"""Node Fetch Protocol: wire models and the responder side.

A peer exposes two read-only resources over whatever transport carries
them:

- ``GET /manifest``      -> TreeManifest of the snapshot being served
- ``GET /nodes/{hash}``  -> NodeMessage for one node of that snapshot

Decoding recomputes the node hash, so a peer cannot hand back a node that
does not match the hash it was asked for. Child summaries (key ranges,
counts) are not covered by the hash; the differ checks each one against
the child node when it fetches it.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from driftwatch_core.mst.hashing import from_hex, to_hex
from driftwatch_core.mst.models import ChildRef, Leaf, Node, RulesetMismatch

if TYPE_CHECKING:
    from driftwatch_core.mst.tree import MerkleSearchTree

logger = logging.getLogger(__name__)

_HASH_HEX_RE = re.compile(r"[a-f0-9]{64}")


class LeafMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: int = Field(ge=0)
    fingerprint: str


class ChildMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    hash: str
    height: int = Field(ge=1)
    min_key: int = Field(ge=0)
    max_key: int = Field(ge=0)
    tail_level: int = Field(ge=0)
    leaf_count: int = Field(ge=1)


class NodeMessage(BaseModel):
    """One node as sent to a remote differ."""

    hash: str
    height: int = Field(ge=1)
    tail_level: int = Field(ge=0)
    leaves: list[LeafMessage] = Field(default_factory=list)
    children: list[ChildMessage] = Field(default_factory=list)


class TreeManifest(BaseModel):
    """What a peer must know about a tree before diffing against it."""

    model_config = ConfigDict(frozen=True)

    root_hash: str
    ruleset: str | None = None
    key_width: int = 8
    fanout_bits: int = 5
    leaf_count: int = 0
    height: int = 0
    algorithm: str = "sha256"
    version: int = 1

    @classmethod
    def from_tree(cls, tree: MerkleSearchTree) -> TreeManifest:
        return cls(
            root_hash=to_hex(tree.root_hash),
            ruleset=tree.ruleset,
            key_width=tree.params.key_width,
            fanout_bits=tree.params.fanout_bits,
            leaf_count=len(tree),
            height=tree.height,
            algorithm=tree.algorithm,
            version=tree.version,
        )


def encode_node(node: Node) -> NodeMessage:
    if node.height == 1:
        return NodeMessage(
            hash=to_hex(node.hash),
            height=1,
            tail_level=node.tail_level,
            leaves=[LeafMessage(key=l.key, fingerprint=to_hex(l.fingerprint)) for l in node.entries],
        )
    return NodeMessage(
        hash=to_hex(node.hash),
        height=node.height,
        tail_level=node.tail_level,
        children=[
            ChildMessage(
                hash=to_hex(ref.hash),
                height=ref.height,
                min_key=ref.min_key,
                max_key=ref.max_key,
                tail_level=ref.tail_level,
                leaf_count=ref.leaf_count,
            )
            for ref in node.entries
        ],
    )


def decode_node(payload: NodeMessage | dict[str, Any], expected: bytes | None = None) -> Node:
    """Rebuild a Node from its wire form and verify its hash.

    Raises ValueError when the payload is malformed or the recomputed hash
    differs from the advertised one (or from *expected*).
    """
    try:
        msg = payload if isinstance(payload, NodeMessage) else NodeMessage.model_validate(payload)
        if msg.height == 1:
            entries: tuple = tuple(Leaf(l.key, from_hex(l.fingerprint)) for l in msg.leaves)
        else:
            entries = tuple(
                ChildRef(
                    hash=from_hex(c.hash),
                    height=c.height,
                    min_key=c.min_key,
                    max_key=c.max_key,
                    tail_level=c.tail_level,
                    leaf_count=c.leaf_count,
                )
                for c in msg.children
            )
        node = Node(height=msg.height, entries=entries, tail_level=msg.tail_level)
        advertised = from_hex(msg.hash)
    except ValidationError as e:
        raise ValueError(f"malformed node message: {e}") from e

    if node.hash != advertised:
        raise ValueError(f"node hash mismatch: advertised {msg.hash}, computed {to_hex(node.hash)}")
    if expected is not None and node.hash != expected:
        raise ValueError(f"asked for node {to_hex(expected)}, got {msg.hash}")
    return node


def ensure_comparable(left: TreeManifest, right: TreeManifest) -> None:
    """Refuse to diff trees fingerprinted under different rulesets.

    Differing shape parameters still give a correct diff, just without
    subtree pruning, so they only warrant a warning.
    """
    if left.ruleset != right.ruleset:
        raise RulesetMismatch(left.ruleset, right.ruleset)
    if (left.key_width, left.fanout_bits) != (right.key_width, right.fanout_bits):
        logger.warning(
            "Tree parameters differ (left key_width=%d fanout_bits=%d, right key_width=%d fanout_bits=%d); "
            "diff will not prune shared subtrees",
            left.key_width,
            left.fanout_bits,
            right.key_width,
            right.fanout_bits,
        )
    if (left.algorithm, left.version) != (right.algorithm, right.version):
        logger.warning(
            "Tree formats differ (%s v%d vs %s v%d)",
            left.algorithm,
            left.version,
            right.algorithm,
            right.version,
        )


class NodeFetchHandler:
    """Serves one immutable tree snapshot to remote differs.

    Transport-agnostic: ``handle`` maps a method and path to a status code
    and a JSON-ready payload; wiring it into an HTTP server is left to the
    host service.
    """

    def __init__(self, tree: MerkleSearchTree) -> None:
        self._tree = tree
        self._manifest = TreeManifest.from_tree(tree)

    def manifest(self) -> TreeManifest:
        return self._manifest

    def node(self, hash_hex: str) -> NodeMessage | None:
        node_hash = from_hex(hash_hex)
        if node_hash not in self._tree.store:
            return None
        return encode_node(self._tree.store.get(node_hash))

    def handle(self, method: str, path: str) -> tuple[int, dict[str, Any]]:
        if method.upper() != "GET":
            return 405, {"error": f"method {method} not allowed"}
        path = path.rstrip("/")
        if path == "/manifest":
            return 200, self._manifest.model_dump()
        if path.startswith("/nodes/"):
            hash_hex = path.removeprefix("/nodes/").lower()
            if not _HASH_HEX_RE.fullmatch(hash_hex):
                return 400, {"error": f"invalid node hash {hash_hex!r}"}
            msg = self.node(hash_hex)
            if msg is None:
                return 404, {"error": f"node {hash_hex} not found"}
            return 200, msg.model_dump()
        return 404, {"error": f"unknown resource {path}"}
