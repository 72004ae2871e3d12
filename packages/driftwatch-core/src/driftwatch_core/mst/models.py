"""Data models and errors for the Merkle Search Tree subsystem."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from functools import cached_property

from driftwatch_core.mst.hashing import FINGERPRINT_SIZE, node_hash, to_hex


# ── Errors ───────────────────────────────────────────────────────────


class DriftError(Exception):
    """Base class for every error raised by the MST engine."""


class DuplicateKeyError(DriftError, ValueError):
    """The same key appeared twice in builder input."""

    def __init__(self, key: int) -> None:
        self.key = key
        super().__init__(f"Duplicate key in leaf input: {key}")


class KeyNotFoundError(DriftError, KeyError):
    """Update or delete targeted a key the tree does not hold."""

    def __init__(self, key: int) -> None:
        self.key = key
        super().__init__(f"Key not found: {key}")

    def __str__(self) -> str:
        return self.args[0]


class KeyExistsError(DriftError, KeyError):
    """Insert targeted a key the tree already holds (use update instead)."""

    def __init__(self, key: int) -> None:
        self.key = key
        super().__init__(f"Key already exists: {key}")

    def __str__(self) -> str:
        return self.args[0]


class MissingNodeError(DriftError, KeyError):
    """A node referenced by the tree is absent from its store."""

    def __init__(self, node_hash: bytes) -> None:
        self.node_hash = node_hash
        super().__init__(f"Node not in store: {to_hex(node_hash)}")

    def __str__(self) -> str:
        return self.args[0]


class CorruptTreeError(DriftError, ValueError):
    """A persisted tree does not reproduce its recorded root hash."""


class RulesetMismatch(DriftError):
    """Both sides fingerprinted with different canonicalization rulesets.

    Any divergence found across such trees would be an artifact of the
    rules, not of the data, so the comparison is refused.
    """

    def __init__(self, left: str | None, right: str | None) -> None:
        self.left = left
        self.right = right
        super().__init__(f"Ruleset mismatch: left={left!r} right={right!r}")


class NondeterministicFingerprintError(DriftError):
    """A fingerprint contract returned different hashes for the same record."""

    def __init__(self, key: int) -> None:
        self.key = key
        super().__init__(f"Fingerprint for key {key} is not deterministic")


class FetchFailure(DriftError):
    """A node could not be retrieved during a diff.

    Never treated as "subtree equal": the key range below the failed node
    is reported as unverified.
    """

    def __init__(
        self,
        side: str,
        node_hash: bytes,
        key_range: KeyRange | None = None,
        cause: BaseException | None = None,
        timed_out: bool = False,
    ) -> None:
        self.side = side
        self.node_hash = node_hash
        self.key_range = key_range
        self.timed_out = timed_out
        reason = "timed out" if timed_out else f"failed: {cause}"
        super().__init__(f"Fetch of {side} node {to_hex(node_hash)[:16]} {reason}")
        self.__cause__ = cause


# ── Values ───────────────────────────────────────────────────────────


@dataclass(frozen=True, order=True)
class KeyRange:
    """Inclusive key interval."""

    low: int
    high: int

    def __post_init__(self) -> None:
        if self.low > self.high:
            raise ValueError(f"empty key range: {self.low} > {self.high}")

    def __contains__(self, key: int) -> bool:
        return self.low <= key <= self.high


@dataclass(frozen=True)
class Leaf:
    """A key and the fingerprint of the record it identifies.

    Leaves are never mutated; a changed record produces a new Leaf with
    the same key.
    """

    key: int
    fingerprint: bytes

    def __post_init__(self) -> None:
        if self.key < 0:
            raise ValueError(f"key must be non-negative, got {self.key}")
        if len(self.fingerprint) != FINGERPRINT_SIZE:
            raise ValueError(
                f"fingerprint must be {FINGERPRINT_SIZE} bytes, got {len(self.fingerprint)}"
            )

    @property
    def min_key(self) -> int:
        return self.key

    @property
    def max_key(self) -> int:
        return self.key


@dataclass(frozen=True)
class ChildRef:
    """Summary of a child node as seen from its parent."""

    hash: bytes
    height: int
    min_key: int
    max_key: int
    tail_level: int
    leaf_count: int


@dataclass(frozen=True)
class Node:
    """An internal node: ordered leaves (height 1) or child refs (height > 1).

    ``tail_level`` is the level of the last leaf under this node; it decides
    whether the node closes a group one height up.
    """

    height: int
    entries: tuple[Leaf, ...] | tuple[ChildRef, ...]
    tail_level: int = 0

    def __post_init__(self) -> None:
        if self.height < 1:
            raise ValueError(f"node height must be >= 1, got {self.height}")
        if not self.entries:
            raise ValueError("node must have at least one entry")
        expected = Leaf if self.height == 1 else ChildRef
        for entry in self.entries:
            if not isinstance(entry, expected):
                raise ValueError(
                    f"height-{self.height} node cannot hold {type(entry).__name__}"
                )

    @cached_property
    def hash(self) -> bytes:
        return node_hash(self.height, self.entries)

    @property
    def min_key(self) -> int:
        return self.entries[0].min_key

    @property
    def max_key(self) -> int:
        return self.entries[-1].max_key

    @cached_property
    def leaf_count(self) -> int:
        if self.height == 1:
            return len(self.entries)
        return sum(ref.leaf_count for ref in self.entries)

    def to_ref(self) -> ChildRef:
        return ChildRef(
            hash=self.hash,
            height=self.height,
            min_key=self.min_key,
            max_key=self.max_key,
            tail_level=self.tail_level,
            leaf_count=self.leaf_count,
        )


# ── Diff results ─────────────────────────────────────────────────────


class DivergenceKind(str, Enum):
    """How a key differs between the left and right tree."""

    hash_mismatch = "hash_mismatch"
    missing_left = "missing_left"
    missing_right = "missing_right"


@dataclass(frozen=True)
class DivergentKey:
    """One key whose leaf differs between two trees."""

    key: int
    kind: DivergenceKind
    left: bytes | None = None
    right: bytes | None = None


@dataclass
class DiffStats:
    """Counters collected while walking two trees."""

    fetches: int = 0
    comparisons: int = 0
    pruned: int = 0
    emitted: int = 0
    fetched_by_side: dict[str, int] = field(default_factory=lambda: {"left": 0, "right": 0})
