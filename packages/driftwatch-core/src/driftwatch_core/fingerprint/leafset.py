"""Leaf Store: the ordered (key, fingerprint) sequence a tree is built from."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Iterator, Mapping
from pathlib import Path
from typing import Any, Literal

from driftwatch_core.config.models import TreeConfig
from driftwatch_core.fingerprint.contract import FingerprintContract
from driftwatch_core.mst.hashing import from_hex, to_hex
from driftwatch_core.mst.models import DuplicateKeyError, Leaf
from driftwatch_core.mst.store import NodeStore
from driftwatch_core.mst.tree import MerkleSearchTree

logger = logging.getLogger(__name__)

DuplicatePolicy = Literal["error", "last"]


class LeafSet:
    """Key-ordered leaves from one full scan.

    Duplicate keys raise DuplicateKeyError unless ``on_duplicate="last"``,
    in which case the last leaf seen for a key wins.
    """

    def __init__(
        self,
        leaves: Iterable[Leaf] = (),
        ruleset: str | None = None,
        on_duplicate: DuplicatePolicy = "error",
    ) -> None:
        by_key: dict[int, Leaf] = {}
        for leaf in leaves:
            if leaf.key in by_key and on_duplicate == "error":
                raise DuplicateKeyError(leaf.key)
            by_key[leaf.key] = leaf
        self._leaves = [by_key[k] for k in sorted(by_key)]
        self._by_key = by_key
        self.ruleset = ruleset

    @classmethod
    def from_records(
        cls,
        records: Iterable[Mapping[str, Any]],
        contract: FingerprintContract,
        on_duplicate: DuplicatePolicy = "error",
    ) -> LeafSet:
        """Fingerprint *records* through *contract* (a full scan)."""
        return cls(
            (contract.fingerprint(r) for r in records),
            ruleset=contract.ruleset_tag,
            on_duplicate=on_duplicate,
        )

    def __len__(self) -> int:
        return len(self._leaves)

    def __iter__(self) -> Iterator[Leaf]:
        return iter(self._leaves)

    def __contains__(self, key: object) -> bool:
        return key in self._by_key

    def get(self, key: int) -> Leaf | None:
        return self._by_key.get(key)

    def keys(self) -> list[int]:
        return [leaf.key for leaf in self._leaves]

    def to_tree(
        self,
        params: TreeConfig | None = None,
        store: NodeStore | None = None,
    ) -> MerkleSearchTree:
        return MerkleSearchTree.build(self._leaves, params=params, ruleset=self.ruleset, store=store)

    # ------------------------------------------------------------------
    # JSON Lines
    # ------------------------------------------------------------------

    def save_jsonl(self, path: Path) -> None:
        """One ``{"key": int, "fingerprint": hex}`` object per line.

        A leading ``{"ruleset": tag}`` line is written when a tag is known.
        """
        with open(path, "w") as f:
            if self.ruleset is not None:
                f.write(json.dumps({"ruleset": self.ruleset}) + "\n")
            for leaf in self._leaves:
                f.write(json.dumps({"key": leaf.key, "fingerprint": to_hex(leaf.fingerprint)}) + "\n")

    @classmethod
    def load_jsonl(cls, path: Path, on_duplicate: DuplicatePolicy = "error") -> LeafSet:
        ruleset: str | None = None
        leaves: list[Leaf] = []
        with open(path) as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    obj = json.loads(line)
                    if "ruleset" in obj and "key" not in obj:
                        ruleset = obj["ruleset"]
                        continue
                    leaves.append(Leaf(int(obj["key"]), from_hex(obj["fingerprint"])))
                except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                    raise ValueError(f"{path}:{lineno}: invalid leaf line: {e}") from e
        logger.debug("Loaded %d leaves from %s", len(leaves), path)
        return cls(leaves, ruleset=ruleset, on_duplicate=on_duplicate)
