"""Tests for incremental tree maintenance."""

from __future__ import annotations

import random

import pytest

from driftwatch_core.config import TreeConfig
from driftwatch_core.mst import (
    EMPTY_ROOT_HASH,
    Change,
    KeyExistsError,
    KeyNotFoundError,
    MerkleSearchTree,
    Node,
    NodeStore,
    Op,
)


def _rebuild(tree: MerkleSearchTree) -> MerkleSearchTree:
    return MerkleSearchTree.build(list(tree.leaves()), params=tree.params)


# ── Incremental equivalence ──────────────────────────────────────────


@pytest.mark.parametrize("fanout_bits", [1, 2, 5])
def test_inserts_from_empty_match_builder(make_leaf, fanout_bits):
    params = TreeConfig(fanout_bits=fanout_bits)
    keys = list(range(400))
    random.Random(fanout_bits).shuffle(keys)
    tree = MerkleSearchTree.empty(params=params)
    for k in keys:
        tree = tree.insert(make_leaf(k))
    expected = MerkleSearchTree.build([make_leaf(k) for k in keys], params=params)
    assert tree.root_hash == expected.root_hash


def test_two_insert_orders_give_same_root(make_leaf, small_fanout):
    keys = list(range(250))
    forward = MerkleSearchTree.empty(params=small_fanout)
    for k in keys:
        forward = forward.insert(make_leaf(k))
    backward = MerkleSearchTree.empty(params=small_fanout)
    for k in reversed(keys):
        backward = backward.insert(make_leaf(k))
    assert forward.root_hash == backward.root_hash


@pytest.mark.parametrize("seed", range(6))
def test_random_edit_sequence_matches_builder(make_leaf, seed):
    """Mixed inserts, updates and deletes always land on the canonical tree."""
    rng = random.Random(seed)
    params = TreeConfig(fanout_bits=rng.choice([1, 2, 3]))
    tree = MerkleSearchTree.empty(params=params)
    state: dict[int, str] = {}
    for step in range(600):
        key = rng.randrange(300)
        if key in state and rng.random() < 0.4:
            tree = tree.delete(key)
            del state[key]
        elif key in state:
            state[key] = f"s{step}"
            tree = tree.update(make_leaf(key, state[key]))
        else:
            state[key] = f"s{step}"
            tree = tree.insert(make_leaf(key, state[key]))
        if step % 50 == 0:
            assert tree.root_hash == _rebuild(tree).root_hash
    expected = MerkleSearchTree.build([make_leaf(k, v) for k, v in state.items()], params=params)
    assert tree.root_hash == expected.root_hash
    assert len(tree) == len(state)


def test_delete_everything_returns_empty_tree(make_leaf, small_fanout):
    keys = list(range(120))
    tree = MerkleSearchTree.build([make_leaf(k) for k in keys], params=small_fanout)
    random.Random(3).shuffle(keys)
    for i, k in enumerate(keys):
        tree = tree.delete(k)
        remaining = sorted(keys[i + 1 :])
        assert tree.root_hash == MerkleSearchTree.build(
            [make_leaf(r) for r in remaining], params=small_fanout
        ).root_hash
    assert tree.is_empty
    assert tree.root_hash == EMPTY_ROOT_HASH


def test_delete_from_right_edge_shrinks_root(make_leaf, small_fanout):
    tree = MerkleSearchTree.build([make_leaf(k) for k in range(200)], params=small_fanout)
    for k in reversed(range(200)):
        tree = tree.delete(k)
        if len(tree):
            root = tree.root
            assert root.height == 1 or len(root.entries) > 1
    assert tree.is_empty


def test_update_with_same_fingerprint_is_noop(make_leaf):
    tree = MerkleSearchTree.build([make_leaf(k) for k in range(20)])
    assert tree.update(make_leaf(5)) is tree


def test_upsert_inserts_or_updates(make_leaf):
    tree = MerkleSearchTree.build([make_leaf(1)])
    tree = tree.upsert(make_leaf(2)).upsert(make_leaf(1, "new"))
    assert tree.get(1) == make_leaf(1, "new")
    assert tree.get(2) == make_leaf(2)


# ── Errors and atomicity ─────────────────────────────────────────────


def test_insert_existing_key_raises(make_leaf):
    tree = MerkleSearchTree.build([make_leaf(1)])
    with pytest.raises(KeyExistsError):
        tree.insert(make_leaf(1, "other"))


@pytest.mark.parametrize("op", [Op.update, Op.delete])
def test_missing_key_raises(make_leaf, op):
    tree = MerkleSearchTree.build([make_leaf(1), make_leaf(3)])
    change = Change(op, 2, make_leaf(2).fingerprint)
    with pytest.raises(KeyNotFoundError) as exc:
        tree.apply([change])
    assert exc.value.key == 2


def test_missing_key_on_empty_tree_raises():
    with pytest.raises(KeyNotFoundError):
        MerkleSearchTree.empty().delete(1)


def test_failed_batch_commits_nothing(make_leaf, small_fanout):
    tree = MerkleSearchTree.build([make_leaf(k) for k in range(100)], params=small_fanout)
    nodes_before = len(tree.store)
    root_before = tree.root_hash
    batch = [
        Change(Op.insert, 500, make_leaf(500).fingerprint),
        Change(Op.update, 7, make_leaf(7, "x").fingerprint),
        Change(Op.delete, 9999),
    ]
    with pytest.raises(KeyNotFoundError):
        tree.apply(batch)
    assert len(tree.store) == nodes_before
    assert tree.root_hash == root_before
    assert 500 not in tree


def test_old_version_stays_readable(make_leaf, small_fanout):
    v1 = MerkleSearchTree.build([make_leaf(k) for k in range(300)], params=small_fanout)
    leaves_v1 = list(v1.leaves())
    v2 = v1.apply([Change(Op.delete, 10), Change(Op.insert, 1000, make_leaf(1000).fingerprint)])
    assert v2.store is v1.store
    assert list(v1.leaves()) == leaves_v1
    assert 10 in v1 and 10 not in v2
    assert 1000 in v2 and 1000 not in v1


# ── Cost ─────────────────────────────────────────────────────────────


class CountingStore(NodeStore):
    """NodeStore that counts reads."""

    def __init__(self) -> None:
        super().__init__()
        self.reads = 0

    def get(self, node_hash: bytes) -> Node:
        self.reads += 1
        return super().get(node_hash)


@pytest.mark.parametrize("op", ["insert", "update", "delete"])
def test_single_edit_reads_only_the_affected_path(make_leaf, small_fanout, op):
    store = CountingStore()
    tree = MerkleSearchTree.build(
        [make_leaf(k) for k in range(20_000)], params=small_fanout, store=store
    )
    height = tree.height
    total_nodes = len(store)

    store.reads = 0
    if op == "insert":
        edited = tree.insert(make_leaf(20_001))
    elif op == "update":
        edited = tree.update(make_leaf(12_345, "drifted"))
    else:
        edited = tree.delete(12_345)

    assert store.reads < 20 * height
    assert store.reads < total_nodes // 20
    assert len(store) - total_nodes <= 4 * height
    assert edited.root_hash == _rebuild(edited).root_hash


def test_batch_commits_only_nodes_the_new_root_uses(make_leaf, small_fanout):
    tree = MerkleSearchTree.build([make_leaf(k) for k in range(500)], params=small_fanout)
    before = set(tree.store)
    # Both edits rewrite the same path; the first batch's path is superseded.
    edited = tree.apply(
        [
            Change(Op.update, 250, make_leaf(250, "a").fingerprint),
            Change(Op.update, 251, make_leaf(251, "b").fingerprint),
        ]
    )
    added = set(edited.store) - before
    assert added
    assert added <= {node.hash for node in edited.nodes()}


def test_batch_equals_sequential_edits(make_leaf, small_fanout):
    base = MerkleSearchTree.build([make_leaf(k) for k in range(0, 200, 2)], params=small_fanout)
    changes = [Change(Op.insert, k, make_leaf(k).fingerprint) for k in range(1, 200, 4)]
    changes += [Change("delete", k) for k in range(0, 200, 10)]
    batched = base.apply(changes)
    sequential = base
    for change in changes:
        sequential = sequential.apply([change])
    assert batched.root_hash == sequential.root_hash


def test_change_requires_fingerprint():
    with pytest.raises(ValueError):
        Change(Op.insert, 1)


def test_change_accepts_string_op(make_leaf):
    change = Change("upsert", 1, make_leaf(1).fingerprint)
    assert change.op is Op.upsert
