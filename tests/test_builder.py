"""Tests for deterministic tree construction."""

from __future__ import annotations

import random

import pytest

from driftwatch_core.config import TreeConfig
from driftwatch_core.mst import (
    EMPTY_ROOT_HASH,
    DuplicateKeyError,
    Leaf,
    MerkleSearchTree,
    build_tree,
)
from driftwatch_core.mst.builder import boundary_level, build_nodes, chunk


# ── Degenerate inputs ────────────────────────────────────────────────


def test_empty_input_gives_empty_sentinel():
    tree = MerkleSearchTree.build([])
    assert tree.is_empty
    assert tree.root_hash == EMPTY_ROOT_HASH
    assert len(tree) == 0
    assert tree.height == 0
    assert list(tree.leaves()) == []


def test_single_leaf_is_single_node(make_leaf):
    tree = MerkleSearchTree.build([make_leaf(42)])
    assert tree.height == 1
    assert len(tree) == 1
    assert tree.root.entries == (make_leaf(42),)


def test_duplicate_key_rejected(make_leaf):
    with pytest.raises(DuplicateKeyError) as exc:
        MerkleSearchTree.build([make_leaf(1), make_leaf(2), make_leaf(1, "other")])
    assert exc.value.key == 1


def test_key_outside_domain_rejected(make_leaf):
    params = TreeConfig(key_width=1)
    with pytest.raises(ValueError, match="key domain"):
        MerkleSearchTree.build([make_leaf(256)], params=params)


def test_leaf_rejects_bad_fingerprint():
    with pytest.raises(ValueError):
        Leaf(1, b"short")


def test_leaf_rejects_negative_key(make_leaf):
    with pytest.raises(ValueError):
        Leaf(-1, make_leaf(1).fingerprint)


# ── Order independence ───────────────────────────────────────────────


@pytest.mark.parametrize("seed", [0, 1, 2, 3, 4])
def test_root_hash_independent_of_input_order(make_leaf, small_fanout, seed):
    leaves = [make_leaf(k) for k in range(300)]
    reference = MerkleSearchTree.build(leaves, params=small_fanout)
    shuffled = list(leaves)
    random.Random(seed).shuffle(shuffled)
    assert MerkleSearchTree.build(shuffled, params=small_fanout).root_hash == reference.root_hash


def test_different_leaf_sets_differ(make_leaf):
    a = MerkleSearchTree.build([make_leaf(k) for k in range(50)])
    b = MerkleSearchTree.build([make_leaf(k) for k in range(50)] + [make_leaf(50)])
    c = MerkleSearchTree.build([make_leaf(k, "x" if k == 10 else None) for k in range(50)])
    assert len({a.root_hash, b.root_hash, c.root_hash}) == 3


def test_build_tree_convenience_wrapper(make_leaf):
    leaves = [make_leaf(k) for k in range(10)]
    assert build_tree(leaves).root_hash == MerkleSearchTree.build(leaves).root_hash


# ── Shape invariants ─────────────────────────────────────────────────


def test_all_leaves_in_key_order(make_leaf, small_fanout):
    keys = random.Random(7).sample(range(10_000), 500)
    tree = MerkleSearchTree.build([make_leaf(k) for k in keys], params=small_fanout)
    assert [leaf.key for leaf in tree.leaves()] == sorted(keys)
    assert len(tree) == 500


def test_groups_close_on_boundary_leaves(make_leaf, small_fanout):
    """Within every height-1 node only the last leaf may be a boundary."""
    tree = MerkleSearchTree.build([make_leaf(k) for k in range(400)], params=small_fanout)
    height_one = [n for n in tree.nodes() if n.height == 1]
    assert len(height_one) > 1
    for node in height_one:
        for leaf in node.entries[:-1]:
            assert boundary_level(leaf, small_fanout) < 1


def test_multi_level_tree_with_small_fanout(make_leaf, small_fanout):
    tree = MerkleSearchTree.build([make_leaf(k) for k in range(1000)], params=small_fanout)
    assert tree.height >= 3
    for node in tree.nodes():
        if node.height > 1:
            for ref in node.entries:
                assert ref.height == node.height - 1
            assert node.leaf_count == sum(ref.leaf_count for ref in node.entries)


def test_root_never_has_single_child(make_leaf, small_fanout):
    for n in (2, 5, 17, 90, 333):
        tree = MerkleSearchTree.build([make_leaf(k) for k in range(n)], params=small_fanout)
        root = tree.root
        assert root.height == 1 or len(root.entries) > 1


def test_chunk_last_group_closes_at_end(make_leaf):
    params = TreeConfig()
    leaves = [make_leaf(k) for k in range(5)]
    nodes = chunk(leaves, 1, params)
    assert sum(len(n.entries) for n in nodes) == 5
    assert nodes[-1].entries[-1] == leaves[-1]


def test_build_nodes_returns_every_node(make_leaf, small_fanout):
    root_hash, nodes = build_nodes([make_leaf(k) for k in range(200)], small_fanout)
    assert root_hash in nodes
    for node in nodes.values():
        if node.height > 1:
            assert all(ref.hash in nodes for ref in node.entries)


def test_structural_sharing_between_similar_trees(make_leaf, small_fanout):
    """Two trees differing in one leaf share most of their nodes."""
    leaves = [make_leaf(k) for k in range(1000)]
    a = MerkleSearchTree.build(leaves, params=small_fanout)
    changed = list(leaves)
    changed[500] = make_leaf(500, "changed")
    b = MerkleSearchTree.build(changed, params=small_fanout)
    a_nodes = {n.hash for n in a.nodes()}
    b_nodes = {n.hash for n in b.nodes()}
    # One edit may merge the edited group with its right neighbour at each height.
    assert len(a_nodes - b_nodes) <= 2 * a.height
    assert len(a_nodes & b_nodes) > len(a_nodes) // 2
