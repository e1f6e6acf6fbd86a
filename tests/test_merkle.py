"""Tests for the sparse Merkle tree — proves witness and root invariants hold."""

import pytest

from zkstate.crypto.field import field_hash
from zkstate.crypto.merkle import (
    Branch,
    EmptySubtreeCache,
    Leaf,
    SparseMerkleTree,
    insert,
    key_to_path,
    membership_witness,
    path_index,
    tree_hash,
)
from zkstate.errors import InvalidTreeNode


def _small_tree() -> SparseMerkleTree:
    """Depth-8 tree over 8-bit keys: every key has its own leaf."""
    return SparseMerkleTree(depth=8, field_bits=8)


def _fold(leaf_value: int, siblings: tuple[int, ...], index: int) -> int:
    """Recompute a root from a leaf-first witness path."""
    current = leaf_value
    for level, sibling in enumerate(siblings):
        if (index >> level) & 1:
            current = field_hash([sibling, current])
        else:
            current = field_hash([current, sibling])
    return current


class TestEmptySubtreeCache:
    def test_leaf_level_is_empty_value(self) -> None:
        cache = EmptySubtreeCache(4)
        assert cache[4] == 0
        assert len(cache) == 5

    def test_each_level_hashes_the_one_below(self) -> None:
        cache = EmptySubtreeCache(4)
        for level in range(4):
            assert cache[level] == field_hash([cache[level + 1], cache[level + 1]])

    def test_root_is_level_zero(self) -> None:
        cache = EmptySubtreeCache(6)
        assert cache.root == cache[0]

    def test_rejects_zero_depth(self) -> None:
        with pytest.raises(ValueError, match="at least 1"):
            EmptySubtreeCache(0)

    def test_shared_instance_per_depth(self) -> None:
        assert EmptySubtreeCache.for_depth(12) is EmptySubtreeCache.for_depth(12)


class TestPaths:
    def test_msb_first_padded(self) -> None:
        assert key_to_path(1, depth=8, field_bits=8) == (0, 0, 0, 0, 0, 0, 0, 1)
        assert key_to_path(0x80, depth=8, field_bits=8) == (1, 0, 0, 0, 0, 0, 0, 0)

    def test_truncated_to_depth(self) -> None:
        assert key_to_path(0b10110000, depth=4, field_bits=8) == (1, 0, 1, 1)

    def test_full_field_width_keeps_top_bits(self) -> None:
        key = 1 << 253
        assert key_to_path(key, depth=3) == (1, 0, 0)

    def test_rejects_oversized_key(self) -> None:
        with pytest.raises(ValueError, match="does not fit"):
            key_to_path(256, depth=8, field_bits=8)

    def test_rejects_depth_beyond_field(self) -> None:
        with pytest.raises(ValueError, match="exceeds field width"):
            key_to_path(1, depth=9, field_bits=8)

    def test_index_reads_path_as_integer(self) -> None:
        assert path_index((1, 0, 1)) == 5
        assert path_index(key_to_path(200, depth=8, field_bits=8)) == 200


class TestEmptyTree:
    def test_root_is_empty_root(self) -> None:
        tree = _small_tree()
        assert tree.root == tree.empty_subtrees.root
        assert tree.leaf_count == 0

    def test_non_membership_everywhere(self) -> None:
        tree = _small_tree()
        for key in (0, 1, 77, 255):
            witness = tree.witness(key)
            assert witness.is_member is False
            assert len(witness.path) == 8

    def test_witness_entries_are_empty_hashes(self) -> None:
        tree = _small_tree()
        empty = tree.empty_subtrees
        witness = tree.witness(42)
        assert witness.path == tuple(empty[level] for level in range(8, 0, -1))

    def test_empty_witness_folds_to_root(self) -> None:
        tree = _small_tree()
        witness = tree.witness(9)
        assert _fold(0, witness.path, witness.index) == tree.root


class TestInsert:
    def test_insert_changes_root(self) -> None:
        tree = _small_tree()
        assert tree.insert(5).root != tree.root

    def test_insert_is_persistent(self) -> None:
        tree = _small_tree()
        before = tree.root
        updated = tree.insert(5)
        assert tree.root == before
        assert tree.witness(5).is_member is False
        assert updated.witness(5).is_member is True

    def test_round_trip_distinct_paths(self) -> None:
        keys = [3, 17, 128, 200, 255]
        tree = _small_tree()
        for key in keys:
            tree = tree.insert(key)
        for key in keys:
            witness = tree.witness(key)
            assert witness.is_member is True
            assert len(witness.path) == tree.depth
            assert witness.root == tree.root
            assert _fold(key, witness.path, witness.index) == tree.root
        assert tree.leaf_count == len(keys)

    def test_non_member_among_members_folds_to_root(self) -> None:
        tree = _small_tree().insert(3).insert(4).insert(250)
        witness = tree.witness(5)
        assert witness.is_member is False
        assert _fold(0, witness.path, witness.index) == tree.root

    def test_order_independent(self) -> None:
        keys = [10, 20, 30, 40, 250]
        forward = _small_tree()
        for key in keys:
            forward = forward.insert(key)
        backward = _small_tree()
        for key in reversed(keys):
            backward = backward.insert(key)
        assert forward == backward
        assert forward.root == backward.root

    def test_explicit_value(self) -> None:
        tree = _small_tree().insert(7, value=99)
        assert tree.witness(7, element=99).is_member is True
        assert tree.witness(7).is_member is False

    def test_overwrite_same_position(self) -> None:
        tree = _small_tree().insert(7, value=1).insert(7, value=2)
        assert tree.witness(7, element=2).is_member is True
        assert tree.witness(7, element=1).is_member is False
        assert tree.leaf_count == 1

    def test_truncated_prefix_collision_overwrites(self) -> None:
        tree = SparseMerkleTree(depth=4, field_bits=8)
        tree = tree.insert(0b10100001).insert(0b10101111)
        assert tree.contains(0b10101111)
        assert not tree.contains(0b10100001)

    def test_default_depth_full_field_keys(self) -> None:
        tree = SparseMerkleTree()
        nullifier = field_hash([1, 2, 3])
        tree = tree.insert(nullifier)
        witness = tree.witness(nullifier)
        assert tree.depth == 32
        assert witness.is_member is True
        assert len(witness.path) == 32

    def test_insert_at_rejects_wrong_length(self) -> None:
        with pytest.raises(ValueError, match="tree depth is 8"):
            _small_tree().insert_at((0, 1), 5)


class TestTreeEquality:
    def test_different_contents_not_equal(self) -> None:
        assert _small_tree().insert(1) != _small_tree().insert(2)

    def test_equal_trees_hash_equal(self) -> None:
        assert hash(_small_tree().insert(1)) == hash(_small_tree().insert(1))

    def test_repr_shows_root(self) -> None:
        assert "depth=8" in repr(_small_tree())


class TestInvalidNodes:
    def test_hash_rejects_unknown_node(self) -> None:
        with pytest.raises(InvalidTreeNode):
            tree_hash(Branch(Leaf(0), "junk"))  # type: ignore[arg-type]

    def test_insert_rejects_unknown_node(self) -> None:
        empty = EmptySubtreeCache(2)
        with pytest.raises(InvalidTreeNode):
            insert("junk", (0, 0), 1, empty)  # type: ignore[arg-type]

    def test_witness_rejects_unknown_node(self) -> None:
        empty = EmptySubtreeCache(2)
        with pytest.raises(InvalidTreeNode):
            membership_witness(Branch("junk", Leaf(0)), (0, 0), 1, empty)  # type: ignore[arg-type]
