"""Sparse Merkle tree over field elements.

The tree has a fixed depth D. A node is either a Branch with two children
or a Leaf holding a hash. Subtrees nobody has inserted into are never
materialised: they are a single Leaf carrying the precomputed hash of an
all-empty subtree of that height, so memory grows with the number of
inserted leaves times D rather than with 2^D.

    hash(Leaf(v))      = v
    hash(Branch(l, r)) = H(hash(l), hash(r))

A key addresses a leaf through its MSB-first binary encoding, left-padded to
FIELD_BITS and truncated to the first D bits. Bit 0 descends left. With
D < FIELD_BITS distinct keys sharing a prefix land on the same leaf; that is
acceptable for small test trees only. Production trees use D = FIELD_BITS.

Every operation is persistent: insert returns a new tree and shares all
untouched subtrees with the old one. Walks are iterative so that D = 254
never approaches the interpreter recursion limit.
"""

from __future__ import annotations

import functools
from dataclasses import dataclass
from typing import Optional, Sequence, Union

from zkstate.crypto.field import FIELD_BITS, HashFunction, field_hash, to_int
from zkstate.errors import InvalidTreeNode

DEFAULT_DEPTH = 32


@dataclass(frozen=True, eq=False)
class Leaf:
    """A leaf, or an undeveloped subtree represented by its empty hash."""
    value: int


@dataclass(frozen=True, eq=False)
class Branch:
    """An internal node. Both children belong to this branch alone."""
    left: "Node"
    right: "Node"


Node = Union[Branch, Leaf]


@dataclass(frozen=True)
class Witness:
    """A membership or non-membership witness for one key.

    `path` holds D sibling hashes, the sibling nearest the leaf first.
    `index` is the D-bit path read as an integer.
    """
    is_member: bool
    path: tuple[int, ...]
    root: int
    index: int


class EmptySubtreeCache:
    """Hash of the canonical all-empty subtree rooted at every depth.

    cache[D] is the empty leaf value; cache[k] = H(cache[k+1], cache[k+1]).
    cache[0] is therefore the root of a tree with nothing inserted.
    """

    def __init__(
        self,
        depth: int,
        hasher: HashFunction = field_hash,
        empty_leaf: int = 0,
    ) -> None:
        if depth < 1:
            raise ValueError(f"Tree depth must be at least 1, got {depth}")
        hashes = [empty_leaf] * (depth + 1)
        for level in range(depth - 1, -1, -1):
            hashes[level] = hasher([hashes[level + 1], hashes[level + 1]])
        self._depth = depth
        self._hashes = tuple(hashes)

    @classmethod
    def for_depth(cls, depth: int, hasher: HashFunction = field_hash) -> EmptySubtreeCache:
        """Shared cache instance per (depth, hasher)."""
        return _cached_empty_subtrees(depth, hasher)

    @property
    def depth(self) -> int:
        return self._depth

    @property
    def root(self) -> int:
        return self._hashes[0]

    def __getitem__(self, level: int) -> int:
        return self._hashes[level]

    def __len__(self) -> int:
        return len(self._hashes)


@functools.lru_cache(maxsize=None)
def _cached_empty_subtrees(depth: int, hasher: HashFunction) -> EmptySubtreeCache:
    return EmptySubtreeCache(depth, hasher)


def key_to_path(key: object, depth: int, field_bits: int = FIELD_BITS) -> tuple[int, ...]:
    """MSB-first bits of `key`, padded to field_bits, truncated to depth."""
    number = to_int(key)
    if number < 0 or number.bit_length() > field_bits:
        raise ValueError(f"Key does not fit in {field_bits} bits: {number}")
    if depth > field_bits:
        raise ValueError(f"Depth {depth} exceeds field width {field_bits}")
    bits = format(number, f"0{field_bits}b")
    return tuple(int(bit) for bit in bits[:depth])


def path_index(path: Sequence[int]) -> int:
    """Read a path as an unsigned integer, first bit most significant."""
    index = 0
    for bit in path:
        index = (index << 1) | bit
    return index


def tree_hash(node: Node, hasher: HashFunction = field_hash) -> int:
    """Fold a (sub)tree into its root hash."""
    stack: list[tuple[Node, bool]] = [(node, False)]
    results: list[int] = []
    while stack:
        current, children_done = stack.pop()
        if isinstance(current, Leaf):
            results.append(current.value)
        elif isinstance(current, Branch):
            if children_done:
                right = results.pop()
                left = results.pop()
                results.append(hasher([left, right]))
            else:
                stack.append((current, True))
                stack.append((current.right, False))
                stack.append((current.left, False))
        else:
            raise InvalidTreeNode(f"Unknown tree node: {current!r}")
    return results[0]


def insert(
    node: Node,
    path: Sequence[int],
    value: int,
    empty: EmptySubtreeCache,
) -> Node:
    """Return a new tree with `value` at the leaf addressed by `path`.

    Only nodes along the path are rebuilt. An undeveloped Leaf met on the
    way is opened into a Branch whose children are empty subtrees of the
    next depth. An existing leaf at the position is overwritten.
    """
    spine: list[tuple[Node, int]] = []
    current = node
    for level, bit in enumerate(path):
        if isinstance(current, Branch):
            if bit == 0:
                child, sibling = current.left, current.right
            else:
                child, sibling = current.right, current.left
        elif isinstance(current, Leaf):
            child = sibling = Leaf(empty[level + 1])
        else:
            raise InvalidTreeNode(f"Unknown tree node: {current!r}")
        spine.append((sibling, bit))
        current = child

    rebuilt: Node = Leaf(value)
    for sibling, bit in reversed(spine):
        rebuilt = Branch(rebuilt, sibling) if bit == 0 else Branch(sibling, rebuilt)
    return rebuilt


def membership_witness(
    node: Node,
    path: Sequence[int],
    element: int,
    empty: EmptySubtreeCache,
    hasher: HashFunction = field_hash,
) -> tuple[bool, tuple[int, ...]]:
    """Collect sibling hashes along `path` and test whether `element` sits there.

    Returns (is_member, siblings) with the leaf-nearest sibling first.
    """
    siblings: list[int] = []
    current = node
    for level, bit in enumerate(path):
        if isinstance(current, Branch):
            if bit == 0:
                current, sibling = current.left, current.right
            else:
                current, sibling = current.right, current.left
            siblings.append(tree_hash(sibling, hasher))
        elif isinstance(current, Leaf):
            # undeveloped below this point: every remaining sibling is empty
            siblings.extend(empty[remaining + 1] for remaining in range(level, len(path)))
            return False, tuple(reversed(siblings))
        else:
            raise InvalidTreeNode(f"Unknown tree node: {current!r}")

    if not isinstance(current, Leaf):
        raise InvalidTreeNode(f"Expected a leaf at depth {len(path)}, got {current!r}")
    return current.value == element, tuple(reversed(siblings))


def same_structure(left: Node, right: Node) -> bool:
    """Structural equality of two trees."""
    stack = [(left, right)]
    while stack:
        a, b = stack.pop()
        if a is b:
            continue
        if isinstance(a, Leaf) and isinstance(b, Leaf):
            if a.value != b.value:
                return False
        elif isinstance(a, Branch) and isinstance(b, Branch):
            stack.append((a.left, b.left))
            stack.append((a.right, b.right))
        elif isinstance(a, (Leaf, Branch)) and isinstance(b, (Leaf, Branch)):
            return False
        else:
            raise InvalidTreeNode(f"Unknown tree node: {a!r} / {b!r}")
    return True


class SparseMerkleTree:
    """An immutable sparse Merkle tree.

    Usage:
        tree = SparseMerkleTree(depth=32)
        tree = tree.insert(nullifier)
        root = tree.root
        witness = tree.witness(nullifier)
        assert witness.is_member
    """

    def __init__(
        self,
        depth: int = DEFAULT_DEPTH,
        hasher: HashFunction = field_hash,
        field_bits: int = FIELD_BITS,
        node: Optional[Node] = None,
    ) -> None:
        if depth > field_bits:
            raise ValueError(f"Depth {depth} exceeds field width {field_bits}")
        self._depth = depth
        self._hasher = hasher
        self._field_bits = field_bits
        self._empty = EmptySubtreeCache.for_depth(depth, hasher)
        self._node: Node = node if node is not None else Leaf(self._empty.root)
        self._root: Optional[int] = None

    @property
    def depth(self) -> int:
        return self._depth

    @property
    def node(self) -> Node:
        return self._node

    @property
    def empty_subtrees(self) -> EmptySubtreeCache:
        return self._empty

    @property
    def root(self) -> int:
        if self._root is None:
            self._root = tree_hash(self._node, self._hasher)
        return self._root

    def path_for(self, key: object) -> tuple[int, ...]:
        return key_to_path(key, self._depth, self._field_bits)

    def insert(self, key: object, value: object = None) -> SparseMerkleTree:
        """Insert `value` (default: the key itself) at the key's path."""
        leaf_value = to_int(key if value is None else value)
        return self.insert_at(self.path_for(key), leaf_value)

    def insert_at(self, path: Sequence[int], value: int) -> SparseMerkleTree:
        if len(path) != self._depth:
            raise ValueError(f"Path has {len(path)} bits, tree depth is {self._depth}")
        node = insert(self._node, path, value, self._empty)
        return self._derive(node)

    def witness(self, key: object, element: object = None) -> Witness:
        """Witness for `element` (default: the key) at the key's path."""
        path = self.path_for(key)
        expected = to_int(key if element is None else element)
        is_member, siblings = membership_witness(
            self._node, path, expected, self._empty, self._hasher,
        )
        return Witness(
            is_member=is_member,
            path=siblings,
            root=self.root,
            index=path_index(path),
        )

    def contains(self, key: object) -> bool:
        return self.witness(key).is_member

    @property
    def leaf_count(self) -> int:
        """Number of materialised leaves at full depth."""
        count = 0
        stack: list[tuple[Node, int]] = [(self._node, 0)]
        while stack:
            current, level = stack.pop()
            if isinstance(current, Branch):
                stack.append((current.left, level + 1))
                stack.append((current.right, level + 1))
            elif isinstance(current, Leaf):
                if level == self._depth and current.value != self._empty[level]:
                    count += 1
            else:
                raise InvalidTreeNode(f"Unknown tree node: {current!r}")
        return count

    def _derive(self, node: Node) -> SparseMerkleTree:
        return SparseMerkleTree(
            depth=self._depth,
            hasher=self._hasher,
            field_bits=self._field_bits,
            node=node,
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SparseMerkleTree):
            return NotImplemented
        return self._depth == other._depth and same_structure(self._node, other._node)

    def __hash__(self) -> int:
        return hash((self._depth, self.root))

    def __repr__(self) -> str:
        return f"SparseMerkleTree(depth={self._depth}, root=0x{self.root:064x})"
