"""
Incremental Merkle accumulator for note commitments.

Conceptual Background:
---------------------
Every commitment ever created is a leaf in a fixed-depth Poseidon Merkle
tree. A spender proves (inside the circuit) that their note is a leaf under
some root the pool has accepted, without revealing which leaf.

Two structures live here:

1. ``CommitmentAccumulator`` (ledger side). Stores only the frontier
   (``filled_subtrees``) plus precomputed zero-subtree hashes, so a batch of
   k leaves costs O(k * depth) hashes regardless of tree size. When a batch
   would overflow the active tree, a new tree is started first; a batch
   never spans two trees. Every root produced by an insertion is kept in a
   per-tree root history so that proofs built against an older root still
   validate until that root is retired.

2. ``MerkleTree`` (off-ledger side). A sparse, fully materialized tree used
   by wallets to mirror the ledger and generate inclusion proofs. It can
   also be rebuilt from scratch over a leaf list, which is how the
   accumulator's incremental roots are cross-checked.

Zero values:
-----------
    zeros[0]     = keccak256("shieldpool") mod p
    zeros[i]     = H(zeros[i-1], zeros[i-1])
    empty_root   = H(zeros[depth-1], zeros[depth-1])

Proofs:
------
A proof is ``depth`` sibling hashes plus the leaf index used as a bitfield.
Bit i = 0 means the running hash is the left child at level i.
"""

from dataclasses import dataclass
from functools import partial
from typing import Dict, List, Sequence, Set, Tuple

from shieldpool.core.errors import FormatError
from shieldpool.crypto import FIELD_PRIME, hash_left_right, keccak_to_field
from shieldpool.utils.journal import UndoJournal
from shieldpool.utils.logger import get_logger

logger = get_logger("merkle")

DEFAULT_TREE_DEPTH = 16

# Value of an empty leaf
ZERO_VALUE = keccak_to_field(b"shieldpool")


def compute_zeros(depth: int) -> Tuple[List[int], int]:
    """
    Precompute empty-subtree hashes.

    Returns:
        (zeros, empty_root) where zeros[i] is the root of an empty subtree of height i
    """
    zeros = [ZERO_VALUE]
    for _ in range(1, depth):
        zeros.append(hash_left_right(zeros[-1], zeros[-1]))
    return zeros, hash_left_right(zeros[-1], zeros[-1])


def _check_leaves(leaves: Sequence[int]) -> None:
    for i, leaf in enumerate(leaves):
        if not isinstance(leaf, int) or not (0 <= leaf < FIELD_PRIME):
            raise FormatError(f"Leaf {i} is not a field element")


# =============================================================================
# Proofs
# =============================================================================


@dataclass(frozen=True)
class MerkleProof:
    """
    Inclusion proof for one leaf.

    Attributes:
        leaf: The proven leaf value
        elements: Sibling hashes, leaf level first (length = depth)
        indices: Leaf index; bit i selects the side at level i
        root: Root the proof was generated against
    """
    leaf: int
    elements: Tuple[int, ...]
    indices: int
    root: int


def validate_proof(proof: MerkleProof) -> bool:
    """
    Fold a leaf up through its proof and compare to the claimed root.

    Returns:
        True if the proof hashes to ``proof.root``
    """
    if proof.indices < 0 or proof.indices >= 2 ** len(proof.elements):
        return False

    current = proof.leaf
    for level, sibling in enumerate(proof.elements):
        if (proof.indices >> level) & 1:
            current = hash_left_right(sibling, current)
        else:
            current = hash_left_right(current, sibling)

    return current == proof.root


# =============================================================================
# Ledger-side accumulator
# =============================================================================


class CommitmentAccumulator(UndoJournal):
    """
    Append-only sequence of fixed-depth Merkle trees.

    Inside a savepoint each batch journals the frontier it replaced and the
    roots it added, so rolling back costs O(depth) per batch.

    Attributes:
        depth: Tree depth (capacity 2^depth leaves per tree)
        tree_number: Index of the active tree
        next_leaf_index: Next free leaf in the active tree
        merkle_root: Root of the active tree
        root_history: tree_number -> set of accepted roots
    """

    def __init__(self, depth: int = DEFAULT_TREE_DEPTH):
        if not (1 <= depth <= 32):
            raise FormatError(f"Tree depth must be in 1..32, got {depth}")

        super().__init__()
        self.depth = depth
        self.zeros, self.empty_root = compute_zeros(depth)

        self.tree_number = 0
        self.next_leaf_index = 0
        self.merkle_root = self.empty_root
        self.filled_subtrees: List[int] = list(self.zeros)
        self.root_history: Dict[int, Set[int]] = {0: {self.empty_root}}

    @property
    def capacity(self) -> int:
        return 2 ** self.depth

    # =========================================================================
    # Roots
    # =========================================================================

    def is_known_root(self, tree_number: int, root: int) -> bool:
        """Whether ``root`` is an accepted (non-retired) root of ``tree_number``."""
        return root in self.root_history.get(tree_number, ())

    def retire_root(self, tree_number: int, root: int) -> bool:
        """
        Stop accepting a historical root.

        The active root of the active tree cannot be retired.

        Returns:
            True if the root was known and is now retired
        """
        if tree_number == self.tree_number and root == self.merkle_root:
            raise FormatError("Cannot retire the current root")

        roots = self.root_history.get(tree_number)
        if not roots or root not in roots:
            return False

        roots.discard(root)
        logger.info(f"Retired root {hex(root)[:12]}... of tree {tree_number}")
        return True

    # =========================================================================
    # Insertion
    # =========================================================================

    def get_insertion_tree_number_and_start_index(self, count: int) -> Tuple[int, int]:
        """Where a batch of ``count`` leaves would land."""
        if self.next_leaf_index + count > self.capacity:
            return self.tree_number + 1, 0
        return self.tree_number, self.next_leaf_index

    def new_tree(self) -> None:
        """Start a new, empty tree."""
        self._save_frontier()
        self.tree_number += 1
        self.next_leaf_index = 0
        self.merkle_root = self.empty_root
        self.filled_subtrees = list(self.zeros)
        if self.tree_number not in self.root_history:
            self.root_history[self.tree_number] = set()
            self._record(partial(self.root_history.pop, self.tree_number, None))
        logger.info(f"Rolled over to tree {self.tree_number}")

    def insert_leaves(self, leaves: Sequence[int]) -> Tuple[int, int]:
        """
        Append a batch of leaves.

        Args:
            leaves: Commitment hashes (field elements)

        Returns:
            (tree_number, start_index) the batch was written to

        Raises:
            FormatError: If a leaf is not a field element or the batch exceeds tree capacity
        """
        count = len(leaves)
        if count == 0:
            return self.tree_number, self.next_leaf_index
        if count > self.capacity:
            raise FormatError(f"Batch of {count} leaves exceeds tree capacity {self.capacity}")
        _check_leaves(leaves)

        if self.next_leaf_index + count > self.capacity:
            self.new_tree()

        start_index = self.next_leaf_index
        self._save_frontier()
        self._insert(list(leaves))

        logger.debug(
            f"Inserted {count} leaves into tree {self.tree_number} at {start_index}, "
            f"root={hex(self.merkle_root)[:12]}..."
        )
        return self.tree_number, start_index

    def _insert(self, level_hashes: List[int]) -> None:
        """
        Update the frontier for a batch that fits in the active tree.

        ``level_hashes`` is reused in place as the working row for each level.
        """
        count = len(level_hashes)
        level_insertion_index = self.next_leaf_index
        self.next_leaf_index += count

        next_level_hash_index = 0

        for level in range(self.depth):
            next_level_start_index = level_insertion_index >> 1
            insertion_element = 0

            # Odd start: the first node pairs with the stored left sibling
            if level_insertion_index % 2 == 1:
                next_level_hash_index = (level_insertion_index >> 1) - next_level_start_index
                level_hashes[next_level_hash_index] = hash_left_right(
                    self.filled_subtrees[level], level_hashes[insertion_element]
                )
                insertion_element += 1
                level_insertion_index += 1

            while insertion_element < count:
                if insertion_element < count - 1:
                    right = level_hashes[insertion_element + 1]
                else:
                    right = self.zeros[level]

                if insertion_element >= count - 2:
                    self.filled_subtrees[level] = level_hashes[insertion_element]

                next_level_hash_index = (level_insertion_index >> 1) - next_level_start_index
                level_hashes[next_level_hash_index] = hash_left_right(level_hashes[insertion_element], right)

                insertion_element += 2
                level_insertion_index += 2

            level_insertion_index = next_level_start_index
            count = next_level_hash_index + 1

        self.merkle_root = level_hashes[0]
        roots = self.root_history.setdefault(self.tree_number, set())
        if self.merkle_root not in roots:
            roots.add(self.merkle_root)
            self._record(partial(roots.discard, self.merkle_root))

    def _save_frontier(self) -> None:
        frontier = (self.tree_number, self.next_leaf_index, self.merkle_root, list(self.filled_subtrees))
        self._record(partial(self._restore_frontier, *frontier))

    def _restore_frontier(self, tree_number: int, next_leaf_index: int, merkle_root: int, filled: List[int]) -> None:
        self.tree_number = tree_number
        self.next_leaf_index = next_leaf_index
        self.merkle_root = merkle_root
        self.filled_subtrees = filled

    # =========================================================================
    # Persistence
    # =========================================================================

    def load(self, trees: Dict[int, List[int]], roots: Dict[int, Set[int]]) -> None:
        """
        Rebuild the accumulator from persisted leaves and root history.

        Args:
            trees: tree_number -> leaves in insertion order
            roots: tree_number -> accepted roots (replaces replayed history)
        """
        self.__init__(self.depth)

        for tree_number in sorted(trees):
            if tree_number > 0:
                while self.tree_number < tree_number:
                    self.new_tree()
            if trees[tree_number]:
                self._insert(list(trees[tree_number]))

        if roots:
            self.root_history = {n: set(r) for n, r in roots.items()}
            self.root_history.setdefault(self.tree_number, set()).add(self.merkle_root)

    def __repr__(self) -> str:
        return (
            f"CommitmentAccumulator(depth={self.depth}, tree={self.tree_number}, "
            f"next_index={self.next_leaf_index})"
        )


# =============================================================================
# Off-ledger sparse tree
# =============================================================================


class MerkleTree:
    """
    Fully materialized Merkle tree for proof generation.

    Only populated nodes are stored; anything to the right of the last
    populated index is an empty subtree and reads as the zero value.

    Attributes:
        depth: Tree depth
        tree_number: Which accumulator tree this mirrors
        levels: levels[0] are leaves, levels[depth] holds the root
    """

    def __init__(self, depth: int = DEFAULT_TREE_DEPTH, tree_number: int = 0):
        self.depth = depth
        self.tree_number = tree_number
        self.zeros, self.empty_root = compute_zeros(depth)
        self.levels: List[List[int]] = [[] for _ in range(depth + 1)]

    @classmethod
    def from_leaves(cls, leaves: Sequence[int], depth: int = DEFAULT_TREE_DEPTH, tree_number: int = 0) -> "MerkleTree":
        """Build a tree from scratch over ``leaves``."""
        tree = cls(depth=depth, tree_number=tree_number)
        tree.insert_leaves(leaves, 0)
        return tree

    @property
    def length(self) -> int:
        """Number of leaves."""
        return len(self.levels[0])

    @property
    def root(self) -> int:
        if not self.levels[self.depth]:
            return self.empty_root
        return self.levels[self.depth][0]

    def node(self, level: int, index: int) -> int:
        row = self.levels[level]
        if index < len(row):
            return row[index]
        return self.zeros[level] if level < self.depth else self.empty_root

    def insert_leaves(self, leaves: Sequence[int], start_index: int) -> None:
        """
        Write leaves at ``start_index`` and recompute their paths.

        Raises:
            FormatError: On gaps, overflow, or out-of-field leaves
        """
        if not leaves:
            return
        _check_leaves(leaves)
        if start_index != self.length:
            raise FormatError(f"Leaves must be appended at {self.length}, got {start_index}")
        if start_index + len(leaves) > 2 ** self.depth:
            raise FormatError("Leaves exceed tree capacity")

        self.levels[0].extend(leaves)

        low = start_index
        high = start_index + len(leaves) - 1
        for level in range(self.depth):
            low >>= 1
            high >>= 1
            parents = self.levels[level + 1]
            for index in range(low, high + 1):
                value = hash_left_right(self.node(level, 2 * index), self.node(level, 2 * index + 1))
                if index < len(parents):
                    parents[index] = value
                else:
                    parents.append(value)

    def generate_proof(self, leaf_index: int) -> MerkleProof:
        """
        Inclusion proof for the leaf at ``leaf_index`` against the current root.

        Raises:
            IndexError: If the leaf does not exist
        """
        if not (0 <= leaf_index < self.length):
            raise IndexError(f"Leaf index {leaf_index} out of range")

        elements = []
        index = leaf_index
        for level in range(self.depth):
            elements.append(self.node(level, index ^ 1))
            index >>= 1

        return MerkleProof(
            leaf=self.levels[0][leaf_index],
            elements=tuple(elements),
            indices=leaf_index,
            root=self.root,
        )

    def leaves(self) -> List[int]:
        return list(self.levels[0])

    def __len__(self) -> int:
        return self.length

    def __contains__(self, leaf: int) -> bool:
        return leaf in self.levels[0]
