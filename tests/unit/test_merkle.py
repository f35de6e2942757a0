"""
Unit tests for the commitment accumulator and the off-ledger Merkle tree.

Tests cover:
1. Empty tree roots and zero values
2. Incremental insertion against from-scratch rebuilds
3. Root history and retirement
4. Tree rollover
5. Inclusion proofs
"""

import pytest

from shieldpool.core.errors import FormatError
from shieldpool.core.state.merkle import (
    ZERO_VALUE,
    CommitmentAccumulator,
    MerkleProof,
    MerkleTree,
    compute_zeros,
    validate_proof,
)
from shieldpool.crypto import FIELD_PRIME, hash_left_right, keccak_to_field


def leaves(n, offset=1):
    return [offset + i for i in range(n)]


# =============================================================================
# Zero Values
# =============================================================================


class TestZeros:
    """Empty-subtree hashes."""

    def test_zero_leaf(self):
        assert ZERO_VALUE == keccak_to_field(b"shieldpool")

    def test_zero_chain(self):
        zeros, empty_root = compute_zeros(3)
        assert zeros[1] == hash_left_right(zeros[0], zeros[0])
        assert zeros[2] == hash_left_right(zeros[1], zeros[1])
        assert empty_root == hash_left_right(zeros[2], zeros[2])

    def test_empty_roots_agree(self):
        assert CommitmentAccumulator(4).merkle_root == MerkleTree(4).root


# =============================================================================
# Accumulator
# =============================================================================


class TestAccumulator:
    """Ledger-side frontier insertion."""

    def test_single_leaf_matches_rebuild(self):
        acc = CommitmentAccumulator(4)
        acc.insert_leaves([7])
        assert acc.merkle_root == MerkleTree.from_leaves([7], depth=4).root

    @pytest.mark.parametrize("batches", [[1, 1, 1], [3, 2], [2, 5, 1], [1, 4, 3], [16]])
    def test_batches_match_rebuild(self, batches):
        """Any batch split gives the same root as a full rebuild."""
        acc = CommitmentAccumulator(4)
        inserted = []
        for size in batches:
            batch = leaves(size, offset=len(inserted) + 1)
            acc.insert_leaves(batch)
            inserted.extend(batch)
            assert acc.merkle_root == MerkleTree.from_leaves(inserted, depth=4).root
        assert acc.next_leaf_index == len(inserted)

    def test_returns_position(self):
        acc = CommitmentAccumulator(4)
        assert acc.insert_leaves(leaves(3)) == (0, 0)
        assert acc.insert_leaves(leaves(2)) == (0, 3)

    def test_empty_batch_is_noop(self):
        acc = CommitmentAccumulator(4)
        root = acc.merkle_root
        assert acc.insert_leaves([]) == (0, 0)
        assert acc.merkle_root == root

    def test_out_of_field_leaf_rejected(self):
        acc = CommitmentAccumulator(4)
        with pytest.raises(FormatError):
            acc.insert_leaves([FIELD_PRIME])

    def test_oversized_batch_rejected(self):
        acc = CommitmentAccumulator(2)
        with pytest.raises(FormatError):
            acc.insert_leaves(leaves(5))

    def test_depth_bounds(self):
        with pytest.raises(FormatError):
            CommitmentAccumulator(0)


class TestRootHistory:
    """Historical roots stay valid until retired."""

    def test_every_root_is_known(self):
        acc = CommitmentAccumulator(4)
        roots = [acc.merkle_root]
        for i in range(3):
            acc.insert_leaves([i + 1])
            roots.append(acc.merkle_root)
        for root in roots:
            assert acc.is_known_root(0, root)

    def test_unknown_root(self):
        acc = CommitmentAccumulator(4)
        assert not acc.is_known_root(0, 12345)
        assert not acc.is_known_root(1, acc.merkle_root)

    def test_retire_historical_root(self):
        acc = CommitmentAccumulator(4)
        old = acc.merkle_root
        acc.insert_leaves([1])
        assert acc.retire_root(0, old)
        assert not acc.is_known_root(0, old)

    def test_retire_unknown_root(self):
        acc = CommitmentAccumulator(4)
        acc.insert_leaves([1])
        assert not acc.retire_root(0, 999)

    def test_cannot_retire_current_root(self):
        acc = CommitmentAccumulator(4)
        acc.insert_leaves([1])
        with pytest.raises(FormatError):
            acc.retire_root(0, acc.merkle_root)


class TestRollover:
    """A batch never spans two trees."""

    def test_batch_that_overflows_starts_new_tree(self):
        acc = CommitmentAccumulator(2)
        acc.insert_leaves(leaves(3))
        tree_number, start = acc.insert_leaves(leaves(2, offset=10))

        assert (tree_number, start) == (1, 0)
        assert acc.next_leaf_index == 2
        assert acc.merkle_root == MerkleTree.from_leaves([10, 11], depth=2).root

    def test_exact_fill_stays_in_tree(self):
        acc = CommitmentAccumulator(2)
        acc.insert_leaves(leaves(2))
        assert acc.insert_leaves(leaves(2, offset=5)) == (0, 2)
        assert acc.tree_number == 0

    def test_old_tree_roots_survive_rollover(self):
        acc = CommitmentAccumulator(2)
        acc.insert_leaves(leaves(3))
        old_root = acc.merkle_root
        acc.insert_leaves(leaves(2, offset=10))
        assert acc.is_known_root(0, old_root)
        assert not acc.is_known_root(1, old_root)

    def test_insertion_position_preview(self):
        acc = CommitmentAccumulator(2)
        acc.insert_leaves(leaves(3))
        assert acc.get_insertion_tree_number_and_start_index(1) == (0, 3)
        assert acc.get_insertion_tree_number_and_start_index(2) == (1, 0)

    def test_load_replays_trees(self):
        acc = CommitmentAccumulator(2)
        acc.insert_leaves(leaves(3))
        acc.insert_leaves(leaves(2, offset=10))

        restored = CommitmentAccumulator(2)
        restored.load({0: leaves(3), 1: [10, 11]}, {})
        assert restored.tree_number == 1
        assert restored.next_leaf_index == 2
        assert restored.merkle_root == acc.merkle_root


# =============================================================================
# Savepoints
# =============================================================================


class TestAccumulatorSavepoints:
    """Rollback restores the frontier and forgets the batch's roots."""

    def test_rollback_single_batch(self):
        acc = CommitmentAccumulator(3)
        acc.insert_leaves(leaves(3))
        root, filled = acc.merkle_root, list(acc.filled_subtrees)

        savepoint = acc.checkpoint()
        acc.insert_leaves(leaves(2, offset=20))
        new_root = acc.merkle_root
        acc.rollback(savepoint)

        assert acc.merkle_root == root
        assert acc.filled_subtrees == filled
        assert acc.next_leaf_index == 3
        assert not acc.is_known_root(0, new_root)
        assert acc.is_known_root(0, root)

        # Re-inserting after rollback matches a rebuild
        acc.insert_leaves(leaves(2, offset=30))
        assert acc.merkle_root == MerkleTree.from_leaves(leaves(3) + leaves(2, offset=30), depth=3).root

    def test_rollback_across_rollover(self):
        acc = CommitmentAccumulator(2)
        acc.insert_leaves(leaves(3))
        history = {n: set(r) for n, r in acc.root_history.items()}

        savepoint = acc.checkpoint()
        acc.insert_leaves(leaves(2, offset=10))
        acc.insert_leaves(leaves(1, offset=20))
        assert acc.tree_number == 1
        acc.rollback(savepoint)

        assert (acc.tree_number, acc.next_leaf_index) == (0, 3)
        assert acc.root_history == history
        assert acc.insert_leaves(leaves(1, offset=40)) == (0, 3)

    def test_release_clears_journal(self):
        acc = CommitmentAccumulator(2)
        savepoint = acc.checkpoint()
        acc.insert_leaves(leaves(2))
        assert acc.journal_size == 2
        acc.release(savepoint)
        assert acc.journal_size == 0
        assert acc.next_leaf_index == 2


# =============================================================================
# Off-ledger Tree and Proofs
# =============================================================================


class TestMerkleTree:
    """Sparse tree and inclusion proofs."""

    def test_proofs_validate(self):
        tree = MerkleTree.from_leaves(leaves(5), depth=4)
        for i in range(5):
            proof = tree.generate_proof(i)
            assert proof.leaf == i + 1
            assert proof.root == tree.root
            assert validate_proof(proof)

    def test_incremental_matches_rebuild(self):
        tree = MerkleTree(depth=4)
        tree.insert_leaves(leaves(3), 0)
        tree.insert_leaves(leaves(4, offset=4), 3)
        assert tree.root == MerkleTree.from_leaves(leaves(7), depth=4).root

    def test_gap_rejected(self):
        tree = MerkleTree(depth=4)
        with pytest.raises(FormatError):
            tree.insert_leaves([1], 2)

    def test_capacity_enforced(self):
        tree = MerkleTree(depth=2)
        with pytest.raises(FormatError):
            tree.insert_leaves(leaves(5), 0)

    def test_proof_index_range(self):
        tree = MerkleTree.from_leaves(leaves(2), depth=4)
        with pytest.raises(IndexError):
            tree.generate_proof(2)

    def test_tampered_proof_fails(self):
        tree = MerkleTree.from_leaves(leaves(4), depth=4)
        proof = tree.generate_proof(1)
        wrong_leaf = MerkleProof(leaf=99, elements=proof.elements, indices=proof.indices, root=proof.root)
        wrong_index = MerkleProof(leaf=proof.leaf, elements=proof.elements, indices=0, root=proof.root)
        assert not validate_proof(wrong_leaf)
        assert not validate_proof(wrong_index)

    def test_out_of_range_index_fails(self):
        tree = MerkleTree.from_leaves(leaves(1), depth=2)
        proof = tree.generate_proof(0)
        assert not validate_proof(MerkleProof(proof.leaf, proof.elements, 4, proof.root))

    def test_contains(self):
        tree = MerkleTree.from_leaves([5, 6], depth=2)
        assert 5 in tree
        assert 7 not in tree
        assert len(tree) == 2


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
