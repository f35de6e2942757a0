from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set, Tuple

from shieldpool.core.prover.groth16 import VerifyingKey
from shieldpool.core.storage.sqlite_adapter import SQLiteAdapter
from shieldpool.utils.logger import get_logger

logger = get_logger("storage.manager")


@dataclass
class PoolState:
    """Everything a pool needs to resume after restart."""
    trees: Dict[int, List[int]] = field(default_factory=dict)
    roots: Dict[int, Set[int]] = field(default_factory=dict)
    nullifiers: List[Tuple[int, int]] = field(default_factory=list)
    verifying_keys: List[Tuple[int, int, VerifyingKey]] = field(default_factory=list)
    blocklist: List[int] = field(default_factory=list)
    fees: Optional[Tuple[int, int]] = None
    tree_number: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.trees and not self.roots and not self.nullifiers


class StorageManager:
    """
    Manages persistent storage for the pool.

    Coordinates data persistence using SQLite adapter.
    Handles:
    - Accumulator leaves and root history
    - Nullifier set
    - Verifying keys, blocklist and fee schedule
    """

    def __init__(self, data_dir: Path, db_name: str = "pool.db"):
        self.data_dir = Path(data_dir)
        self.db_path = self.data_dir / db_name
        self.adapter = SQLiteAdapter(self.db_path)

        logger.info(f"StorageManager initialized at {self.db_path}")

    def close(self) -> None:
        self.adapter.close()

    # =========================================================================
    # Pool Batches
    # =========================================================================

    def persist_batch(
        self,
        tree_number: int,
        start_index: int,
        leaves: Sequence[int],
        nullifiers: Sequence[Tuple[int, int]],
        roots: Sequence[Tuple[int, int]],
    ):
        """
        Atomically persist one shield or transact batch.

        Args:
            tree_number: Tree the leaves landed in
            start_index: Index of the first leaf
            leaves: Inserted commitments, in order
            nullifiers: (tree_number, nullifier) pairs spent by the batch
            roots: (tree_number, root) pairs added to root history
        """
        self.adapter.persist_batch(
            leaves=[(tree_number, start_index + i, leaf) for i, leaf in enumerate(leaves)],
            nullifiers=nullifiers,
            roots=roots,
            meta={"tree_number": str(tree_number)},
        )
        logger.debug(
            f"Persisted batch: {len(leaves)} leaves, {len(nullifiers)} nullifiers, {len(roots)} roots"
        )

    def persist_root(self, tree_number: int, root: int):
        self.adapter.save_root(tree_number, root)

    def retire_root(self, tree_number: int, root: int):
        self.adapter.retire_root(tree_number, root)

    def is_nullifier_spent(self, tree_number: int, nullifier: int) -> bool:
        return self.adapter.is_nullifier_spent(tree_number, nullifier)

    def get_commitment_count(self) -> int:
        return self.adapter.get_commitments_count()

    # =========================================================================
    # Administration
    # =========================================================================

    def save_fees(self, shield_fee_bp: int, unshield_fee_bp: int):
        self.adapter.set_chain_meta("shield_fee_bp", str(shield_fee_bp))
        self.adapter.set_chain_meta("unshield_fee_bp", str(unshield_fee_bp))

    def save_verifying_key(self, n_inputs: int, n_outputs: int, vk: VerifyingKey):
        self.adapter.save_verifying_key(n_inputs, n_outputs, vk.to_dict())

    def delete_verifying_key(self, n_inputs: int, n_outputs: int):
        self.adapter.delete_verifying_key(n_inputs, n_outputs)

    def add_blocklisted(self, token_id: int):
        self.adapter.add_blocklisted(token_id)

    def remove_blocklisted(self, token_id: int):
        self.adapter.remove_blocklisted(token_id)

    # =========================================================================
    # Loading
    # =========================================================================

    def load_pool_state(self) -> PoolState:
        """
        Load full pool state.

        Returns:
            PoolState (empty if nothing was persisted)
        """
        state = PoolState(
            trees=self.adapter.get_commitments(),
            roots={tree: set(roots) for tree, roots in self.adapter.get_roots().items()},
            nullifiers=self.adapter.get_all_nullifiers(),
            verifying_keys=[
                (n_in, n_out, VerifyingKey.from_dict(data))
                for n_in, n_out, data in self.adapter.get_verifying_keys()
            ],
            blocklist=self.adapter.get_blocklist(),
        )

        shield_bp = self.adapter.get_chain_meta("shield_fee_bp")
        unshield_bp = self.adapter.get_chain_meta("unshield_fee_bp")
        if shield_bp is not None and unshield_bp is not None:
            state.fees = (int(shield_bp), int(unshield_bp))

        tree_number = self.adapter.get_chain_meta("tree_number")
        state.tree_number = int(tree_number) if tree_number else 0

        logger.info(
            f"Loaded pool state: {sum(len(t) for t in state.trees.values())} leaves, "
            f"{len(state.nullifiers)} nullifiers, {len(state.verifying_keys)} keys"
        )
        return state
