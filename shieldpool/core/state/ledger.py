"""
Shielded pool - the transaction validator and state owner.

Conceptual Background:
---------------------
The pool maintains the global shielded state:

1. **Commitment accumulator**: every note commitment, across rolling trees
2. **Nullifier set**: every nullifier ever published (marks spent notes)
3. **Verifier registry**: one Groth16 key per (inputs, outputs) shape
4. **Fee schedule**: basis-point fees on shield and unshield

Operations:
----------
- ``shield``: pull public tokens in, charge the shield fee, insert commitments
- ``transact``: verify proofs, nullify inputs, insert outputs, pay unshields
- ``estimate_transact``: every transact check except the pairing, no mutation

Atomicity:
---------
Every batch runs inside ``atomic()``. Each stateful part keeps an undo
journal while a savepoint is open; any exception replays those journals so
the accumulator, nullifier set, fees and token vault return to their
pre-batch state, and events emitted by the batch are dropped. Writes to
storage are buffered and flushed only when the outermost atomic block
succeeds, so a relay that fails after its inner ``transact`` leaves nothing
on disk either.

Transact ordering (per batch):
-----------------------------
    for tx in batch:  validate(tx); nullify(tx)
    insert all non-unshield commitments in one accumulator batch
    for tx in batch:  pay unshield (if any)
"""

from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence, Set, Tuple

from shieldpool.core.config import PoolConfig
from shieldpool.core.errors import (
    AuthorizationError,
    FormatError,
    ProofError,
    ShieldPoolError,
    StateError,
    TransferError,
)
from shieldpool.core.prover.groth16 import VerifyingKey, verify_proof
from shieldpool.core.prover.verifier import VerifierRegistry
from shieldpool.core.state.events import (
    FeeChangeEvent,
    NullifiedEvent,
    PoolEvent,
    ShieldEvent,
    TransactEvent,
    UnshieldEvent,
)
from shieldpool.core.state.merkle import CommitmentAccumulator
from shieldpool.core.state.note import CommitmentPreimage, ShieldCiphertext, TokenData, TokenType
from shieldpool.core.state.nullifiers import NullifierSet
from shieldpool.core.state.transaction import NO_ADAPT_CONTRACT, ShieldRequest, Transaction, UnshieldType
from shieldpool.core.storage.storage_manager import StorageManager
from shieldpool.core.tokenomics import FeeManager, FeeSchedule
from shieldpool.core.tokens import InMemoryTokenVault, TokenVault
from shieldpool.crypto import bytes_to_hex
from shieldpool.utils.logger import get_logger
from shieldpool.utils.validation import validate_field_element, validate_note_value

logger = get_logger("ledger")


# =============================================================================
# Authorization
# =============================================================================


class Authority:
    """Opaque "is this caller allowed to administer the pool" check."""

    def is_authorized(self, caller: bytes) -> bool:
        raise NotImplementedError


class OwnerAuthority(Authority):
    """Single-owner authority."""

    def __init__(self, owner: bytes):
        self.owner = owner

    def is_authorized(self, caller: bytes) -> bool:
        return caller == self.owner


# =============================================================================
# Shielded Pool
# =============================================================================


class ShieldedPool:
    """
    Shielded-value ledger.

    Attributes:
        accumulator: Commitment trees and root history
        nullifiers: Spent-note set
        verifier: Verifying keys by shape
        fees: Fee schedule and collected totals
        blocklist: Token IDs that cannot be shielded or unshielded
        events: Append-only event log
    """

    def __init__(
        self,
        config: Optional[PoolConfig] = None,
        vault: Optional[TokenVault] = None,
        authority: Optional[Authority] = None,
        storage_manager: Optional[StorageManager] = None,
    ):
        """
        Initialize the pool.

        Args:
            config: Pool parameters (defaults if omitted)
            vault: Underlying token ledger. None = fresh in-memory vault.
            authority: Admin check. None = config owner only.
            storage_manager: Persistence manager. None = in-memory only.
        """
        self.config = config or PoolConfig()
        self.address = self.config.pool_address_bytes
        self.treasury = self.config.treasury_bytes
        self.chain_id = self.config.chain_id

        self.accumulator = CommitmentAccumulator(self.config.tree_depth)
        self.nullifiers = NullifierSet()
        self.verifier = VerifierRegistry()
        self.fees = FeeManager(FeeSchedule(self.config.shield_fee_bp, self.config.unshield_fee_bp))
        self.blocklist: Set[int] = set()

        self.vault = vault if vault is not None else InMemoryTokenVault()
        self.authority = authority or OwnerAuthority(self.config.owner_bytes)

        self.events: List[PoolEvent] = []

        self._atomic_depth = 0
        self._pending_writes: List[Tuple[int, int, List[int], List[Tuple[int, int]], List[Tuple[int, int]]]] = []

        self.storage_manager = storage_manager
        if storage_manager:
            self._load_from_storage()

    # =========================================================================
    # State Access
    # =========================================================================

    @property
    def merkle_root(self) -> int:
        return self.accumulator.merkle_root

    @property
    def tree_number(self) -> int:
        return self.accumulator.tree_number

    @property
    def next_leaf_index(self) -> int:
        return self.accumulator.next_leaf_index

    def is_spent(self, tree_number: int, nullifier: int) -> bool:
        return self.nullifiers.contains(tree_number, nullifier)

    def is_blocklisted(self, token: TokenData) -> bool:
        return token.token_id in self.blocklist

    # =========================================================================
    # Atomic Batches
    # =========================================================================

    def _savepoint_parts(self) -> Tuple[Any, ...]:
        return (self.accumulator, self.nullifiers, self.fees, self.vault)

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """
        Run a block all-or-nothing.

        Opens a savepoint on the accumulator, nullifier set, fee manager and
        token vault. On any exception each part undoes its own mutations,
        events emitted inside the block are dropped, and the exception
        propagates. Nested blocks roll back only to their own entry point;
        storage is written when the outermost block completes.
        """
        savepoints = [(part, part.checkpoint()) for part in self._savepoint_parts()]
        events = len(self.events)
        pending = len(self._pending_writes)
        self._atomic_depth += 1
        try:
            yield
        except Exception:
            for part, savepoint in reversed(savepoints):
                part.rollback(savepoint)
            del self.events[events:]
            del self._pending_writes[pending:]
            raise
        finally:
            self._atomic_depth -= 1

        for part, savepoint in savepoints:
            part.release(savepoint)
        if self._atomic_depth == 0:
            self._flush_pending_writes()

    # =========================================================================
    # Validation Helpers
    # =========================================================================

    def _require_authorized(self, caller: bytes) -> None:
        if not self.authority.is_authorized(caller):
            raise AuthorizationError("Caller is not authorized to administer the pool")

    def validate_preimage(self, preimage: CommitmentPreimage) -> None:
        """
        Check a shield or unshield preimage.

        Raises:
            FormatError: Zero or oversized value, npk out of field, blocklisted
                token, or an NFT with value other than 1
        """
        valid, err = validate_note_value(preimage.value)
        if not valid:
            raise FormatError(f"Invalid note value: {err}")

        valid, err = validate_field_element(preimage.npk, "npk")
        if not valid:
            raise FormatError(f"Invalid note public key: {err}")

        if self.is_blocklisted(preimage.token):
            raise FormatError("Unsupported token: blocklisted")

        if preimage.token.token_type == TokenType.ERC721 and preimage.value != 1:
            raise FormatError("Invalid note value: NFT notes must have value 1")

    def _validate_transaction(
        self,
        tx: Transaction,
        caller: bytes,
        gas_price: int,
        check_proof: bool,
    ) -> None:
        """
        Run every check on one transaction against current state.

        Raises:
            FormatError, StateError, AuthorizationError, ProofError
        """
        valid, err = tx.validate_structure()
        if not valid:
            raise FormatError(err)

        params = tx.bound_params

        if gas_price < params.min_gas_price:
            raise StateError("Gas price too low")

        if params.adapt_contract != NO_ADAPT_CONTRACT and params.adapt_contract != caller:
            raise AuthorizationError("Invalid adapt contract as sender")

        if params.chain_id != self.chain_id:
            raise StateError(f"Wrong chain id {params.chain_id}, expected {self.chain_id}")

        if not self.accumulator.is_known_root(params.tree_number, tx.merkle_root):
            raise StateError("Invalid Merkle Root")

        for nullifier in tx.nullifiers:
            if self.nullifiers.contains(params.tree_number, nullifier):
                raise StateError("Note already spent")

        if tx.is_unshield:
            self._validate_unshield(tx, caller)
        elif tx.override_output is not None:
            raise FormatError("Override output set on a transaction without unshield")

        # Raises StateError if the shape is unconfigured
        vk = self.verifier.get(*tx.shape)

        if check_proof:
            if not verify_proof(vk, tx.proof, tx.public_input_hash):
                raise ProofError("Invalid Snark Proof")

    def _validate_unshield(self, tx: Transaction, caller: bytes) -> None:
        preimage = tx.unshield_preimage
        self.validate_preimage(preimage)

        if preimage.hash != tx.commitments[-1]:
            raise FormatError("Invalid unshield note: preimage does not match last commitment")

        original = preimage.recipient
        if tx.override_output is not None and tx.override_output != original:
            if tx.bound_params.unshield != UnshieldType.REDIRECT:
                raise AuthorizationError("Unshield destination cannot be redirected")
            if caller != original:
                raise AuthorizationError("Only the original recipient can redirect an unshield")

    # =========================================================================
    # Token Movement
    # =========================================================================

    def _pull_in(self, preimage: CommitmentPreimage, depositor: bytes) -> Tuple[int, int]:
        """Take a deposit into the pool. Returns (base, fee)."""
        token = preimage.token

        if token.token_type == TokenType.ERC20:
            base, fee = self.fees.shield_fee(preimage.value)
            received = self.vault.transfer(token, depositor, self.address, base)
            if received != base:
                raise TransferError("ERC20 transfer did not deliver the full amount")
            if fee > 0:
                self.vault.transfer(token, depositor, self.treasury, fee)
            self.fees.record(token.token_id, base, fee)
            return base, fee

        if token.token_type == TokenType.ERC721:
            self.vault.transfer(token, depositor, self.address, 1)
            return 1, 0

        raise TransferError("ERC1155 tokens are unsupported")

    def _push_out(self, tx: Transaction) -> UnshieldEvent:
        """Pay an unshield out of the pool."""
        preimage = tx.unshield_preimage
        token = preimage.token
        recipient = tx.override_output if tx.override_output is not None else preimage.recipient

        if token.token_type == TokenType.ERC20:
            base, fee = self.fees.unshield_fee(preimage.value)
            self.vault.transfer(token, self.address, recipient, base)
            if fee > 0:
                self.vault.transfer(token, self.address, self.treasury, fee)
            self.fees.record(token.token_id, base, fee)
        elif token.token_type == TokenType.ERC721:
            self.vault.transfer(token, self.address, recipient, 1)
            base, fee = 1, 0
        else:
            raise TransferError("ERC1155 tokens are unsupported")

        return UnshieldEvent(to=recipient, token=token, amount=base, fee=fee)

    # =========================================================================
    # Shield
    # =========================================================================

    def shield(self, requests: Sequence[ShieldRequest], caller: bytes) -> ShieldEvent:
        """
        Deposit public tokens as new notes.

        Args:
            requests: Preimages (gross value) plus receiver ciphertexts
            caller: Depositor address the tokens are pulled from

        Returns:
            The emitted ShieldEvent

        Raises:
            FormatError: Malformed or blocklisted preimage
            TransferError: The token transfer failed
        """
        try:
            with self.atomic():
                if not requests:
                    raise FormatError("No shield requests")

                for request in requests:
                    if not isinstance(request.ciphertext, ShieldCiphertext):
                        raise FormatError("Shield request missing ciphertext")
                    self.validate_preimage(request.preimage)

                adjusted: List[CommitmentPreimage] = []
                fees: List[int] = []
                for request in requests:
                    base, fee = self._pull_in(request.preimage, caller)
                    adjusted.append(request.preimage.with_value(base))
                    fees.append(fee)

                tree_number, start_index = self.accumulator.insert_leaves([p.hash for p in adjusted])

                event = ShieldEvent(
                    tree_number=tree_number,
                    start_index=start_index,
                    commitments=tuple(adjusted),
                    shield_ciphertext=tuple(r.ciphertext for r in requests),
                    fees=tuple(fees),
                )
                self.events.append(event)
                self._queue_write(tree_number, start_index, [p.hash for p in adjusted], [])
        except ShieldPoolError as e:
            logger.warning(f"Shield rejected: {e}")
            raise

        logger.info(f"Shielded {len(requests)} notes into tree {tree_number} at {start_index}")
        return event

    # =========================================================================
    # Transact
    # =========================================================================

    def transact(self, transactions: Sequence[Transaction], caller: bytes, gas_price: int = 0) -> TransactEvent:
        """
        Process a batch of private transfers and unshields.

        Args:
            transactions: Proven transactions, processed in order
            caller: Top-level submitter (checked against adapt locks and overrides)
            gas_price: Gas price the batch is submitted at

        Returns:
            The emitted TransactEvent

        Raises:
            FormatError, StateError, AuthorizationError, ProofError, TransferError
        """
        try:
            with self.atomic():
                event = self._transact(transactions, caller, gas_price)
        except ShieldPoolError as e:
            logger.warning(f"Transact batch rejected: {e}")
            raise

        logger.info(
            f"Transacted {len(transactions)} txs: {len(event.hashes)} commitments in tree "
            f"{event.tree_number} at {event.start_index}"
        )
        return event

    def _transact(self, transactions: Sequence[Transaction], caller: bytes, gas_price: int) -> TransactEvent:
        if not transactions:
            raise FormatError("No transactions")

        spent: List[Tuple[int, int]] = []
        for tx in transactions:
            self._validate_transaction(tx, caller, gas_price, check_proof=True)

            tree_number = tx.bound_params.tree_number
            self.nullifiers.insert_batch(tree_number, tx.nullifiers)
            spent.extend((tree_number, n) for n in tx.nullifiers)
            self.events.append(NullifiedEvent(tree_number=tree_number, nullifiers=tuple(tx.nullifiers)))

        hashes: List[int] = []
        ciphertexts = []
        for tx in transactions:
            outputs = tx.commitments[:-1] if tx.is_unshield else tx.commitments
            hashes.extend(outputs)
            ciphertexts.extend(tx.bound_params.commitment_ciphertext)

        tree_number, start_index = self.accumulator.insert_leaves(hashes)
        event = TransactEvent(
            tree_number=tree_number,
            start_index=start_index,
            hashes=tuple(hashes),
            ciphertext=tuple(ciphertexts),
        )
        self.events.append(event)

        for tx in transactions:
            if tx.is_unshield:
                self.events.append(self._push_out(tx))

        self._queue_write(tree_number, start_index, hashes, spent)
        return event

    def estimate_transact(
        self,
        transactions: Sequence[Transaction],
        caller: bytes,
        gas_price: int = 0,
    ) -> Dict[str, Any]:
        """
        Dry-run a transact batch without the pairing check.

        This is the only path that skips proof verification. It never
        mutates state and its result cannot be submitted.

        Returns:
            Summary of where the batch would land and what it would pay

        Raises:
            Same as ``transact`` except ProofError for a bad pairing
        """
        logger.warning("Estimating transact batch without proof verification")

        if not transactions:
            raise FormatError("No transactions")

        seen: Set[Tuple[int, int]] = set()
        outputs = 0
        unshield_fees: Dict[int, int] = {}

        for tx in transactions:
            self._validate_transaction(tx, caller, gas_price, check_proof=False)

            tree_number = tx.bound_params.tree_number
            for nullifier in tx.nullifiers:
                if (tree_number, nullifier) in seen:
                    raise StateError("Note already spent")
                seen.add((tree_number, nullifier))

            outputs += len(tx.commitments) - (1 if tx.is_unshield else 0)

            if tx.is_unshield and tx.unshield_preimage.token.token_type == TokenType.ERC20:
                token_id = tx.unshield_preimage.token.token_id
                _, fee = self.fees.unshield_fee(tx.unshield_preimage.value)
                unshield_fees[token_id] = unshield_fees.get(token_id, 0) + fee

        if outputs > self.accumulator.capacity:
            raise FormatError(f"Batch of {outputs} leaves exceeds tree capacity {self.accumulator.capacity}")
        tree_number, start_index = self.accumulator.get_insertion_tree_number_and_start_index(outputs)

        return {
            "transactions": len(transactions),
            "nullifiers": len(seen),
            "commitments": outputs,
            "tree_number": tree_number,
            "start_index": start_index,
            "unshield_fees": unshield_fees,
            "proof_checked": False,
        }

    # =========================================================================
    # Administration
    # =========================================================================

    def change_fees(self, caller: bytes, shield_fee_bp: int, unshield_fee_bp: int) -> bool:
        """
        Replace the fee schedule.

        Raises:
            AuthorizationError: Caller is not authorized
            FormatError: A rate exceeds 10000 bp
        """
        self._require_authorized(caller)
        changed = self.fees.change_fees(shield_fee_bp, unshield_fee_bp)
        if changed:
            self.events.append(FeeChangeEvent(shield_fee_bp=shield_fee_bp, unshield_fee_bp=unshield_fee_bp))
            if self.storage_manager:
                self.storage_manager.save_fees(shield_fee_bp, unshield_fee_bp)
        return changed

    def set_verification_key(self, caller: bytes, nullifiers: int, commitments: int, vk: VerifyingKey) -> None:
        """Register the verifying key for a circuit shape."""
        self._require_authorized(caller)
        self.verifier.set(nullifiers, commitments, vk)
        if self.storage_manager:
            self.storage_manager.save_verifying_key(nullifiers, commitments, vk)

    def remove_verification_key(self, caller: bytes, nullifiers: int, commitments: int) -> bool:
        """Unregister a circuit shape. Transactions of that shape fail afterwards."""
        self._require_authorized(caller)
        removed = self.verifier.remove(nullifiers, commitments)
        if removed and self.storage_manager:
            self.storage_manager.delete_verifying_key(nullifiers, commitments)
        return removed

    def add_to_blocklist(self, caller: bytes, token: TokenData) -> None:
        self._require_authorized(caller)
        self.blocklist.add(token.token_id)
        if self.storage_manager:
            self.storage_manager.add_blocklisted(token.token_id)
        logger.info(f"Token {bytes_to_hex(token.token_address)} added to blocklist")

    def remove_from_blocklist(self, caller: bytes, token: TokenData) -> None:
        self._require_authorized(caller)
        self.blocklist.discard(token.token_id)
        if self.storage_manager:
            self.storage_manager.remove_blocklisted(token.token_id)
        logger.info(f"Token {bytes_to_hex(token.token_address)} removed from blocklist")

    def retire_root(self, caller: bytes, tree_number: int, root: int) -> bool:
        """
        Stop accepting proofs against a historical root.

        Raises:
            AuthorizationError: Caller is not authorized
            FormatError: ``root`` is the current root
        """
        self._require_authorized(caller)
        retired = self.accumulator.retire_root(tree_number, root)
        if retired and self.storage_manager:
            self.storage_manager.retire_root(tree_number, root)
        return retired

    # =========================================================================
    # Persistence
    # =========================================================================

    def _queue_write(
        self,
        tree_number: int,
        start_index: int,
        leaves: List[int],
        nullifiers: List[Tuple[int, int]],
    ) -> None:
        if not self.storage_manager:
            return
        roots = [(tree_number, self.accumulator.merkle_root)] if leaves else []
        self._pending_writes.append((tree_number, start_index, list(leaves), nullifiers, roots))

    def _flush_pending_writes(self) -> None:
        pending, self._pending_writes = self._pending_writes, []
        for tree_number, start_index, leaves, nullifiers, roots in pending:
            self.storage_manager.persist_batch(tree_number, start_index, leaves, nullifiers, roots)

    def _load_from_storage(self) -> None:
        """Load state from storage manager."""
        state = self.storage_manager.load_pool_state()

        if state.is_empty:
            self.storage_manager.persist_root(0, self.accumulator.merkle_root)
        else:
            self.accumulator.load(state.trees, state.roots)
            self.nullifiers.load(state.nullifiers)

        for n_in, n_out, vk in state.verifying_keys:
            self.verifier.set(n_in, n_out, vk)
        self.blocklist.update(state.blocklist)
        if state.fees is not None:
            self.fees.schedule = FeeSchedule(*state.fees)

        logger.info(
            f"Loaded pool: tree={self.tree_number}, next_index={self.next_leaf_index}, "
            f"nullifiers={len(self.nullifiers)}"
        )

    def close(self) -> None:
        """Close storage."""
        if self.storage_manager:
            self.storage_manager.close()

    # =========================================================================
    # Utility
    # =========================================================================

    def __repr__(self) -> str:
        return (
            f"ShieldedPool(tree={self.tree_number}, next_index={self.next_leaf_index}, "
            f"nullifiers={len(self.nullifiers)})"
        )

    def stats(self) -> dict:
        """Get pool statistics."""
        return {
            "tree_number": self.tree_number,
            "next_leaf_index": self.next_leaf_index,
            "merkle_root": hex(self.merkle_root),
            "nullifier_count": len(self.nullifiers),
            "shapes": self.verifier.shapes(),
            "blocklisted_tokens": len(self.blocklist),
            "events": len(self.events),
            "fees": self.fees.stats(),
        }
