"""
Wallet - the off-ledger side of the pool.

Conceptual Background:
---------------------
The pool only ever sees commitments, nullifiers and ciphertexts. A wallet
turns that public log back into spendable notes:

1. **Scan**: walk pool events in order, mirroring every tree locally and
   trying to decrypt each ciphertext with the viewing key.
   - Shield events: ECDH with the published ``shield_key`` recovers the note
     random; the note is ours if H(mpk, random) equals the published npk.
   - Transact events: the blinded sender key gives the shared AES key; the
     note is ours if the decrypted master public key is ours and the
     recomputed commitment matches the leaf.
   - Nullified events: mark our notes spent.
2. **Build**: select unspent notes, compute Merkle proofs and nullifiers
   against the local mirror, sign the public-input hash with the spending
   key and hand the witness to a proving backend.

Nothing is reserved on the ledger while proving. A note spent elsewhere in
the meantime is only discovered when the pool rejects the nullifier.
"""

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple, Union

from shieldpool.core.errors import FormatError, StateError
from shieldpool.core.prover.prover import CircuitInputs
from shieldpool.core.state.events import NullifiedEvent, PoolEvent, ShieldEvent, TransactEvent
from shieldpool.core.state.merkle import DEFAULT_TREE_DEPTH, MerkleTree
from shieldpool.core.state.note import (
    CommitmentPreimage,
    Note,
    OutputNote,
    TokenData,
    decrypt_commitment_ciphertext,
    decrypt_shield_random,
    encrypt_shield_random,
    get_master_public_key,
    get_note_public_key,
    get_nullifying_key,
    unshield_preimage,
)
from shieldpool.core.state.transaction import (
    NO_ADAPT_CONTRACT,
    BoundParams,
    ShieldRequest,
    Transaction,
    UnshieldType,
    hash_public_inputs,
)
from shieldpool.crypto import babyjubjub, generate_viewing_keypair, random_bytes, viewing_public_key
from shieldpool.utils.logger import get_logger
from shieldpool.utils.validation import NOTE_RANDOM_SIZE

logger = get_logger("wallet")

AdaptParams = Union[int, Callable[[List[int]], int]]


# =============================================================================
# Addresses and Notes
# =============================================================================


@dataclass(frozen=True)
class ShieldedAddress:
    """What a sender needs to pay a wallet."""
    master_public_key: int
    viewing_public_key: bytes


@dataclass(frozen=True)
class Payment:
    """One transfer output."""
    to: ShieldedAddress
    value: int
    memo: str = ""


@dataclass
class WalletNote:
    """A note the wallet owns, with its position in the pool."""
    note: Note
    tree_number: int
    position: int
    nullifier: int
    memo: str = ""

    @property
    def value(self) -> int:
        return self.note.value

    @property
    def token(self) -> TokenData:
        return self.note.token


# =============================================================================
# Wallet
# =============================================================================


class Wallet:
    """
    Key holder, ledger mirror and transaction builder.

    Attributes:
        spending_key: 32-byte BabyJubJub private key
        viewing_key: 32-byte secp256k1 private key
        trees: Local mirror of every accumulator tree
        notes: (tree_number, position) -> owned note
        spent: (tree_number, nullifier) pairs seen on the ledger
    """

    def __init__(
        self,
        spending_key: Optional[bytes] = None,
        viewing_key: Optional[bytes] = None,
        tree_depth: int = DEFAULT_TREE_DEPTH,
        chain_id: int = 1,
    ):
        self.spending_key = spending_key or random_bytes(32)
        self.viewing_key = viewing_key or generate_viewing_keypair().private_key
        self.tree_depth = tree_depth
        self.chain_id = chain_id

        self.spending_public_key = babyjubjub.private_to_public(self.spending_key)
        self.nullifying_key = get_nullifying_key(self.viewing_key)
        self.master_public_key = get_master_public_key(self.spending_public_key, self.nullifying_key)
        self.viewing_public_key = viewing_public_key(self.viewing_key)

        self.trees: Dict[int, MerkleTree] = {}
        self.notes: Dict[Tuple[int, int], WalletNote] = {}
        self.spent: Set[Tuple[int, int]] = set()
        self._scanned = 0

    @property
    def address(self) -> ShieldedAddress:
        return ShieldedAddress(self.master_public_key, self.viewing_public_key)

    # =========================================================================
    # Scanning
    # =========================================================================

    def _tree(self, tree_number: int) -> MerkleTree:
        if tree_number not in self.trees:
            self.trees[tree_number] = MerkleTree(depth=self.tree_depth, tree_number=tree_number)
        return self.trees[tree_number]

    def scan(self, events: Sequence[PoolEvent]) -> List[WalletNote]:
        """
        Process events not yet seen.

        Args:
            events: The pool's full event log

        Returns:
            Notes discovered in this call
        """
        found: List[WalletNote] = []

        for event in events[self._scanned:]:
            if isinstance(event, ShieldEvent):
                found.extend(self._scan_shield(event))
            elif isinstance(event, TransactEvent):
                found.extend(self._scan_transact(event))
            elif isinstance(event, NullifiedEvent):
                for nullifier in event.nullifiers:
                    self.spent.add((event.tree_number, nullifier))

        self._scanned = len(events)
        if found:
            logger.info(f"Scan found {len(found)} notes")
        return found

    def _add_note(self, note: Note, tree_number: int, position: int, memo: str = "") -> WalletNote:
        wallet_note = WalletNote(
            note=note,
            tree_number=tree_number,
            position=position,
            nullifier=note.nullifier(position),
            memo=memo,
        )
        self.notes[(tree_number, position)] = wallet_note
        return wallet_note

    def _scan_shield(self, event: ShieldEvent) -> List[WalletNote]:
        hashes = [preimage.hash for preimage in event.commitments]
        self._tree(event.tree_number).insert_leaves(hashes, event.start_index)

        found = []
        for offset, (preimage, ciphertext) in enumerate(zip(event.commitments, event.shield_ciphertext)):
            try:
                random = decrypt_shield_random(ciphertext, self.viewing_key)
            except ValueError:
                continue
            if get_note_public_key(self.master_public_key, random) != preimage.npk:
                continue

            note = Note(
                spending_key=self.spending_key,
                viewing_key=self.viewing_key,
                value=preimage.value,
                random=random,
                token=preimage.token,
            )
            found.append(self._add_note(note, event.tree_number, event.start_index + offset))
        return found

    def _scan_transact(self, event: TransactEvent) -> List[WalletNote]:
        self._tree(event.tree_number).insert_leaves(list(event.hashes), event.start_index)

        found = []
        for offset, (leaf, ciphertext) in enumerate(zip(event.hashes, event.ciphertext)):
            try:
                decrypted = decrypt_commitment_ciphertext(ciphertext, self.viewing_key)
            except ValueError:
                continue
            if decrypted.master_public_key != self.master_public_key:
                continue

            note = Note(
                spending_key=self.spending_key,
                viewing_key=self.viewing_key,
                value=decrypted.value,
                random=decrypted.random,
                token=decrypted.token,
                memo=decrypted.memo,
            )
            if note.hash != leaf:
                logger.warning(f"Ciphertext at {event.tree_number}:{event.start_index + offset} does not match its leaf")
                continue
            found.append(self._add_note(note, event.tree_number, event.start_index + offset, decrypted.memo))
        return found

    # =========================================================================
    # Balances
    # =========================================================================

    def is_spent(self, wallet_note: WalletNote) -> bool:
        return (wallet_note.tree_number, wallet_note.nullifier) in self.spent

    def unspent_notes(self, token: Optional[TokenData] = None) -> List[WalletNote]:
        notes = [n for n in self.notes.values() if not self.is_spent(n)]
        if token is not None:
            notes = [n for n in notes if n.token.token_id == token.token_id]
        return sorted(notes, key=lambda n: (n.tree_number, n.position))

    def balance(self, token: TokenData) -> int:
        return sum(n.value for n in self.unspent_notes(token))

    def balances(self) -> Dict[int, int]:
        """token_id -> spendable value."""
        totals: Dict[int, int] = {}
        for wallet_note in self.unspent_notes():
            token_id = wallet_note.token.token_id
            totals[token_id] = totals.get(token_id, 0) + wallet_note.value
        return totals

    # =========================================================================
    # Shield
    # =========================================================================

    def shield_request(
        self,
        token: TokenData,
        value: int,
        receiver: Optional[ShieldedAddress] = None,
    ) -> ShieldRequest:
        """
        Build a deposit for this wallet (or ``receiver``).

        ``value`` is the gross amount; the pool deducts its fee from it.
        """
        receiver = receiver or self.address
        random = random_bytes(NOTE_RANDOM_SIZE)
        preimage = CommitmentPreimage(
            npk=get_note_public_key(receiver.master_public_key, random),
            token=token,
            value=value,
        )
        return ShieldRequest(
            preimage=preimage,
            ciphertext=encrypt_shield_random(random, receiver.viewing_public_key),
        )

    # =========================================================================
    # Transactions
    # =========================================================================

    def select_notes(self, token: TokenData, amount: int, max_inputs: int) -> List[WalletNote]:
        """
        Pick same-tree unspent notes covering ``amount``, largest first.

        Raises:
            StateError: If no single tree holds enough within ``max_inputs`` notes
        """
        by_tree: Dict[int, List[WalletNote]] = {}
        for wallet_note in self.unspent_notes(token):
            by_tree.setdefault(wallet_note.tree_number, []).append(wallet_note)

        for tree_number in sorted(by_tree, reverse=True):
            candidates = sorted(by_tree[tree_number], key=lambda n: n.value, reverse=True)
            selected: List[WalletNote] = []
            total = 0
            for wallet_note in candidates[:max_inputs]:
                selected.append(wallet_note)
                total += wallet_note.value
                if total >= amount:
                    return selected

        raise StateError(f"Insufficient spendable balance for {amount} within {max_inputs} notes")

    def build_transaction(
        self,
        prover,
        token: TokenData,
        payments: Sequence[Payment] = (),
        unshield_to: Optional[bytes] = None,
        unshield_value: int = 0,
        unshield_type: UnshieldType = UnshieldType.NORMAL,
        max_inputs: int = 2,
        min_gas_price: int = 0,
        adapt_contract: bytes = NO_ADAPT_CONTRACT,
        adapt_params: AdaptParams = 0,
    ) -> Transaction:
        """
        Build and prove a private transfer (optionally ending in an unshield).

        Args:
            prover: Anything with ``prove(CircuitInputs) -> Proof``
            token: Token every input and output carries
            payments: Shielded outputs
            unshield_to: Public recipient of an unshield output, if any
            unshield_value: Gross value of the unshield output
            unshield_type: NORMAL or REDIRECT (ignored without ``unshield_to``)
            max_inputs: Largest input count the available circuits accept
            min_gas_price: Gas floor bound into the proof
            adapt_contract: Required submitter, or zero
            adapt_params: Field element, or a function of the nullifiers

        Returns:
            Proven Transaction

        Raises:
            FormatError: No outputs
            StateError: Not enough spendable notes
            ProofError: The prover rejected the witness
        """
        if not payments and unshield_to is None:
            raise FormatError("Transaction needs at least one output")

        amount = sum(p.value for p in payments) + (unshield_value if unshield_to is not None else 0)
        inputs = self.select_notes(token, amount, max_inputs)
        tree_number = inputs[0].tree_number
        tree = self.trees[tree_number]

        outputs = [
            OutputNote(
                master_public_key=p.to.master_public_key,
                viewing_public_key=p.to.viewing_public_key,
                value=p.value,
                random=random_bytes(NOTE_RANDOM_SIZE),
                token=token,
                memo=p.memo,
            )
            for p in payments
        ]
        change = sum(n.value for n in inputs) - amount
        if change > 0:
            outputs.append(OutputNote(
                master_public_key=self.master_public_key,
                viewing_public_key=self.viewing_public_key,
                value=change,
                random=random_bytes(NOTE_RANDOM_SIZE),
                token=token,
            ))

        unshield_note = None
        if unshield_to is not None:
            unshield_note = unshield_preimage(unshield_to, token, unshield_value)
            mode = unshield_type
        else:
            mode = UnshieldType.NONE

        nullifiers = [n.nullifier for n in inputs]
        commitments = [o.hash for o in outputs]
        npk_out = [o.note_public_key for o in outputs]
        value_out = [o.value for o in outputs]
        if unshield_note is not None:
            commitments.append(unshield_note.hash)
            npk_out.append(unshield_note.npk)
            value_out.append(unshield_note.value)

        bound_params = BoundParams(
            tree_number=tree_number,
            min_gas_price=min_gas_price,
            unshield=mode,
            chain_id=self.chain_id,
            adapt_contract=adapt_contract,
            adapt_params=adapt_params(nullifiers) if callable(adapt_params) else adapt_params,
            commitment_ciphertext=tuple(o.encrypt(self.viewing_key) for o in outputs),
        )

        merkle_root = tree.root
        message = hash_public_inputs(merkle_root, bound_params.hash, nullifiers, commitments)
        proofs = [tree.generate_proof(n.position) for n in inputs]

        circuit_inputs = CircuitInputs(
            merkle_root=merkle_root,
            bound_params_hash=bound_params.hash,
            nullifiers=nullifiers,
            commitments_out=commitments,
            token_id=token.token_id,
            public_key=self.spending_public_key,
            signature=babyjubjub.sign(self.spending_key, message),
            random_in=[int.from_bytes(n.note.random, byteorder="big") for n in inputs],
            value_in=[n.value for n in inputs],
            path_elements=[list(p.elements) for p in proofs],
            leaves_indices=[n.position for n in inputs],
            nullifying_key=self.nullifying_key,
            npk_out=npk_out,
            value_out=value_out,
        )

        proof = prover.prove(circuit_inputs)

        logger.info(
            f"Built {len(nullifiers)}x{len(commitments)} transaction in tree {tree_number}"
            + (f" unshielding {unshield_value}" if unshield_note is not None else "")
        )
        return Transaction(
            proof=proof,
            merkle_root=merkle_root,
            nullifiers=nullifiers,
            commitments=commitments,
            bound_params=bound_params,
            unshield_preimage=unshield_note,
        )

    def build_unshield(
        self,
        prover,
        token: TokenData,
        recipient: bytes,
        value: int,
        payments: Sequence[Payment] = (),
        allow_override: bool = False,
        **kwargs,
    ) -> Transaction:
        """
        Build and prove a withdrawal of ``value`` to ``recipient``.

        Args:
            allow_override: Let the recipient redirect the payout at submission
        """
        return self.build_transaction(
            prover,
            token,
            payments=payments,
            unshield_to=recipient,
            unshield_value=value,
            unshield_type=UnshieldType.REDIRECT if allow_override else UnshieldType.NORMAL,
            **kwargs,
        )

    def __repr__(self) -> str:
        return (
            f"Wallet(mpk={hex(self.master_public_key)[:12]}..., notes={len(self.notes)}, "
            f"unspent={len(self.unspent_notes())})"
        )
