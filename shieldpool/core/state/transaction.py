"""
Transactions - the public face of a private transfer.

Conceptual Background:
---------------------
A shielded transaction publishes only:

1. ``merkle_root``: the root its input notes were proven against
2. ``nullifiers``: one per spent input
3. ``commitments``: one per created output
4. ``bound_params``: metadata the proof is bound to
5. ``proof``: a Groth16 proof over a single public scalar

The public scalar folds everything above into one field element:

    public_input = H(merkle_root, H_keccak(bound_params), nullifiers..., commitments...)

The same scalar is what each input note's spending key signs, so the
circuit can check spend authorization against exactly the published data.

Bound parameters:
----------------
Bound parameters carry everything that is not a note but must still be
tamper-proof: tree number, gas floor, unshield mode, chain id, adapt lock and
params, and every output ciphertext. They are keccak-hashed into one scalar so
variable-length ciphertexts do not inflate the circuit's public inputs.

Unshield:
--------
If ``bound_params.unshield`` is not NONE, the last commitment is the hash of
``unshield_preimage`` (npk = recipient address) and has no ciphertext.
"""

from dataclasses import dataclass, replace
from enum import IntEnum
from typing import List, Optional, Sequence, Tuple

from shieldpool.core.prover.groth16 import Proof
from shieldpool.core.state.note import CommitmentCiphertext, CommitmentPreimage, ShieldCiphertext
from shieldpool.crypto import keccak_to_field, poseidon_hash
from shieldpool.utils.validation import (
    validate_address,
    validate_field_element,
    validate_field_elements,
    validate_integer,
    validate_unique,
)

NO_ADAPT_CONTRACT = bytes(20)


class UnshieldType(IntEnum):
    """How the last commitment of a transaction is treated."""
    NONE = 0
    NORMAL = 1
    REDIRECT = 2


# =============================================================================
# Bound Parameters
# =============================================================================


@dataclass(frozen=True)
class BoundParams:
    """
    Transaction metadata bound into the proof.

    Attributes:
        tree_number: Tree the input notes live in
        min_gas_price: Lowest gas price the submitter accepts
        unshield: Unshield mode
        chain_id: Deployment the proof is valid for
        adapt_contract: Required top-level caller, or zero for none
        adapt_params: Opaque field element checked by the adapt contract
        commitment_ciphertext: One ciphertext per non-unshield output
    """
    tree_number: int
    min_gas_price: int
    unshield: UnshieldType
    chain_id: int
    adapt_contract: bytes = NO_ADAPT_CONTRACT
    adapt_params: int = 0
    commitment_ciphertext: Tuple[CommitmentCiphertext, ...] = ()

    def to_bytes(self) -> bytes:
        """Canonical encoding used for hashing."""
        out = (
            self.tree_number.to_bytes(2, byteorder="big")
            + self.min_gas_price.to_bytes(8, byteorder="big")
            + bytes([int(self.unshield)])
            + self.chain_id.to_bytes(8, byteorder="big")
            + self.adapt_contract
            + self.adapt_params.to_bytes(32, byteorder="big")
            + len(self.commitment_ciphertext).to_bytes(2, byteorder="big")
        )
        for ciphertext in self.commitment_ciphertext:
            out += ciphertext.to_bytes()
        return out

    def validate(self) -> Tuple[bool, str]:
        checks = [
            validate_integer(self.tree_number, "tree_number", 0, 2**16 - 1),
            validate_integer(self.min_gas_price, "min_gas_price", 0, 2**64 - 1),
            validate_integer(self.chain_id, "chain_id", 0, 2**64 - 1),
            validate_address(self.adapt_contract, "adapt_contract"),
            validate_field_element(self.adapt_params, "adapt_params"),
        ]
        for valid, err in checks:
            if not valid:
                return False, err
        if self.unshield not in tuple(UnshieldType):
            return False, f"Unknown unshield type {self.unshield}"
        return True, ""

    @property
    def hash(self) -> int:
        return hash_bound_params(self)


def hash_bound_params(bound_params: BoundParams) -> int:
    """keccak256(bound params) reduced into the SNARK field."""
    return keccak_to_field(bound_params.to_bytes())


def hash_public_inputs(
    merkle_root: int,
    bound_params_hash: int,
    nullifiers: Sequence[int],
    commitments: Sequence[int],
) -> int:
    """
    Fold all public transaction data into the single proof input.

    This is also the message signed by each input's spending key.
    """
    return poseidon_hash([merkle_root, bound_params_hash, *nullifiers, *commitments])


# =============================================================================
# Transaction
# =============================================================================


@dataclass
class Transaction:
    """
    A proven private transfer or unshield.

    Attributes:
        proof: Groth16 proof
        merkle_root: Root the inputs were proven against
        nullifiers: Spent-note tags (one per input)
        commitments: New commitments (one per output; last is the unshield output if any)
        bound_params: Metadata bound into the proof
        unshield_preimage: Preimage of the last commitment when unshielding
        override_output: Alternative unshield recipient (not bound into the proof)
    """
    proof: Proof
    merkle_root: int
    nullifiers: List[int]
    commitments: List[int]
    bound_params: BoundParams
    unshield_preimage: Optional[CommitmentPreimage] = None
    override_output: Optional[bytes] = None

    @property
    def shape(self) -> Tuple[int, int]:
        """(input count, output count) selecting the verifying key."""
        return len(self.nullifiers), len(self.commitments)

    @property
    def is_unshield(self) -> bool:
        return self.bound_params.unshield != UnshieldType.NONE

    @property
    def public_input_hash(self) -> int:
        return hash_public_inputs(
            self.merkle_root,
            self.bound_params.hash,
            self.nullifiers,
            self.commitments,
        )

    def validate_structure(self) -> Tuple[bool, str]:
        """
        Check encodings and the ciphertext/commitment layout.

        Returns:
            (is_valid, error_message)
        """
        checks = [
            validate_field_element(self.merkle_root, "merkle_root"),
            validate_field_elements(self.nullifiers, "nullifiers"),
            validate_field_elements(self.commitments, "commitments"),
            validate_unique(self.nullifiers, "nullifiers"),
            self.bound_params.validate(),
        ]
        for valid, err in checks:
            if not valid:
                return False, err

        ciphertexts = len(self.bound_params.commitment_ciphertext)
        if self.is_unshield:
            if self.unshield_preimage is None:
                return False, "Unshield transaction missing unshield preimage"
            if ciphertexts != len(self.commitments) - 1:
                return False, "Invalid note ciphertext array length"
        elif ciphertexts != len(self.commitments):
            return False, "Invalid note ciphertext array length"

        if self.override_output is not None:
            valid, err = validate_address(self.override_output, "override_output")
            if not valid:
                return False, err

        return True, ""

    def with_override(self, recipient: Optional[bytes]) -> "Transaction":
        """Copy with the submitter-chosen unshield recipient set (or cleared)."""
        return replace(self, override_output=recipient)

    def __repr__(self) -> str:
        n_in, n_out = self.shape
        return (
            f"Transaction(tree={self.bound_params.tree_number}, {n_in}x{n_out}, "
            f"unshield={self.bound_params.unshield.name})"
        )


# =============================================================================
# Shield Request
# =============================================================================


@dataclass(frozen=True)
class ShieldRequest:
    """A deposit: the public preimage plus the receiver's ciphertext."""
    preimage: CommitmentPreimage
    ciphertext: ShieldCiphertext
