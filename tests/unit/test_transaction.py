"""
Unit tests for bound parameters and transaction structure.

No pairings here; the proof field is a placeholder.
"""

import pytest

from shieldpool.core.prover.groth16 import Proof
from shieldpool.core.state.note import OutputNote, unshield_preimage
from shieldpool.core.state.transaction import (
    NO_ADAPT_CONTRACT,
    BoundParams,
    Transaction,
    UnshieldType,
    hash_public_inputs,
)
from shieldpool.crypto import FIELD_PRIME, generate_viewing_keypair, poseidon_hash, random_bytes

EMPTY_PROOF = Proof(a=(0, 0), b=((0, 0), (0, 0)), c=(0, 0))


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def ciphertext(token):
    sender = generate_viewing_keypair()
    receiver = generate_viewing_keypair()
    output = OutputNote(1, receiver.public_key, 5, random_bytes(16), token)
    return output.encrypt(sender.private_key)


def make_tx(ciphertexts, commitments, unshield=UnshieldType.NONE, preimage=None, **kwargs):
    params = BoundParams(
        tree_number=0,
        min_gas_price=0,
        unshield=unshield,
        chain_id=1,
        commitment_ciphertext=tuple(ciphertexts),
    )
    return Transaction(
        proof=EMPTY_PROOF,
        merkle_root=11,
        nullifiers=kwargs.pop("nullifiers", [21, 22]),
        commitments=commitments,
        bound_params=params,
        unshield_preimage=preimage,
        **kwargs,
    )


# =============================================================================
# Bound Params
# =============================================================================


class TestBoundParams:
    """Canonical encoding and hashing."""

    def test_hash_in_field(self):
        params = BoundParams(0, 0, UnshieldType.NONE, 1)
        assert 0 <= params.hash < FIELD_PRIME

    def test_every_field_bound(self, ciphertext):
        base = BoundParams(0, 0, UnshieldType.NONE, 1)
        variants = [
            BoundParams(1, 0, UnshieldType.NONE, 1),
            BoundParams(0, 5, UnshieldType.NONE, 1),
            BoundParams(0, 0, UnshieldType.NORMAL, 1),
            BoundParams(0, 0, UnshieldType.NONE, 2),
            BoundParams(0, 0, UnshieldType.NONE, 1, adapt_contract=bytes([1]) * 20),
            BoundParams(0, 0, UnshieldType.NONE, 1, adapt_params=9),
            BoundParams(0, 0, UnshieldType.NONE, 1, commitment_ciphertext=(ciphertext,)),
        ]
        hashes = {v.hash for v in variants}
        assert base.hash not in hashes
        assert len(hashes) == len(variants)

    def test_validate_defaults(self):
        assert BoundParams(0, 0, UnshieldType.NONE, 1).validate() == (True, "")

    def test_validate_adapt_contract_length(self):
        valid, _ = BoundParams(0, 0, UnshieldType.NONE, 1, adapt_contract=bytes(19)).validate()
        assert not valid

    def test_validate_adapt_params_field(self):
        valid, _ = BoundParams(0, 0, UnshieldType.NONE, 1, adapt_params=FIELD_PRIME).validate()
        assert not valid

    def test_default_adapt_contract(self):
        assert BoundParams(0, 0, UnshieldType.NONE, 1).adapt_contract == NO_ADAPT_CONTRACT


# =============================================================================
# Transaction
# =============================================================================


class TestTransaction:
    """Structure checks and public-input folding."""

    def test_public_input_fold(self, ciphertext):
        tx = make_tx([ciphertext], [31])
        expected = poseidon_hash([11, tx.bound_params.hash, 21, 22, 31])
        assert tx.public_input_hash == expected
        assert hash_public_inputs(11, tx.bound_params.hash, [21, 22], [31]) == expected

    def test_shape(self, ciphertext):
        assert make_tx([ciphertext], [31]).shape == (2, 1)

    def test_valid_transfer(self, ciphertext):
        assert make_tx([ciphertext], [31]).validate_structure() == (True, "")

    def test_ciphertext_count_must_match(self, ciphertext):
        valid, err = make_tx([ciphertext], [31, 32]).validate_structure()
        assert not valid
        assert "ciphertext" in err

    def test_unshield_has_one_fewer_ciphertext(self, ciphertext, token):
        preimage = unshield_preimage(bytes([0x42]) * 20, token, 5)
        tx = make_tx([ciphertext], [31, preimage.hash], unshield=UnshieldType.NORMAL, preimage=preimage)
        assert tx.is_unshield
        assert tx.validate_structure() == (True, "")

    def test_unshield_needs_preimage(self, ciphertext):
        tx = make_tx([ciphertext], [31, 32], unshield=UnshieldType.NORMAL)
        valid, _ = tx.validate_structure()
        assert not valid

    def test_duplicate_nullifiers(self, ciphertext):
        valid, err = make_tx([ciphertext], [31], nullifiers=[5, 5]).validate_structure()
        assert not valid
        assert "duplicates" in err

    def test_empty_nullifiers(self, ciphertext):
        valid, _ = make_tx([ciphertext], [31], nullifiers=[]).validate_structure()
        assert not valid

    def test_out_of_field_commitment(self, ciphertext):
        valid, _ = make_tx([ciphertext], [FIELD_PRIME]).validate_structure()
        assert not valid

    def test_bad_override_output(self, ciphertext):
        valid, _ = make_tx([ciphertext], [31], override_output=bytes(3)).validate_structure()
        assert not valid

    def test_repr(self, ciphertext):
        assert "2x1" in repr(make_tx([ciphertext], [31]))


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
