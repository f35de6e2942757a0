"""
Unit tests for notes, token data, and note ciphertexts.

Tests cover:
1. Token identifiers
2. Key derivation chain and commitments
3. Nullifiers
4. Transfer and shield ciphertexts
5. Unshield preimages
"""

import pytest

from shieldpool.core.errors import FormatError
from shieldpool.core.state.note import (
    CommitmentPreimage,
    Note,
    OutputNote,
    TokenData,
    TokenType,
    decrypt_commitment_ciphertext,
    decrypt_sender_random,
    decrypt_shield_random,
    encrypt_shield_random,
    erc20,
    get_master_public_key,
    get_note_public_key,
    get_nullifier,
    get_nullifying_key,
    hash_commitment,
    unshield_preimage,
)
from shieldpool.crypto import FIELD_PRIME, babyjubjub, generate_viewing_keypair, random_bytes


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def keys():
    """(spending_key, viewing_key) for one owner."""
    return random_bytes(32), generate_viewing_keypair().private_key


@pytest.fixture
def note(keys, token):
    spending_key, viewing_key = keys
    return Note(
        spending_key=spending_key,
        viewing_key=viewing_key,
        value=100,
        random=random_bytes(16),
        token=token,
    )


# =============================================================================
# Token Data
# =============================================================================


class TestTokenData:
    """Tests for token identity."""

    def test_erc20_id_is_address(self):
        address = bytes(range(20))
        assert erc20(address).token_id == int.from_bytes(address, "big")

    def test_nft_id_hashes_sub_id(self):
        address = bytes([0x11]) * 20
        a = TokenData(TokenType.ERC721, address, 1)
        b = TokenData(TokenType.ERC721, address, 2)
        assert a.token_id != b.token_id
        assert 0 <= a.token_id < FIELD_PRIME

    def test_erc20_sub_id_rejected(self):
        with pytest.raises(FormatError):
            TokenData(TokenType.ERC20, bytes(20), 5)

    def test_bad_address_rejected(self):
        with pytest.raises(FormatError):
            erc20(bytes(19))

    def test_unknown_type_rejected(self):
        with pytest.raises(FormatError):
            TokenData(7, bytes(20), 0)

    def test_bytes_roundtrip(self):
        token = TokenData(TokenType.ERC1155, bytes([0x22]) * 20, 99)
        assert TokenData.from_bytes(token.to_bytes()) == token

    def test_from_bytes_length(self):
        with pytest.raises(FormatError):
            TokenData.from_bytes(bytes(52))


# =============================================================================
# Notes
# =============================================================================


class TestNote:
    """Key derivation and commitments."""

    def test_commitment_chain(self, note, keys):
        """commitment = H(H(mpk, random), token, value)."""
        spending_key, viewing_key = keys
        nk = get_nullifying_key(viewing_key)
        mpk = get_master_public_key(babyjubjub.private_to_public(spending_key), nk)
        npk = get_note_public_key(mpk, note.random)

        assert note.master_public_key == mpk
        assert note.note_public_key == npk
        assert note.hash == hash_commitment(npk, note.token.token_id, 100)

    def test_preimage_matches_hash(self, note):
        assert note.preimage.hash == note.hash

    def test_nullifier_depends_on_position(self, note):
        assert note.nullifier(0) != note.nullifier(1)
        assert note.nullifier(3) == get_nullifier(note.nullifying_key, 3)

    def test_different_random_different_commitment(self, keys, token):
        spending_key, viewing_key = keys
        a = Note(spending_key, viewing_key, 100, random_bytes(16), token)
        b = Note(spending_key, viewing_key, 100, random_bytes(16), token)
        assert a.hash != b.hash

    def test_sign_verifies(self, note):
        signature = note.sign(42)
        assert babyjubjub.verify(note.spending_public_key, 42, signature)

    def test_random_length_enforced(self, keys, token):
        spending_key, viewing_key = keys
        with pytest.raises(FormatError):
            Note(spending_key, viewing_key, 100, random_bytes(15), token)

    def test_output_note_matches_note(self, note):
        """A sender holding only the address forms the same commitment."""
        viewing_pub = generate_viewing_keypair().public_key
        output = OutputNote(
            master_public_key=note.master_public_key,
            viewing_public_key=viewing_pub,
            value=note.value,
            random=note.random,
            token=note.token,
        )
        assert output.hash == note.hash

    def test_output_note_zero_value_rejected(self, token):
        with pytest.raises(FormatError):
            OutputNote(1, generate_viewing_keypair().public_key, 0, random_bytes(16), token)

    def test_output_note_memo_limit(self, token):
        with pytest.raises(FormatError):
            OutputNote(1, generate_viewing_keypair().public_key, 1, random_bytes(16), token, memo="x" * 2000)


# =============================================================================
# Ciphertexts
# =============================================================================


class TestCommitmentCiphertext:
    """Transfer ciphertexts."""

    @pytest.fixture
    def parties(self):
        return generate_viewing_keypair(), generate_viewing_keypair()

    def _output(self, receiver, token, memo=""):
        return OutputNote(
            master_public_key=12345,
            viewing_public_key=receiver.public_key,
            value=77,
            random=random_bytes(16),
            token=token,
            memo=memo,
        )

    def test_receiver_decrypts(self, parties, token):
        sender, receiver = parties
        output = self._output(receiver, token, memo="rent")
        decrypted = decrypt_commitment_ciphertext(output.encrypt(sender.private_key), receiver.private_key)

        assert decrypted.master_public_key == 12345
        assert decrypted.random == output.random
        assert decrypted.value == 77
        assert decrypted.token == token
        assert decrypted.memo == "rent"

    def test_empty_memo_not_encrypted(self, parties, token):
        sender, receiver = parties
        ciphertext = self._output(receiver, token).encrypt(sender.private_key)
        assert ciphertext.memo == b""

    def test_outsider_cannot_decrypt(self, parties, token):
        sender, receiver = parties
        ciphertext = self._output(receiver, token).encrypt(sender.private_key)
        with pytest.raises(ValueError):
            decrypt_commitment_ciphertext(ciphertext, generate_viewing_keypair().private_key)

    def test_sender_recovers_sender_random(self, parties, token):
        sender, receiver = parties
        sender_random = random_bytes(16)
        ciphertext = self._output(receiver, token).encrypt(sender.private_key, sender_random)
        assert decrypt_sender_random(ciphertext, sender.private_key) == sender_random

    def test_to_bytes_covers_every_field(self, parties, token):
        sender, receiver = parties
        a = self._output(receiver, token).encrypt(sender.private_key)
        b = self._output(receiver, token).encrypt(sender.private_key)
        assert a.to_bytes() != b.to_bytes()


class TestShieldCiphertext:
    """Shield ciphertexts hide only the note random."""

    def test_roundtrip(self):
        receiver = generate_viewing_keypair()
        random = random_bytes(16)
        ciphertext = encrypt_shield_random(random, receiver.public_key)
        assert decrypt_shield_random(ciphertext, receiver.private_key) == random

    def test_wrong_key(self):
        receiver = generate_viewing_keypair()
        ciphertext = encrypt_shield_random(random_bytes(16), receiver.public_key)
        with pytest.raises(ValueError):
            decrypt_shield_random(ciphertext, generate_viewing_keypair().private_key)

    def test_random_length(self):
        with pytest.raises(FormatError):
            encrypt_shield_random(random_bytes(8), generate_viewing_keypair().public_key)


# =============================================================================
# Preimages
# =============================================================================


class TestPreimages:
    """Commitment preimages and unshield outputs."""

    def test_unshield_recipient_roundtrip(self, token):
        recipient = bytes([0x42]) * 20
        preimage = unshield_preimage(recipient, token, 10)
        assert preimage.recipient == recipient
        assert preimage.npk == int.from_bytes(recipient, "big")

    def test_recipient_requires_address_npk(self, token):
        preimage = CommitmentPreimage(npk=2**200, token=token, value=1)
        with pytest.raises(FormatError):
            preimage.recipient

    def test_unshield_bad_recipient(self, token):
        with pytest.raises(FormatError):
            unshield_preimage(bytes(21), token, 10)

    def test_with_value(self, token):
        preimage = CommitmentPreimage(npk=5, token=token, value=100)
        adjusted = preimage.with_value(90)
        assert adjusted.value == 90
        assert adjusted.npk == 5
        assert adjusted.hash != preimage.hash


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
