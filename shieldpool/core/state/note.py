"""
Notes - private value records and their public commitments.

Conceptual Background:
---------------------
A note is the shielded equivalent of a coin. Only its commitment is ever
published:

    nullifying_key     = H(viewing_key)
    master_public_key  = H(spending_pub.x, spending_pub.y, nullifying_key)
    note_public_key    = H(master_public_key, random)
    commitment         = H(note_public_key, token_id, value)

When the note is spent, its nullifier H(nullifying_key, leaf_index) is
published instead. Nothing links the nullifier to the commitment without the
nullifying key.

Token identity:
--------------
ERC20 tokens are identified by their address. ERC721/ERC1155 tokens are
identified by keccak(token data) reduced into the field, so that the
sub-ID is bound into the commitment.

Ciphertexts:
-----------
Shield path: the depositor publishes value and token in the clear (they are
already public on the token side), so the bundle only hides ``random``.

Transfer path: everything is encrypted under a key derived from blinded
viewing keys (see ``shieldpool.crypto.blind_viewing_keys``).
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Optional, Tuple

from shieldpool.core.errors import FormatError
from shieldpool.crypto import (
    FIELD_PRIME,
    aes_gcm_decrypt,
    aes_gcm_encrypt,
    blind_viewing_keys,
    generate_viewing_keypair,
    get_shared_symmetric_key,
    keccak_to_field,
    poseidon_hash,
    random_bytes,
    sha256,
    viewing_public_key,
)
from shieldpool.crypto import babyjubjub
from shieldpool.utils.validation import (
    ADDRESS_SIZE,
    MAX_MEMO_SIZE,
    NOTE_RANDOM_SIZE,
    validate_address,
    validate_compressed_key,
    validate_field_element,
    validate_integer,
    validate_note_value,
)

ANNOTATION_TAG = b"shieldpool/annotation"

# mpk(32) || random(16) || value(16) || token(53)
NOTE_PLAINTEXT_SIZE = 32 + NOTE_RANDOM_SIZE + 16 + 53


def _check(result: Tuple[bool, str]) -> None:
    valid, err = result
    if not valid:
        raise FormatError(err)


# =============================================================================
# Token Data
# =============================================================================


class TokenType(IntEnum):
    """Token standard of the underlying asset."""
    ERC20 = 0
    ERC721 = 1
    ERC1155 = 2


@dataclass(frozen=True)
class TokenData:
    """
    Identifies an underlying token.

    Attributes:
        token_type: Fungible / non-fungible / semi-fungible
        token_address: 20-byte token contract address
        token_sub_id: Token ID inside the contract (0 for ERC20)
    """
    token_type: TokenType
    token_address: bytes
    token_sub_id: int = 0

    def __post_init__(self):
        try:
            object.__setattr__(self, "token_type", TokenType(self.token_type))
        except ValueError:
            raise FormatError(f"Unknown token type {self.token_type}")
        _check(validate_address(self.token_address, "token_address"))
        _check(validate_integer(self.token_sub_id, "token_sub_id", 0, 2**256 - 1))
        if self.token_type == TokenType.ERC20 and self.token_sub_id != 0:
            raise FormatError("ERC20 token data must have sub ID 0")

    @property
    def token_id(self) -> int:
        return get_token_id(self)

    def to_bytes(self) -> bytes:
        """type(1) || address(20) || sub_id(32)"""
        return (
            bytes([self.token_type])
            + self.token_address
            + self.token_sub_id.to_bytes(32, byteorder="big")
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> "TokenData":
        if len(data) != 53:
            raise FormatError(f"Token data must be 53 bytes, got {len(data)}")
        return cls(
            token_type=data[0],
            token_address=data[1:21],
            token_sub_id=int.from_bytes(data[21:53], byteorder="big"),
        )


def erc20(address: bytes) -> TokenData:
    """Shorthand for fungible token data."""
    return TokenData(TokenType.ERC20, address, 0)


def get_token_id(token: TokenData) -> int:
    """
    Field-element identifier of a token.

    ERC20: the address itself. Others: keccak(token data) mod field.
    """
    if token.token_type == TokenType.ERC20:
        return int.from_bytes(token.token_address, byteorder="big")
    return keccak_to_field(token.to_bytes())


# =============================================================================
# Key Derivation
# =============================================================================


def get_nullifying_key(viewing_private_key: bytes) -> int:
    """nullifying_key = H(viewing_key)"""
    return poseidon_hash([int.from_bytes(viewing_private_key, byteorder="big") % FIELD_PRIME])


def get_master_public_key(spending_public_key: babyjubjub.Point, nullifying_key: int) -> int:
    """master_public_key = H(spending_pub.x, spending_pub.y, nullifying_key)"""
    return poseidon_hash([spending_public_key[0], spending_public_key[1], nullifying_key])


def get_note_public_key(master_public_key: int, random: bytes) -> int:
    """npk = H(master_public_key, random)"""
    return poseidon_hash([master_public_key, int.from_bytes(random, byteorder="big")])


def hash_commitment(npk: int, token_id: int, value: int) -> int:
    """commitment = H(npk, token_id, value)"""
    return poseidon_hash([npk, token_id, value])


def get_nullifier(nullifying_key: int, leaf_index: int) -> int:
    """nullifier = H(nullifying_key, leaf_index)"""
    return poseidon_hash([nullifying_key, leaf_index])


# =============================================================================
# Preimages
# =============================================================================


@dataclass(frozen=True)
class CommitmentPreimage:
    """
    Public preimage of a commitment.

    Used for shield requests (where value and token are public anyway) and
    for the unshield output, whose npk is the recipient address.
    """
    npk: int
    token: TokenData
    value: int

    @property
    def hash(self) -> int:
        return hash_commitment(self.npk, self.token.token_id, self.value)

    @property
    def recipient(self) -> bytes:
        """Unshield recipient address encoded in ``npk``."""
        if self.npk >= 2 ** (8 * ADDRESS_SIZE):
            raise FormatError("npk does not encode an address")
        return self.npk.to_bytes(ADDRESS_SIZE, byteorder="big")

    def with_value(self, value: int) -> "CommitmentPreimage":
        return CommitmentPreimage(npk=self.npk, token=self.token, value=value)

    def to_bytes(self) -> bytes:
        return (
            self.npk.to_bytes(32, byteorder="big")
            + self.token.to_bytes()
            + self.value.to_bytes(32, byteorder="big")
        )


def unshield_preimage(recipient: bytes, token: TokenData, value: int) -> CommitmentPreimage:
    """Preimage of an unshield output paying ``recipient``."""
    _check(validate_address(recipient, "recipient"))
    return CommitmentPreimage(npk=int.from_bytes(recipient, byteorder="big"), token=token, value=value)


# =============================================================================
# Ciphertexts
# =============================================================================


@dataclass(frozen=True)
class ShieldCiphertext:
    """
    Ciphertext emitted with a shield.

    Attributes:
        encrypted_bundle: AES-GCM blob hiding the note random
        shield_key: Depositor's ephemeral compressed public key
    """
    encrypted_bundle: bytes
    shield_key: bytes

    def __post_init__(self):
        _check(validate_compressed_key(self.shield_key, "shield_key"))


@dataclass(frozen=True)
class CommitmentCiphertext:
    """
    Ciphertext emitted for each transfer output.

    Attributes:
        ciphertext: AES-GCM blob of mpk, random, value, and token
        blinded_sender_viewing_key: Sender viewing key times blinding scalar
        blinded_receiver_viewing_key: Receiver viewing key times blinding scalar
        annotation_data: Sender-only blob holding the sender random
        memo: AES-GCM blob of the memo text (empty when no memo)
    """
    ciphertext: bytes
    blinded_sender_viewing_key: bytes
    blinded_receiver_viewing_key: bytes
    annotation_data: bytes = b""
    memo: bytes = b""

    def __post_init__(self):
        _check(validate_compressed_key(self.blinded_sender_viewing_key, "blinded_sender_viewing_key"))
        _check(validate_compressed_key(self.blinded_receiver_viewing_key, "blinded_receiver_viewing_key"))

    def to_bytes(self) -> bytes:
        """Length-prefixed encoding, folded into the bound-parameters hash."""
        out = b""
        for part in (
            self.ciphertext,
            self.blinded_sender_viewing_key,
            self.blinded_receiver_viewing_key,
            self.annotation_data,
            self.memo,
        ):
            out += len(part).to_bytes(4, byteorder="big") + part
        return out


def _annotation_key(sender_viewing_private_key: bytes) -> bytes:
    return sha256(ANNOTATION_TAG + sender_viewing_private_key)


# =============================================================================
# Notes
# =============================================================================


@dataclass
class Note:
    """
    A spendable note, as held by its owner.

    Attributes:
        spending_key: 32-byte BabyJubJub private key
        viewing_key: 32-byte secp256k1 viewing private key
        value: Amount (or 1 for an NFT)
        random: 16 bytes of blinding randomness
        token: Underlying token
        memo: Optional cleartext memo
    """
    spending_key: bytes
    viewing_key: bytes
    value: int
    random: bytes
    token: TokenData
    memo: str = ""
    _spending_public_key: Optional[babyjubjub.Point] = field(default=None, repr=False, compare=False)

    def __post_init__(self):
        if len(self.spending_key) != 32:
            raise FormatError("spending_key must be 32 bytes")
        if len(self.viewing_key) != 32:
            raise FormatError("viewing_key must be 32 bytes")
        if len(self.random) != NOTE_RANDOM_SIZE:
            raise FormatError(f"random must be {NOTE_RANDOM_SIZE} bytes")
        _check(validate_integer(self.value, "value", 0, 2**120 - 1))

    @property
    def spending_public_key(self) -> babyjubjub.Point:
        if self._spending_public_key is None:
            self._spending_public_key = babyjubjub.private_to_public(self.spending_key)
        return self._spending_public_key

    @property
    def nullifying_key(self) -> int:
        return get_nullifying_key(self.viewing_key)

    @property
    def master_public_key(self) -> int:
        return get_master_public_key(self.spending_public_key, self.nullifying_key)

    @property
    def note_public_key(self) -> int:
        return get_note_public_key(self.master_public_key, self.random)

    @property
    def hash(self) -> int:
        """The note's commitment."""
        return hash_commitment(self.note_public_key, self.token.token_id, self.value)

    def nullifier(self, leaf_index: int) -> int:
        return get_nullifier(self.nullifying_key, leaf_index)

    def sign(self, message: int) -> babyjubjub.Signature:
        """Authorize a spend of this note over a public-input hash."""
        return babyjubjub.sign(self.spending_key, message)

    @property
    def preimage(self) -> CommitmentPreimage:
        return CommitmentPreimage(npk=self.note_public_key, token=self.token, value=self.value)


@dataclass
class OutputNote:
    """
    A note addressed to a receiver, as seen by its sender.

    The sender knows only the receiver's master public key and viewing
    public key, which is enough to form the commitment and the ciphertext.
    """
    master_public_key: int
    viewing_public_key: bytes
    value: int
    random: bytes
    token: TokenData
    memo: str = ""

    def __post_init__(self):
        _check(validate_field_element(self.master_public_key, "master_public_key"))
        _check(validate_compressed_key(self.viewing_public_key, "viewing_public_key"))
        _check(validate_note_value(self.value))
        if len(self.random) != NOTE_RANDOM_SIZE:
            raise FormatError(f"random must be {NOTE_RANDOM_SIZE} bytes")
        if len(self.memo.encode()) > MAX_MEMO_SIZE:
            raise FormatError(f"memo exceeds {MAX_MEMO_SIZE} bytes")

    @property
    def note_public_key(self) -> int:
        return get_note_public_key(self.master_public_key, self.random)

    @property
    def hash(self) -> int:
        return hash_commitment(self.note_public_key, self.token.token_id, self.value)

    def encrypt(self, sender_viewing_private_key: bytes, sender_random: Optional[bytes] = None) -> CommitmentCiphertext:
        """
        Encrypt this output for its receiver.

        Args:
            sender_viewing_private_key: Sender's 32-byte viewing key
            sender_random: Sender-only blinding randomness (random if omitted)

        Returns:
            CommitmentCiphertext
        """
        if sender_random is None:
            sender_random = random_bytes(NOTE_RANDOM_SIZE)

        blinded_sender, blinded_receiver = blind_viewing_keys(
            viewing_public_key(sender_viewing_private_key),
            self.viewing_public_key,
            self.random,
            sender_random,
        )
        key = get_shared_symmetric_key(sender_viewing_private_key, blinded_receiver)

        plaintext = (
            self.master_public_key.to_bytes(32, byteorder="big")
            + self.random
            + self.value.to_bytes(16, byteorder="big")
            + self.token.to_bytes()
        )

        return CommitmentCiphertext(
            ciphertext=aes_gcm_encrypt(key, plaintext),
            blinded_sender_viewing_key=blinded_sender,
            blinded_receiver_viewing_key=blinded_receiver,
            annotation_data=aes_gcm_encrypt(_annotation_key(sender_viewing_private_key), sender_random),
            memo=aes_gcm_encrypt(key, self.memo.encode()) if self.memo else b"",
        )


@dataclass(frozen=True)
class DecryptedNote:
    """Contents recovered from a CommitmentCiphertext."""
    master_public_key: int
    random: bytes
    value: int
    token: TokenData
    memo: str = ""


def decrypt_commitment_ciphertext(ciphertext: CommitmentCiphertext, viewing_private_key: bytes) -> DecryptedNote:
    """
    Try to open a transfer ciphertext as its receiver.

    Raises:
        ValueError: If the ciphertext was not encrypted to this viewing key
    """
    key = get_shared_symmetric_key(viewing_private_key, ciphertext.blinded_sender_viewing_key)
    plaintext = aes_gcm_decrypt(key, ciphertext.ciphertext)
    if len(plaintext) != NOTE_PLAINTEXT_SIZE:
        raise FormatError("Malformed note plaintext")

    memo = aes_gcm_decrypt(key, ciphertext.memo).decode() if ciphertext.memo else ""

    return DecryptedNote(
        master_public_key=int.from_bytes(plaintext[0:32], byteorder="big"),
        random=plaintext[32:48],
        value=int.from_bytes(plaintext[48:64], byteorder="big"),
        token=TokenData.from_bytes(plaintext[64:117]),
        memo=memo,
    )


def decrypt_sender_random(ciphertext: CommitmentCiphertext, sender_viewing_private_key: bytes) -> bytes:
    """Recover the sender-only random from annotation data."""
    return aes_gcm_decrypt(_annotation_key(sender_viewing_private_key), ciphertext.annotation_data)


def encrypt_shield_random(random: bytes, receiver_viewing_public_key: bytes) -> ShieldCiphertext:
    """
    Build the ciphertext for a shield addressed to ``receiver_viewing_public_key``.

    An ephemeral key is generated per shield and published as ``shield_key``.
    """
    if len(random) != NOTE_RANDOM_SIZE:
        raise FormatError(f"random must be {NOTE_RANDOM_SIZE} bytes")

    ephemeral = generate_viewing_keypair()
    key = get_shared_symmetric_key(ephemeral.private_key, receiver_viewing_public_key)

    return ShieldCiphertext(
        encrypted_bundle=aes_gcm_encrypt(key, random),
        shield_key=ephemeral.public_key,
    )


def decrypt_shield_random(ciphertext: ShieldCiphertext, viewing_private_key: bytes) -> bytes:
    """
    Recover the note random from a shield ciphertext.

    Raises:
        ValueError: If the shield was not addressed to this viewing key
    """
    key = get_shared_symmetric_key(viewing_private_key, ciphertext.shield_key)
    random = aes_gcm_decrypt(key, ciphertext.encrypted_bundle)
    if len(random) != NOTE_RANDOM_SIZE:
        raise FormatError("Malformed shield bundle")
    return random
