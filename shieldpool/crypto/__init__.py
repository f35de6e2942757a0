"""
Cryptographic primitives for shieldpool.

This module provides:
- Hashing functions (SHA-256, SHA-512, Keccak-256, Poseidon)
- Viewing keys on secp256k1 (compressed 33-byte public keys)
- Key blinding and ECDH shared-key derivation for note encryption
- AES-256-GCM authenticated encryption for ciphertext bundles

Design Notes:
-------------
A note owner holds two independent secrets. The spending key (BabyJubJub,
see ``shieldpool.crypto.babyjubjub``) authorizes spends inside the circuit.
The viewing key (secp256k1) is only used off-ledger to detect and decrypt
incoming notes, so we keep it on the curve py_ecc already gives us.

Key blinding lets a sender publish per-note ephemeral keys:

    blinding = seed_to_scalar(shared_random XOR sender_random)
    blinded_sender   = sender_view_pub   * blinding
    blinded_receiver = receiver_view_pub * blinding

Both parties arrive at the same point:

    sender:   sender_view_priv   * blinded_receiver
    receiver: receiver_view_priv * blinded_sender

and the unblinded viewing keys never appear on the ledger.

Keccak is used for everything hashed outside the circuit (bound parameters,
token identifiers, the empty-leaf value), reduced into the SNARK field.
"""

import hashlib
import secrets
from dataclasses import dataclass
from typing import Tuple

from Crypto.Cipher import AES
from Crypto.Hash import keccak
from py_ecc.secp256k1 import secp256k1


# =============================================================================
# Constants
# =============================================================================

# secp256k1 curve order (number of points on the curve)
SECP256K1_ORDER = secp256k1.N
SECP256K1_PRIME = secp256k1.P

GCM_NONCE_SIZE = 12
GCM_TAG_SIZE = 16


# =============================================================================
# Hashing
# =============================================================================


def sha256(data: bytes) -> bytes:
    """
    Compute SHA-256 hash.

    Used for: deriving symmetric keys from ECDH shared points.
    """
    return hashlib.sha256(data).digest()


def sha512(data: bytes) -> bytes:
    """Compute SHA-512 hash."""
    return hashlib.sha512(data).digest()


def keccak256(data: bytes) -> bytes:
    """
    Compute Keccak-256 hash (Ethereum-style).

    Used for: bound-parameters hashing, token IDs, the zero leaf.
    """
    k = keccak.new(digest_bits=256)
    k.update(data)
    return k.digest()


def random_bytes(length: int) -> bytes:
    """Cryptographically secure random bytes."""
    return secrets.token_bytes(length)


# =============================================================================
# Viewing Keys (secp256k1)
# =============================================================================


def compress_point(point: Tuple[int, int]) -> bytes:
    """Encode a secp256k1 point as 33 bytes (parity prefix || x)."""
    x, y = point
    prefix = b"\x03" if y & 1 else b"\x02"
    return prefix + x.to_bytes(32, byteorder="big")


def decompress_point(data: bytes) -> Tuple[int, int]:
    """
    Decode a 33-byte compressed secp256k1 point.

    Raises:
        ValueError: If the encoding is malformed or not on the curve
    """
    if len(data) != 33 or data[0] not in (2, 3):
        raise ValueError("Compressed point must be 33 bytes with 0x02/0x03 prefix")

    x = int.from_bytes(data[1:], byteorder="big")
    if x >= SECP256K1_PRIME:
        raise ValueError("Point x-coordinate out of range")

    y_squared = (pow(x, 3, SECP256K1_PRIME) + 7) % SECP256K1_PRIME
    y = pow(y_squared, (SECP256K1_PRIME + 1) // 4, SECP256K1_PRIME)
    if y * y % SECP256K1_PRIME != y_squared:
        raise ValueError("Point is not on secp256k1")

    if (y & 1) != (data[0] & 1):
        y = SECP256K1_PRIME - y

    return (x, y)


def _scalar(private_key: bytes) -> int:
    if len(private_key) != 32:
        raise ValueError("Private key must be 32 bytes")
    value = int.from_bytes(private_key, byteorder="big")
    if not (1 <= value < SECP256K1_ORDER):
        raise ValueError("Private key out of range")
    return value


@dataclass
class ViewingKeyPair:
    """
    A viewing keypair on secp256k1.

    Attributes:
        private_key: 32-byte secret key (integer in [1, order-1])
        public_key: 33-byte compressed public key
    """
    private_key: bytes
    public_key: bytes

    @property
    def public_key_hex(self) -> str:
        return self.public_key.hex()


def generate_viewing_keypair() -> ViewingKeyPair:
    """Generate a new random viewing keypair."""
    private_key_int = secrets.randbelow(SECP256K1_ORDER - 1) + 1
    private_key = private_key_int.to_bytes(32, byteorder="big")
    return ViewingKeyPair(private_key=private_key, public_key=viewing_public_key(private_key))


def viewing_public_key(private_key: bytes) -> bytes:
    """
    Derive the compressed viewing public key.

    Args:
        private_key: 32-byte private key

    Returns:
        33-byte compressed public key
    """
    _scalar(private_key)
    return compress_point(secp256k1.privtopub(private_key))


# =============================================================================
# Key Blinding & Shared Keys
# =============================================================================


def seed_to_scalar(seed: bytes) -> int:
    """
    Map arbitrary bytes to a non-zero secp256k1 scalar.

    scalar = (sha512(seed) mod (n - 1)) + 1
    """
    return int.from_bytes(sha512(seed), byteorder="big") % (SECP256K1_ORDER - 1) + 1


def _xor32(a: bytes, b: bytes) -> bytes:
    a = a.rjust(32, b"\x00")
    b = b.rjust(32, b"\x00")
    return bytes(x ^ y for x, y in zip(a, b))


def blind_viewing_keys(
    sender_public_key: bytes,
    receiver_public_key: bytes,
    shared_random: bytes,
    sender_random: bytes,
) -> Tuple[bytes, bytes]:
    """
    Blind both viewing public keys with the same per-note scalar.

    Args:
        sender_public_key: Sender's compressed viewing public key
        receiver_public_key: Receiver's compressed viewing public key
        shared_random: Randomness known to both parties (the note random)
        sender_random: Randomness known only to the sender

    Returns:
        (blinded_sender_key, blinded_receiver_key), both compressed
    """
    if len(shared_random) > 32 or len(sender_random) > 32:
        raise ValueError("Blinding randomness must be at most 32 bytes")

    blinding = seed_to_scalar(_xor32(shared_random, sender_random))

    blinded_sender = secp256k1.multiply(decompress_point(sender_public_key), blinding)
    blinded_receiver = secp256k1.multiply(decompress_point(receiver_public_key), blinding)

    return compress_point(blinded_sender), compress_point(blinded_receiver)


def get_shared_symmetric_key(private_key: bytes, blinded_public_key: bytes) -> bytes:
    """
    Derive a 32-byte AES key from our private key and the counterparty's blinded key.

    key = sha256(compressed(private * blinded_public))
    """
    shared_point = secp256k1.multiply(decompress_point(blinded_public_key), _scalar(private_key))
    return sha256(compress_point(shared_point))


# =============================================================================
# Authenticated Encryption (AES-256-GCM)
# =============================================================================


def aes_gcm_encrypt(key: bytes, plaintext: bytes) -> bytes:
    """
    Encrypt with AES-256-GCM.

    Returns:
        nonce (12 bytes) || tag (16 bytes) || ciphertext
    """
    if len(key) != 32:
        raise ValueError("AES-256 key must be 32 bytes")

    nonce = random_bytes(GCM_NONCE_SIZE)
    cipher = AES.new(key, AES.MODE_GCM, nonce=nonce)
    ciphertext, tag = cipher.encrypt_and_digest(plaintext)
    return nonce + tag + ciphertext


def aes_gcm_decrypt(key: bytes, blob: bytes) -> bytes:
    """
    Decrypt and authenticate an ``aes_gcm_encrypt`` blob.

    Raises:
        ValueError: On a short blob or failed authentication
    """
    if len(blob) < GCM_NONCE_SIZE + GCM_TAG_SIZE:
        raise ValueError("Ciphertext too short")

    nonce = blob[:GCM_NONCE_SIZE]
    tag = blob[GCM_NONCE_SIZE:GCM_NONCE_SIZE + GCM_TAG_SIZE]
    cipher = AES.new(key, AES.MODE_GCM, nonce=nonce)
    return cipher.decrypt_and_verify(blob[GCM_NONCE_SIZE + GCM_TAG_SIZE:], tag)


# =============================================================================
# Utility Functions
# =============================================================================


def bytes_to_hex(data: bytes) -> str:
    """Convert bytes to hex string with 0x prefix."""
    return "0x" + data.hex()


def hex_to_bytes(hex_str: str) -> bytes:
    """Convert hex string (with or without 0x prefix) to bytes."""
    if hex_str.startswith("0x") or hex_str.startswith("0X"):
        hex_str = hex_str[2:]
    return bytes.fromhex(hex_str)


# =============================================================================
# Poseidon Hash (ZK-friendly)
# =============================================================================

from shieldpool.crypto.poseidon import (  # noqa: E402
    poseidon_hash,
    poseidon1,
    poseidon2,
    hash_left_right,
    int_to_bytes32,
    bytes32_to_int,
    FIELD_PRIME,
)


def keccak_to_field(data: bytes) -> int:
    """keccak256(data) reduced into the SNARK scalar field."""
    return int.from_bytes(keccak256(data), byteorder="big") % FIELD_PRIME
