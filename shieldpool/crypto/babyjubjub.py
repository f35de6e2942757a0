"""
BabyJubJub curve and EdDSA-Poseidon signatures.

Spending keys live on BabyJubJub, the twisted Edwards curve defined over the
BN254 scalar field:

    a * x^2 + y^2 = 1 + d * x^2 * y^2     (a = 168700, d = 168696)

Because its base field is the SNARK scalar field, a circuit can check a
signature over it natively. Signatures follow the circomlib EdDSA-Poseidon
construction:

    s      = clamp(H512(sk)[0:32])
    A      = Base8 * (s >> 3)
    r      = H512(H512(sk)[32:64] || msg) mod l
    R8     = Base8 * r
    hm     = Poseidon(R8.x, R8.y, A.x, A.y, msg)
    S      = (r + hm * s) mod l

Verification checks Base8 * S == R8 + A * (8 * hm).

H512 is BLAKE2b-512 here rather than circomlib's original BLAKE-512, and the
Poseidon above is not circomlib's (see ``poseidon``), so keys and
signatures made here do not verify in circomlib's EdDSAPoseidonVerifier.
"""

import hashlib
from typing import Tuple

from shieldpool.crypto.poseidon import FIELD_PRIME, poseidon_hash

Point = Tuple[int, int]
Signature = Tuple[Point, int]

# Curve parameters
A = 168700
D = 168696

# Order of the prime-order subgroup generated by BASE8
SUBGROUP_ORDER = 2736030358979909402780800718157159386076813972158567259200215660948447373041

BASE8: Point = (
    5299619240641551281634865583518297030282874472190772894086521144482721001553,
    16950150798460657717958625567821834550301663161624707787222815936182638968203,
)

IDENTITY: Point = (0, 1)


# =============================================================================
# Curve Arithmetic
# =============================================================================


def _inv(x: int) -> int:
    return pow(x, FIELD_PRIME - 2, FIELD_PRIME)


def is_on_curve(point: Point) -> bool:
    """Check the twisted Edwards equation."""
    x, y = point
    if not (0 <= x < FIELD_PRIME and 0 <= y < FIELD_PRIME):
        return False
    x2 = x * x % FIELD_PRIME
    y2 = y * y % FIELD_PRIME
    return (A * x2 + y2) % FIELD_PRIME == (1 + D * x2 * y2) % FIELD_PRIME


def add(p1: Point, p2: Point) -> Point:
    """Unified twisted Edwards addition (also used for doubling)."""
    x1, y1 = p1
    x2, y2 = p2

    t = D * x1 * x2 * y1 * y2 % FIELD_PRIME
    x3 = (x1 * y2 + y1 * x2) * _inv((1 + t) % FIELD_PRIME) % FIELD_PRIME
    y3 = (y1 * y2 - A * x1 * x2) * _inv((1 - t) % FIELD_PRIME) % FIELD_PRIME

    return (x3, y3)


def multiply(point: Point, scalar: int) -> Point:
    """Double-and-add scalar multiplication."""
    result = IDENTITY
    addend = point
    while scalar > 0:
        if scalar & 1:
            result = add(result, addend)
        addend = add(addend, addend)
        scalar >>= 1
    return result


# =============================================================================
# Keys & Signatures
# =============================================================================


def _h512(data: bytes) -> bytes:
    return hashlib.blake2b(data, digest_size=64).digest()


def _clamped_scalar(private_key: bytes) -> int:
    buf = bytearray(_h512(private_key)[:32])
    buf[0] &= 0xF8
    buf[31] &= 0x7F
    buf[31] |= 0x40
    return int.from_bytes(bytes(buf), byteorder="little")


def private_to_public(private_key: bytes) -> Point:
    """
    Derive the spending public key from a 32-byte spending key.

    Args:
        private_key: 32 random bytes

    Returns:
        Public key point (x, y)
    """
    if len(private_key) != 32:
        raise ValueError("Spending key must be 32 bytes")

    return multiply(BASE8, _clamped_scalar(private_key) >> 3)


def sign(private_key: bytes, message: int) -> Signature:
    """
    Sign a field element with EdDSA-Poseidon.

    Args:
        private_key: 32-byte spending key
        message: Field element to sign

    Returns:
        (R8, S) signature
    """
    if not (0 <= message < FIELD_PRIME):
        raise ValueError("Message must be a field element")

    digest = _h512(private_key)
    s = _clamped_scalar(private_key)
    public_key = multiply(BASE8, s >> 3)

    nonce_input = digest[32:64] + message.to_bytes(32, byteorder="little")
    r = int.from_bytes(_h512(nonce_input), byteorder="little") % SUBGROUP_ORDER
    r8 = multiply(BASE8, r)

    hm = poseidon_hash([r8[0], r8[1], public_key[0], public_key[1], message])
    big_s = (r + hm * s) % SUBGROUP_ORDER

    return (r8, big_s)


def verify(public_key: Point, message: int, signature: Signature) -> bool:
    """Verify an EdDSA-Poseidon signature. Returns False on any malformed input."""
    try:
        r8, big_s = signature
    except (TypeError, ValueError):
        return False

    if not (0 <= message < FIELD_PRIME):
        return False
    if not (0 <= big_s < SUBGROUP_ORDER):
        return False
    if not is_on_curve(r8) or not is_on_curve(public_key):
        return False

    hm = poseidon_hash([r8[0], r8[1], public_key[0], public_key[1], message])
    left = multiply(BASE8, big_s)
    right = add(r8, multiply(public_key, 8 * hm))

    return left == right
