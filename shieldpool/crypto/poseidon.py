"""
Poseidon Hash Function for shieldpool.

This module provides ZK-friendly hashing using the Poseidon hash function,
which is optimized for arithmetic circuits (low constraint count in SNARKs).
Every in-circuit hash of the pool (note public keys, commitments, nullifiers,
Merkle nodes, the public-input fold) goes through here.

References:
- Poseidon paper: https://eprint.iacr.org/2019/458
- circomlib implementation: https://github.com/iden3/circomlib

Parameters (BN254 / alt_bn128):
- Field: 21888242871839275222246405745257275088548364400416034343698204186575808495617
- t=3 (2 inputs + 1 capacity)
- rounds_f=8 (full rounds)
- rounds_p=57 (partial rounds)
- alpha=5 (S-box exponent)

Arity:
------
The permutation absorbs at most two elements. Wider inputs are folded
left to right: H(a, b, c) = H(H(a, b), c).

Compatibility:
-------------
The round constants and MDS matrix are generated here (SHAKE256 over a
fixed seed, Cauchy matrix), not taken from circomlib, and wide inputs are
folded instead of using a wider permutation. Hashes therefore differ from
circomlib's Poseidon, and a circom circuit built on circomlib will not agree
with any commitment, nullifier or root computed by this module.
"""

import hashlib
from typing import List, Optional, Sequence, Tuple

# BN254 scalar field prime (also the SNARK scalar field)
FIELD_PRIME = 21888242871839275222246405745257275088548364400416034343698204186575808495617

ROUNDS_F = 8
ROUNDS_P = 57


# =============================================================================
# Round Constants (t=3, rounds_f=8, rounds_p=57)
# =============================================================================


def _generate_round_constants(t: int, rounds_f: int, rounds_p: int, seed: bytes = b"poseidon") -> List[int]:
    """
    Generate Poseidon round constants using a deterministic PRNG.

    SHAKE256 over a fixed seed, 32 bytes per constant, reduced mod p.
    """
    total = (rounds_f + rounds_p) * t
    digest = hashlib.shake_256(seed).digest(total * 32)

    return [
        int.from_bytes(digest[i * 32:(i + 1) * 32], byteorder="big") % FIELD_PRIME
        for i in range(total)
    ]


def _generate_mds_matrix(t: int) -> List[List[int]]:
    """
    Generate the MDS matrix.

    Cauchy construction: M[i][j] = 1 / (x_i + y_j), which is always MDS
    when all x_i + y_j are distinct and non-zero.
    """
    x = [i + 1 for i in range(t)]
    y = [t + i + 1 for i in range(t)]

    return [
        [pow((x[i] + y[j]) % FIELD_PRIME, FIELD_PRIME - 2, FIELD_PRIME) for j in range(t)]
        for i in range(t)
    ]


_ROUND_CONSTANTS_T3: Optional[List[int]] = None
_MDS_MATRIX_T3: Optional[List[List[int]]] = None


def _get_constants_t3() -> Tuple[List[int], List[List[int]]]:
    """Get or compute constants for t=3."""
    global _ROUND_CONSTANTS_T3, _MDS_MATRIX_T3

    if _ROUND_CONSTANTS_T3 is None:
        _ROUND_CONSTANTS_T3 = _generate_round_constants(t=3, rounds_f=ROUNDS_F, rounds_p=ROUNDS_P)
    if _MDS_MATRIX_T3 is None:
        _MDS_MATRIX_T3 = _generate_mds_matrix(t=3)

    return _ROUND_CONSTANTS_T3, _MDS_MATRIX_T3


# =============================================================================
# Permutation
# =============================================================================


def _sbox(x: int) -> int:
    """Apply S-box: x^5 mod p."""
    return pow(x, 5, FIELD_PRIME)


def _mds_multiply(state: List[int], matrix: List[List[int]]) -> List[int]:
    """Multiply state by MDS matrix."""
    return [
        sum(row[j] * state[j] for j in range(len(state))) % FIELD_PRIME
        for row in matrix
    ]


def _add_round_constants(state: List[int], constants: List[int], round_idx: int) -> List[int]:
    offset = round_idx * len(state)
    return [(s + constants[offset + i]) % FIELD_PRIME for i, s in enumerate(state)]


def _permute(state: List[int]) -> List[int]:
    """Run the full Poseidon permutation over a t=3 state."""
    constants, matrix = _get_constants_t3()
    half_f = ROUNDS_F // 2
    round_idx = 0

    for _ in range(half_f):
        state = _add_round_constants(state, constants, round_idx)
        state = [_sbox(x) for x in state]
        state = _mds_multiply(state, matrix)
        round_idx += 1

    for _ in range(ROUNDS_P):
        state = _add_round_constants(state, constants, round_idx)
        state[0] = _sbox(state[0])
        state = _mds_multiply(state, matrix)
        round_idx += 1

    for _ in range(half_f):
        state = _add_round_constants(state, constants, round_idx)
        state = [_sbox(x) for x in state]
        state = _mds_multiply(state, matrix)
        round_idx += 1

    return state


def _check_inputs(inputs: Sequence[int]) -> None:
    for i, val in enumerate(inputs):
        if not isinstance(val, int) or isinstance(val, bool):
            raise ValueError(f"Input {i} must be an int, got {type(val).__name__}")
        if not (0 <= val < FIELD_PRIME):
            raise ValueError(f"Input {i} out of field range: {val}")


# =============================================================================
# Public API
# =============================================================================


def poseidon_hash(inputs: Sequence[int], domain_sep: int = 0) -> int:
    """
    Compute Poseidon hash of one or more field elements.

    Args:
        inputs: Field elements (integers < FIELD_PRIME), at least one
        domain_sep: Optional capacity-element domain separator

    Returns:
        Hash as a field element (integer)

    Raises:
        ValueError: If inputs are empty or out of range
    """
    if len(inputs) == 0:
        raise ValueError("Poseidon requires at least one input")

    _check_inputs(inputs)

    if len(inputs) <= 2:
        padded = list(inputs) + [0] * (2 - len(inputs))
        return _permute([domain_sep % FIELD_PRIME, padded[0], padded[1]])[1]

    h = poseidon_hash(inputs[:2], domain_sep)
    for value in inputs[2:]:
        h = poseidon_hash([h, value], domain_sep)
    return h


def poseidon2(a: int, b: int, domain_sep: int = 0) -> int:
    """Hash two field elements."""
    return poseidon_hash([a, b], domain_sep)


def poseidon1(a: int, domain_sep: int = 0) -> int:
    """Hash one field element."""
    return poseidon_hash([a], domain_sep)


def hash_left_right(left: int, right: int) -> int:
    """Merkle node hash."""
    return poseidon2(left, right)


def int_to_bytes32(val: int) -> bytes:
    """Convert field element to 32 bytes."""
    return val.to_bytes(32, byteorder="big")


def bytes32_to_int(data: bytes) -> int:
    """Convert 32 bytes to field element."""
    if len(data) != 32:
        raise ValueError(f"Expected 32 bytes, got {len(data)}")
    val = int.from_bytes(data, byteorder="big")
    if val >= FIELD_PRIME:
        raise ValueError(f"Value {val} exceeds field prime")
    return val
