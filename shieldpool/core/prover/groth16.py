"""
Groth16 proof verification over BN254.

A Groth16 proof is three points (A in G1, B in G2, C in G1). With a single
public input x, verification is one multi-scalar step and one pairing product:

    vk_x = IC[0] + x * IC[1]
    e(-A, B) * e(alpha, beta) * e(vk_x, gamma) * e(C, delta) == 1

Every coordinate is range-checked against the base field and every point is
checked to lie on its curve (and, for G2, in the prime-order subgroup) before
any arithmetic, so malformed encodings are rejected rather than reduced.

Points are plain integer tuples at the edges:
    G1: (x, y)
    G2: ((x_c0, x_c1), (y_c0, y_c1))   with x = x_c0 + x_c1 * i
The pair (0, 0) encodes the point at infinity.
"""

from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, List, Sequence, Tuple

from py_ecc.optimized_bn128 import (
    FQ,
    FQ2,
    FQ12,
    Z1,
    Z2,
    add,
    b,
    b2,
    curve_order,
    field_modulus,
    final_exponentiate,
    is_inf,
    is_on_curve,
    multiply,
    neg,
    pairing,
)

from shieldpool.core.errors import ProofError

G1Point = Tuple[int, int]
G2Point = Tuple[Tuple[int, int], Tuple[int, int]]

# Order of G1/G2 and modulus of all public inputs
SNARK_SCALAR_FIELD = curve_order
# Base field of the curve; bound for every coordinate
PRIME_Q = field_modulus


# =============================================================================
# Encodings
# =============================================================================


@dataclass(frozen=True)
class Proof:
    """Groth16 proof points."""
    a: G1Point
    b: G2Point
    c: G1Point

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict (decimal strings)."""
        return {
            "a": [str(v) for v in self.a],
            "b": [[str(v) for v in self.b[0]], [str(v) for v in self.b[1]]],
            "c": [str(v) for v in self.c],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Proof":
        return cls(
            a=_g1(data["a"]),
            b=_g2(data["b"]),
            c=_g1(data["c"]),
        )

    @classmethod
    def from_snarkjs(cls, data: Dict[str, Any]) -> "Proof":
        """Parse snarkjs ``proof.json`` (pi_a, pi_b, pi_c in projective form)."""
        return cls(
            a=_g1(data["pi_a"][:2]),
            b=_g2(data["pi_b"][:2]),
            c=_g1(data["pi_c"][:2]),
        )


@dataclass(frozen=True)
class VerifyingKey:
    """
    Groth16 verifying key for a circuit with one public input.

    Attributes:
        alpha1: alpha in G1
        beta2: beta in G2
        gamma2: gamma in G2
        delta2: delta in G2
        ic: (IC0, IC1) in G1
    """
    alpha1: G1Point
    beta2: G2Point
    gamma2: G2Point
    delta2: G2Point
    ic: Tuple[G1Point, ...]

    def __post_init__(self):
        if len(self.ic) != 2:
            raise ProofError(f"Verifying key must have 2 IC points, got {len(self.ic)}")

    def to_dict(self) -> Dict[str, Any]:
        g2 = lambda p: [[str(v) for v in p[0]], [str(v) for v in p[1]]]  # noqa: E731
        return {
            "alpha1": [str(v) for v in self.alpha1],
            "beta2": g2(self.beta2),
            "gamma2": g2(self.gamma2),
            "delta2": g2(self.delta2),
            "ic": [[str(v) for v in p] for p in self.ic],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VerifyingKey":
        return cls(
            alpha1=_g1(data["alpha1"]),
            beta2=_g2(data["beta2"]),
            gamma2=_g2(data["gamma2"]),
            delta2=_g2(data["delta2"]),
            ic=tuple(_g1(p) for p in data["ic"]),
        )

    @classmethod
    def from_snarkjs(cls, data: Dict[str, Any]) -> "VerifyingKey":
        """Parse snarkjs ``verification_key.json``."""
        if data.get("protocol") != "groth16":
            raise ProofError("Only groth16 verifying keys are supported")
        return cls(
            alpha1=_g1(data["vk_alpha_1"][:2]),
            beta2=_g2(data["vk_beta_2"][:2]),
            gamma2=_g2(data["vk_gamma_2"][:2]),
            delta2=_g2(data["vk_delta_2"][:2]),
            ic=tuple(_g1(p[:2]) for p in data["IC"]),
        )


def _g1(values: Sequence[Any]) -> G1Point:
    return (int(values[0]), int(values[1]))


def _g2(values: Sequence[Sequence[Any]]) -> G2Point:
    return ((int(values[0][0]), int(values[0][1])), (int(values[1][0]), int(values[1][1])))


# =============================================================================
# Point Conversion (range + curve checks)
# =============================================================================


def _check_coordinate(value: int, name: str) -> None:
    if not isinstance(value, int) or not (0 <= value < PRIME_Q):
        raise ProofError(f"{name} coordinate out of range")


def to_g1(point: G1Point, name: str = "G1 point"):
    """Range-check and lift an affine G1 point into py_ecc's projective form."""
    x, y = point
    _check_coordinate(x, name)
    _check_coordinate(y, name)

    if x == 0 and y == 0:
        return Z1

    lifted = (FQ(x), FQ(y), FQ.one())
    if not is_on_curve(lifted, b):
        raise ProofError(f"{name} is not on the curve")
    return lifted


def to_g2(point: G2Point, name: str = "G2 point"):
    """Range-check and lift an affine G2 point; also enforces subgroup membership."""
    (x0, x1), (y0, y1) = point
    for value in (x0, x1, y0, y1):
        _check_coordinate(value, name)

    if x0 == x1 == y0 == y1 == 0:
        return Z2

    lifted = (FQ2([x0, x1]), FQ2([y0, y1]), FQ2.one())
    if not is_on_curve(lifted, b2):
        raise ProofError(f"{name} is not on the twist curve")
    if not is_inf(multiply(lifted, curve_order)):
        raise ProofError(f"{name} is not in the G2 subgroup")
    return lifted


# =============================================================================
# Verification
# =============================================================================


def pairing_product_is_one(pairs: List[Tuple[Any, Any]]) -> bool:
    """
    Check prod e(P_i, Q_i) == 1 for (G1, G2) pairs.

    Miller loops are multiplied first; one final exponentiation is applied.
    """
    acc = FQ12.one()
    for p1, q2 in pairs:
        if is_inf(p1) or is_inf(q2):
            continue
        acc = acc * pairing(q2, p1, final_exponentiate=False)
    return final_exponentiate(acc) == FQ12.one()


def verify_proof(vk: VerifyingKey, proof: Proof, public_input: int) -> bool:
    """
    Verify a single-input Groth16 proof.

    Args:
        vk: Shape-selected verifying key
        proof: Proof points
        public_input: The folded public-input scalar

    Returns:
        True if the pairing check passes

    Raises:
        ProofError: If any point or the public input is malformed
    """
    if not isinstance(public_input, int) or not (0 <= public_input < SNARK_SCALAR_FIELD):
        raise ProofError("Public input out of scalar field")

    a = to_g1(proof.a, "proof.a")
    b_point = to_g2(proof.b, "proof.b")
    c = to_g1(proof.c, "proof.c")

    alpha1, beta2, gamma2, delta2, ic0, ic1 = prepare_verifying_key(vk)

    vk_x = add(ic0, multiply(ic1, public_input))

    return pairing_product_is_one([
        (neg(a), b_point),
        (alpha1, beta2),
        (vk_x, gamma2),
        (c, delta2),
    ])


@lru_cache(maxsize=64)
def prepare_verifying_key(vk: VerifyingKey) -> Tuple[Any, ...]:
    """
    Validate and lift every point of a verifying key.

    Cached per key, so the G2 subgroup checks run once per registered shape.

    Raises:
        ProofError: If any point is malformed
    """
    return (
        to_g1(vk.alpha1, "vk.alpha1"),
        to_g2(vk.beta2, "vk.beta2"),
        to_g2(vk.gamma2, "vk.gamma2"),
        to_g2(vk.delta2, "vk.delta2"),
        to_g1(vk.ic[0], "vk.ic[0]"),
        to_g1(vk.ic[1], "vk.ic[1]"),
    )
