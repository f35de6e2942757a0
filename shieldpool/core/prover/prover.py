"""
ZK Prover - proof generation for shielded transactions.

This module provides orchestration for Groth16 proof generation.
Two backends are implemented:
1. Trapdoor prover (in-process, knows the setup trapdoor of its own keys)
2. SnarkJS prover (real circuit, via the snarkjs CLI)

Both consume the same ``CircuitInputs`` witness. The trapdoor prover checks
every statement the transaction circuit enforces before it will produce a
proof, so an invalid spend cannot be proven with either backend.

Statement proven (per shape nInputs x nOutputs):
-----------------------------------------------
For every input i:
    npk_in[i]   = H(H(pub.x, pub.y, nk), random_in[i])
    leaf[i]     = H(npk_in[i], token, value_in[i])
    leaf[i] is under merkle_root at leaves_indices[i]
    nullifiers[i] = H(nk, leaves_indices[i])
For every output j:
    commitments_out[j] = H(npk_out[j], token, value_out[j])
And:
    sum(value_in) == sum(value_out), every value < 2^120
    signature is a valid EdDSA-Poseidon signature by pub over
    H(merkle_root, bound_params_hash, nullifiers..., commitments_out...)
"""

import json
import secrets
import subprocess
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from py_ecc.optimized_bn128 import G1, G2, curve_order, is_inf, multiply, normalize

from shieldpool.core.errors import ProofError
from shieldpool.core.prover.groth16 import Proof, VerifyingKey
from shieldpool.core.state.merkle import MerkleProof, validate_proof
from shieldpool.core.state.note import get_master_public_key, get_note_public_key, get_nullifier, hash_commitment
from shieldpool.core.state.transaction import hash_public_inputs
from shieldpool.crypto import babyjubjub, sha256
from shieldpool.utils.logger import get_logger
from shieldpool.utils.validation import MAX_NOTE_VALUE

logger = get_logger("prover")


# =============================================================================
# Witness
# =============================================================================


@dataclass
class CircuitInputs:
    """
    Witness for the transaction circuit.

    Public: merkle_root, bound_params_hash, nullifiers, commitments_out.
    Everything else is private.
    """
    merkle_root: int
    bound_params_hash: int
    nullifiers: List[int]
    commitments_out: List[int]
    token_id: int
    public_key: babyjubjub.Point
    signature: babyjubjub.Signature
    random_in: List[int]
    value_in: List[int]
    path_elements: List[List[int]]
    leaves_indices: List[int]
    nullifying_key: int
    npk_out: List[int]
    value_out: List[int]

    @property
    def shape(self) -> Tuple[int, int]:
        return len(self.nullifiers), len(self.commitments_out)

    @property
    def public_input_hash(self) -> int:
        return hash_public_inputs(
            self.merkle_root, self.bound_params_hash, self.nullifiers, self.commitments_out
        )

    def to_json(self) -> dict:
        """Convert to the snarkjs input format (decimal strings)."""
        (r8x, r8y), s = self.signature
        return {
            "merkleRoot": str(self.merkle_root),
            "boundParamsHash": str(self.bound_params_hash),
            "nullifiers": [str(x) for x in self.nullifiers],
            "commitmentsOut": [str(x) for x in self.commitments_out],
            "token": str(self.token_id),
            "publicKey": [str(x) for x in self.public_key],
            "signature": [str(r8x), str(r8y), str(s)],
            "randomIn": [str(x) for x in self.random_in],
            "valueIn": [str(x) for x in self.value_in],
            "pathElements": [[str(x) for x in path] for path in self.path_elements],
            "leavesIndices": [str(x) for x in self.leaves_indices],
            "nullifyingKey": str(self.nullifying_key),
            "npkOut": [str(x) for x in self.npk_out],
            "valueOut": [str(x) for x in self.value_out],
        }


def check_witness(inputs: CircuitInputs) -> Tuple[bool, str]:
    """
    Evaluate the circuit constraints in Python.

    Returns:
        (is_valid, error_message)
    """
    n_in, n_out = inputs.shape
    if n_in == 0 or n_out == 0:
        return False, "Circuit needs at least one input and one output"

    per_input = (inputs.random_in, inputs.value_in, inputs.path_elements, inputs.leaves_indices)
    if any(len(values) != n_in for values in per_input):
        return False, "Input arrays have inconsistent lengths"
    if len(inputs.npk_out) != n_out or len(inputs.value_out) != n_out:
        return False, "Output arrays have inconsistent lengths"

    for value in inputs.value_in + inputs.value_out:
        if not (0 <= value <= MAX_NOTE_VALUE):
            return False, "Note value out of range"

    if sum(inputs.value_in) != sum(inputs.value_out):
        return False, "Input and output values do not balance"

    mpk = get_master_public_key(inputs.public_key, inputs.nullifying_key)

    for i in range(n_in):
        npk = get_note_public_key(mpk, inputs.random_in[i].to_bytes(16, byteorder="big"))
        leaf = hash_commitment(npk, inputs.token_id, inputs.value_in[i])
        proof = MerkleProof(
            leaf=leaf,
            elements=tuple(inputs.path_elements[i]),
            indices=inputs.leaves_indices[i],
            root=inputs.merkle_root,
        )
        if not validate_proof(proof):
            return False, f"Input {i} is not in the tree"
        if get_nullifier(inputs.nullifying_key, inputs.leaves_indices[i]) != inputs.nullifiers[i]:
            return False, f"Nullifier {i} does not match its note"

    for j in range(n_out):
        if hash_commitment(inputs.npk_out[j], inputs.token_id, inputs.value_out[j]) != inputs.commitments_out[j]:
            return False, f"Commitment {j} does not match its preimage"

    if not babyjubjub.verify(inputs.public_key, inputs.public_input_hash, inputs.signature):
        return False, "Invalid spending key signature"

    return True, ""


# =============================================================================
# Backends
# =============================================================================


class ProvingBackend:
    """Interface shared by the proving backends."""

    def verifying_key(self, nullifiers: int, commitments: int) -> VerifyingKey:
        raise NotImplementedError

    def prove(self, inputs: CircuitInputs) -> Proof:
        raise NotImplementedError


def _affine_g1(point) -> Tuple[int, int]:
    if is_inf(point):
        return (0, 0)
    x, y = normalize(point)
    return (_int(x), _int(y))


def _int(value) -> int:
    return int(getattr(value, "n", value))


def _coeffs(value) -> Tuple[int, int]:
    return tuple(_int(c) for c in value.coeffs)


def _affine_g2(point) -> Tuple[Tuple[int, int], Tuple[int, int]]:
    if is_inf(point):
        return ((0, 0), (0, 0))
    x, y = normalize(point)
    return (_coeffs(x), _coeffs(y))


@dataclass
class _Trapdoor:
    alpha: int
    beta: int
    gamma: int
    delta: int
    ic: Tuple[int, int]
    vk: Optional[VerifyingKey] = None


class TrapdoorProver(ProvingBackend):
    """
    Groth16 prover for keys whose setup trapdoor it generated itself.

    Knowing alpha, beta, gamma, delta and the IC discrete logs, any
    (A, B) pair can be completed with a C that satisfies the pairing
    equation:

        c = (a*b - alpha*beta - (k0 + x*k1)*gamma) / delta   (mod r)

    Proofs are real: they pass ``verify_proof`` with the pairing check. The
    prover refuses to complete a proof unless ``check_witness`` passes.
    """

    def __init__(self, seed: Optional[bytes] = None):
        """
        Initialize trapdoor prover.

        Args:
            seed: Makes trapdoors deterministic per shape (random if omitted)
        """
        self.seed = seed
        self._trapdoors: Dict[Tuple[int, int], _Trapdoor] = {}
        self.proofs_generated = 0

    def _scalar(self, label: str) -> int:
        if self.seed is None:
            return secrets.randbelow(curve_order - 1) + 1
        digest = sha256(self.seed + label.encode())
        return int.from_bytes(digest, byteorder="big") % (curve_order - 1) + 1

    def setup(self, nullifiers: int, commitments: int) -> VerifyingKey:
        """Run (or reuse) the setup for one shape and return its verifying key."""
        shape = (nullifiers, commitments)
        trapdoor = self._trapdoors.get(shape)
        if trapdoor is not None and trapdoor.vk is not None:
            return trapdoor.vk

        prefix = f"{nullifiers}x{commitments}/"
        trapdoor = _Trapdoor(
            alpha=self._scalar(prefix + "alpha"),
            beta=self._scalar(prefix + "beta"),
            gamma=self._scalar(prefix + "gamma"),
            delta=self._scalar(prefix + "delta"),
            ic=(self._scalar(prefix + "ic0"), self._scalar(prefix + "ic1")),
        )
        trapdoor.vk = VerifyingKey(
            alpha1=_affine_g1(multiply(G1, trapdoor.alpha)),
            beta2=_affine_g2(multiply(G2, trapdoor.beta)),
            gamma2=_affine_g2(multiply(G2, trapdoor.gamma)),
            delta2=_affine_g2(multiply(G2, trapdoor.delta)),
            ic=tuple(_affine_g1(multiply(G1, k)) for k in trapdoor.ic),
        )
        self._trapdoors[shape] = trapdoor
        logger.info(f"Trapdoor setup complete for {nullifiers}x{commitments}")
        return trapdoor.vk

    def verifying_key(self, nullifiers: int, commitments: int) -> VerifyingKey:
        return self.setup(nullifiers, commitments)

    def prove_public_input(self, nullifiers: int, commitments: int, public_input: int) -> Proof:
        """
        Complete a proof for a raw public input, skipping witness checks.

        Only for exercising the verifier; the pool never sees a witness.
        """
        self.setup(nullifiers, commitments)
        trapdoor = self._trapdoors[(nullifiers, commitments)]
        r = curve_order

        a = secrets.randbelow(r - 1) + 1
        b = secrets.randbelow(r - 1) + 1
        k0, k1 = trapdoor.ic
        numerator = (a * b - trapdoor.alpha * trapdoor.beta - (k0 + public_input * k1) * trapdoor.gamma) % r
        c = numerator * pow(trapdoor.delta, -1, r) % r

        return Proof(
            a=_affine_g1(multiply(G1, a)),
            b=_affine_g2(multiply(G2, b)),
            c=_affine_g1(multiply(G1, c)),
        )

    def prove(self, inputs: CircuitInputs) -> Proof:
        """
        Prove a transaction witness.

        Raises:
            ProofError: If the witness does not satisfy the circuit
        """
        start_time = time.time()

        valid, err = check_witness(inputs)
        if not valid:
            raise ProofError(f"Invalid witness: {err}")

        proof = self.prove_public_input(*inputs.shape, inputs.public_input_hash)

        self.proofs_generated += 1
        proving_time_ms = int((time.time() - start_time) * 1000)
        n_in, n_out = inputs.shape
        logger.info(f"Trapdoor proof generated for {n_in}x{n_out} in {proving_time_ms}ms")
        return proof


class SnarkJSProver(ProvingBackend):
    """
    Real ZK prover using snarkjs via subprocess.

    Requires:
    - Node.js installed
    - snarkjs installed globally (npm install -g snarkjs)
    - One compiled circuit per shape under ``circuit_dir/<in>x<out>/``:
      circuit.wasm, circuit.zkey, verification_key.json

    The circuits must hash with this package's Poseidon (``shieldpool.crypto``)
    and verify BLAKE2b-based EdDSA. Neither matches circomlib, so a transaction
    circuit built on circomlib templates will compute a different public input
    and every proof from it fails the public-signal check in ``prove``.
    """

    def __init__(self, circuit_dir: Path, timeout: int = 300):
        """
        Initialize snarkjs prover.

        Args:
            circuit_dir: Directory containing per-shape circuit directories
            timeout: Seconds allowed for one fullprove run
        """
        self.circuit_dir = Path(circuit_dir)
        self.timeout = timeout
        self.proofs_generated = 0

    def shape_dir(self, nullifiers: int, commitments: int) -> Path:
        return self.circuit_dir / f"{nullifiers}x{commitments}"

    def is_setup_complete(self, nullifiers: int, commitments: int) -> bool:
        """Check if circuit files exist for a shape."""
        shape_dir = self.shape_dir(nullifiers, commitments)
        return all(
            (shape_dir / name).exists()
            for name in ("circuit.wasm", "circuit.zkey", "verification_key.json")
        )

    def verifying_key(self, nullifiers: int, commitments: int) -> VerifyingKey:
        path = self.shape_dir(nullifiers, commitments) / "verification_key.json"
        if not path.exists():
            raise ProofError(f"Verification key not found for {nullifiers}x{commitments}")
        with open(path) as f:
            return VerifyingKey.from_snarkjs(json.load(f))

    def prove(self, inputs: CircuitInputs) -> Proof:
        """
        Generate a proof with ``snarkjs groth16 fullprove``.

        Raises:
            ProofError: If the circuit is missing or snarkjs fails
        """
        n_in, n_out = inputs.shape
        if not self.is_setup_complete(n_in, n_out):
            raise ProofError(f"Circuit {n_in}x{n_out} not compiled. Run setup first.")

        start_time = time.time()
        shape_dir = self.shape_dir(n_in, n_out)

        with tempfile.TemporaryDirectory() as work_dir:
            work = Path(work_dir)
            input_path = work / "input.json"
            proof_path = work / "proof.json"
            public_path = work / "public.json"

            with open(input_path, "w") as f:
                json.dump(inputs.to_json(), f)

            try:
                result = subprocess.run(
                    [
                        "snarkjs", "groth16", "fullprove",
                        str(input_path),
                        str(shape_dir / "circuit.wasm"),
                        str(shape_dir / "circuit.zkey"),
                        str(proof_path),
                        str(public_path),
                    ],
                    capture_output=True,
                    text=True,
                    timeout=self.timeout,
                )
            except subprocess.TimeoutExpired:
                raise ProofError("Proof generation timed out")
            except FileNotFoundError:
                raise ProofError("snarkjs not found")

            if result.returncode != 0:
                raise ProofError(f"Proof generation failed: {result.stderr}")

            with open(proof_path) as f:
                proof_json = json.load(f)
            with open(public_path) as f:
                public_signals = json.load(f)

        if [int(v) for v in public_signals] != [inputs.public_input_hash]:
            raise ProofError("Circuit public signals do not match the transaction")

        self.proofs_generated += 1
        proving_time_ms = int((time.time() - start_time) * 1000)
        logger.info(f"Proof generated for {n_in}x{n_out} in {proving_time_ms}ms")
        return Proof.from_snarkjs(proof_json)


# =============================================================================
# Prover Manager
# =============================================================================


@dataclass
class ProofRecord:
    """Bookkeeping for one generated proof."""
    shape: Tuple[int, int]
    public_input: int
    created_at: int
    proving_time_ms: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "shape": list(self.shape),
            "public_input": str(self.public_input),
            "created_at": self.created_at,
            "proving_time_ms": self.proving_time_ms,
        }


class ProverManager:
    """
    High-level prover management.

    Selects a backend and keeps a history of generated proofs.
    """

    def __init__(
        self,
        circuit_dir: Optional[Path] = None,
        use_trapdoor: bool = True,
        seed: Optional[bytes] = None,
    ):
        """
        Initialize prover manager.

        Args:
            circuit_dir: Directory for circuit files
            use_trapdoor: Use the in-process trapdoor prover instead of snarkjs
            seed: Deterministic trapdoor seed (trapdoor backend only)
        """
        self.proof_history: List[ProofRecord] = []

        if use_trapdoor:
            self.prover: ProvingBackend = TrapdoorProver(seed=seed)
        else:
            if circuit_dir is None:
                circuit_dir = Path("circuits")
            self.prover = SnarkJSProver(circuit_dir)

    def verifying_key(self, nullifiers: int, commitments: int) -> VerifyingKey:
        return self.prover.verifying_key(nullifiers, commitments)

    def prove(self, inputs: CircuitInputs) -> Proof:
        """
        Generate a proof and record it.

        Raises:
            ProofError: If the backend cannot produce a proof
        """
        start_time = time.time()
        proof = self.prover.prove(inputs)
        self.proof_history.append(ProofRecord(
            shape=inputs.shape,
            public_input=inputs.public_input_hash,
            created_at=int(time.time()),
            proving_time_ms=int((time.time() - start_time) * 1000),
        ))
        return proof

    def get_latest_proof(self) -> Optional[ProofRecord]:
        return self.proof_history[-1] if self.proof_history else None

    def stats(self) -> dict:
        """Get prover statistics."""
        return {
            "proofs_generated": len(self.proof_history),
            "use_trapdoor": isinstance(self.prover, TrapdoorProver),
            "shapes": sorted({record.shape for record in self.proof_history}),
        }
