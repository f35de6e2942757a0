"""Groth16 verification and the shape-keyed verifier registry"""
from shieldpool.core.prover.groth16 import (
    Proof,
    VerifyingKey,
    verify_proof,
)
from shieldpool.core.prover.verifier import VerifierRegistry

__all__ = [
    "Proof",
    "VerifyingKey",
    "verify_proof",
    "VerifierRegistry",
]
