"""
Verifier registry - one Groth16 verifying key per circuit shape.

Each (inputs, outputs) combination is a separate circuit with its own
trusted setup, so the pool keeps a two-level map:

    nullifier_count -> commitment_count -> VerifyingKey

A transaction selects its key from ``len(nullifiers)`` and
``len(commitments)``. Unconfigured shapes are rejected outright.
"""

from typing import Dict, List, Tuple

from shieldpool.core.errors import StateError
from shieldpool.core.prover.groth16 import VerifyingKey, prepare_verifying_key, verify_proof
from shieldpool.utils.logger import get_logger

logger = get_logger("verifier")


class VerifierRegistry:
    """Shape-keyed store of verifying keys."""

    def __init__(self):
        self._keys: Dict[int, Dict[int, VerifyingKey]] = {}

    def set(self, nullifiers: int, commitments: int, vk: VerifyingKey) -> None:
        """
        Register (or replace) the key for a shape.

        Raises:
            ProofError: If any key point is malformed
        """
        prepare_verifying_key(vk)
        self._keys.setdefault(nullifiers, {})[commitments] = vk
        logger.info(f"Verifying key set for {nullifiers}x{commitments}")

    def remove(self, nullifiers: int, commitments: int) -> bool:
        """Unregister a shape. Returns False if it was not set."""
        row = self._keys.get(nullifiers)
        if not row or commitments not in row:
            return False
        del row[commitments]
        if not row:
            del self._keys[nullifiers]
        logger.info(f"Verifying key removed for {nullifiers}x{commitments}")
        return True

    def get(self, nullifiers: int, commitments: int) -> VerifyingKey:
        """
        Look up the key for a shape.

        Raises:
            StateError: If the shape is not configured
        """
        vk = self._keys.get(nullifiers, {}).get(commitments)
        if vk is None:
            raise StateError(f"Key not set for {nullifiers}x{commitments}")
        return vk

    def has(self, nullifiers: int, commitments: int) -> bool:
        return commitments in self._keys.get(nullifiers, {})

    def shapes(self) -> List[Tuple[int, int]]:
        return sorted((n, c) for n, row in self._keys.items() for c in row)

    def verify(self, transaction) -> bool:
        """
        Check a transaction's proof against the key for its shape.

        Raises:
            StateError: If the shape is not configured
            ProofError: If the proof encoding is malformed
        """
        vk = self.get(*transaction.shape)
        return verify_proof(vk, transaction.proof, transaction.public_input_hash)

    def __len__(self) -> int:
        return sum(len(row) for row in self._keys.values())

    def __repr__(self) -> str:
        return f"VerifierRegistry(shapes={self.shapes()})"
