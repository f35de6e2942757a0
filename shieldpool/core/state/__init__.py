"""Notes, commitment trees, nullifiers and the shielded pool"""
from shieldpool.core.state.note import (
    TokenType,
    TokenData,
    erc20,
    CommitmentPreimage,
    Note,
    OutputNote,
    unshield_preimage,
)
from shieldpool.core.state.merkle import CommitmentAccumulator, MerkleTree, MerkleProof
from shieldpool.core.state.nullifiers import NullifierSet
from shieldpool.core.state.transaction import BoundParams, ShieldRequest, Transaction, UnshieldType

__all__ = [
    "TokenType",
    "TokenData",
    "erc20",
    "CommitmentPreimage",
    "Note",
    "OutputNote",
    "unshield_preimage",
    "CommitmentAccumulator",
    "MerkleTree",
    "MerkleProof",
    "NullifierSet",
    "BoundParams",
    "ShieldRequest",
    "Transaction",
    "UnshieldType",
]
