"""
Pool events - the public log wallets scan.

Every successful batch appends events in a fixed order:

    shield:   ShieldEvent
    transact: NullifiedEvent (per transaction), TransactEvent, UnshieldEvent (per unshield)
    admin:    FeeChangeEvent

Wallets only need Shield/Transact/Nullified events to mirror the accumulator
and detect spends.
"""

from dataclasses import dataclass
from typing import Tuple, Union

from shieldpool.core.state.note import CommitmentCiphertext, CommitmentPreimage, ShieldCiphertext, TokenData


@dataclass(frozen=True)
class ShieldEvent:
    """
    Deposits inserted into the accumulator.

    Attributes:
        tree_number: Tree the batch landed in
        start_index: Leaf index of the first commitment
        commitments: Fee-adjusted preimages, in insertion order
        shield_ciphertext: One ciphertext per preimage
        fees: Fee charged per preimage
    """
    tree_number: int
    start_index: int
    commitments: Tuple[CommitmentPreimage, ...]
    shield_ciphertext: Tuple[ShieldCiphertext, ...]
    fees: Tuple[int, ...]


@dataclass(frozen=True)
class TransactEvent:
    """New transfer outputs inserted into the accumulator."""
    tree_number: int
    start_index: int
    hashes: Tuple[int, ...]
    ciphertext: Tuple[CommitmentCiphertext, ...]


@dataclass(frozen=True)
class NullifiedEvent:
    """Nullifiers published by one transaction."""
    tree_number: int
    nullifiers: Tuple[int, ...]


@dataclass(frozen=True)
class UnshieldEvent:
    """Value paid out of the pool."""
    to: bytes
    token: TokenData
    amount: int
    fee: int


@dataclass(frozen=True)
class FeeChangeEvent:
    """New fee schedule in basis points."""
    shield_fee_bp: int
    unshield_fee_bp: int


PoolEvent = Union[ShieldEvent, TransactEvent, NullifiedEvent, UnshieldEvent, FeeChangeEvent]
