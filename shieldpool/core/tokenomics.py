"""
Tokenomics - Fee model for the shielded pool.

Manages:
- Basis-point fee calculation (inclusive and exclusive modes)
- The active shield / unshield fee schedule
- Running totals of fees credited to the treasury

Inclusive mode treats ``amount`` as base + fee:

    base = amount * 10000 / (10000 + fee_bp)
    fee  = amount - base

Exclusive mode charges on top of ``amount``:

    base = amount
    fee  = amount * fee_bp / 10000

Intra-pool transfers carry no fee.
"""

from dataclasses import dataclass, field
from functools import partial
from typing import Dict, Optional, Tuple

from shieldpool.core.errors import FormatError
from shieldpool.utils.journal import UndoJournal
from shieldpool.utils.logger import get_logger
from shieldpool.utils.validation import BASIS_POINTS, validate_basis_points

logger = get_logger("tokenomics")


def get_fee(amount: int, is_inclusive: bool, fee_bp: int) -> Tuple[int, int]:
    """
    Split an amount into (base, fee).

    Args:
        amount: Gross amount (inclusive) or base amount (exclusive)
        is_inclusive: Whether the fee is taken out of ``amount``
        fee_bp: Fee rate in basis points (0..10000)

    Returns:
        (base, fee)
    """
    valid, err = validate_basis_points(fee_bp, "fee_bp")
    if not valid:
        raise FormatError(err)
    if amount < 0:
        raise FormatError(f"amount must be >= 0, got {amount}")

    if is_inclusive:
        base = amount * BASIS_POINTS // (BASIS_POINTS + fee_bp)
        return base, amount - base

    return amount, amount * fee_bp // BASIS_POINTS


@dataclass
class FeeSchedule:
    """Active fee rates in basis points."""
    shield_fee_bp: int = 25
    unshield_fee_bp: int = 25


@dataclass
class FeeRecord:
    """Fee charged on one shield or unshield."""
    token_id: int
    base: int
    fee: int


@dataclass
class FeeManager(UndoJournal):
    """
    Tracks the fee schedule and what it has collected.
    """
    schedule: FeeSchedule = field(default_factory=FeeSchedule)
    collected: Dict[int, int] = field(default_factory=dict)

    def __post_init__(self):
        UndoJournal.__init__(self)

    def shield_fee(self, amount: int) -> Tuple[int, int]:
        """(base, fee) for a deposit of ``amount``."""
        return get_fee(amount, True, self.schedule.shield_fee_bp)

    def unshield_fee(self, amount: int) -> Tuple[int, int]:
        """(base, fee) for a withdrawal of ``amount``."""
        return get_fee(amount, True, self.schedule.unshield_fee_bp)

    def change_fees(self, shield_fee_bp: int, unshield_fee_bp: int) -> bool:
        """
        Replace the fee schedule.

        Returns:
            True if anything changed

        Raises:
            FormatError: If a rate exceeds 10000 bp
        """
        for name, value in (("shield_fee_bp", shield_fee_bp), ("unshield_fee_bp", unshield_fee_bp)):
            valid, err = validate_basis_points(value, name)
            if not valid:
                raise FormatError(err)

        if (shield_fee_bp, unshield_fee_bp) == (self.schedule.shield_fee_bp, self.schedule.unshield_fee_bp):
            return False

        self._record(partial(setattr, self, "schedule", self.schedule))
        self.schedule = FeeSchedule(shield_fee_bp=shield_fee_bp, unshield_fee_bp=unshield_fee_bp)
        logger.info(f"Fees changed: shield={shield_fee_bp}bp unshield={unshield_fee_bp}bp")
        return True

    def record(self, token_id: int, base: int, fee: int) -> FeeRecord:
        """Account for a fee that has been paid to the treasury."""
        if token_id in self.collected:
            self._record(partial(self.collected.__setitem__, token_id, self.collected[token_id]))
        else:
            self._record(partial(self.collected.pop, token_id, None))
        self.collected[token_id] = self.collected.get(token_id, 0) + fee
        return FeeRecord(token_id=token_id, base=base, fee=fee)

    def total_collected(self, token_id: Optional[int] = None) -> int:
        if token_id is None:
            return sum(self.collected.values())
        return self.collected.get(token_id, 0)

    def stats(self) -> dict:
        """Get fee statistics."""
        return {
            "shield_fee_bp": self.schedule.shield_fee_bp,
            "unshield_fee_bp": self.schedule.unshield_fee_bp,
            "tokens_charged": len(self.collected),
            "total_collected": self.total_collected(),
        }
