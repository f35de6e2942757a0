"""
Error taxonomy for the shielded pool.

Every error raised while a shield, transact or relay batch is running aborts
the whole batch; the pool restores its pre-batch state before re-raising.
"""


class ShieldPoolError(Exception):
    """Base class for all pool errors."""


class FormatError(ShieldPoolError, ValueError):
    """Malformed token data, out-of-field value, or mismatched lengths."""


class StateError(ShieldPoolError):
    """Request conflicts with ledger state (spent nullifier, unknown root, missing key...)."""


class AuthorizationError(ShieldPoolError):
    """Caller is not allowed to perform the operation."""


class ProofError(ShieldPoolError):
    """Proof is malformed or fails the pairing check."""


class TransferError(ShieldPoolError):
    """Underlying token movement failed."""
