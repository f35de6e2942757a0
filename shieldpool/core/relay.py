"""
Relay adapt - run a transact batch, then follow-up calls, atomically.

Conceptual Background:
---------------------
A user who wants to unshield into some action (pay a merchant, reshield,
swap) cannot do it in two steps without exposing the intermediate public
balance. The relay does both in one:

1. The batch's transactions unshield to the relay's own address and lock
   ``adapt_contract`` to the relay, so only the relay can submit them.
2. ``adapt_params`` commits to the action data (random salt, failure mode,
   gas floor and follow-up calls):

       adapt_params = keccak(nullifiers..., tx_count, action data) mod p

   Since bound params are covered by the proof, a submitter cannot swap the
   calls or loosen their failure mode after the proof was made.
3. The relay calls ``pool.transact`` as itself, then executes each call.
   Calls may only target the relay's own methods, and those methods refuse
   to run unless a relay is in progress.

With ``require_success`` set, any failure rolls back the pool batch and every
call together. Without it, a failing call is logged and rolled back on its
own; the batch and the other calls stand.
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from shieldpool.core.errors import AuthorizationError, FormatError, ShieldPoolError, StateError
from shieldpool.core.state.ledger import ShieldedPool
from shieldpool.core.state.note import TokenData
from shieldpool.core.state.transaction import ShieldRequest, Transaction
from shieldpool.crypto import keccak_to_field, random_bytes
from shieldpool.utils.logger import get_logger
from shieldpool.utils.validation import validate_integer

logger = get_logger("relay")

DEFAULT_RELAY_ADDRESS = bytes([0x5A]) * 20

RELAY_METHODS = ("transfer", "shield")

RELAY_RANDOM_SIZE = 31


# =============================================================================
# Calls
# =============================================================================


@dataclass(frozen=True)
class TokenTransfer:
    """Send tokens held by the relay. ``value`` 0 sends the whole balance."""
    token: TokenData
    to: bytes
    value: int = 0

    def to_bytes(self) -> bytes:
        return self.token.to_bytes() + self.to + self.value.to_bytes(32, byteorder="big")


@dataclass(frozen=True)
class RelayCall:
    """
    One follow-up call on the relay itself.

    Attributes:
        method: "transfer" or "shield"
        transfers: Arguments for "transfer"
        shield_requests: Arguments for "shield"
    """
    method: str
    transfers: Tuple[TokenTransfer, ...] = ()
    shield_requests: Tuple[ShieldRequest, ...] = ()

    def to_bytes(self) -> bytes:
        name = self.method.encode()
        out = len(name).to_bytes(1, byteorder="big") + name
        out += len(self.transfers).to_bytes(2, byteorder="big")
        for transfer in self.transfers:
            out += transfer.to_bytes()
        out += len(self.shield_requests).to_bytes(2, byteorder="big")
        for request in self.shield_requests:
            bundle = request.ciphertext.encrypted_bundle
            out += (
                request.preimage.to_bytes()
                + len(bundle).to_bytes(4, byteorder="big")
                + bundle
                + request.ciphertext.shield_key
            )
        return out


def transfer_call(*transfers: TokenTransfer) -> RelayCall:
    return RelayCall(method="transfer", transfers=tuple(transfers))


def shield_call(*requests: ShieldRequest) -> RelayCall:
    return RelayCall(method="shield", shield_requests=tuple(requests))


@dataclass(frozen=True)
class RelayActionData:
    """
    Everything the relay does after the batch, as bound by the proofs.

    Attributes:
        random: 31 bytes of salt so adapt params cannot be predicted from the calls
        require_success: Abort the whole relay when a call fails
        min_gas_limit: Smallest gas limit a submitter may run the relay with
        calls: Follow-up calls, executed in order
    """
    random: bytes
    require_success: bool = True
    min_gas_limit: int = 0
    calls: Tuple[RelayCall, ...] = ()

    def to_bytes(self) -> bytes:
        out = (
            self.random
            + bytes([int(self.require_success)])
            + self.min_gas_limit.to_bytes(32, byteorder="big")
            + len(self.calls).to_bytes(2, byteorder="big")
        )
        for call in self.calls:
            out += call.to_bytes()
        return out

    def validate(self) -> Tuple[bool, str]:
        if len(self.random) != RELAY_RANDOM_SIZE:
            return False, f"random must be {RELAY_RANDOM_SIZE} bytes, got {len(self.random)}"
        valid, err = validate_integer(self.min_gas_limit, "min_gas_limit", 0, 2**256 - 1)
        if not valid:
            return False, err
        for call in self.calls:
            if call.method not in RELAY_METHODS:
                return False, f"Unknown relay method {call.method!r}"
        return True, ""


def action_data(
    *calls: RelayCall,
    require_success: bool = True,
    min_gas_limit: int = 0,
    random: Optional[bytes] = None,
) -> RelayActionData:
    """Action data over ``calls`` with fresh random salt unless one is given."""
    return RelayActionData(
        random=random if random is not None else random_bytes(RELAY_RANDOM_SIZE),
        require_success=require_success,
        min_gas_limit=min_gas_limit,
        calls=tuple(calls),
    )


@dataclass(frozen=True)
class CallResult:
    """Outcome of one follow-up call."""
    index: int
    success: bool
    error: str = ""


def compute_adapt_params(nullifiers: Sequence[Sequence[int]], action: RelayActionData) -> int:
    """
    Bind a relay's action data to the transactions that fund it.

    Args:
        nullifiers: Nullifier list of every transaction in the batch
        action: Salt, failure mode, gas floor and follow-up calls

    Returns:
        Field element to place in every transaction's ``adapt_params``
    """
    data = b""
    for tx_nullifiers in nullifiers:
        data += len(tx_nullifiers).to_bytes(2, byteorder="big")
        for nullifier in tx_nullifiers:
            data += nullifier.to_bytes(32, byteorder="big")
    data += len(nullifiers).to_bytes(2, byteorder="big")
    data += action.to_bytes()
    return keccak_to_field(data)


# =============================================================================
# Relay
# =============================================================================


class RelayAdapt:
    """
    Multicall wrapper around a pool.

    Attributes:
        pool: The shielded pool
        address: The relay's own account (adapt lock and unshield target)
    """

    def __init__(self, pool: ShieldedPool, address: bytes = DEFAULT_RELAY_ADDRESS):
        self.pool = pool
        self.address = address
        self._in_progress = False

    @property
    def in_progress(self) -> bool:
        return self._in_progress

    def _require_in_progress(self) -> None:
        if not self._in_progress:
            raise AuthorizationError("Relay-only method called outside a relay")

    def relay(
        self,
        transactions: Sequence[Transaction],
        action: RelayActionData,
        caller: bytes,
        gas_price: int = 0,
        gas_limit: int = 0,
    ) -> List[CallResult]:
        """
        Submit a batch through the relay and run its follow-up calls.

        Args:
            transactions: Batch locked to this relay
            action: Action data bound by ``adapt_params``
            caller: Original submitter (logged only)
            gas_price: Gas price forwarded to the pool
            gas_limit: Gas the submitter runs the relay with

        Returns:
            One result per call

        Raises:
            AuthorizationError: Adapt lock or params do not match
            FormatError: Malformed action data or unknown call method
            StateError: ``gas_limit`` below the action's ``min_gas_limit``
            Any pool error from the batch, and from the calls when
            ``require_success`` is set
        """
        if self._in_progress:
            raise AuthorizationError("Relay is not reentrant")

        valid, err = action.validate()
        if not valid:
            raise FormatError(f"Invalid action data: {err}")
        if gas_limit < action.min_gas_limit:
            raise StateError(f"Not enough gas supplied: {gas_limit} < {action.min_gas_limit}")

        expected = compute_adapt_params([tx.nullifiers for tx in transactions], action)
        for i, tx in enumerate(transactions):
            if tx.bound_params.adapt_contract != self.address:
                raise AuthorizationError(f"Transaction {i} is not locked to this relay")
            if tx.bound_params.adapt_params != expected:
                raise AuthorizationError(f"Transaction {i} has invalid adapt params")

        with self.pool.atomic():
            self.pool.transact(transactions, caller=self.address, gas_price=gas_price)

            self._in_progress = True
            try:
                results = [self._run_call(i, call, action.require_success) for i, call in enumerate(action.calls)]
            finally:
                self._in_progress = False

        failed = sum(1 for r in results if not r.success)
        logger.info(
            f"Relayed {len(transactions)} txs and {len(results)} calls ({failed} failed) "
            f"for {caller.hex()[:10]}..."
        )
        return results

    def _run_call(self, index: int, call: RelayCall, require_success: bool) -> CallResult:
        if require_success:
            self._dispatch(call)
            return CallResult(index=index, success=True)

        # A failing call undoes only its own effects
        try:
            with self.pool.atomic():
                self._dispatch(call)
        except ShieldPoolError as e:
            logger.warning(f"Relay call {index} ({call.method}) failed: {e}")
            return CallResult(index=index, success=False, error=str(e))
        return CallResult(index=index, success=True)

    def _dispatch(self, call: RelayCall) -> None:
        if call.method == "transfer":
            self.transfer(call.transfers)
        else:
            self.shield(call.shield_requests)

    # =========================================================================
    # Relay-only methods
    # =========================================================================

    def transfer(self, transfers: Sequence[TokenTransfer]) -> None:
        """
        Send tokens held by the relay.

        Raises:
            AuthorizationError: Outside a relay
            TransferError: The token transfer failed
        """
        self._require_in_progress()
        for transfer in transfers:
            amount = transfer.value or self.pool.vault.balance_of(transfer.token, self.address)
            self.pool.vault.transfer(transfer.token, self.address, transfer.to, amount)

    def shield(self, requests: Sequence[ShieldRequest]) -> None:
        """
        Shield tokens held by the relay.

        Raises:
            AuthorizationError: Outside a relay
        """
        self._require_in_progress()
        self.pool.shield(requests, caller=self.address)
