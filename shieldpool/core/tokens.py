"""
Token vault - the pool's view of the underlying token contracts.

The pool never holds balances itself; it asks the vault to move tokens
between accounts (depositor, pool, treasury, recipients). The vault also
reports how much actually moved, so fee-on-transfer style tokens can be
detected by comparing requested and received amounts.

Every batch runs between ``checkpoint()`` and either ``release()`` or
``rollback()``. A vault must be able to undo the transfers made since a
checkpoint; how it does so is its own business.

``InMemoryTokenVault`` keeps ERC20 balances and ERC721 owners in dicts and is
used by the CLI demo and the tests.
"""

from functools import partial
from typing import Any, Dict, Hashable, Tuple

from shieldpool.core.errors import TransferError
from shieldpool.core.state.note import TokenData, TokenType
from shieldpool.utils.journal import UndoJournal
from shieldpool.utils.logger import get_logger

logger = get_logger("tokens")

_MISSING = object()


class TokenVault:
    """Interface for moving underlying tokens."""

    def transfer(self, token: TokenData, sender: bytes, recipient: bytes, value: int) -> int:
        """
        Move ``value`` of ``token``.

        Returns:
            Amount the recipient actually received

        Raises:
            TransferError: If the transfer is impossible
        """
        raise NotImplementedError

    def balance_of(self, token: TokenData, owner: bytes) -> int:
        raise NotImplementedError

    def checkpoint(self) -> Any:
        """
        Open a savepoint before a batch. Savepoints nest.

        Returns:
            Handle passed back to ``rollback`` or ``release``
        """
        raise NotImplementedError

    def rollback(self, savepoint: Any) -> None:
        """Undo every transfer made since ``savepoint`` and close it."""
        raise NotImplementedError

    def release(self, savepoint: Any) -> None:
        """Close ``savepoint`` keeping its transfers."""
        raise NotImplementedError


class InMemoryTokenVault(UndoJournal, TokenVault):
    """
    Dict-backed ERC20/ERC721 ledger.

    Attributes:
        balances: (token_address, owner) -> ERC20 balance
        owners: (token_address, sub_id) -> ERC721 owner
    """

    def __init__(self):
        super().__init__()
        self.balances: Dict[Tuple[bytes, bytes], int] = {}
        self.owners: Dict[Tuple[bytes, int], bytes] = {}
        # token_address -> basis points burned on every transfer
        self.transfer_tax_bp: Dict[bytes, int] = {}

    def _set(self, table: Dict, key: Hashable, value: Any) -> None:
        previous = table.get(key, _MISSING)
        table[key] = value
        self._record(partial(_restore_entry, table, key, previous))

    def mint(self, token: TokenData, owner: bytes, value: int = 1) -> None:
        """Create tokens out of thin air (test and demo setup)."""
        if token.token_type == TokenType.ERC20:
            key = (token.token_address, owner)
            self._set(self.balances, key, self.balances.get(key, 0) + value)
        elif token.token_type == TokenType.ERC721:
            nft = (token.token_address, token.token_sub_id)
            if nft in self.owners:
                raise TransferError("NFT already minted")
            self._set(self.owners, nft, owner)
        else:
            raise TransferError(f"Unsupported token type {token.token_type.name}")

    def balance_of(self, token: TokenData, owner: bytes) -> int:
        if token.token_type == TokenType.ERC20:
            return self.balances.get((token.token_address, owner), 0)
        if token.token_type == TokenType.ERC721:
            return int(self.owners.get((token.token_address, token.token_sub_id)) == owner)
        return 0

    def transfer(self, token: TokenData, sender: bytes, recipient: bytes, value: int) -> int:
        if token.token_type == TokenType.ERC20:
            return self._transfer_erc20(token, sender, recipient, value)
        if token.token_type == TokenType.ERC721:
            return self._transfer_erc721(token, sender, recipient, value)
        raise TransferError(f"Unsupported token type {token.token_type.name}")

    def _transfer_erc20(self, token: TokenData, sender: bytes, recipient: bytes, value: int) -> int:
        if value < 0:
            raise TransferError("Negative transfer amount")
        if value == 0:
            return 0

        sender_key = (token.token_address, sender)
        balance = self.balances.get(sender_key, 0)
        if balance < value:
            raise TransferError(f"Insufficient balance: have {balance}, need {value}")

        received = value - value * self.transfer_tax_bp.get(token.token_address, 0) // 10000

        self._set(self.balances, sender_key, balance - value)
        recipient_key = (token.token_address, recipient)
        self._set(self.balances, recipient_key, self.balances.get(recipient_key, 0) + received)
        return received

    def _transfer_erc721(self, token: TokenData, sender: bytes, recipient: bytes, value: int) -> int:
        if value != 1:
            raise TransferError("NFT transfers must have value 1")

        nft = (token.token_address, token.token_sub_id)
        if self.owners.get(nft) != sender:
            raise TransferError("Sender does not own NFT")

        self._set(self.owners, nft, recipient)
        return 1

    def __repr__(self) -> str:
        return f"InMemoryTokenVault(erc20_accounts={len(self.balances)}, nfts={len(self.owners)})"


def _restore_entry(table: Dict, key: Hashable, previous: Any) -> None:
    if previous is _MISSING:
        table.pop(key, None)
    else:
        table[key] = previous
