"""
Ledger client boundary.

The payment core talks to the chain only through this interface. It is
stateless with respect to payment runs and may be shared across them.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Protocol

from ephemeralpay.core.types import Asset, ConfirmationStatus


class Signer(Protocol):
    """Anything that can sign a transaction message as ``address``."""

    @property
    def address(self) -> str: ...

    def sign(self, message: bytes) -> bytes: ...


@dataclass(frozen=True)
class AssetTransfer:
    """One transfer instruction, addressed by owner wallet (not token account)."""

    asset: Asset
    amount: int
    source: str
    destination: str


@dataclass
class LedgerTransaction:
    """
    A signed transaction ready for broadcast.

    ``raw`` is the wire encoding sent to the network; the structured
    fields describe the same instructions for logging and test doubles.
    """

    fee_payer: str
    recent_blockhash: str
    signature: str
    raw: bytes
    transfers: list[AssetTransfer] = field(default_factory=list)
    close_token_accounts: list[Asset] = field(default_factory=list)
    close_destination: str | None = None


class LedgerClient(ABC):
    """
    Narrow contract over the blockchain network.

    Amounts are integers in base units. Token balances are addressed by
    owner wallet; implementations derive the associated token account.
    """

    @abstractmethod
    async def broadcast(self, transaction: LedgerTransaction) -> str:
        """
        Submit a signed transaction.

        Returns:
            Submission id (the transaction signature)
        """
        ...

    @abstractmethod
    async def get_confirmation(self, submission_id: str) -> ConfirmationStatus:
        """Return confirmed, pending or failed for a submission."""
        ...

    @abstractmethod
    async def get_balance(self, address: str, asset: Asset) -> int:
        """
        Return the balance of ``asset`` held by ``address``.

        A token account that does not exist has balance 0.
        """
        ...

    @abstractmethod
    async def token_account_exists(self, owner: str, asset: Asset) -> bool:
        """Check whether ``owner``'s associated token account for ``asset`` exists."""
        ...

    @abstractmethod
    def associated_token_address(self, owner: str, asset: Asset) -> str:
        """Derive the associated token account of ``owner`` for ``asset``."""
        ...

    @abstractmethod
    async def latest_blockhash(self) -> str:
        """Return a recent blockhash for transaction construction."""
        ...

    async def close(self) -> None:
        """Release transport resources."""
        return None
