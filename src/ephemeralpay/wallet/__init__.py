"""Ephemeral wallet lifecycle."""

from ephemeralpay.wallet.ephemeral import EphemeralWallet
from ephemeralpay.wallet.manager import (
    EphemeralWalletManager,
    FundingResult,
    SweepResult,
    TransferStatus,
)

__all__ = [
    "EphemeralWallet",
    "EphemeralWalletManager",
    "FundingResult",
    "SweepResult",
    "TransferStatus",
]
