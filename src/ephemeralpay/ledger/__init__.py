"""
Ledger module - the payment core's view of the chain.

Provides the LedgerClient boundary, a Solana JSON-RPC implementation and
the transaction builder used for sweeps and x402 payments.
"""

from ephemeralpay.ledger.client import AssetTransfer, LedgerClient, LedgerTransaction, Signer
from ephemeralpay.ledger.solana import SolanaRpcLedger
from ephemeralpay.ledger.transactions import associated_token_address, build_signed_transaction

__all__ = [
    "AssetTransfer",
    "LedgerClient",
    "LedgerTransaction",
    "Signer",
    "SolanaRpcLedger",
    "associated_token_address",
    "build_signed_transaction",
]
