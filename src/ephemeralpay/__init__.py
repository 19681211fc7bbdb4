"""
ephemeralpay - pay-per-call API access through single-use Solana wallets

Each paid call runs in a fresh ephemeral wallet funded from a custodial
parent wallet just in time, and everything left over is swept back.

Usage:
    >>> from ephemeralpay import PaymentOrchestrator, PaymentRequirement
    >>>
    >>> orchestrator = PaymentOrchestrator.from_env()
    >>> outcome = await orchestrator.execute(requirement, "tool-call-1", custodian)
    >>> if outcome.fulfilled:
    ...     print(outcome.resource)
"""

from ephemeralpay.core.config import Config
from ephemeralpay.core.exceptions import (
    ConfigurationError,
    CustodianError,
    EphemeralPayError,
    InsufficientBalanceError,
    LedgerError,
    LedgerRejectedError,
    ProtocolError,
    SessionInvalidError,
    ValidationError,
    WalletError,
    X402Error,
)
from ephemeralpay.core.logging import configure_logging, get_logger
from ephemeralpay.core.types import (
    SOL,
    Asset,
    FundingPlan,
    Network,
    OutcomeKind,
    PaymentOutcome,
    PaymentRequirement,
    WalletState,
    usdc_for,
)
from ephemeralpay.custodian import CustodianAdapter, CustodianHandle, HttpCustodianSession
from ephemeralpay.ledger import LedgerClient, SolanaRpcLedger
from ephemeralpay.payment.orchestrator import PaymentOrchestrator
from ephemeralpay.payment.policy import AutoApprovalPolicy
from ephemeralpay.wallet import EphemeralWallet, EphemeralWalletManager

__version__ = "0.1.0"
__all__ = [
    # Main entry point
    "PaymentOrchestrator",
    "AutoApprovalPolicy",
    # Types
    "Asset",
    "SOL",
    "usdc_for",
    "Network",
    "WalletState",
    "OutcomeKind",
    "PaymentRequirement",
    "FundingPlan",
    "PaymentOutcome",
    # Boundaries
    "CustodianHandle",
    "CustodianAdapter",
    "HttpCustodianSession",
    "LedgerClient",
    "SolanaRpcLedger",
    "EphemeralWallet",
    "EphemeralWalletManager",
    # Config / logging
    "Config",
    "configure_logging",
    "get_logger",
    # Exceptions
    "EphemeralPayError",
    "ConfigurationError",
    "ValidationError",
    "WalletError",
    "CustodianError",
    "SessionInvalidError",
    "InsufficientBalanceError",
    "LedgerRejectedError",
    "LedgerError",
    "ProtocolError",
    "X402Error",
]
