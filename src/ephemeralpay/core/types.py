"""
Type definitions for ephemeralpay.

This module contains the enums, data classes, and type definitions
shared by the ledger, wallet, protocol and orchestration layers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_UP, Decimal
from enum import Enum
from typing import Any, TypeAlias

# Type alias for flexible human-readable amount input
AmountType: TypeAlias = Decimal | int | float | str

LAMPORTS_PER_SOL = 1_000_000_000

# Rent-exempt minimum for an SPL token account (165 bytes)
TOKEN_ACCOUNT_RENT_LAMPORTS = 2_039_280


class Network(str, Enum):
    """Supported Solana clusters."""

    SOL = "SOL"
    SOL_DEVNET = "SOL-DEVNET"

    @classmethod
    def from_string(cls, value: str) -> Network:
        value_upper = value.upper().replace("_", "-")
        aliases = {"SOLANA": "SOL", "SOLANA-MAINNET": "SOL", "SOLANA-DEVNET": "SOL-DEVNET"}
        value_upper = aliases.get(value_upper, value_upper)
        for member in cls:
            if member.value == value_upper:
                return member
        raise ValueError(f"Unknown network: {value}. Supported: {[n.value for n in cls]}")

    def is_testnet(self) -> bool:
        return self == Network.SOL_DEVNET

    @property
    def x402_name(self) -> str:
        """Network identifier used in x402 payment requirements."""
        return "solana-devnet" if self.is_testnet() else "solana"

    @property
    def default_rpc_url(self) -> str:
        if self.is_testnet():
            return "https://api.devnet.solana.com"
        return "https://api.mainnet-beta.solana.com"


# USDC SPL mints (Circle)
USDC_MINTS: dict[Network, str] = {
    Network.SOL: "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
    Network.SOL_DEVNET: "4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU",
}


@dataclass(frozen=True)
class Asset:
    """
    A fungible asset on the configured chain.

    ``mint`` is None for the native fee asset (SOL) and the SPL mint
    address for tokens.
    """

    symbol: str
    decimals: int
    mint: str | None = None

    @property
    def is_native(self) -> bool:
        return self.mint is None

    def to_base_units(self, amount: AmountType) -> int:
        """Convert a human-readable amount to integer base units (rounded up)."""
        scaled = Decimal(str(amount)) * (Decimal(10) ** self.decimals)
        return int(scaled.to_integral_value(rounding=ROUND_UP))

    def from_base_units(self, amount: int) -> Decimal:
        return Decimal(amount) / (Decimal(10) ** self.decimals)

    def matches(self, identifier: str) -> bool:
        """Check an x402 ``asset`` field (mint address or symbol) against this asset."""
        if not identifier:
            return False
        if self.mint is not None and identifier == self.mint:
            return True
        return identifier.upper() == self.symbol.upper()


SOL = Asset(symbol="SOL", decimals=9)


def usdc_for(network: Network) -> Asset:
    """Return the USDC asset for a network."""
    return Asset(symbol="USDC", decimals=6, mint=USDC_MINTS[network])


class WalletState(str, Enum):
    """Ephemeral wallet lifecycle state."""

    CREATED = "created"
    FUNDED = "funded"
    PAYMENT_ATTEMPTED = "payment_attempted"
    RECLAIMED = "reclaimed"
    ABANDONED = "abandoned"

    def is_terminal(self) -> bool:
        return self in (WalletState.RECLAIMED, WalletState.ABANDONED)


class ConfirmationStatus(str, Enum):
    """Ledger confirmation status for a submitted transaction."""

    CONFIRMED = "confirmed"
    PENDING = "pending"
    FAILED = "failed"


class OutcomeKind(str, Enum):
    """Terminal outcome of one orchestration run."""

    FULFILLED = "fulfilled"
    FUNDING_FAILED = "funding_failed"
    PROTOCOL_REJECTED = "protocol_rejected"
    RECLAIM_INCOMPLETE = "reclaim_incomplete"
    POLICY_REJECTED = "policy_rejected"  # routed to human approval, not a failure
    DUPLICATE_INVOCATION = "duplicate_invocation"


@dataclass(frozen=True)
class PaymentRequirement:
    """
    A payment quote for one resource.

    Produced by the resource API (or the agent tool that hit it) and
    consumed by at most one orchestration run. ``amount`` is in the
    asset's base units.
    """

    asset: Asset
    amount: int
    pay_to: str
    resource_ref: str
    api_url: str
    fee_asset: Asset = SOL
    network: Network = Network.SOL_DEVNET
    scheme: str = "exact"
    method: str = "GET"
    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None
    tool_name: str | None = None

    def __post_init__(self) -> None:
        if self.amount <= 0:
            raise ValueError("Amount must be positive")
        if not self.api_url:
            raise ValueError("api_url is required")
        if self.asset.is_native:
            raise ValueError("Payment asset must be a token, not the native fee asset")

    @property
    def human_amount(self) -> Decimal:
        return self.asset.from_base_units(self.amount)

    @classmethod
    def from_tool_output(
        cls,
        data: dict[str, Any],
        network: Network = Network.SOL_DEVNET,
        resource_ref: str | None = None,
    ) -> PaymentRequirement:
        """
        Build a requirement from an agent tool result flagged ``needsPayment``.

        The tool output carries ``apiUrl``, ``method``, ``headers``, ``body``,
        ``toolName`` and ``estimatedCost: {amount, currency}``. The pay-to
        address is only known once the API quotes it, so it may be empty.
        """
        if not data.get("needsPayment"):
            raise ValueError("Tool output does not require payment")

        cost = data.get("estimatedCost") or {}
        currency = str(cost.get("currency", "USDC")).upper()
        asset = usdc_for(network)
        if currency != asset.symbol:
            raise ValueError(f"Unsupported payment currency: {currency}")

        return cls(
            asset=asset,
            amount=asset.to_base_units(cost.get("amount", "0")),
            pay_to=data.get("payTo", ""),
            resource_ref=resource_ref or data.get("toolName") or data["apiUrl"],
            api_url=data["apiUrl"],
            network=network,
            method=str(data.get("method", "GET")).upper(),
            headers=dict(data.get("headers") or {}),
            body=data.get("body"),
            tool_name=data.get("toolName"),
        )


@dataclass(frozen=True)
class FundingPlan:
    """
    The two transfers that fund an ephemeral wallet.

    The fee transfer covers network fees and token-account rent; the
    principal transfer covers the payment plus a safety margin.
    """

    fee_asset: Asset
    fee_amount: int
    principal_asset: Asset
    principal_amount: int

    @classmethod
    def for_requirement(
        cls,
        requirement: PaymentRequirement,
        fee_amount: int,
        margin_bps: int = 0,
    ) -> FundingPlan:
        margin = (requirement.amount * margin_bps + 9_999) // 10_000
        if margin_bps > 0:
            margin = max(margin, 1)
        return cls(
            fee_asset=requirement.fee_asset,
            fee_amount=fee_amount,
            principal_asset=requirement.asset,
            principal_amount=requirement.amount + margin,
        )


@dataclass
class PaymentOutcome:
    """
    The single terminal record of an orchestration run.

    ``resource`` is set for FULFILLED, and kept on RECLAIM_INCOMPLETE when
    the payment itself succeeded. ``residual`` maps asset symbol to the
    base units left in the ephemeral wallet. ``cause`` records the primary
    outcome that RECLAIM_INCOMPLETE overrides.
    """

    kind: OutcomeKind
    invocation_id: str
    resource: Any = None
    reason: str | None = None
    amount: int | None = None
    asset: str | None = None
    residual: dict[str, int] = field(default_factory=dict)
    cause: OutcomeKind | None = None
    ephemeral_address: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def fulfilled(self) -> bool:
        return self.kind == OutcomeKind.FULFILLED

    @property
    def retryable(self) -> bool:
        """Whether a new run (new invocation id) could reasonably succeed."""
        if self.kind == OutcomeKind.FUNDING_FAILED:
            return self.reason not in ("session_invalid", "insufficient_balance")
        return self.kind == OutcomeKind.PROTOCOL_REJECTED and bool(self.details.get("transport"))

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "invocation_id": self.invocation_id,
            "resource": self.resource,
            "reason": self.reason,
            "amount": self.amount,
            "asset": self.asset,
            "residual": dict(self.residual),
            "cause": self.cause.value if self.cause else None,
            "ephemeral_address": self.ephemeral_address,
            "details": self.details,
        }
