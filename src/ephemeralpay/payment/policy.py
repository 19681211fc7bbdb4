"""Auto-approval policy for micropayments."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation

from ephemeralpay.core.config import Config
from ephemeralpay.core.types import AmountType, Asset, PaymentRequirement


class AutoApprovalPolicy:
    """
    Decides whether a payment may proceed without a human in the loop.

    ``ceiling`` is in human-readable units of the payment asset (e.g.
    Decimal("0.005") USDC == 5000 base units).
    """

    def __init__(self, ceiling: Decimal, assets: tuple[str, ...] = ("USDC",)) -> None:
        if ceiling < 0:
            raise ValueError("ceiling must be non-negative")
        self.ceiling = ceiling
        self.assets = tuple(a.upper() for a in assets)

    @classmethod
    def from_config(cls, config: Config) -> AutoApprovalPolicy:
        return cls(config.auto_approve_ceiling, config.auto_approve_assets)

    def is_auto_approvable(self, amount: AmountType, asset: str | Asset) -> bool:
        symbol = asset.symbol if isinstance(asset, Asset) else str(asset)
        if symbol.upper() not in self.assets:
            return False
        try:
            value = Decimal(str(amount))
        except InvalidOperation:
            return False
        if not value.is_finite():
            return False
        return Decimal(0) < value <= self.ceiling

    def approves(self, requirement: PaymentRequirement) -> bool:
        return self.is_auto_approvable(requirement.human_amount, requirement.asset)
