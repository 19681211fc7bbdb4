"""Wallet Custodian Adapter."""

from __future__ import annotations

import asyncio

from ephemeralpay.core.exceptions import (
    CustodianError,
    CustodianTimeoutError,
    LedgerRejectedError,
    ValidationError,
)
from ephemeralpay.core.logging import get_logger
from ephemeralpay.core.types import Asset
from ephemeralpay.custodian.handle import CustodianHandle


class CustodianAdapter:
    """
    Wraps a CustodianHandle behind a single ``transfer`` operation.

    Every failure surfaces as a CustodianError subclass: SessionInvalid,
    InsufficientBalance, LedgerRejected or Timeout.
    """

    def __init__(self, handle: CustodianHandle, timeout: float = 30.0) -> None:
        self._handle = handle
        self._timeout = timeout
        self._logger = get_logger("custodian")

    @property
    def address(self) -> str:
        return self._handle.address

    async def transfer(self, asset: Asset, amount: int, destination: str) -> str:
        """
        Transfer ``amount`` base units of ``asset`` to ``destination``.

        Returns:
            The custodian's transfer id (transaction signature)
        """
        if amount <= 0:
            raise ValidationError("Transfer amount must be positive", details={"amount": amount})
        if not destination:
            raise ValidationError("Destination address is required")

        self._logger.info(f"Custodian transfer {amount} {asset.symbol} -> {destination}")
        try:
            return await asyncio.wait_for(
                self._handle.send(asset, amount, destination), timeout=self._timeout
            )
        except CustodianError:
            raise
        except asyncio.TimeoutError as e:
            raise CustodianTimeoutError(
                f"Custodian did not answer within {self._timeout}s",
                asset=asset.symbol,
                amount=amount,
            ) from e
        except Exception as e:
            raise LedgerRejectedError(
                f"Custodian transfer failed: {e}",
                asset=asset.symbol,
                amount=amount,
                details={"error": str(e), "error_type": type(e).__name__},
            ) from e
