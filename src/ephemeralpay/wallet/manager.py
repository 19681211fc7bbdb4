"""
EphemeralWalletManager - create, fund and sweep single-use wallets.

Funding is signed by the custodian; the sweep is signed by the ephemeral
key itself. Errors from the custodian and ledger boundaries are caught
here and returned as FundingResult / SweepResult values.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field

import httpx

from ephemeralpay.core.config import Config
from ephemeralpay.core.exceptions import (
    ConfirmationTimeoutError,
    CustodianError,
    CustodianTimeoutError,
    EphemeralPayError,
    TransactionFailedError,
)
from ephemeralpay.core.logging import get_logger
from ephemeralpay.core.types import Asset, ConfirmationStatus, FundingPlan, WalletState
from ephemeralpay.custodian.adapter import CustodianAdapter
from ephemeralpay.ledger.client import AssetTransfer, LedgerClient
from ephemeralpay.ledger.transactions import build_signed_transaction
from ephemeralpay.wallet.ephemeral import EphemeralWallet

# Errors a ledger round-trip can raise; anything else is a bug and propagates
LEDGER_ERRORS = (EphemeralPayError, httpx.HTTPError)


@dataclass
class TransferStatus:
    """One leg of a funding plan."""

    asset: str
    amount: int
    signature: str | None = None
    confirmed: bool = False
    error: str | None = None
    reason: str | None = None
    # Custodian timed out: the transfer may still land
    maybe_submitted: bool = False

    @property
    def submitted(self) -> bool:
        return self.signature is not None


@dataclass
class FundingResult:
    """Result of executing a FundingPlan."""

    fee: TransferStatus
    principal: TransferStatus

    @property
    def success(self) -> bool:
        return self.fee.confirmed and self.principal.confirmed

    @property
    def any_submitted(self) -> bool:
        """True if value may have left the custodian (confirmed or not)."""
        return any(leg.submitted or leg.maybe_submitted for leg in (self.fee, self.principal))

    @property
    def reason(self) -> str | None:
        for leg in (self.fee, self.principal):
            if not leg.confirmed:
                return leg.reason or "unconfirmed"
        return None

    def to_dict(self) -> dict:
        return {
            "fee": vars(self.fee).copy(),
            "principal": vars(self.principal).copy(),
        }


@dataclass
class SweepResult:
    """
    Result of reclaiming an ephemeral wallet.

    ``residual`` is read back from the ledger after the sweep and maps
    asset symbol to base units still held. ``verified`` is False when the
    read-back itself failed and ``residual`` is the last known balance.
    """

    destination: str
    swept: dict[str, int] = field(default_factory=dict)
    residual: dict[str, int] = field(default_factory=dict)
    closed_accounts: list[str] = field(default_factory=list)
    signature: str | None = None
    verified: bool = True
    skipped_reason: str | None = None
    error: str | None = None

    @property
    def complete(self) -> bool:
        return self.verified and not self.residual

    def to_dict(self) -> dict:
        return {
            "destination": self.destination,
            "swept": dict(self.swept),
            "residual": dict(self.residual),
            "closed_accounts": list(self.closed_accounts),
            "signature": self.signature,
            "verified": self.verified,
            "skipped_reason": self.skipped_reason,
            "error": self.error,
        }


class EphemeralWalletManager:
    """
    Drives the lifecycle of ephemeral wallets.

    Holds no per-run state; one manager serves all concurrent runs.
    """

    def __init__(self, config: Config, ledger: LedgerClient) -> None:
        self._config = config
        self._ledger = ledger
        self._logger = get_logger("wallet")

    # ==================== Create ====================

    def create(self) -> EphemeralWallet:
        """Generate a fresh keypair. No I/O."""
        wallet = EphemeralWallet.generate()
        self._logger.info(f"Created ephemeral wallet {wallet.address}")
        return wallet

    # ==================== Fund ====================

    async def fund(
        self,
        wallet: EphemeralWallet,
        plan: FundingPlan,
        source: CustodianAdapter,
    ) -> FundingResult:
        """
        Move the fee and principal from the custodian into ``wallet``.

        Both transfers are issued (fee first) and then polled until
        confirmed, failed, or the confirmation budget runs out. The
        principal is only issued once the custodian accepted the fee transfer.
        """
        fee = TransferStatus(asset=plan.fee_asset.symbol, amount=plan.fee_amount)
        principal = TransferStatus(asset=plan.principal_asset.symbol, amount=plan.principal_amount)

        await self._submit(source, plan.fee_asset, wallet.address, fee)
        if fee.submitted:
            await self._submit(source, plan.principal_asset, wallet.address, principal)
        else:
            principal.reason = "not_attempted"

        await asyncio.gather(
            self._confirm_leg(fee),
            self._confirm_leg(principal),
        )

        result = FundingResult(fee=fee, principal=principal)
        if result.success:
            wallet.transition(WalletState.FUNDED)
            self._logger.info(
                f"Funded {wallet.address}: {fee.amount} {fee.asset} + "
                f"{principal.amount} {principal.asset}"
            )
        else:
            self._logger.warning(
                f"Funding of {wallet.address} incomplete: fee={fee.confirmed} "
                f"principal={principal.confirmed} reason={result.reason}"
            )
        return result

    async def _submit(
        self,
        source: CustodianAdapter,
        asset: Asset,
        destination: str,
        leg: TransferStatus,
    ) -> None:
        try:
            leg.signature = await source.transfer(asset, leg.amount, destination)
        except CustodianTimeoutError as e:
            leg.error = str(e)
            leg.reason = e.reason
            leg.maybe_submitted = True
            self._logger.warning(
                f"Custodian timed out sending {leg.amount} {leg.asset} to {destination}; "
                f"treating the transfer as possibly delivered"
            )
        except CustodianError as e:
            leg.error = str(e)
            leg.reason = e.reason
        except EphemeralPayError as e:
            leg.error = str(e)
            leg.reason = "invalid_transfer"

    async def _confirm_leg(self, leg: TransferStatus) -> None:
        if not leg.submitted:
            return
        try:
            leg.confirmed = await self.wait_for_confirmation(leg.signature)
        except ConfirmationTimeoutError as e:
            leg.error = str(e)
            leg.reason = "timeout"
        except TransactionFailedError as e:
            leg.error = str(e)
            leg.reason = "ledger_rejected"

    async def wait_for_confirmation(self, signature: str) -> bool:
        """
        Poll the ledger until ``signature`` is confirmed.

        Backoff doubles from ``confirmation_poll_interval`` up to
        ``confirmation_poll_max_interval``. Query errors count as pending.

        Raises:
            TransactionFailedError: The ledger reports the transaction failed
            ConfirmationTimeoutError: Timeout or poll budget exhausted
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.confirmation_timeout
        delay = self._config.confirmation_poll_interval
        status = ConfirmationStatus.PENDING

        for _ in range(self._config.confirmation_max_polls):
            try:
                status = await self._ledger.get_confirmation(signature)
            except LEDGER_ERRORS as e:
                self._logger.debug(f"Confirmation query for {signature} failed: {e}")
                status = ConfirmationStatus.PENDING

            if status == ConfirmationStatus.CONFIRMED:
                return True
            if status == ConfirmationStatus.FAILED:
                raise TransactionFailedError(
                    f"Transaction {signature} failed on-chain", signature=signature
                )

            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(min(delay, remaining))
            delay = min(delay * 2, self._config.confirmation_poll_max_interval)

        raise ConfirmationTimeoutError(
            f"Transaction {signature} not confirmed",
            signature=signature,
            last_status=status.value,
            timeout_seconds=self._config.confirmation_timeout,
        )

    # ==================== Sweep ====================

    async def sweep(
        self,
        wallet: EphemeralWallet,
        destination: str,
        assets: Sequence[Asset],
    ) -> SweepResult:
        """
        Return everything in ``wallet`` to ``destination``.

        Transfers the full balance of each token above the token dust
        threshold, closes emptied token accounts (rent goes to
        ``destination``), and sends the native balance minus the sweep fee
        reserve. Balances are re-read afterwards, so ``residual`` is what
        the ledger actually still holds. Sets the wallet to RECLAIMED or
        ABANDONED.
        """
        native = next((a for a in assets if a.is_native), self._config.fee_asset)
        tokens = [a for a in assets if not a.is_native]
        result = SweepResult(destination=destination)
        last_known: dict[str, int] = {}

        for attempt in range(1, self._config.sweep_max_attempts + 1):
            try:
                balances = await self._read_balances(wallet.address, [native, *tokens])
            except LEDGER_ERRORS as e:
                result.error = f"Balance read failed: {e}"
                result.verified = False
                break

            last_known = balances
            if not self._has_value(balances):
                break

            try:
                done = await self._sweep_once(wallet, destination, native, tokens, balances, result)
            except LEDGER_ERRORS as e:
                # Broadcast outcome is ambiguous; the re-read below decides
                result.error = str(e)
                self._logger.warning(
                    f"Sweep attempt {attempt} for {wallet.address} failed: {e}"
                )
                done = False

            if done:
                break

        try:
            residual = await self._read_balances(wallet.address, [native, *tokens])
            result.residual = {k: v for k, v in residual.items() if v > 0}
            result.verified = True
        except LEDGER_ERRORS as e:
            self._logger.error(f"Could not verify residual for {wallet.address}: {e}")
            result.verified = False
            result.residual = {k: v for k, v in last_known.items() if v > 0}

        if result.complete:
            wallet.transition(WalletState.RECLAIMED)
            self._logger.info(f"Reclaimed {wallet.address} -> {destination}: {result.swept}")
        else:
            wallet.transition(WalletState.ABANDONED)
        return result

    def _has_value(self, balances: dict[str, int]) -> bool:
        return any(v > 0 for v in balances.values())

    async def _read_balances(self, address: str, assets: Sequence[Asset]) -> dict[str, int]:
        amounts = await asyncio.gather(*(self._ledger.get_balance(address, a) for a in assets))
        return {asset.symbol: amount for asset, amount in zip(assets, amounts)}

    async def _sweep_once(
        self,
        wallet: EphemeralWallet,
        destination: str,
        native: Asset,
        tokens: list[Asset],
        balances: dict[str, int],
        result: SweepResult,
    ) -> bool:
        """
        Build, sign and broadcast one sweep transaction.

        Returns True when no further attempt is useful: the sweep confirmed,
        there was nothing to sweep, or the fee cannot be paid.
        """
        reserve = self._config.sweep_fee_reserve_lamports
        native_balance = balances[native.symbol]

        if native_balance < reserve:
            result.skipped_reason = (
                f"native balance {native_balance} below sweep fee reserve {reserve}"
            )
            self._logger.warning(f"Skipping sweep of {wallet.address}: {result.skipped_reason}")
            return True

        transfers: list[AssetTransfer] = []
        closes: list[Asset] = []
        for token in tokens:
            amount = balances[token.symbol]
            if amount > self._config.dust_threshold_token:
                transfers.append(AssetTransfer(token, amount, wallet.address, destination))
                closes.append(token)
            elif amount == 0 and await self._ledger.token_account_exists(wallet.address, token):
                closes.append(token)

        sweepable_native = native_balance - reserve
        if sweepable_native > self._config.dust_threshold_lamports:
            transfers.append(AssetTransfer(native, sweepable_native, wallet.address, destination))

        if not transfers and not closes:
            result.skipped_reason = "only dust remains"
            return True

        blockhash = await self._ledger.latest_blockhash()
        transaction = build_signed_transaction(
            wallet,
            blockhash,
            transfers=transfers,
            close_token_accounts=closes,
            close_destination=destination,
        )
        result.signature = await self._ledger.broadcast(transaction)
        await self.wait_for_confirmation(result.signature)

        result.swept = {t.asset.symbol: t.amount for t in transfers}
        result.closed_accounts = [
            self._ledger.associated_token_address(wallet.address, token) for token in closes
        ]
        result.error = None
        return True
