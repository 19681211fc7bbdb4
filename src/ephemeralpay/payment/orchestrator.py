"""
PaymentOrchestrator - policy and sequencing for ephemeral-wallet payments.

One ``execute`` call runs: policy gate -> create -> fund -> pay ->
reclaim -> terminate, and returns exactly one PaymentOutcome.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import httpx

from ephemeralpay.core.config import Config
from ephemeralpay.core.exceptions import EphemeralPayError, X402Error
from ephemeralpay.core.logging import get_logger
from ephemeralpay.core.types import (
    AmountType,
    Asset,
    FundingPlan,
    OutcomeKind,
    PaymentOutcome,
    PaymentRequirement,
    WalletState,
)
from ephemeralpay.custodian.adapter import CustodianAdapter
from ephemeralpay.custodian.handle import CustodianHandle
from ephemeralpay.ledger.client import LedgerClient
from ephemeralpay.payment.inflight import InFlightRegistry
from ephemeralpay.payment.policy import AutoApprovalPolicy
from ephemeralpay.protocols.x402 import PaymentAttempt, X402Client
from ephemeralpay.storage import StorageBackend, get_storage
from ephemeralpay.wallet.ephemeral import EphemeralWallet
from ephemeralpay.wallet.manager import EphemeralWalletManager, FundingResult, SweepResult

RECONCILIATION_COLLECTION = "reconciliation"


@dataclass
class _Run:
    """Mutable state of one in-flight run."""

    invocation_id: str
    requirement: PaymentRequirement
    wallet: EphemeralWallet
    source: CustodianAdapter
    plan: FundingPlan
    funding_started: bool = False
    cancel_requested: bool = False


def _default_storage(config: Config) -> StorageBackend:
    if config.storage_backend == "redis":
        return get_storage("redis", redis_url=config.redis_url)
    return get_storage(config.storage_backend)


class PaymentOrchestrator:
    """
    Caller-facing entry point of the payment core.

    Shared across concurrent runs. The only shared mutable state is the
    in-flight invocation registry; each run owns its ephemeral wallet.

    Example:
        >>> orchestrator = PaymentOrchestrator.from_env()
        >>> outcome = await orchestrator.execute(requirement, "tool-call-1", custodian)
        >>> if outcome.fulfilled:
        ...     use(outcome.resource)
    """

    def __init__(
        self,
        config: Config,
        ledger: LedgerClient,
        protocol_client: X402Client | None = None,
        wallet_manager: EphemeralWalletManager | None = None,
        storage: StorageBackend | None = None,
        policy: AutoApprovalPolicy | None = None,
    ) -> None:
        self._config = config
        self._ledger = ledger
        self._protocol = protocol_client or X402Client(config, ledger)
        self._wallets = wallet_manager or EphemeralWalletManager(config, ledger)
        self._storage = storage or _default_storage(config)
        self._policy = policy or AutoApprovalPolicy.from_config(config)
        self._inflight = InFlightRegistry(self._storage, ttl=config.inflight_ttl)
        self._logger = get_logger("orchestrator")

    @classmethod
    def from_env(cls, **overrides: Any) -> PaymentOrchestrator:
        """Build an orchestrator on a Solana RPC ledger from environment config."""
        from ephemeralpay.ledger.solana import SolanaRpcLedger

        config = Config.from_env(**overrides)
        return cls(config, SolanaRpcLedger(config))

    # ==================== Policy ====================

    def is_auto_approvable(self, amount: AmountType, asset: str | Asset) -> bool:
        """Check a human-readable amount against the auto-approval ceiling."""
        return self._policy.is_auto_approvable(amount, asset)

    # ==================== Execute ====================

    async def execute(
        self,
        requirement: PaymentRequirement,
        invocation_id: str,
        funding_source: CustodianHandle,
    ) -> PaymentOutcome:
        """
        Pay for and fetch one resource through a fresh ephemeral wallet.

        Returns exactly one PaymentOutcome. A cancellation that lands while
        the wallet is still Created exits with nothing on chain; once funding
        has started, the run completes through reclaim before the
        cancellation propagates.
        """
        if not self._policy.approves(requirement):
            self._logger.info(
                f"[{invocation_id}] {requirement.human_amount} {requirement.asset.symbol} "
                f"needs explicit approval (ceiling {self._policy.ceiling})"
            )
            return self._outcome(
                OutcomeKind.POLICY_REJECTED,
                invocation_id,
                requirement,
                reason="above_auto_approval_ceiling",
                details={"ceiling": str(self._policy.ceiling)},
            )

        mismatch = self._check_chain(requirement)
        if mismatch:
            self._logger.warning(f"[{invocation_id}] Refusing requirement: {mismatch}")
            return self._outcome(
                OutcomeKind.PROTOCOL_REJECTED, invocation_id, requirement, reason=mismatch
            )

        token = await self._inflight.claim(invocation_id)
        if token is None:
            return self._outcome(
                OutcomeKind.DUPLICATE_INVOCATION,
                invocation_id,
                requirement,
                reason="invocation_in_flight",
            )

        try:
            return await self._execute_claimed(requirement, invocation_id, funding_source)
        finally:
            await self._inflight.release(invocation_id, token)

    def _check_chain(self, requirement: PaymentRequirement) -> str | None:
        if requirement.network != self._config.network:
            return f"network {requirement.network.value} != {self._config.network.value}"
        if requirement.asset != self._config.payment_asset:
            return f"asset {requirement.asset.symbol} is not the configured payment asset"
        if requirement.fee_asset != self._config.fee_asset:
            return f"fee asset {requirement.fee_asset.symbol} is not the configured fee asset"
        return None

    async def _execute_claimed(
        self,
        requirement: PaymentRequirement,
        invocation_id: str,
        funding_source: CustodianHandle,
    ) -> PaymentOutcome:
        run = _Run(
            invocation_id=invocation_id,
            requirement=requirement,
            wallet=self._wallets.create(),
            source=CustodianAdapter(funding_source, timeout=self._config.http_timeout),
            plan=FundingPlan.for_requirement(
                requirement,
                fee_amount=self._config.fee_funding_lamports,
                margin_bps=self._config.principal_margin_bps,
            ),
        )
        self._logger.info(
            f"[{invocation_id}] Run started for {requirement.resource_ref}: "
            f"{requirement.amount} {requirement.asset.symbol} via {run.wallet.address}"
        )

        task: asyncio.Future[PaymentOutcome] | None = None
        try:
            # Last point where a cancellation leaves nothing on chain
            await asyncio.sleep(0)
            task = asyncio.ensure_future(self._run(run))
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task is None or not run.funding_started:
                if task is not None:
                    task.cancel()
                self._logger.info(f"[{invocation_id}] Cancelled before funding; no on-chain effect")
                raise
            run.cancel_requested = True
            self._logger.warning(
                f"[{invocation_id}] Cancelled after funding started; finishing reclaim first"
            )
            while not task.done():
                try:
                    await asyncio.shield(task)
                except asyncio.CancelledError:
                    continue
            raise
        finally:
            run.wallet.destroy()

    async def _run(self, run: _Run) -> PaymentOutcome:
        requirement = run.requirement

        # Fund
        run.funding_started = True
        funding = await self._wallets.fund(run.wallet, run.plan, run.source)
        if not funding.success:
            sweep = None
            if funding.any_submitted:
                sweep = await self._reclaim(run)
            return await self._finish(
                run,
                OutcomeKind.FUNDING_FAILED,
                reason=funding.reason,
                funding=funding,
                sweep=sweep,
            )

        # Pay
        attempt: PaymentAttempt | None = None
        kind = OutcomeKind.FULFILLED
        reason: str | None = None
        details: dict[str, Any] = {}

        if run.cancel_requested:
            kind, reason = OutcomeKind.PROTOCOL_REJECTED, "cancelled_before_payment"
        else:
            run.wallet.transition(WalletState.PAYMENT_ATTEMPTED)
            try:
                attempt = await self._protocol.fetch_paid_resource(
                    requirement.api_url,
                    run.wallet,
                    max_amount=requirement.amount,
                    asset=requirement.asset,
                    method=requirement.method,
                    headers=requirement.headers,
                    body=requirement.body,
                    expected_pay_to=requirement.pay_to or None,
                )
            except X402Error as e:
                kind, reason = OutcomeKind.PROTOCOL_REJECTED, str(e)
                details = {"stage": e.stage, "status_code": e.status_code, "transport": e.retryable}
            except (EphemeralPayError, httpx.HTTPError) as e:
                kind, reason = OutcomeKind.PROTOCOL_REJECTED, str(e)
                details = {"stage": "unknown", "transport": isinstance(e, httpx.TransportError)}
            except Exception as e:
                self._logger.exception(
                    f"[{run.invocation_id}] Unexpected {type(e).__name__} during payment: {e}"
                )
                kind, reason = OutcomeKind.PROTOCOL_REJECTED, f"{type(e).__name__}: {e}"
                details = {"stage": "internal", "transport": False}

        if kind == OutcomeKind.PROTOCOL_REJECTED:
            self._logger.warning(f"[{run.invocation_id}] Payment not completed: {reason}")
        elif attempt is not None:
            details = {
                "paid": attempt.paid,
                "paid_amount": attempt.amount,
                "pay_to": attempt.pay_to,
                "payment_signature": attempt.signature,
                "settlement": attempt.settlement,
            }

        # Reclaim (always, once funded)
        sweep = await self._reclaim(run)
        return await self._finish(
            run,
            kind,
            reason=reason,
            resource=attempt.resource if attempt is not None else None,
            funding=funding,
            sweep=sweep,
            details=details,
        )

    async def _reclaim(self, run: _Run) -> SweepResult:
        assets = [run.requirement.fee_asset, run.requirement.asset]
        return await self._wallets.sweep(run.wallet, run.source.address, assets)

    async def _finish(
        self,
        run: _Run,
        kind: OutcomeKind,
        reason: str | None = None,
        resource: Any = None,
        funding: FundingResult | None = None,
        sweep: SweepResult | None = None,
        details: dict[str, Any] | None = None,
    ) -> PaymentOutcome:
        details = dict(details or {})
        if funding is not None:
            details["funding"] = funding.to_dict()
        if sweep is not None:
            details["reclaim"] = sweep.to_dict()

        if sweep is not None and not sweep.complete:
            outcome = self._outcome(
                OutcomeKind.RECLAIM_INCOMPLETE,
                run.invocation_id,
                run.requirement,
                reason=reason or sweep.skipped_reason or sweep.error or "residual_remaining",
                resource=resource,
                residual=dict(sweep.residual),
                cause=kind,
                address=run.wallet.address,
                details=details,
            )
            self._logger.critical(
                f"[{run.invocation_id}] RECLAIM INCOMPLETE: {sweep.residual} "
                f"(verified={sweep.verified}) stranded in {run.wallet.address}, "
                f"owed to {sweep.destination}; cause={kind.value}"
            )
            await self._record_reconciliation(run, outcome, sweep)
            return outcome

        outcome = self._outcome(
            kind,
            run.invocation_id,
            run.requirement,
            reason=reason,
            resource=resource,
            address=run.wallet.address,
            details=details,
        )
        self._logger.info(f"[{run.invocation_id}] Run finished: {kind.value}")
        return outcome

    def _outcome(
        self,
        kind: OutcomeKind,
        invocation_id: str,
        requirement: PaymentRequirement,
        reason: str | None = None,
        resource: Any = None,
        residual: dict[str, int] | None = None,
        cause: OutcomeKind | None = None,
        address: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> PaymentOutcome:
        return PaymentOutcome(
            kind=kind,
            invocation_id=invocation_id,
            resource=resource,
            reason=reason,
            amount=requirement.amount,
            asset=requirement.asset.symbol,
            residual=residual or {},
            cause=cause,
            ephemeral_address=address,
            details=details or {},
        )

    # ==================== Reconciliation ====================

    async def _record_reconciliation(
        self,
        run: _Run,
        outcome: PaymentOutcome,
        sweep: SweepResult,
    ) -> None:
        record = {
            "invocation_id": run.invocation_id,
            "resource_ref": run.requirement.resource_ref,
            "ephemeral_address": run.wallet.address,
            "destination": sweep.destination,
            "residual": dict(sweep.residual),
            "verified": sweep.verified,
            "cause": outcome.cause.value if outcome.cause else None,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            await self._storage.save(
                RECONCILIATION_COLLECTION, f"{run.invocation_id}:{run.wallet.address}", record
            )
        except Exception as e:
            # The CRITICAL log line above still carries the full record
            self._logger.error(f"[{run.invocation_id}] Could not persist reconciliation record: {e}")

    async def pending_reconciliations(self, limit: int | None = None) -> list[dict[str, Any]]:
        """List stranded residuals awaiting manual recovery."""
        return await self._storage.query(RECONCILIATION_COLLECTION, limit=limit)

    async def resolve_reconciliation(self, key: str) -> bool:
        """Mark a reconciliation record as handled."""
        return await self._storage.delete(RECONCILIATION_COLLECTION, key)

    async def close(self) -> None:
        await self._protocol.close()
        await self._ledger.close()
        await self._storage.close()
