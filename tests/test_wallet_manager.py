"""
Tests for EphemeralWallet and EphemeralWalletManager.

Funding and sweeping run against the in-memory FakeLedger from conftest,
so balances before and after each step can be asserted exactly.
"""

import pickle

import pytest
from conftest import TX_FEE, USDC

from ephemeralpay.core.exceptions import (
    ConfirmationTimeoutError,
    InsufficientBalanceError,
    SessionInvalidError,
    TransactionFailedError,
    WalletError,
)
from ephemeralpay.core.types import (
    SOL,
    TOKEN_ACCOUNT_RENT_LAMPORTS,
    ConfirmationStatus,
    FundingPlan,
    WalletState,
)
from ephemeralpay.custodian.adapter import CustodianAdapter
from ephemeralpay.wallet import EphemeralWallet, EphemeralWalletManager

PLAN = FundingPlan(
    fee_asset=SOL, fee_amount=10_000_000, principal_asset=USDC, principal_amount=5_050
)


@pytest.fixture
def manager(config, ledger):
    return EphemeralWalletManager(config, ledger)


@pytest.fixture
def source(custodian):
    return CustodianAdapter(custodian)


class TestEphemeralWallet:
    """Key material stays inside the wallet object."""

    def test_generate_unique_addresses(self):
        assert EphemeralWallet.generate().address != EphemeralWallet.generate().address

    def test_sign_and_destroy(self):
        wallet = EphemeralWallet.generate()
        assert len(wallet.sign(b"message")) == 64

        wallet.destroy()
        assert wallet.destroyed
        with pytest.raises(WalletError):
            wallet.sign(b"message")

    def test_cannot_be_pickled(self):
        with pytest.raises(TypeError):
            pickle.dumps(EphemeralWallet.generate())

    def test_repr_has_no_key(self):
        wallet = EphemeralWallet.generate()
        assert "private" not in repr(wallet).lower()
        assert wallet.address in repr(wallet)

    def test_terminal_state_is_final(self):
        wallet = EphemeralWallet.generate()
        wallet.transition(WalletState.RECLAIMED)

        with pytest.raises(WalletError):
            wallet.transition(WalletState.FUNDED)


class TestFund:
    @pytest.mark.asyncio
    async def test_fund_success(self, manager, ledger, source):
        wallet = manager.create()

        result = await manager.fund(wallet, PLAN, source)

        assert result.success
        assert result.reason is None
        assert wallet.state == WalletState.FUNDED
        assert ledger.balance(wallet.address, SOL) == 10_000_000
        assert ledger.balance(wallet.address, USDC) == 5_050

    @pytest.mark.asyncio
    async def test_fee_refused_skips_principal(self, manager, custodian, source):
        custodian.errors["SOL"] = SessionInvalidError("session expired", asset="SOL")
        wallet = manager.create()

        result = await manager.fund(wallet, PLAN, source)

        assert not result.success
        assert not result.any_submitted
        assert result.reason == "session_invalid"
        assert result.principal.reason == "not_attempted"
        assert [s[0] for s in custodian.sends] == ["SOL"]
        assert wallet.state == WalletState.CREATED

    @pytest.mark.asyncio
    async def test_fee_timeout_counts_as_possibly_submitted(self, manager, ledger, custodian, source):
        custodian.lost_replies.add("SOL")
        wallet = manager.create()

        result = await manager.fund(wallet, PLAN, source)

        assert not result.success
        assert result.fee.maybe_submitted
        assert not result.fee.submitted
        assert result.any_submitted
        assert result.reason == "timeout"
        assert result.principal.reason == "not_attempted"
        assert result.to_dict()["fee"]["maybe_submitted"] is True
        assert ledger.balance(wallet.address, SOL) == 10_000_000

    @pytest.mark.asyncio
    async def test_principal_refused_after_fee(self, manager, ledger, custodian, source):
        custodian.errors["USDC"] = InsufficientBalanceError("empty", asset="USDC")
        wallet = manager.create()

        result = await manager.fund(wallet, PLAN, source)

        assert not result.success
        assert result.any_submitted
        assert result.fee.confirmed
        assert result.reason == "insufficient_balance"
        assert ledger.balance(wallet.address, SOL) == 10_000_000

    @pytest.mark.asyncio
    async def test_principal_never_confirms(self, manager, custodian, source):
        custodian.pending.add("USDC")
        wallet = manager.create()

        result = await manager.fund(wallet, PLAN, source)

        assert result.fee.confirmed
        assert result.principal.submitted
        assert not result.principal.confirmed
        assert result.reason == "timeout"


class TestWaitForConfirmation:
    @pytest.mark.asyncio
    async def test_confirmed(self, manager, ledger):
        ledger.statuses["sig-x"] = ConfirmationStatus.CONFIRMED
        assert await manager.wait_for_confirmation("sig-x") is True

    @pytest.mark.asyncio
    async def test_failed(self, manager, ledger):
        ledger.statuses["sig-x"] = ConfirmationStatus.FAILED
        with pytest.raises(TransactionFailedError):
            await manager.wait_for_confirmation("sig-x")

    @pytest.mark.asyncio
    async def test_poll_budget(self, manager, ledger, config):
        with pytest.raises(ConfirmationTimeoutError) as exc_info:
            await manager.wait_for_confirmation("sig-unknown")

        assert exc_info.value.last_status == "pending"
        assert ledger.calls.count("get_confirmation") <= config.confirmation_max_polls


class TestSweep:
    @pytest.mark.asyncio
    async def test_sweep_returns_everything(self, manager, ledger, custodian, source):
        wallet = manager.create()
        await manager.fund(wallet, PLAN, source)
        sol_before = ledger.balance(custodian.address, SOL)
        usdc_before = ledger.balance(custodian.address, USDC)

        result = await manager.sweep(wallet, custodian.address, [SOL, USDC])

        assert result.complete
        assert result.residual == {}
        assert result.swept == {"USDC": 5_050, "SOL": 10_000_000 - TX_FEE}
        assert result.closed_accounts == [ledger.associated_token_address(wallet.address, USDC)]
        assert wallet.state == WalletState.RECLAIMED
        assert ledger.balance(wallet.address, SOL) == 0
        assert ledger.balance(wallet.address, USDC) == 0
        assert ledger.balance(custodian.address, USDC) == usdc_before + 5_050
        assert ledger.balance(custodian.address, SOL) == (
            sol_before + 10_000_000 - TX_FEE + TOKEN_ACCOUNT_RENT_LAMPORTS
        )

    @pytest.mark.asyncio
    async def test_empty_token_account_is_closed(self, manager, ledger, custodian):
        wallet = manager.create()
        ledger.credit(wallet.address, SOL, 1_000_000)
        ledger.credit(wallet.address, USDC, 0)

        result = await manager.sweep(wallet, custodian.address, [SOL, USDC])

        assert result.complete
        assert "USDC" not in result.swept
        assert (wallet.address, "USDC") not in ledger.token_accounts

    @pytest.mark.asyncio
    async def test_skipped_when_fee_unaffordable(self, manager, ledger, custodian):
        wallet = manager.create()
        ledger.credit(wallet.address, SOL, 4_000)
        ledger.credit(wallet.address, USDC, 100)

        result = await manager.sweep(wallet, custodian.address, [SOL, USDC])

        assert not result.complete
        assert "below sweep fee reserve" in result.skipped_reason
        assert result.residual == {"SOL": 4_000, "USDC": 100}
        assert wallet.state == WalletState.ABANDONED
        assert "broadcast" not in ledger.calls

    @pytest.mark.asyncio
    async def test_native_dust_is_left_and_reported(self, manager, ledger, custodian):
        wallet = manager.create()
        ledger.credit(wallet.address, SOL, 8_000)

        result = await manager.sweep(wallet, custodian.address, [SOL, USDC])

        assert result.skipped_reason == "only dust remains"
        assert result.residual == {"SOL": 8_000}
        assert wallet.state == WalletState.ABANDONED

    @pytest.mark.asyncio
    async def test_nothing_to_sweep(self, manager, custodian):
        wallet = manager.create()

        result = await manager.sweep(wallet, custodian.address, [SOL, USDC])

        assert result.complete
        assert wallet.state == WalletState.RECLAIMED

    @pytest.mark.asyncio
    async def test_broadcast_failure_reports_actual_residual(self, manager, ledger, custodian, config):
        wallet = manager.create()
        ledger.credit(wallet.address, SOL, 1_000_000)
        ledger.credit(wallet.address, USDC, 50)
        ledger.fail_broadcast = True

        result = await manager.sweep(wallet, custodian.address, [SOL, USDC])

        assert not result.complete
        assert result.verified
        assert result.residual == {"SOL": 1_000_000, "USDC": 50}
        assert "sendTransaction" in result.error
        assert ledger.calls.count("broadcast") == config.sweep_max_attempts
        assert wallet.state == WalletState.ABANDONED

    @pytest.mark.asyncio
    async def test_unverifiable_residual(self, manager, ledger, custodian):
        wallet = manager.create()
        ledger.fail_balance_reads = True

        result = await manager.sweep(wallet, custodian.address, [SOL, USDC])

        assert not result.verified
        assert not result.complete
        assert wallet.state == WalletState.ABANDONED
