"""Unit tests for exceptions module."""

import pytest

from ephemeralpay.core.exceptions import (
    ConfirmationTimeoutError,
    CustodianError,
    CustodianTimeoutError,
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


class TestEphemeralPayError:
    """Tests for base exception."""

    def test_message_only(self) -> None:
        error = EphemeralPayError("Something went wrong")
        assert str(error) == "Something went wrong"
        assert error.details == {}

    def test_with_details(self) -> None:
        error = ValidationError("Bad amount", details={"amount": -1})
        assert "Bad amount" in str(error)
        assert "amount" in str(error)

    @pytest.mark.parametrize(
        "cls",
        [ValidationError, WalletError, CustodianError, LedgerError, ProtocolError],
    )
    def test_all_inherit_from_base(self, cls) -> None:
        assert issubclass(cls, EphemeralPayError)


class TestCustodianErrors:
    """Tests for custodian failure taxonomy."""

    @pytest.mark.parametrize(
        "cls,reason,retryable",
        [
            (SessionInvalidError, "session_invalid", False),
            (InsufficientBalanceError, "insufficient_balance", False),
            (LedgerRejectedError, "ledger_rejected", False),
            (CustodianTimeoutError, "timeout", True),
        ],
    )
    def test_reason_and_retryable(self, cls, reason, retryable) -> None:
        error = cls("failed", asset="USDC", amount=5050)

        assert isinstance(error, CustodianError)
        assert error.reason == reason
        assert error.retryable is retryable
        assert error.asset == "USDC"
        assert error.amount == 5050


class TestLedgerError:
    """Tests for LedgerError classification."""

    def test_rate_limited_is_transient(self) -> None:
        error = LedgerError("slow down", status_code=429)
        assert error.is_rate_limited()
        assert error.is_transient()

    def test_server_error_is_transient(self) -> None:
        assert LedgerError("boom", status_code=502).is_transient()

    def test_rpc_error_is_not_transient(self) -> None:
        assert not LedgerError("bad params", details={"code": -32602}).is_transient()

    def test_confirmation_timeout_carries_signature(self) -> None:
        error = ConfirmationTimeoutError(
            "not confirmed", signature="sig-1", last_status="pending", timeout_seconds=30
        )
        assert isinstance(error, LedgerError)
        assert error.signature == "sig-1"
        assert error.last_status == "pending"


class TestX402Error:
    """Tests for X402Error."""

    def test_str_includes_stage_and_url(self) -> None:
        error = X402Error("quote too high", url="https://api.example.com", stage="validation")

        assert str(error) == "[x402:validation] quote too high (URL: https://api.example.com)"
        assert error.protocol == "x402"
        assert error.retryable is False

    def test_transport_error_is_retryable(self) -> None:
        error = X402Error("no response", url="u", stage="transport", retryable=True)
        assert error.retryable is True
