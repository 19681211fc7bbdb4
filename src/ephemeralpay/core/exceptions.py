"""
Exception hierarchy for ephemeralpay.

All package exceptions inherit from EphemeralPayError for easy catching.
Boundary errors (custodian, ledger, protocol) are raised by the leaf
components and converted into typed results before they reach the
orchestrator.
"""

from __future__ import annotations

from typing import Any


class EphemeralPayError(Exception):
    """
    Base exception for all ephemeralpay errors.

    Example:
        >>> try:
        ...     await adapter.transfer(usdc, 1000, address)
        ... except EphemeralPayError as e:
        ...     print(f"Payment core error: {e}")
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(EphemeralPayError):
    """
    Configuration is missing or invalid.

    Raised when:
    - Required configuration values are not provided
    - Environment variables cannot be parsed
    """

    pass


class ValidationError(EphemeralPayError):
    """
    Input validation error.

    Raised when:
    - Required parameters are missing
    - Parameter values are invalid (negative amounts, empty addresses)
    """

    pass


class WalletError(EphemeralPayError):
    """
    Ephemeral wallet operation failed.

    Raised when:
    - A destroyed wallet is asked to sign
    - A wallet is used outside its lifecycle order
    """

    def __init__(
        self,
        message: str,
        address: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.address = address


# ==================== Custodian ====================


class CustodianError(EphemeralPayError):
    """
    The custodial parent wallet could not deliver a transfer.

    Subclasses identify the failure mode. ``retryable`` tells the caller
    whether repeating the same transfer later could succeed; this core
    never retries custodian transfers on its own.
    """

    retryable = False

    def __init__(
        self,
        message: str,
        asset: str | None = None,
        amount: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.asset = asset
        self.amount = amount

    @property
    def reason(self) -> str:
        """Short machine-readable reason code."""
        return "custodian_error"


class SessionInvalidError(CustodianError):
    """
    The custodian's signing session expired or was revoked.

    Must be surfaced to the human authentication layer.
    """

    @property
    def reason(self) -> str:
        return "session_invalid"


class InsufficientBalanceError(CustodianError):
    """The custodial wallet does not hold enough of the asset."""

    @property
    def reason(self) -> str:
        return "insufficient_balance"


class LedgerRejectedError(CustodianError):
    """The ledger refused the custodian's transfer."""

    @property
    def reason(self) -> str:
        return "ledger_rejected"


class CustodianTimeoutError(CustodianError):
    """The custodian did not answer in time."""

    retryable = True

    @property
    def reason(self) -> str:
        return "timeout"


# ==================== Ledger ====================


class LedgerError(EphemeralPayError):
    """
    Ledger RPC or transport error.

    Raised when:
    - The RPC endpoint cannot be reached
    - The RPC returns an HTTP error or a JSON-RPC error object
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        method: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.status_code = status_code
        self.method = method

    def is_rate_limited(self) -> bool:
        """Check if this is a rate limit error."""
        return self.status_code == 429

    def is_server_error(self) -> bool:
        """Check if this is a server-side error."""
        return self.status_code is not None and 500 <= self.status_code < 600

    def is_transient(self) -> bool:
        return self.is_rate_limited() or self.is_server_error()


class TransactionFailedError(LedgerError):
    """A broadcast transaction landed with an error or was dropped."""

    def __init__(
        self,
        message: str,
        signature: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.signature = signature


class ConfirmationTimeoutError(LedgerError):
    """
    Transaction was not confirmed within the polling budget.

    The outcome is ambiguous: the transaction may still land.
    """

    def __init__(
        self,
        message: str,
        signature: str,
        last_status: str,
        timeout_seconds: float,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.signature = signature
        self.last_status = last_status
        self.timeout_seconds = timeout_seconds


# ==================== Protocol ====================


class ProtocolError(EphemeralPayError):
    """
    Protocol adapter error.

    Raised when:
    - Protocol-specific parsing fails
    - Invalid protocol response
    """

    def __init__(
        self,
        message: str,
        protocol: str = "unknown",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.protocol = protocol

    def __str__(self) -> str:
        return f"[{self.protocol}] {self.message}"


class X402Error(ProtocolError):
    """
    x402 handshake error.

    ``stage`` is one of "requirements", "validation", "signing",
    "transport" or "settlement". ``retryable`` is True only when the API
    never produced a response (connection error, timeout); an explicit
    rejection is terminal.
    """

    def __init__(
        self,
        message: str,
        url: str,
        stage: str,
        retryable: bool = False,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, protocol="x402", details=details)
        self.url = url
        self.stage = stage
        self.retryable = retryable
        self.status_code = status_code

    def __str__(self) -> str:
        return f"[x402:{self.stage}] {self.message} (URL: {self.url})"
