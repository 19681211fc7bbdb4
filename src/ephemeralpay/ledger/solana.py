"""Solana JSON-RPC ledger client over httpx."""

from __future__ import annotations

import base64
import itertools
from typing import Any

import httpx

from ephemeralpay.core.config import Config
from ephemeralpay.core.exceptions import LedgerError
from ephemeralpay.core.logging import get_logger
from ephemeralpay.core.types import Asset, ConfirmationStatus
from ephemeralpay.ledger.client import LedgerClient, LedgerTransaction
from ephemeralpay.ledger.transactions import associated_token_address
from ephemeralpay.resilience.retry import ledger_retry

# JSON-RPC error code returned by getTokenAccountBalance for a missing account
INVALID_PARAMS = -32602


class SolanaRpcLedger(LedgerClient):
    """
    LedgerClient backed by a Solana RPC node.

    Read-only calls are retried on transient transport errors; broadcast
    is sent once with preflight enabled.
    """

    def __init__(
        self,
        config: Config,
        http_client: httpx.AsyncClient | None = None,
        commitment: str = "confirmed",
    ) -> None:
        self._url = config.effective_rpc_url
        self._timeout = config.http_timeout
        self._http_client = http_client
        self._commitment = commitment
        self._ids = itertools.count(1)
        self._logger = get_logger("ledger")

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    async def _rpc(self, method: str, params: list[Any]) -> Any:
        client = await self._get_http_client()
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        response = await client.post(self._url, json=payload)

        if response.status_code != 200:
            raise LedgerError(
                f"RPC {method} failed: HTTP {response.status_code}",
                status_code=response.status_code,
                method=method,
            )

        body = response.json()
        if "error" in body:
            error = body["error"]
            raise LedgerError(
                f"RPC {method} error: {error.get('message')}",
                method=method,
                details={"code": error.get("code"), "data": error.get("data")},
            )
        return body.get("result")

    async def broadcast(self, transaction: LedgerTransaction) -> str:
        encoded = base64.b64encode(transaction.raw).decode()
        signature = await self._rpc(
            "sendTransaction",
            [
                encoded,
                {
                    "encoding": "base64",
                    "skipPreflight": False,
                    "preflightCommitment": self._commitment,
                    "maxRetries": 3,
                },
            ],
        )
        self._logger.debug(f"Broadcast {signature} from {transaction.fee_payer}")
        return signature

    @ledger_retry
    async def get_confirmation(self, submission_id: str) -> ConfirmationStatus:
        result = await self._rpc(
            "getSignatureStatuses",
            [[submission_id], {"searchTransactionHistory": True}],
        )
        statuses = (result or {}).get("value") or [None]
        status = statuses[0]
        if status is None:
            return ConfirmationStatus.PENDING
        if status.get("err") is not None:
            return ConfirmationStatus.FAILED
        if status.get("confirmationStatus") in ("confirmed", "finalized"):
            return ConfirmationStatus.CONFIRMED
        return ConfirmationStatus.PENDING

    @ledger_retry
    async def get_balance(self, address: str, asset: Asset) -> int:
        if asset.is_native:
            result = await self._rpc("getBalance", [address, {"commitment": self._commitment}])
            return int(result["value"])

        token_account = self.associated_token_address(address, asset)
        try:
            result = await self._rpc(
                "getTokenAccountBalance", [token_account, {"commitment": self._commitment}]
            )
        except LedgerError as e:
            if e.details.get("code") == INVALID_PARAMS:
                return 0
            raise
        return int(result["value"]["amount"])

    @ledger_retry
    async def token_account_exists(self, owner: str, asset: Asset) -> bool:
        token_account = self.associated_token_address(owner, asset)
        result = await self._rpc(
            "getAccountInfo",
            [token_account, {"commitment": self._commitment, "encoding": "base64"}],
        )
        return (result or {}).get("value") is not None

    def associated_token_address(self, owner: str, asset: Asset) -> str:
        return associated_token_address(owner, asset)

    @ledger_retry
    async def latest_blockhash(self) -> str:
        result = await self._rpc("getLatestBlockhash", [{"commitment": self._commitment}])
        return result["value"]["blockhash"]

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
