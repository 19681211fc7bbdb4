"""
Custodian handles.

A CustodianHandle is the per-call capability for the user's custodial
parent wallet. Its signing session is created and owned by the external
wallet-custody subsystem; this core only asks it to send transfers.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

import httpx

from ephemeralpay.core.exceptions import (
    CustodianError,
    CustodianTimeoutError,
    InsufficientBalanceError,
    LedgerRejectedError,
    SessionInvalidError,
)
from ephemeralpay.core.types import Asset


class CustodianHandle(ABC):
    """Capability to sign and broadcast transfers from the custodial wallet."""

    @property
    @abstractmethod
    def address(self) -> str:
        """Public address of the custodial wallet."""
        ...

    @abstractmethod
    async def send(self, asset: Asset, amount: int, destination: str) -> str:
        """
        Sign and broadcast a transfer of ``amount`` base units.

        Returns:
            Transaction signature reported by the custodian

        Raises:
            CustodianError: A typed failure (session, balance, ledger, timeout)
        """
        ...


class HttpCustodianSession(CustodianHandle):
    """
    CustodianHandle for a custodian reachable over HTTP.

    ``session_token`` is the bearer credential of an already authenticated
    custodian session.
    """

    def __init__(
        self,
        base_url: str,
        address: str,
        session_token: str,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._address = address
        self._session_token = session_token
        self._http_client = http_client
        self._timeout = timeout

    @property
    def address(self) -> str:
        return self._address

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    async def send(self, asset: Asset, amount: int, destination: str) -> str:
        client = await self._get_http_client()
        payload: dict[str, Any] = {
            "source": self._address,
            "destination": destination,
            "amount": str(amount),
            "decimals": asset.decimals,
        }
        if asset.mint:
            payload["tokenMint"] = asset.mint

        try:
            response = await client.post(
                f"{self._base_url}/transfers",
                json=payload,
                headers={"Authorization": f"Bearer {self._session_token}"},
            )
        except httpx.TimeoutException as e:
            raise CustodianTimeoutError(
                f"Custodian timed out sending {asset.symbol}", asset=asset.symbol, amount=amount
            ) from e

        if response.status_code in (200, 201):
            data = response.json()
            signature = data.get("signature") or data.get("transactionSignature")
            if not signature:
                raise LedgerRejectedError(
                    "Custodian response carried no transaction signature",
                    asset=asset.symbol,
                    amount=amount,
                    details={"response": data},
                )
            return signature

        raise self._map_error(response, asset, amount)

    @staticmethod
    def _map_error(response: httpx.Response, asset: Asset, amount: int) -> CustodianError:
        try:
            body = response.json()
        except ValueError:
            body = {"text": response.text}
        code = str(body.get("code", "")).lower()
        details = {"status_code": response.status_code, "response": body}

        if response.status_code in (401, 403) or code == "session_expired":
            cls: type[CustodianError] = SessionInvalidError
        elif code in ("insufficient_funds", "insufficient_balance"):
            cls = InsufficientBalanceError
        elif response.status_code in (408, 504):
            cls = CustodianTimeoutError
        else:
            cls = LedgerRejectedError

        return cls(
            f"Custodian rejected {asset.symbol} transfer: HTTP {response.status_code}",
            asset=asset.symbol,
            amount=amount,
            details=details,
        )
