"""X402Client - HTTP 402 Payment Required handshake paid by an ephemeral signer."""

from __future__ import annotations

import base64
import json
from dataclasses import dataclass, field
from typing import Any

import httpx

from ephemeralpay.core.config import Config
from ephemeralpay.core.exceptions import EphemeralPayError, ProtocolError, X402Error
from ephemeralpay.core.logging import get_logger
from ephemeralpay.core.types import Asset
from ephemeralpay.ledger.client import AssetTransfer, LedgerClient, Signer
from ephemeralpay.ledger.transactions import build_signed_transaction
from ephemeralpay.resilience.retry import execute_with_retry

# Header names
HEADER_PAYMENT = "X-PAYMENT"
HEADER_PAYMENT_RESPONSE = "X-PAYMENT-RESPONSE"
HEADER_PAYMENT_REQUIRED_V1 = "X-Payment-Required"

X402_VERSION = 1


@dataclass
class PaymentRequirements:
    """One entry of the ``accepts`` list in a 402 response."""

    scheme: str
    network: str
    max_amount_required: str  # Smallest unit
    resource: str
    description: str
    pay_to: str
    asset: str
    max_timeout_seconds: int | None = None
    extra: dict[str, Any] | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any], default_resource: str = "") -> PaymentRequirements:
        return cls(
            scheme=data.get("scheme", "exact"),
            network=data.get("network", ""),
            max_amount_required=str(data.get("maxAmountRequired", data.get("amount", "0"))),
            resource=data.get("resource", default_resource),
            description=data.get("description", ""),
            pay_to=data.get("payTo", data.get("paymentAddress", data.get("recipient", ""))),
            asset=data.get("asset", ""),
            max_timeout_seconds=data.get("maxTimeoutSeconds"),
            extra=data.get("extra"),
        )

    @classmethod
    def list_from_response(cls, response: httpx.Response) -> list[PaymentRequirements]:
        """Parse every quoted requirement from a 402 response (body or V1 header)."""
        try:
            url = str(response.request.url)
        except RuntimeError:
            url = ""

        data: Any = None
        try:
            data = response.json()
        except ValueError:
            data = None

        if isinstance(data, dict):
            if isinstance(data.get("accepts"), list):
                return [cls.from_dict(item, url) for item in data["accepts"] if isinstance(item, dict)]
            if isinstance(data.get("requirements"), dict):
                return [cls.from_dict(data["requirements"], url)]
            if "maxAmountRequired" in data or "payTo" in data:
                return [cls.from_dict(data, url)]

        header_val = response.headers.get(HEADER_PAYMENT_REQUIRED_V1)
        if header_val:
            return [cls.from_header(header_val)]

        raise ProtocolError(
            "No valid x402 payment requirements found in 402 response (Body or Header)",
            protocol="x402",
        )

    @classmethod
    def from_header(cls, header_value: str) -> PaymentRequirements:
        """Parse from base64-encoded header value (V1)."""
        try:
            data = json.loads(base64.b64decode(header_value))
        except (ValueError, TypeError) as e:
            raise ProtocolError(f"Failed to parse payment requirements: {e}", protocol="x402") from e
        return cls.from_dict(data)

    def amount(self) -> int:
        try:
            return int(self.max_amount_required)
        except ValueError as e:
            raise ProtocolError(
                f"Non-integer amount in requirements: {self.max_amount_required}",
                protocol="x402",
            ) from e


@dataclass
class PaymentPayload:
    """Signed payment sent in the X-PAYMENT header."""

    scheme: str
    network: str
    transaction: bytes
    x402_version: int = X402_VERSION

    def to_header(self) -> str:
        """Encode as base64 header value."""
        data = {
            "x402Version": self.x402_version,
            "scheme": self.scheme,
            "network": self.network,
            "payload": {"transaction": base64.b64encode(self.transaction).decode()},
        }
        return base64.b64encode(json.dumps(data).encode()).decode()


@dataclass
class PaymentAttempt:
    """A resource fetched through the x402 handshake."""

    resource: Any
    status_code: int
    paid: bool
    amount: int = 0
    pay_to: str | None = None
    signature: str | None = None
    settlement: dict[str, Any] = field(default_factory=dict)


class X402Client:
    """
    Client side of the x402 handshake.

    Flow:
    1. Request the URL
    2. On 402, pick the quoted requirement for our network and asset
    3. Refuse anything above ``max_amount`` before signing
    4. Sign a token transfer to ``payTo`` with the payer's key
    5. Resend the request with the X-PAYMENT header and return the body

    Requests that never got a response are retried a bounded number of
    times; explicit HTTP rejections are not.
    """

    def __init__(
        self,
        config: Config,
        ledger: LedgerClient,
        http_client: httpx.AsyncClient | None = None,
        retry_wait: float = 0.5,
    ) -> None:
        self._config = config
        self._ledger = ledger
        self._http_client = http_client
        self._retry_wait = retry_wait
        self._logger = get_logger("x402")

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._config.http_timeout)
        return self._http_client

    async def _send_once(
        self,
        method: str,
        url: str,
        headers: dict[str, str] | None,
        body: Any,
    ) -> httpx.Response:
        client = await self._get_http_client()
        try:
            if body is None or method.upper() in ("GET", "HEAD"):
                return await client.request(method, url, headers=headers)
            return await client.request(method, url, headers=headers, json=body)
        except httpx.TransportError as e:
            raise X402Error(
                f"No response from API: {e}", url=url, stage="transport", retryable=True
            ) from e

    async def _send(
        self,
        method: str,
        url: str,
        headers: dict[str, str] | None = None,
        body: Any = None,
    ) -> httpx.Response:
        return await execute_with_retry(
            self._send_once,
            method,
            url,
            headers,
            body,
            max_attempts=self._config.protocol_max_attempts,
            min_wait=self._retry_wait,
            max_wait=max(self._retry_wait * 8, self._retry_wait),
        )

    def select_requirement(
        self,
        url: str,
        quoted: list[PaymentRequirements],
        asset: Asset,
        max_amount: int,
        expected_pay_to: str | None = None,
    ) -> PaymentRequirements:
        """
        Choose the quote to pay and validate it against local limits.

        Fails closed: a quote on another network, in another asset, above
        ``max_amount`` or to an unexpected address raises X402Error.
        """
        network = self._config.network.x402_name
        on_network = [q for q in quoted if q.scheme == "exact" and q.network.lower() == network]
        if not on_network:
            raise X402Error(
                f"No 'exact' requirement on network {network}",
                url=url,
                stage="validation",
                details={"quoted_networks": sorted({q.network for q in quoted})},
            )

        in_asset = [q for q in on_network if asset.matches(q.asset)]
        if not in_asset:
            raise X402Error(
                f"Quoted asset does not match {asset.symbol}",
                url=url,
                stage="validation",
                details={"quoted_assets": sorted({q.asset for q in on_network})},
            )

        try:
            requirement = min(in_asset, key=lambda q: q.amount())
        except ProtocolError as e:
            raise X402Error(e.message, url=url, stage="validation") from e
        amount = requirement.amount()
        if amount <= 0:
            raise X402Error(f"Invalid quoted amount {amount}", url=url, stage="validation")
        if amount > max_amount:
            raise X402Error(
                f"Quoted {amount} exceeds authorized maximum {max_amount}",
                url=url,
                stage="validation",
                details={"quoted": amount, "max_amount": max_amount},
            )
        if not requirement.pay_to:
            raise X402Error("No payTo address in requirements", url=url, stage="validation")
        if expected_pay_to and requirement.pay_to != expected_pay_to:
            raise X402Error(
                "Quoted payTo differs from the expected destination",
                url=url,
                stage="validation",
                details={"quoted": requirement.pay_to, "expected": expected_pay_to},
            )
        return requirement

    async def fetch_paid_resource(
        self,
        url: str,
        payer: Signer,
        max_amount: int,
        asset: Asset,
        method: str = "GET",
        headers: dict[str, str] | None = None,
        body: Any = None,
        expected_pay_to: str | None = None,
    ) -> PaymentAttempt:
        """
        Fetch ``url``, paying at most ``max_amount`` base units of ``asset``.

        Raises:
            X402Error: ``retryable`` is True only if the API never answered
        """
        headers = dict(headers or {})
        response = await self._send(method, url, headers, body)

        if response.status_code != 402:
            if response.is_success:
                self._logger.info(f"{url} served without payment (HTTP {response.status_code})")
                return PaymentAttempt(
                    resource=self._parse_body(response),
                    status_code=response.status_code,
                    paid=False,
                )
            raise X402Error(
                f"Unexpected HTTP {response.status_code} before payment",
                url=url,
                stage="requirements",
                status_code=response.status_code,
            )

        try:
            quoted = PaymentRequirements.list_from_response(response)
        except ProtocolError as e:
            raise X402Error(str(e.message), url=url, stage="requirements", status_code=402) from e

        requirement = self.select_requirement(url, quoted, asset, max_amount, expected_pay_to)
        amount = requirement.amount()

        try:
            blockhash = await self._ledger.latest_blockhash()
            transaction = build_signed_transaction(
                payer,
                blockhash,
                transfers=[AssetTransfer(asset, amount, payer.address, requirement.pay_to)],
                create_destination_accounts=True,
            )
        except (EphemeralPayError, httpx.HTTPError) as e:
            raise X402Error(f"Could not sign payment: {e}", url=url, stage="signing") from e

        payload = PaymentPayload(
            scheme=requirement.scheme,
            network=requirement.network,
            transaction=transaction.raw,
        )
        self._logger.info(
            f"Paying {amount} {asset.symbol} to {requirement.pay_to} for {url} "
            f"(tx {transaction.signature})"
        )

        # The signed transaction is reused on resend, so a retry cannot pay twice
        headers[HEADER_PAYMENT] = payload.to_header()
        final_response = await self._send(method, url, headers, body)

        if not final_response.is_success:
            raise X402Error(
                f"Payment rejected: HTTP {final_response.status_code}",
                url=url,
                stage="settlement",
                status_code=final_response.status_code,
                details={"body": final_response.text[:500], "signature": transaction.signature},
            )

        resource = self._parse_body(final_response)
        if resource in (None, "", {}, []):
            raise X402Error(
                "Payment accepted but resource body is empty",
                url=url,
                stage="settlement",
                status_code=final_response.status_code,
                details={"signature": transaction.signature},
            )

        return PaymentAttempt(
            resource=resource,
            status_code=final_response.status_code,
            paid=True,
            amount=amount,
            pay_to=requirement.pay_to,
            signature=transaction.signature,
            settlement=self._parse_settlement(final_response),
        )

    @staticmethod
    def _parse_body(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return response.text

    @staticmethod
    def _parse_settlement(response: httpx.Response) -> dict[str, Any]:
        header_val = response.headers.get(HEADER_PAYMENT_RESPONSE)
        if not header_val:
            return {}
        try:
            return json.loads(base64.b64decode(header_val))
        except (ValueError, TypeError):
            return {"raw": header_val}

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None


__all__ = ["X402Client", "PaymentRequirements", "PaymentPayload", "PaymentAttempt"]
