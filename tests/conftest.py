import asyncio
import base64
import itertools
import json
from collections import defaultdict
from collections.abc import Callable
from decimal import Decimal

import httpx
import pytest
from solders.transaction import Transaction

from ephemeralpay.core.config import Config
from ephemeralpay.core.exceptions import CustodianError, CustodianTimeoutError, LedgerError
from ephemeralpay.core.types import (
    SOL,
    TOKEN_ACCOUNT_RENT_LAMPORTS,
    Asset,
    ConfirmationStatus,
    Network,
    usdc_for,
)
from ephemeralpay.custodian.handle import CustodianHandle
from ephemeralpay.ledger.client import LedgerClient, LedgerTransaction
from ephemeralpay.ledger.transactions import associated_token_address
from ephemeralpay.wallet.ephemeral import EphemeralWallet

BLOCKHASH = "11111111111111111111111111111111"
USDC = usdc_for(Network.SOL_DEVNET)
TX_FEE = 5_000


class FakeLedger(LedgerClient):
    """
    In-memory ledger that applies LedgerTransaction instructions.

    Balances are keyed by (owner, symbol). Every broadcast charges the fee
    payer TX_FEE lamports; closing a token account credits its rent to the
    close destination.
    """

    def __init__(self) -> None:
        self.balances: dict[tuple[str, str], int] = defaultdict(int)
        self.token_accounts: set[tuple[str, str]] = set()
        self.statuses: dict[str, ConfirmationStatus] = {}
        self.calls: list[str] = []
        self.broadcasts: list[LedgerTransaction] = []
        self.fail_broadcast = False
        self.fail_balance_reads = False
        self._ids = itertools.count(1)

    # ----- helpers used by tests and fakes -----

    def balance(self, address: str, asset: Asset) -> int:
        return self.balances[(address, asset.symbol)]

    def credit(self, address: str, asset: Asset, amount: int) -> None:
        if not asset.is_native:
            self.token_accounts.add((address, asset.symbol))
        self.balances[(address, asset.symbol)] += amount

    def debit(self, address: str, asset: Asset, amount: int) -> None:
        key = (address, asset.symbol)
        if self.balances[key] < amount:
            raise ValueError(f"{address} holds {self.balances[key]} {asset.symbol} < {amount}")
        self.balances[key] -= amount

    def next_signature(self) -> str:
        return f"sig-{next(self._ids)}"

    def settle_payment(self, payer: str, pay_to: str, asset: Asset, amount: int) -> str:
        """Apply an x402 payment the way a facilitator would."""
        self.debit(payer, SOL, TX_FEE)
        if (pay_to, asset.symbol) not in self.token_accounts:
            self.debit(payer, SOL, TOKEN_ACCOUNT_RENT_LAMPORTS)
        self.debit(payer, asset, amount)
        self.credit(pay_to, asset, amount)
        signature = self.next_signature()
        self.statuses[signature] = ConfirmationStatus.CONFIRMED
        return signature

    # ----- LedgerClient -----

    async def broadcast(self, transaction: LedgerTransaction) -> str:
        self.calls.append("broadcast")
        if self.fail_broadcast:
            raise LedgerError(
                "RPC sendTransaction failed: HTTP 503", status_code=503, method="sendTransaction"
            )
        self.broadcasts.append(transaction)
        try:
            self.debit(transaction.fee_payer, SOL, TX_FEE)
            for item in transaction.transfers:
                self.debit(item.source, item.asset, item.amount)
                self.credit(item.destination, item.asset, item.amount)
            for asset in transaction.close_token_accounts:
                key = (transaction.fee_payer, asset.symbol)
                assert self.balances[key] == 0, "closing a non-empty token account"
                self.token_accounts.discard(key)
                self.credit(transaction.close_destination, SOL, TOKEN_ACCOUNT_RENT_LAMPORTS)
        except ValueError:
            self.statuses[transaction.signature] = ConfirmationStatus.FAILED
        else:
            self.statuses[transaction.signature] = ConfirmationStatus.CONFIRMED
        return transaction.signature

    async def get_confirmation(self, submission_id: str) -> ConfirmationStatus:
        self.calls.append("get_confirmation")
        return self.statuses.get(submission_id, ConfirmationStatus.PENDING)

    async def get_balance(self, address: str, asset: Asset) -> int:
        self.calls.append("get_balance")
        if self.fail_balance_reads:
            raise LedgerError("RPC getBalance failed: HTTP 503", status_code=503, method="getBalance")
        return self.balances[(address, asset.symbol)]

    async def token_account_exists(self, owner: str, asset: Asset) -> bool:
        self.calls.append("token_account_exists")
        return (owner, asset.symbol) in self.token_accounts

    def associated_token_address(self, owner: str, asset: Asset) -> str:
        return associated_token_address(owner, asset)

    async def latest_blockhash(self) -> str:
        self.calls.append("latest_blockhash")
        return BLOCKHASH


class FakeCustodian(CustodianHandle):
    """
    Custodial wallet backed by a FakeLedger.

    ``errors`` maps an asset symbol to the CustodianError raised for it;
    ``pending`` lists symbols whose transfers are accepted but never land;
    ``lost_replies`` lists symbols whose transfers land but whose reply
    times out; ``gates`` maps a symbol to an asyncio.Event that send waits on.
    """

    def __init__(self, ledger: FakeLedger, address: str | None = None) -> None:
        self.ledger = ledger
        self._address = address or EphemeralWallet.generate().address
        self.sends: list[tuple[str, int, str]] = []
        self.errors: dict[str, CustodianError] = {}
        self.pending: set[str] = set()
        self.lost_replies: set[str] = set()
        self.gates: dict[str, asyncio.Event] = {}
        self.started: dict[str, asyncio.Event] = defaultdict(asyncio.Event)

    @property
    def address(self) -> str:
        return self._address

    async def send(self, asset: Asset, amount: int, destination: str) -> str:
        self.sends.append((asset.symbol, amount, destination))
        self.started[asset.symbol].set()
        if asset.symbol in self.gates:
            await self.gates[asset.symbol].wait()
        if asset.symbol in self.errors:
            raise self.errors[asset.symbol]

        signature = self.ledger.next_signature()
        if asset.symbol in self.pending:
            return signature

        if not asset.is_native and (destination, asset.symbol) not in self.ledger.token_accounts:
            self.ledger.debit(self._address, SOL, TOKEN_ACCOUNT_RENT_LAMPORTS)
        self.ledger.debit(self._address, asset, amount)
        self.ledger.credit(destination, asset, amount)
        self.ledger.statuses[signature] = ConfirmationStatus.CONFIRMED
        if asset.symbol in self.lost_replies:
            raise CustodianTimeoutError("custodian did not answer", asset=asset.symbol)
        return signature


def x402_api(
    ledger: FakeLedger,
    pay_to: str,
    amount: int = 5_000,
    network: str = "solana-devnet",
    asset: Asset = USDC,
    resource: object = None,
    settle_status: int = 200,
) -> Callable[[httpx.Request], httpx.Response]:
    """
    A paywalled endpoint for httpx.MockTransport.

    Answers 402 with one ``exact`` requirement until an X-PAYMENT header
    arrives, then settles the payment on ``ledger`` and serves ``resource``.
    """
    hits: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        hits.append(request)
        header = request.headers.get("X-PAYMENT")
        if header is None:
            return httpx.Response(
                402,
                json={
                    "x402Version": 1,
                    "accepts": [
                        {
                            "scheme": "exact",
                            "network": network,
                            "maxAmountRequired": str(amount),
                            "resource": str(request.url),
                            "description": "Premium data",
                            "payTo": pay_to,
                            "asset": asset.mint,
                            "maxTimeoutSeconds": 60,
                        }
                    ],
                },
            )

        if settle_status != 200:
            return httpx.Response(settle_status, json={"error": "payment verification failed"})

        payload = json.loads(base64.b64decode(header))
        tx = Transaction.from_bytes(base64.b64decode(payload["payload"]["transaction"]))
        payer = str(tx.message.account_keys[0])
        signature = ledger.settle_payment(payer, pay_to, asset, amount)
        settlement = base64.b64encode(
            json.dumps({"success": True, "transaction": signature}).encode()
        ).decode()
        return httpx.Response(
            200,
            json=resource if resource is not None else {"status": "ok"},
            headers={"X-PAYMENT-RESPONSE": settlement},
        )

    handler.hits = hits  # type: ignore[attr-defined]
    return handler


@pytest.fixture
def config() -> Config:
    """Config with short polling budgets for tests."""
    return Config(
        network=Network.SOL_DEVNET,
        auto_approve_ceiling=Decimal("0.01"),
        confirmation_timeout=0.3,
        confirmation_poll_interval=0.01,
        confirmation_poll_max_interval=0.02,
        confirmation_max_polls=5,
        protocol_max_attempts=3,
        http_timeout=2.0,
    )


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def custodian(ledger: FakeLedger) -> FakeCustodian:
    handle = FakeCustodian(ledger)
    ledger.credit(handle.address, SOL, 1_000_000_000)
    ledger.credit(handle.address, USDC, 1_000_000)
    return handle


@pytest.fixture
def merchant() -> str:
    return EphemeralWallet.generate().address
