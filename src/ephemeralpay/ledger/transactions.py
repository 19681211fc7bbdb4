"""Solana transaction construction and signing."""

from __future__ import annotations

from collections.abc import Iterable

from solders.hash import Hash
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import (
    close_account,
    create_idempotent_associated_token_account,
    get_associated_token_address,
    transfer_checked,
)
from spl.token.models import CloseAccountParams, TransferCheckedParams

from ephemeralpay.core.exceptions import ValidationError
from ephemeralpay.core.types import Asset
from ephemeralpay.ledger.client import AssetTransfer, LedgerTransaction, Signer


def to_pubkey(address: str) -> Pubkey:
    try:
        return Pubkey.from_string(address)
    except ValueError as e:
        raise ValidationError(f"Invalid address: {address}", details={"error": str(e)}) from e


def associated_token_address(owner: str, asset: Asset) -> str:
    """Derive the associated token account for ``owner`` and a token asset."""
    if asset.is_native:
        raise ValidationError("Native asset has no token account", details={"asset": asset.symbol})
    return str(get_associated_token_address(to_pubkey(owner), to_pubkey(asset.mint)))


def build_signed_transaction(
    signer: Signer,
    recent_blockhash: str,
    transfers: Iterable[AssetTransfer] = (),
    close_token_accounts: Iterable[Asset] = (),
    close_destination: str | None = None,
    create_destination_accounts: bool = False,
) -> LedgerTransaction:
    """
    Build a legacy transaction paid and signed by ``signer``.

    Token transfers use ``transfer_checked`` between associated token
    accounts. ``close_token_accounts`` closes the signer's token accounts
    for those assets, sending their rent to ``close_destination``.
    """
    transfers = list(transfers)
    close_token_accounts = list(close_token_accounts)
    if close_token_accounts and not close_destination:
        raise ValidationError("close_destination is required when closing accounts")

    payer = to_pubkey(signer.address)
    instructions = []

    for item in transfers:
        if item.amount <= 0:
            raise ValidationError("Transfer amount must be positive", details={"amount": item.amount})
        source = to_pubkey(item.source)
        destination = to_pubkey(item.destination)

        if item.asset.is_native:
            instructions.append(
                transfer(TransferParams(from_pubkey=source, to_pubkey=destination, lamports=item.amount))
            )
            continue

        mint = to_pubkey(item.asset.mint)
        if create_destination_accounts:
            instructions.append(create_idempotent_associated_token_account(payer, destination, mint))
        instructions.append(
            transfer_checked(
                TransferCheckedParams(
                    program_id=TOKEN_PROGRAM_ID,
                    source=get_associated_token_address(source, mint),
                    mint=mint,
                    dest=get_associated_token_address(destination, mint),
                    owner=source,
                    amount=item.amount,
                    decimals=item.asset.decimals,
                )
            )
        )

    for asset in close_token_accounts:
        instructions.append(
            close_account(
                CloseAccountParams(
                    program_id=TOKEN_PROGRAM_ID,
                    account=get_associated_token_address(payer, to_pubkey(asset.mint)),
                    dest=to_pubkey(close_destination),
                    owner=payer,
                )
            )
        )

    if not instructions:
        raise ValidationError("Transaction has no instructions")

    message = Message.new_with_blockhash(instructions, payer, Hash.from_string(recent_blockhash))
    signature = Signature.from_bytes(signer.sign(bytes(message)))
    transaction = Transaction.populate(message, [signature])

    return LedgerTransaction(
        fee_payer=signer.address,
        recent_blockhash=recent_blockhash,
        signature=str(signature),
        raw=bytes(transaction),
        transfers=transfers,
        close_token_accounts=close_token_accounts,
        close_destination=close_destination,
    )
