"""
Ephemeral wallet: a single-use signing identity for one payment run.

The private key lives only in this object. It cannot be exported,
serialized or pickled, and ``destroy()`` drops it.
"""

from __future__ import annotations

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from solders.pubkey import Pubkey

from ephemeralpay.core.exceptions import WalletError
from ephemeralpay.core.types import WalletState


class EphemeralWallet:
    """In-memory Ed25519 keypair with a lifecycle state."""

    __slots__ = ("_private_key", "_address", "state")

    def __init__(self, private_key: Ed25519PrivateKey) -> None:
        self._private_key: Ed25519PrivateKey | None = private_key
        raw = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        self._address = str(Pubkey.from_bytes(raw))
        self.state = WalletState.CREATED

    @classmethod
    def generate(cls) -> EphemeralWallet:
        return cls(Ed25519PrivateKey.generate())

    @property
    def address(self) -> str:
        return self._address

    @property
    def destroyed(self) -> bool:
        return self._private_key is None

    def sign(self, message: bytes) -> bytes:
        if self._private_key is None:
            raise WalletError("Ephemeral wallet key material was destroyed", address=self._address)
        return self._private_key.sign(message)

    def transition(self, state: WalletState) -> None:
        if self.state.is_terminal():
            raise WalletError(
                f"Wallet already {self.state.value}, cannot move to {state.value}",
                address=self._address,
            )
        self.state = state

    def destroy(self) -> None:
        """Drop the key material. Safe to call more than once."""
        self._private_key = None

    def __reduce__(self):
        raise TypeError("EphemeralWallet cannot be serialized")

    def __repr__(self) -> str:
        return f"EphemeralWallet(address={self._address!r}, state={self.state.value!r})"
