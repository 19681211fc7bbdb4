"""
Payment protocol clients.

Only the x402 "HTTP 402 + signed transaction" pattern is supported.
"""

from ephemeralpay.protocols.x402 import (
    PaymentAttempt,
    PaymentPayload,
    PaymentRequirements,
    X402Client,
)

__all__ = [
    "PaymentAttempt",
    "PaymentPayload",
    "PaymentRequirements",
    "X402Client",
]
