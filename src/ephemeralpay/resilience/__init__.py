"""
Resilience layer for ephemeralpay.

Provides bounded retry policies for ledger queries and protocol transport.
"""

from .retry import execute_with_retry, is_transient_error, ledger_retry

__all__ = [
    "execute_with_retry",
    "is_transient_error",
    "ledger_retry",
]
