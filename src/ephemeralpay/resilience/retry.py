"""
Retry Strategies using Tenacity.

Only read-only ledger queries and unanswered protocol requests are
retried. Broadcasts and explicit protocol rejections never are.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

import httpx
from tenacity import (
    AsyncRetrying,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ephemeralpay.core.exceptions import LedgerError, X402Error

logger = logging.getLogger(__name__)


def is_transient_error(exception: BaseException) -> bool:
    """Check if exception is a transient network/infrastructure error."""
    if isinstance(exception, httpx.TransportError):
        return True
    if isinstance(exception, LedgerError):
        return exception.is_transient()
    if isinstance(exception, X402Error):
        return exception.retryable
    return False


def _log_retry(retry_state: Any) -> None:
    logger.warning(
        f"Retrying {getattr(retry_state.fn, '__name__', 'call')} "
        f"(attempt {retry_state.attempt_number}): {retry_state.outcome.exception()}"
    )


# Read-only ledger queries: 4 attempts, 0.2s -> 2s backoff
ledger_retry = retry(
    retry=retry_if_exception(is_transient_error),
    wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
    stop=stop_after_attempt(4),
    reraise=True,
    before_sleep=_log_retry,
)


async def execute_with_retry(
    func: Callable[..., Awaitable[Any]],
    *args: Any,
    max_attempts: int = 3,
    min_wait: float = 0.5,
    max_wait: float = 4.0,
    **kwargs: Any,
) -> Any:
    """Execute an async function, retrying transient errors only."""
    async for attempt in AsyncRetrying(
        retry=retry_if_exception(is_transient_error),
        wait=wait_exponential(multiplier=min_wait, min=min_wait, max=max_wait),
        stop=stop_after_attempt(max_attempts),
        reraise=True,
        before_sleep=_log_retry,
    ):
        with attempt:
            return await func(*args, **kwargs)
