# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Bounded retry for transient connectivity failures.

Every provider and database call issued while provisioning goes through
retry_async. Only transient failures are retried; logical errors such as
duplicates or validation failures surface on the first attempt.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, TypeVar

from sqlalchemy.exc import InterfaceError, OperationalError

from tenantforge.infrastructure.providers.base import ProviderError

if TYPE_CHECKING:
    from tenantforge.core.config.settings import RetrySettings

logger = logging.getLogger(__name__)

T = TypeVar("T")

TransientException = (TimeoutError, OSError, OperationalError, InterfaceError)


def is_transient_error(exc: BaseException) -> bool:
    """Decide whether a failed call may succeed when retried.

    Args:
        exc: The exception raised by the call.

    Returns:
        True for timeouts, connection errors, and provider errors flagged
        transient.
    """
    if isinstance(exc, ProviderError):
        return exc.transient
    return isinstance(exc, TransientException)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry limits applied to a single call.

    Attributes:
        max_attempts: Attempts including the first one.
        backoff_ms: Base delay, doubled after each failed attempt.
        timeout_seconds: Timeout of each attempt.
    """

    max_attempts: int = 3
    backoff_ms: int = 200
    timeout_seconds: float = 60.0

    @classmethod
    def from_settings(cls, settings: "RetrySettings") -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            backoff_ms=settings.backoff_ms,
            timeout_seconds=settings.timeout_seconds,
        )


async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[BaseException], bool] | None = None,
    operation: str = "call",
) -> T:
    """Run an async callable, retrying transient failures with backoff.

    Each attempt is bounded by policy.timeout_seconds. Between attempts the
    delay is backoff_ms * 2**(attempt-1), jittered by a factor in [0.5, 1.5].

    Args:
        func: Zero-argument callable returning a fresh awaitable per attempt.
        policy: Retry limits. Defaults to RetryPolicy().
        retryable: Predicate deciding whether an exception is retried.
            Defaults to is_transient_error.
        operation: Name used in log messages.

    Returns:
        The result of the first successful attempt.

    Raises:
        Exception: The last exception, once attempts are exhausted or the
            failure is not retryable.
    """
    policy = policy or RetryPolicy()
    retryable = retryable or is_transient_error
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_seconds)
        except Exception as exc:
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            jitter = random.uniform(0.5, 1.5)
            sleep_s = (policy.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * jitter
            logger.warning(
                "Transient failure in %s (attempt %d/%d), retrying in %.2fs: %s",
                operation,
                attempt,
                policy.max_attempts,
                sleep_s,
                exc,
            )
            await asyncio.sleep(sleep_s)
            attempt += 1
