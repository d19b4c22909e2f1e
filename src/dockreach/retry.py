"""Retry/timeout executor for every tunneled call.

Each attempt races the operation against a deadline. A deadline hit raises
:class:`OperationTimeoutError` immediately and is never retried; other
failures are retried with exponential backoff while ``should_retry`` agrees,
then surface as :class:`RetryExhaustedError`.
"""

from __future__ import annotations

import asyncio
import errno
import socket
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Generic, TypeVar

import aiohttp

from dockreach.errors import OperationTimeoutError, RetryExhaustedError
from dockreach.logger import logger

if TYPE_CHECKING:
    from dockreach.config import RetryConfig

T = TypeVar("T")

RetryPredicate = Callable[[BaseException], bool]

_RETRYABLE_ERRNOS = frozenset(
    {
        errno.ECONNREFUSED,
        errno.ECONNRESET,
        errno.ECONNABORTED,
        errno.ETIMEDOUT,
        errno.EHOSTUNREACH,
        errno.ENETUNREACH,
        errno.EPIPE,
    }
)
_RETRYABLE_MESSAGES = ("timeout", "timed out", "connection", "network")
_CLIENT_ERROR_STATUSES = frozenset({400, 401, 403})


def is_retryable_error(error: BaseException) -> bool:
    """Default predicate: network trouble retries, client errors never do."""
    status = getattr(error, "status", None) or getattr(error, "status_code", None)
    if status in _CLIENT_ERROR_STATUSES:
        return False

    if isinstance(error, socket.gaierror):
        return True  # DNS failure, usually transient
    if isinstance(error, OSError) and error.errno in _RETRYABLE_ERRNOS:
        return True
    if isinstance(error, (aiohttp.ClientConnectionError, ConnectionError, TimeoutError)):
        return True

    message = str(error).lower()
    if any(fragment in message for fragment in _RETRYABLE_MESSAGES):
        return True

    # Unrecognized failures are retried; callers that know better pass
    # their own predicate.
    return True


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    timeout_ms: int = 30000
    initial_delay_ms: int = 1000
    backoff_multiplier: float = 2.0
    should_retry: RetryPredicate = is_retryable_error

    @classmethod
    def from_config(cls, config: RetryConfig) -> RetryPolicy:
        return cls(
            max_attempts=config.max_attempts,
            timeout_ms=config.timeout_ms,
            initial_delay_ms=config.initial_delay_ms,
            backoff_multiplier=config.backoff_multiplier,
        )


@dataclass(frozen=True)
class RetryResult(Generic[T]):
    value: T
    attempts: int


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
) -> RetryResult[T]:
    """Run ``operation`` under ``policy`` and report how many attempts it took.

    Timeouts are never retried: neither the per-attempt deadline nor an
    :class:`OperationTimeoutError` raised by the operation itself.
    """
    policy = policy or RetryPolicy()
    max_attempts = max(1, policy.max_attempts)
    timeout_s = policy.timeout_ms / 1000
    delay_ms: float = policy.initial_delay_ms

    for attempt in range(1, max_attempts + 1):
        deadline = asyncio.timeout(timeout_s)
        try:
            async with deadline:
                value = await operation()
        except TimeoutError as exc:
            if deadline.expired():
                logger.error(
                    "Operation timed out",
                    attempt=attempt,
                    max_attempts=max_attempts,
                    timeout_ms=policy.timeout_ms,
                )
                raise OperationTimeoutError(
                    f"Operation timed out after {policy.timeout_ms}ms"
                ) from exc
            if isinstance(exc, OperationTimeoutError):
                # The operation enforced its own, shorter deadline.
                logger.error("Operation timed out", attempt=attempt, max_attempts=max_attempts)
                raise
            error: Exception = exc
        except Exception as exc:
            error = exc
        else:
            if attempt > 1:
                logger.info(
                    "Operation succeeded after retry",
                    attempt=attempt,
                    max_attempts=max_attempts,
                )
            return RetryResult(value=value, attempts=attempt)

        if not policy.should_retry(error):
            logger.error(
                "Operation failed, not retrying",
                attempt=attempt,
                max_attempts=max_attempts,
                err=str(error),
            )
            raise error

        if attempt >= max_attempts:
            logger.error("Operation failed on every attempt", attempts=attempt, err=str(error))
            raise RetryExhaustedError(attempt, error) from error

        logger.warning(
            "Operation failed, retrying",
            attempt=attempt,
            max_attempts=max_attempts,
            delay_ms=round(delay_ms),
            err=str(error),
        )
        await asyncio.sleep(delay_ms / 1000)
        delay_ms *= policy.backoff_multiplier

    raise AssertionError("unreachable")  # pragma: no cover


async def retry_with_timeout(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    **overrides: Any,
) -> T:
    """Like :func:`execute_with_retry` but returns only the value.

    Keyword overrides replace individual policy fields, e.g.
    ``retry_with_timeout(op, timeout_ms=5000)``.
    """
    policy = policy or RetryPolicy()
    if overrides:
        policy = replace(policy, **overrides)
    result = await execute_with_retry(operation, policy)
    return result.value
