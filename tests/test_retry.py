"""Tests for the retry/timeout executor."""

from __future__ import annotations

import asyncio
import errno
import socket
from unittest.mock import AsyncMock, patch

import aiohttp
import pytest

from dockreach.errors import OperationTimeoutError, RetryExhaustedError
from dockreach.retry import (
    RetryPolicy,
    execute_with_retry,
    is_retryable_error,
    retry_with_timeout,
)

_FAST = RetryPolicy(max_attempts=3, timeout_ms=1000, initial_delay_ms=1)


class _HttpError(Exception):
    def __init__(self, status: int) -> None:
        super().__init__(f"HTTP {status}")
        self.status = status


class TestIsRetryableError:
    @pytest.mark.parametrize("status", [400, 401, 403])
    def test_client_errors_not_retried(self, status):
        assert is_retryable_error(_HttpError(status)) is False

    def test_status_code_attribute_also_checked(self):
        err = Exception("bad request")
        err.status_code = 400
        assert is_retryable_error(err) is False

    def test_server_error_retried(self):
        assert is_retryable_error(_HttpError(500)) is True

    def test_connection_refused(self):
        assert is_retryable_error(ConnectionRefusedError(errno.ECONNREFUSED, "refused"))

    def test_oserror_with_network_errno(self):
        assert is_retryable_error(OSError(errno.EHOSTUNREACH, "No route to host"))

    def test_dns_failure(self):
        assert is_retryable_error(socket.gaierror(-3, "Temporary failure in name resolution"))

    def test_aiohttp_connection_error(self):
        assert is_retryable_error(aiohttp.ClientConnectionError("boom"))

    def test_message_substring(self):
        assert is_retryable_error(RuntimeError("Network is unreachable"))

    def test_unknown_errors_default_to_retryable(self):
        assert is_retryable_error(ValueError("something odd")) is True


class TestExecuteWithRetry:
    @pytest.mark.asyncio
    async def test_first_attempt_success(self):
        op = AsyncMock(return_value="ok")
        result = await execute_with_retry(op, _FAST)
        assert result.value == "ok"
        assert result.attempts == 1
        op.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_succeeds_on_nth_attempt_and_reports_count(self):
        reset = ConnectionResetError("reset")
        op = AsyncMock(side_effect=[reset, reset, 42])
        result = await execute_with_retry(op, _FAST)
        assert result.value == 42
        assert result.attempts == 3

    @pytest.mark.asyncio
    async def test_exhaustion_carries_attempts_and_cause(self):
        cause = ConnectionRefusedError("refused")
        op = AsyncMock(side_effect=cause)
        with pytest.raises(RetryExhaustedError) as exc_info:
            await execute_with_retry(op, _FAST)
        assert exc_info.value.attempts == 3
        assert exc_info.value.last_error is cause
        assert "refused" in str(exc_info.value)
        assert op.await_count == 3

    @pytest.mark.asyncio
    async def test_non_retryable_fails_immediately_without_delay(self):
        op = AsyncMock(side_effect=_HttpError(401))
        with patch("dockreach.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
            with pytest.raises(_HttpError):
                await execute_with_retry(op, _FAST)
        op.assert_awaited_once()
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_backoff_delays_grow_geometrically(self):
        policy = RetryPolicy(max_attempts=4, initial_delay_ms=100, backoff_multiplier=2.0)
        op = AsyncMock(side_effect=ConnectionError("down"))
        with patch("dockreach.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
            with pytest.raises(RetryExhaustedError):
                await execute_with_retry(op, policy)
        assert [c.args[0] for c in sleep.await_args_list] == [0.1, 0.2, 0.4]

    @pytest.mark.asyncio
    async def test_timeout_is_never_retried(self):
        calls = 0

        async def slow():
            nonlocal calls
            calls += 1
            await asyncio.sleep(10)

        policy = RetryPolicy(max_attempts=3, timeout_ms=20, initial_delay_ms=1)
        with pytest.raises(OperationTimeoutError, match="20ms"):
            await execute_with_retry(slow, policy)
        assert calls == 1

    @pytest.mark.asyncio
    async def test_timeout_error_is_builtin_timeout(self):
        async def slow():
            await asyncio.sleep(10)

        with pytest.raises(TimeoutError):
            await execute_with_retry(slow, RetryPolicy(timeout_ms=10))

    @pytest.mark.asyncio
    async def test_operation_timeout_from_inside_is_not_retried(self):
        op = AsyncMock(side_effect=OperationTimeoutError("command timed out"))
        with pytest.raises(OperationTimeoutError, match="command timed out"):
            await execute_with_retry(op, _FAST)
        op.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_custom_predicate(self):
        policy = RetryPolicy(max_attempts=5, initial_delay_ms=1, should_retry=lambda e: False)
        op = AsyncMock(side_effect=ConnectionError("down"))
        with pytest.raises(ConnectionError):
            await execute_with_retry(op, policy)
        op.assert_awaited_once()


class TestRetryWithTimeout:
    @pytest.mark.asyncio
    async def test_returns_value_only(self):
        assert await retry_with_timeout(AsyncMock(return_value=7), _FAST) == 7

    @pytest.mark.asyncio
    async def test_overrides_replace_policy_fields(self):
        op = AsyncMock(side_effect=ConnectionError("down"))
        with pytest.raises(RetryExhaustedError) as exc_info:
            await retry_with_timeout(op, _FAST, max_attempts=1)
        assert exc_info.value.attempts == 1


class TestRetryPolicyFromConfig:
    def test_maps_config_fields(self):
        from dockreach.config import RetryConfig

        policy = RetryPolicy.from_config(
            RetryConfig(max_attempts=5, timeout_ms=100, initial_delay_ms=10, backoff_multiplier=3)
        )
        assert policy.max_attempts == 5
        assert policy.timeout_ms == 100
        assert policy.initial_delay_ms == 10
        assert policy.backoff_multiplier == 3.0
        assert policy.should_retry is is_retryable_error
