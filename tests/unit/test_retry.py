"""Tests for the retry policy: backoff delays, retryable codes, token refresh."""
from unittest.mock import AsyncMock

import pytest

from freightsync.models.sync import OperationResult, RetryConfig, TokenRefreshResult
from freightsync.sync.retry import (
    TOKEN_REFRESH_FAILED,
    calculate_retry_delay,
    classify_exception,
    is_retryable_error,
    is_token_expired_error,
    retry_with_backoff,
)

FAST = RetryConfig(max_retries=3, base_delay_ms=10, max_delay_ms=100)


def failing(code: str) -> OperationResult:
    return OperationResult(success=False, error=f"failed with {code}", error_code=code)


class TestCalculateRetryDelay:
    def test_doubles_each_retry(self):
        assert [calculate_retry_delay(n, 10, 1000) for n in range(4)] == [10, 20, 40, 80]

    def test_capped_at_max(self):
        assert calculate_retry_delay(10, 1000, 30000) == 30000

    def test_defaults(self):
        assert calculate_retry_delay(0) == 1000
        assert calculate_retry_delay(5) == 30000

    def test_negative_count_treated_as_zero(self):
        assert calculate_retry_delay(-3, 10, 100) == 10


class TestErrorClassification:
    @pytest.mark.parametrize("code", ["NETWORK_ERROR", "TIMEOUT", "429", "503", "ECONNRESET"])
    def test_retryable(self, code):
        assert is_retryable_error(code)

    @pytest.mark.parametrize("code", ["VALIDATION_ERROR", "404", None, "TOKEN_EXPIRED"])
    def test_not_retryable(self, code):
        assert not is_retryable_error(code)

    @pytest.mark.parametrize("code", ["TOKEN_EXPIRED", "401", "UNAUTHORIZED", "INVALID_TOKEN"])
    def test_token_expired(self, code):
        assert is_token_expired_error(code)

    def test_classify_exception(self):
        assert classify_exception(ConnectionResetError()) == "ECONNRESET"
        assert classify_exception(ConnectionRefusedError()) == "ECONNREFUSED"
        assert classify_exception(TimeoutError()) == "TIMEOUT"
        assert classify_exception(ConnectionAbortedError()) == "NETWORK_ERROR"
        assert classify_exception(KeyError("x")) == "UNKNOWN_ERROR"


class TestRetryWithBackoff:
    @pytest.mark.asyncio
    async def test_success_first_attempt(self, fake_sleep):
        op = AsyncMock(return_value=OperationResult(success=True, data="ext-1"))
        result = await retry_with_backoff(op, FAST, sleep_fn=fake_sleep)

        assert result.success
        assert result.data == "ext-1"
        assert result.retry_count == 0
        assert op.await_count == 1
        assert fake_sleep.delays == []

    @pytest.mark.asyncio
    async def test_retryable_error_exhausts_retries(self, fake_sleep):
        op = AsyncMock(return_value=failing("NETWORK_ERROR"))
        result = await retry_with_backoff(op, FAST, sleep_fn=fake_sleep)

        assert not result.success
        assert result.error_code == "NETWORK_ERROR"
        assert result.retry_count == 3
        assert op.await_count == 4
        assert fake_sleep.delays == [10, 20, 40]

    @pytest.mark.asyncio
    async def test_non_retryable_error_fails_immediately(self, fake_sleep):
        op = AsyncMock(return_value=failing("VALIDATION_ERROR"))
        result = await retry_with_backoff(op, FAST, sleep_fn=fake_sleep)

        assert not result.success
        assert result.error_code == "VALIDATION_ERROR"
        assert result.retry_count == 0
        assert op.await_count == 1
        assert fake_sleep.delays == []

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self, fake_sleep):
        op = AsyncMock(side_effect=[
            failing("503"),
            failing("TIMEOUT"),
            OperationResult(success=True, data="ok"),
        ])
        result = await retry_with_backoff(op, FAST, sleep_fn=fake_sleep)

        assert result.success
        assert result.retry_count == 2
        assert fake_sleep.delays == [10, 20]

    @pytest.mark.asyncio
    async def test_zero_retries_means_single_attempt(self, fake_sleep):
        op = AsyncMock(return_value=failing("NETWORK_ERROR"))
        result = await retry_with_backoff(
            op, RetryConfig(max_retries=0, base_delay_ms=10, max_delay_ms=100),
            sleep_fn=fake_sleep,
        )
        assert op.await_count == 1
        assert result.retry_count == 0

    @pytest.mark.asyncio
    async def test_exception_is_classified_and_retried(self, fake_sleep):
        op = AsyncMock(side_effect=[
            ConnectionResetError("reset by peer"),
            OperationResult(success=True, data="ok"),
        ])
        result = await retry_with_backoff(op, FAST, sleep_fn=fake_sleep)

        assert result.success
        assert result.retry_count == 1

    @pytest.mark.asyncio
    async def test_unknown_exception_not_retried(self, fake_sleep):
        op = AsyncMock(side_effect=ValueError("bad payload"))
        result = await retry_with_backoff(op, FAST, sleep_fn=fake_sleep)

        assert not result.success
        assert result.error_code == "UNKNOWN_ERROR"
        assert result.error == "bad payload"
        assert op.await_count == 1


class TestTokenRefresh:
    @pytest.mark.asyncio
    async def test_refreshes_once_and_replays(self, fake_sleep):
        op = AsyncMock(side_effect=[
            failing("TOKEN_EXPIRED"),
            OperationResult(success=True, data="ok"),
        ])
        refresh = AsyncMock(return_value=TokenRefreshResult(success=True, access_token="new"))

        result = await retry_with_backoff(op, FAST, refresh, sleep_fn=fake_sleep)

        assert result.success
        assert result.token_refreshed
        assert result.retry_count == 0
        refresh.assert_awaited_once()
        assert fake_sleep.delays == []

    @pytest.mark.asyncio
    async def test_refresh_failure(self, fake_sleep):
        op = AsyncMock(return_value=failing("401"))
        refresh = AsyncMock(return_value=TokenRefreshResult(success=False, error="invalid_grant"))

        result = await retry_with_backoff(op, FAST, refresh, sleep_fn=fake_sleep)

        assert not result.success
        assert result.error_code == TOKEN_REFRESH_FAILED
        assert result.error == "invalid_grant"
        assert not result.token_refreshed
        assert op.await_count == 1

    @pytest.mark.asyncio
    async def test_refresh_exception_is_refresh_failure(self, fake_sleep):
        op = AsyncMock(return_value=failing("TOKEN_EXPIRED"))
        refresh = AsyncMock(side_effect=RuntimeError("token endpoint down"))

        result = await retry_with_backoff(op, FAST, refresh, sleep_fn=fake_sleep)

        assert result.error_code == TOKEN_REFRESH_FAILED

    @pytest.mark.asyncio
    async def test_refresh_attempted_at_most_once(self, fake_sleep):
        op = AsyncMock(return_value=failing("TOKEN_EXPIRED"))
        refresh = AsyncMock(return_value=TokenRefreshResult(success=True, access_token="new"))

        result = await retry_with_backoff(op, FAST, refresh, sleep_fn=fake_sleep)

        refresh.assert_awaited_once()
        assert not result.success
        assert result.error_code == "TOKEN_EXPIRED"
        assert result.token_refreshed
        # one attempt and one replay after the refresh, no backoff
        assert op.await_count == 2
        assert fake_sleep.delays == []
        assert result.retry_count == 0

    @pytest.mark.asyncio
    async def test_token_error_without_refresh_fn(self, fake_sleep):
        op = AsyncMock(return_value=failing("401"))
        result = await retry_with_backoff(op, FAST, None, sleep_fn=fake_sleep)

        assert not result.success
        assert result.error_code == "401"
        assert op.await_count == 1
