"""
Retry policy for calls to external systems.

Error codes are plain strings so adapters for very different providers
(REST accounting APIs, GPS tracker feeds) can report failures uniformly:

  - retryable: transient network / timeout / rate-limit / 5xx failures
  - token expired: the access token was rejected; one refresh is attempted
  - anything else: returned to the caller immediately

retry_with_backoff never raises. An exception escaping the operation is
converted into a failed attempt with a classified error code.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from freightsync.models.sync import (
    DEFAULT_RETRY_CONFIG,
    OperationResult,
    RetryConfig,
    RetryResult,
    TokenRefreshResult,
)

logger = logging.getLogger(__name__)

RETRYABLE_ERROR_CODES = frozenset({
    "NETWORK_ERROR",
    "TIMEOUT",
    "RATE_LIMITED",
    "SERVER_ERROR",
    "ECONNRESET",
    "ECONNREFUSED",
    "ETIMEDOUT",
    "500",
    "502",
    "503",
    "504",
    "429",
})

TOKEN_EXPIRED_ERROR_CODES = frozenset({
    "TOKEN_EXPIRED",
    "401",
    "UNAUTHORIZED",
    "INVALID_TOKEN",
})

TOKEN_REFRESH_FAILED = "TOKEN_REFRESH_FAILED"
UNKNOWN_ERROR = "UNKNOWN_ERROR"

RetryableOperation = Callable[[], Awaitable[OperationResult]]
TokenRefreshFn = Callable[[], Awaitable[TokenRefreshResult]]
SleepFn = Callable[[float], Awaitable[Any]]


def is_retryable_error(error_code: Optional[str]) -> bool:
    return error_code in RETRYABLE_ERROR_CODES


def is_token_expired_error(error_code: Optional[str]) -> bool:
    return error_code in TOKEN_EXPIRED_ERROR_CODES


def calculate_retry_delay(
    retry_count: int,
    base_delay_ms: int = 1000,
    max_delay_ms: int = 30000,
) -> int:
    """Exponential backoff: base * 2^retry_count, capped at max_delay_ms."""
    count = max(0, retry_count)
    return min(base_delay_ms * 2 ** count, max_delay_ms)


async def sleep(delay_ms: float) -> None:
    await asyncio.sleep(delay_ms / 1000)


def classify_exception(exc: BaseException) -> str:
    """Map an exception raised by an operation to an error code."""
    if isinstance(exc, ConnectionResetError):
        return "ECONNRESET"
    if isinstance(exc, ConnectionRefusedError):
        return "ECONNREFUSED"
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return "TIMEOUT"
    if isinstance(exc, ConnectionError):
        return "NETWORK_ERROR"
    return UNKNOWN_ERROR


async def _attempt(operation: RetryableOperation) -> OperationResult:
    try:
        return await operation()
    except Exception as exc:
        return OperationResult(
            success=False, error=str(exc) or type(exc).__name__,
            error_code=classify_exception(exc),
        )


async def _refresh(on_token_expired: TokenRefreshFn) -> TokenRefreshResult:
    try:
        return await on_token_expired()
    except Exception as exc:
        return TokenRefreshResult(success=False, error=str(exc) or type(exc).__name__)


async def retry_with_backoff(
    operation: RetryableOperation,
    config: RetryConfig = DEFAULT_RETRY_CONFIG,
    on_token_expired: Optional[TokenRefreshFn] = None,
    sleep_fn: SleepFn = sleep,
) -> RetryResult:
    """
    Call `operation` until it succeeds, fails permanently, or retries run out.

    Attempt 0 is the first call and does not count as a retry. A token-expired
    failure triggers at most one call to `on_token_expired`; if that succeeds
    the operation is replayed at once without a delay and without consuming a
    retry. If it fails the result carries TOKEN_REFRESH_FAILED. A token error
    after that one refresh is returned as is.

    Args:
        operation: Zero-arg coroutine function returning an OperationResult.
        config: Retry limits and backoff bounds.
        on_token_expired: Optional zero-arg coroutine function refreshing the
            connection's access token.
        sleep_fn: Awaited with the delay in milliseconds between retries.

    Returns:
        RetryResult with the final attempt's outcome and the retries consumed.
    """
    retry_count = 0
    token_refreshed = False
    refresh_attempted = False

    while True:
        result = await _attempt(operation)
        if result.success:
            return RetryResult(
                success=True,
                data=result.data,
                retry_count=retry_count,
                token_refreshed=token_refreshed,
            )

        code = result.error_code
        token_error = is_token_expired_error(code)

        if token_error and on_token_expired is not None and not refresh_attempted:
            refresh_attempted = True
            logger.info("Access token rejected (%s); refreshing", code)
            refresh = await _refresh(on_token_expired)
            if not refresh.success:
                logger.warning("Token refresh failed: %s", refresh.error)
                return RetryResult(
                    success=False,
                    error=refresh.error or "Token refresh failed",
                    error_code=TOKEN_REFRESH_FAILED,
                    retry_count=retry_count,
                    token_refreshed=False,
                )
            token_refreshed = True
            continue

        if not is_retryable_error(code) or retry_count >= config.max_retries:
            return RetryResult(
                success=False,
                error=result.error,
                error_code=code,
                retry_count=retry_count,
                token_refreshed=token_refreshed,
            )

        delay = calculate_retry_delay(
            retry_count, config.base_delay_ms, config.max_delay_ms
        )
        logger.warning(
            "Attempt %d failed with %s; retrying in %d ms",
            retry_count + 1, code, delay,
        )
        await sleep_fn(delay)
        retry_count += 1
