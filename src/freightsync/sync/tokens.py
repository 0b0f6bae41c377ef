"""
Access-token lifecycle checks for integration connections.

A connection whose token has expired is recoverable when it still holds a
refresh token: the engine refreshes automatically. Without one, the user has
to re-authenticate and the connection is flagged `requires_reauth`.
"""
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from freightsync.models.sync import TokenRefreshResult, TokenStatus, as_utc, utcnow
from freightsync.sync.retry import TokenRefreshFn

# Called with the connection's refresh token; returns the new token set.
RefreshCallback = Callable[[str], Awaitable[TokenRefreshResult]]


def check_token_status(connection, now: Optional[datetime] = None) -> TokenStatus:
    """
    Classify a connection's access token.

    Args:
        connection: Anything with access_token, refresh_token and
            token_expires_at attributes (usually an IntegrationConnection).
        now: Reference time; defaults to the current UTC time.
    """
    now = as_utc(now) if now is not None else utcnow()

    expires_at = connection.token_expires_at
    expired = not connection.access_token or (
        expires_at is not None and as_utc(expires_at) <= now
    )
    return TokenStatus(
        valid=not expired,
        expired=expired,
        requires_reauth=expired and not connection.refresh_token,
    )


def is_token_expiring(
    expires_at: Optional[datetime],
    buffer_seconds: int = 300,
    now: Optional[datetime] = None,
) -> bool:
    """True when there is no expiry on record or it falls within the buffer."""
    if expires_at is None:
        return True
    now = as_utc(now) if now is not None else utcnow()
    return as_utc(expires_at) <= now + timedelta(seconds=buffer_seconds)


def create_token_refresh_fn(
    connection, refresh_callback: RefreshCallback
) -> Optional[TokenRefreshFn]:
    """
    Bind `refresh_callback` to this connection's refresh token.

    Returns None when the connection has no refresh token, since there is
    nothing to refresh with.
    """
    refresh_token = connection.refresh_token
    if not refresh_token:
        return None

    async def refresh() -> TokenRefreshResult:
        return await refresh_callback(refresh_token)

    return refresh
