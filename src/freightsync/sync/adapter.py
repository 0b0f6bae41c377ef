"""
External system adapters.

ExternalApiAdapter is the capability contract the engine drives: one async
callable per operation. fetch_records is optional; a None value means the
remote system cannot be pulled from and pull sync fails fast with
NOT_SUPPORTED.

RestAdapter is a generic JSON REST implementation on httpx for providers that
expose a resource-per-entity API:

    POST {base_url}/{entity}          create, response carries the new id
    PUT  {base_url}/{entity}/{id}     update
    GET  {base_url}/{entity}          list (pull)

Transport and HTTP failures are mapped to the error codes the retry policy
understands instead of being raised.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from freightsync.models.sync import AdapterResponse, TokenRefreshResult, utcnow

logger = logging.getLogger(__name__)

CreateRecordFn = Callable[[Dict[str, Any]], Awaitable[AdapterResponse]]
UpdateRecordFn = Callable[[str, Dict[str, Any]], Awaitable[AdapterResponse]]
FetchRecordsFn = Callable[[Dict[str, Any]], Awaitable[AdapterResponse]]


@dataclass
class ExternalApiAdapter:
    create_record: CreateRecordFn
    update_record: UpdateRecordFn
    fetch_records: Optional[FetchRecordsFn] = None
    # Told the new access token after a refresh
    on_token_refreshed: Optional[Callable[[str], None]] = None
    # Releases network resources once the run is over
    aclose: Optional[Callable[[], Awaitable[None]]] = None

    @property
    def supports_pull(self) -> bool:
        return self.fetch_records is not None


def _error_code_for_status(status_code: int) -> str:
    return str(status_code)


def _error_message(response: httpx.Response) -> str:
    text = response.text
    if len(text) > 500:
        text = text[:500]
    return f"HTTP {response.status_code}: {text}" if text else f"HTTP {response.status_code}"


class RestAdapter:
    """JSON REST client for one remote entity of one connection."""

    def __init__(
        self,
        base_url: str,
        remote_entity: str,
        access_token: Optional[str] = None,
        timeout: float = 30.0,
        id_field: str = "id",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            base_url: API root, e.g. https://api.example.com/v1
            remote_entity: Resource path segment, e.g. "invoices".
            access_token: Bearer token sent on every request.
            timeout: Request timeout in seconds.
            id_field: Key holding the record id in create responses.
            transport: Optional httpx transport (MockTransport in tests).
        """
        self.base_url = base_url.rstrip("/")
        self.remote_entity = remote_entity.strip("/")
        self.access_token = access_token
        self.timeout = timeout
        self.id_field = id_field
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def for_mapping(cls, connection, mapping, timeout: float = 30.0, **kwargs) -> "RestAdapter":
        """Build an adapter from an IntegrationConnection and a SyncMapping."""
        config = connection.config or {}
        return cls(
            base_url=config.get("base_url", ""),
            remote_entity=mapping.remote_entity,
            access_token=connection.access_token,
            timeout=timeout,
            id_field=config.get("id_field", "id"),
            **kwargs,
        )

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers(),
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    def set_access_token(self, access_token: str) -> None:
        """Swap the bearer token after a refresh; later requests use it."""
        self.access_token = access_token
        if self._client is not None and not self._client.is_closed:
            self._client.headers["Authorization"] = f"Bearer {access_token}"

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "RestAdapter":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> AdapterResponse:
        try:
            response = await self.client.request(method, path, json=json, params=params)
        except httpx.TimeoutException as exc:
            return AdapterResponse(success=False, error=f"Request timed out: {exc}", error_code="TIMEOUT")
        except httpx.TransportError as exc:
            return AdapterResponse(success=False, error=f"Network error: {exc}", error_code="NETWORK_ERROR")

        if response.status_code >= 400:
            logger.debug("%s %s -> %s", method, path, response.status_code)
            return AdapterResponse(
                success=False,
                error=_error_message(response),
                error_code=_error_code_for_status(response.status_code),
            )

        if response.status_code == 204 or not response.content:
            return AdapterResponse(success=True)
        try:
            body = response.json()
        except ValueError:
            return AdapterResponse(
                success=False, error="Response body is not JSON", error_code="INVALID_RESPONSE"
            )
        return AdapterResponse(success=True, data=body)

    async def create_record(self, payload: Dict[str, Any]) -> AdapterResponse:
        result = await self._request("POST", f"/{self.remote_entity}", json=payload)
        if result.success and isinstance(result.data, dict):
            external_id = result.data.get(self.id_field)
            if external_id is not None:
                result.external_id = str(external_id)
        return result

    async def update_record(self, external_id: str, payload: Dict[str, Any]) -> AdapterResponse:
        return await self._request(
            "PUT", f"/{self.remote_entity}/{external_id}", json=payload
        )

    async def fetch_records(self, params: Dict[str, Any]) -> AdapterResponse:
        # Only scalar values make sense as query parameters
        query = {
            k: v for k, v in (params or {}).items()
            if isinstance(v, (str, int, float, bool))
        }
        result = await self._request("GET", f"/{self.remote_entity}", params=query)
        if not result.success:
            return result
        body = result.data
        if isinstance(body, dict):
            body = body.get("data", body.get("items", []))
        records: List[Dict[str, Any]] = list(body or [])
        return AdapterResponse(success=True, data=records)

    def as_adapter(self, pull: bool = True) -> ExternalApiAdapter:
        return ExternalApiAdapter(
            create_record=self.create_record,
            update_record=self.update_record,
            fetch_records=self.fetch_records if pull else None,
            on_token_refreshed=self.set_access_token,
            aclose=self.close,
        )


async def refresh_access_token(
    connection,
    refresh_token: str,
    timeout: float = 30.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> TokenRefreshResult:
    """
    OAuth2 refresh_token grant against the connection's token_url.

    Never raises: transport and HTTP failures come back as an unsuccessful
    TokenRefreshResult.
    """
    config = connection.config or {}
    token_url = config.get("token_url")
    if not token_url:
        return TokenRefreshResult(success=False, error="Connection has no token_url configured")

    form = {"grant_type": "refresh_token", "refresh_token": refresh_token}
    if config.get("client_id"):
        form["client_id"] = config["client_id"]
    if config.get("client_secret"):
        form["client_secret"] = config["client_secret"]

    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            response = await client.post(token_url, data=form)
    except httpx.HTTPError as exc:
        return TokenRefreshResult(success=False, error=f"Token endpoint unreachable: {exc}")

    if response.status_code >= 400:
        return TokenRefreshResult(success=False, error=_error_message(response))

    try:
        body = response.json()
    except ValueError:
        return TokenRefreshResult(success=False, error="Token response is not JSON")

    access_token = body.get("access_token")
    if not access_token:
        return TokenRefreshResult(success=False, error="Token response has no access_token")

    expires_in = body.get("expires_in")
    expires_at = utcnow() + timedelta(seconds=int(expires_in)) if expires_in else None
    return TokenRefreshResult(
        success=True,
        access_token=access_token,
        # Providers that do not rotate refresh tokens omit it
        refresh_token=body.get("refresh_token") or refresh_token,
        expires_at=expires_at,
    )
