"""HTTP transport shared by the adapters.

Wraps httpx.AsyncClient and translates transport failures and HTTP error
statuses into BrokerError so no adapter leaks httpx exceptions.
"""

import logging
from typing import Any

import httpx

from tradebook.broker.errors import BrokerError, BrokerErrorCode, error_from_status

logger = logging.getLogger(__name__)


class RestClient:
    """Thin async HTTP helper owned by one adapter instance."""

    def __init__(
        self,
        broker_id: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
        verify: bool = True,
        connect_error_code: BrokerErrorCode = BrokerErrorCode.NETWORK_ERROR,
    ):
        """Initialize the client.

        Args:
            broker_id: Owning adapter id, used in log and error messages
            client: Pre-built client (tests inject httpx.MockTransport here)
            timeout: Request timeout in seconds when the client is built here
            verify: TLS verification when the client is built here
            connect_error_code: Code raised when the host cannot be reached
        """
        self._broker_id = broker_id
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout, verify=verify)
        self._connect_error_code = connect_error_code

    async def request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        json: Any = None,
        data: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Send a request. HTTP error statuses are returned, not raised."""
        try:
            return await self._client.request(
                method, url, params=params, headers=headers, json=json, data=data
            )
        except httpx.TimeoutException as e:
            raise BrokerError(
                f"{self._broker_id} request timed out",
                code=BrokerErrorCode.NETWORK_ERROR,
            ) from e
        except httpx.ConnectError as e:
            raise BrokerError(
                f"Cannot reach {self._broker_id} at {_host(url)}: {e}",
                code=self._connect_error_code,
            ) from e
        except httpx.RequestError as e:
            raise BrokerError(
                f"{self._broker_id} network error: {e}",
                code=BrokerErrorCode.NETWORK_ERROR,
            ) from e

    def raise_for_status(
        self,
        response: httpx.Response,
        message: str | None = None,
        broker_code: str | None = None,
    ) -> None:
        """Raise a BrokerError for non-2xx responses."""
        if response.is_success:
            return
        raise error_from_status(
            response.status_code,
            message or f"{self._broker_id} request failed with status {response.status_code}",
            broker_code=broker_code,
            retry_after=retry_after(response),
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def retry_after(response: httpx.Response) -> float | None:
    """Seconds from a Retry-After header, if present and numeric."""
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def json_body(response: httpx.Response) -> Any:
    """Decode a JSON body, returning {} for empty or non-JSON bodies."""
    try:
        return response.json()
    except ValueError:
        logger.debug("Non-JSON response body (status %s)", response.status_code)
        return {}


def _host(url: str) -> str:
    try:
        return httpx.URL(url).host
    except httpx.InvalidURL:
        return url
