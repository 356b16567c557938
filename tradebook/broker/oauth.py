"""OAuth2 token handling shared by the equities brokers."""

import logging
from collections.abc import Awaitable, Callable

import httpx

from tradebook.broker.errors import BrokerError, BrokerErrorCode
from tradebook.broker.http import RestClient, json_body
from tradebook.broker.models import BrokerCredentials

logger = logging.getLogger(__name__)


async def exchange_refresh_token(
    http: RestClient,
    token_url: str,
    credentials: BrokerCredentials,
    client_id: str,
) -> BrokerCredentials:
    """Exchange credentials.refresh_token for a new access token.

    Returns:
        Copy of credentials with the new access/refresh token and expiry

    Raises:
        BrokerError(INVALID_CREDENTIALS) if there is no refresh token or the
        token endpoint rejects it
    """
    if not credentials.refresh_token:
        raise BrokerError(
            "No refresh token available. Please re-authenticate.",
            code=BrokerErrorCode.INVALID_CREDENTIALS,
        )

    response = await http.request(
        "POST",
        token_url,
        data={
            "grant_type": "refresh_token",
            "refresh_token": credentials.refresh_token,
            "client_id": client_id,
        },
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )

    if not response.is_success:
        logger.warning("Token refresh rejected with status %s", response.status_code)
        raise BrokerError(
            "Failed to refresh access token. Please re-authenticate.",
            code=BrokerErrorCode.INVALID_CREDENTIALS,
            broker_code=str(response.status_code),
        )

    data = json_body(response)
    access_token = data.get("access_token") if isinstance(data, dict) else None
    if not access_token:
        raise BrokerError(
            "Token endpoint returned no access token",
            code=BrokerErrorCode.INVALID_CREDENTIALS,
        )

    return credentials.with_tokens(
        access_token=access_token,
        refresh_token=data.get("refresh_token"),
        expires_in=data.get("expires_in"),
    )


async def send_with_refresh(
    send: Callable[[], Awaitable[httpx.Response]],
    refresh: Callable[[], Awaitable[BrokerCredentials]],
) -> httpx.Response:
    """Send an authenticated request, refreshing the token once on HTTP 401.

    send must read the current access token each time it is called so the
    retry uses the refreshed one. A second 401 is a hard failure.
    """
    response = await send()
    if response.status_code != 401:
        return response

    logger.info("Access token rejected, refreshing once")
    await refresh()

    response = await send()
    if response.status_code == 401:
        raise BrokerError(
            "Access token rejected after refresh. Please re-authenticate.",
            code=BrokerErrorCode.INVALID_CREDENTIALS,
            broker_code="401",
        )
    return response
