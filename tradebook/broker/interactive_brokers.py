# tradebook/broker/interactive_brokers.py
"""Interactive Brokers adapter over the Client Portal Web API.

Two modes, chosen from the credentials at connect time:
- Gateway: a locally running Client Portal Gateway holds the session. No
  token is sent and the gateway's self-signed certificate is accepted
  unless TRADEBOOK_IBKR_VERIFY_TLS is set.
- OAuth: the hosted API with a bearer access token, refreshed on 401.
"""

import asyncio
import logging
import math
from datetime import datetime
from decimal import Decimal
from typing import Any

import httpx

from tradebook.broker.base import BaseBroker
from tradebook.broker.convert import (
    ZERO,
    datetime_to_ms,
    ms_to_datetime,
    to_decimal,
    to_optional_decimal,
    utc_now,
)
from tradebook.broker.errors import BrokerError, BrokerErrorCode
from tradebook.broker.http import RestClient, json_body
from tradebook.broker.models import (
    AccountInfo,
    AccountType,
    AssetType,
    Balance,
    BrokerAccount,
    BrokerCategory,
    BrokerCredentials,
    BrokerFeature,
    BrokerMetadata,
    BrokerPermission,
    ConnectionTestResult,
    ConnectionType,
    Order,
    OrderSide,
    OrderStatus,
    OrderType,
    Position,
    PositionSide,
    RateLimits,
    Symbol,
    Ticker,
    TimeInForce,
    Trade,
)
from tradebook.broker.oauth import exchange_refresh_token, send_with_refresh

logger = logging.getLogger(__name__)

# /iserver/account/trades only looks back this many days
MAX_TRADE_DAYS = 7
POSITIONS_PAGE_SIZE = 100

# Snapshot field ids: last, high, low, change, change %, bid, ask, volume
SNAPSHOT_FIELDS = "31,70,71,82,83,84,85,88"

IBKR_STATUS_MAP: dict[str, OrderStatus] = {
    "PendingSubmit": OrderStatus.PENDING,
    "PreSubmitted": OrderStatus.PENDING,
    "Submitted": OrderStatus.OPEN,
    "Filled": OrderStatus.FILLED,
    "Cancelled": OrderStatus.CANCELLED,
    "PendingCancel": OrderStatus.PENDING,
    "Inactive": OrderStatus.CANCELLED,
}

IBKR_ORDER_TYPE_MAP: dict[str, OrderType] = {
    "MKT": OrderType.MARKET,
    "LMT": OrderType.LIMIT,
    "STP": OrderType.STOP,
    "STP LMT": OrderType.STOP_LIMIT,
    "STPLMT": OrderType.STOP_LIMIT,
    "TRAIL": OrderType.TRAILING_STOP,
}

IBKR_ASSET_CLASS_MAP: dict[str, AssetType] = {
    "STK": AssetType.STOCK,
    "ETF": AssetType.ETF,
    "OPT": AssetType.OPTION,
    "FOP": AssetType.OPTION,
    "FUT": AssetType.FUTURE,
    "BOND": AssetType.BOND,
    "CASH": AssetType.FOREX,
    "CMDTY": AssetType.COMMODITY,
    "IND": AssetType.INDEX,
}

IBKR_TIME_IN_FORCE_MAP: dict[str, TimeInForce] = {
    "GTC": TimeInForce.GTC,
    "IOC": TimeInForce.IOC,
    "FOK": TimeInForce.FOK,
}


def _side(value: str) -> OrderSide:
    return OrderSide.BUY if value.upper() in ("B", "BUY", "BOT") else OrderSide.SELL


def _amount(summary: dict[str, Any], key: str) -> Decimal | None:
    """Read '<key>': {'amount': ...} from a portfolio summary."""
    entry = summary.get(key)
    if not isinstance(entry, dict):
        return None
    return to_decimal(entry.get("amount"), default=None)


def _currency(summary: dict[str, Any]) -> str:
    entry = summary.get("totalcashvalue")
    if isinstance(entry, dict) and entry.get("currency"):
        return entry["currency"]
    return "USD"


def _is_paper_account(account_id: str) -> bool:
    # Paper accounts are issued with a DU prefix
    return account_id.upper().startswith("DU")


class InteractiveBrokersBroker(BaseBroker):
    """Broker adapter for Interactive Brokers (gateway or OAuth)."""

    metadata = BrokerMetadata(
        id="interactive_brokers",
        name="interactive_brokers",
        display_name="Interactive Brokers",
        logo="/brokers/ibkr.svg",
        category=BrokerCategory.STOCKS,
        connection_type=ConnectionType.OAUTH,
        features=(
            BrokerFeature.SPOT,
            BrokerFeature.MARGIN,
            BrokerFeature.FUTURES,
            BrokerFeature.OPTIONS,
        ),
        supported_asset_types=(
            AssetType.STOCK,
            AssetType.ETF,
            AssetType.FOREX,
            AssetType.OPTION,
            AssetType.FUTURE,
            AssetType.BOND,
        ),
        api_docs_url="https://interactivebrokers.github.io/cpwebapi/",
        website_url="https://www.interactivebrokers.com",
        supports_testnet=True,
        supports_oauth=True,
        rate_limits=RateLimits(requests_per_minute=60, orders_per_second=5),
    )

    # An unreachable gateway is a broker outage, not a credentials problem
    connect_error_code = BrokerErrorCode.BROKER_UNAVAILABLE

    def __init__(self, client: httpx.AsyncClient | None = None, settings=None):
        super().__init__(client=client, settings=settings)
        # Only the local gateway may skip certificate checks (it serves a
        # self-signed certificate). OAuth and token requests use self._http.
        self._gateway_http = RestClient(
            self.metadata.id,
            client=client,
            timeout=self._settings.http_timeout_seconds,
            verify=self._settings.ibkr_verify_tls,
            connect_error_code=self.connect_error_code,
        )
        self._api = self._gateway_http
        self._base_url = self._settings.ibkr_gateway_url
        self._account_id: str | None = None

    @property
    def account_id(self) -> str | None:
        return self._account_id

    def _validate_credentials(self, credentials: BrokerCredentials) -> None:
        # Gateway mode needs no secret; the gateway session authenticates.
        return None

    def _configure_environment(self, credentials: BrokerCredentials) -> None:
        if credentials.access_token:
            self._base_url = self._settings.ibkr_oauth_url
            self._api = self._http
        else:
            self._base_url = self._settings.ibkr_gateway_url
            self._api = self._gateway_http

    def _on_disconnect(self) -> None:
        self._account_id = None

    async def aclose(self) -> None:
        await super().aclose()
        await self._gateway_http.aclose()

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def test_connection(self, credentials: BrokerCredentials) -> ConnectionTestResult:
        try:
            data = await self._request("GET", "/iserver/accounts", credentials=credentials)
        except BrokerError as e:
            if e.code == BrokerErrorCode.INVALID_CREDENTIALS:
                return ConnectionTestResult.failed(
                    "Session expired. Please re-authenticate with Client Portal Gateway.",
                    error_code=e.broker_code,
                )
            return ConnectionTestResult.from_error(e)

        accounts = data.get("accounts") or [] if isinstance(data, dict) else []
        if not accounts:
            return ConnectionTestResult.failed(
                "No accounts found. Please ensure Client Portal Gateway is authenticated."
            )

        self._account_id = credentials.account_id or data.get("selectedAccount") or accounts[0]
        return ConnectionTestResult(
            success=True,
            account_info=AccountInfo(
                id=self._account_id,
                name=f"IBKR {self._account_id}",
                permissions=(BrokerPermission.READ, BrokerPermission.TRADE),
            ),
        )

    async def refresh_auth(self) -> BrokerCredentials:
        """Renew the session.

        OAuth mode exchanges the refresh token; gateway mode asks the gateway
        to re-authenticate its brokerage session.
        """
        credentials = self._require_credentials()

        if credentials.access_token:
            refreshed = await exchange_refresh_token(
                self._http,
                self._settings.ibkr_token_url,
                credentials,
                self._settings.ibkr_client_id,
            )
            self._store_refreshed_credentials(refreshed)
            logger.info("Interactive Brokers access token refreshed")
            return refreshed

        response = await self._api.request("POST", f"{self._base_url}/iserver/reauthenticate")
        self._api.raise_for_status(response, message="Gateway re-authentication failed")
        logger.info("Interactive Brokers gateway session re-authenticated")
        return credentials

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def get_accounts(self) -> list[BrokerAccount]:
        self._require_credentials()
        data = await self._request("GET", "/iserver/accounts")
        account_ids = data.get("accounts") or []

        summaries = await asyncio.gather(
            *(self._summary(account_id) for account_id in account_ids),
            return_exceptions=True,
        )

        accounts = []
        for account_id, summary in zip(account_ids, summaries):
            if isinstance(summary, BaseException):
                logger.debug(f"Skipping inaccessible IBKR account {account_id}: {summary}")
                continue
            accounts.append(self._map_account(account_id, summary))
        return accounts

    async def get_account(self) -> BrokerAccount:
        account_id = self._require_account()
        summary = await self._summary(account_id)
        return self._map_account(account_id, summary)

    async def get_balances(self) -> list[Balance]:
        account_id = self._require_account()
        summary = await self._summary(account_id)

        cash = _amount(summary, "totalcashvalue")
        if cash is None:
            return []
        available = _amount(summary, "availablefunds")
        free = cash if available is None else available
        return [Balance.from_total(_currency(summary), cash, min(free, cash), usd_value=cash)]

    async def _summary(self, account_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/portfolio/{account_id}/summary")

    def _map_account(self, account_id: str, summary: dict[str, Any]) -> BrokerAccount:
        credentials = self._require_credentials()
        paper = credentials.is_testnet or _is_paper_account(account_id)
        return BrokerAccount(
            id=account_id,
            name=f"Interactive Brokers {account_id}",
            type=AccountType.PAPER if paper else AccountType.LIVE,
            currency=_currency(summary),
            balance=_amount(summary, "netliquidation") or ZERO,
            available_balance=_amount(summary, "availablefunds") or ZERO,
            permissions=(
                BrokerPermission.READ,
                BrokerPermission.TRADE,
                BrokerPermission.MARGIN,
                BrokerPermission.FUTURES,
                BrokerPermission.OPTIONS,
            ),
            margin_used=_amount(summary, "maintenancemarginreq"),
            margin_available=_amount(summary, "availablefunds"),
            unrealized_pnl=_amount(summary, "unrealizedpnl"),
        )

    # ------------------------------------------------------------------
    # Trade history
    # ------------------------------------------------------------------

    async def get_trades(
        self,
        symbol: str | None = None,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        limit: int | None = None,
    ) -> list[Trade]:
        self._require_account()

        params: dict[str, Any] = {}
        if start_time:
            elapsed_ms = datetime_to_ms(utc_now()) - datetime_to_ms(start_time)
            days = math.ceil(elapsed_ms / 86_400_000)
            params["days"] = min(max(days, 1), MAX_TRADE_DAYS)

        rows = await self._request("GET", "/iserver/account/trades", params=params or None)
        rows = rows if isinstance(rows, list) else []

        if symbol:
            rows = [t for t in rows if t.get("symbol") == symbol]
        if start_time:
            start_ms = datetime_to_ms(start_time)
            rows = [t for t in rows if int(t.get("trade_time_r", 0)) >= start_ms]
        if end_time:
            end_ms = datetime_to_ms(end_time)
            rows = [t for t in rows if int(t.get("trade_time_r", 0)) <= end_ms]

        trades = sorted((self.map_trade(t) for t in rows), key=lambda t: t.created_at, reverse=True)
        return trades[: limit or self._settings.default_trade_limit]

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    async def get_positions(self) -> list[Position]:
        account_id = self._require_account()

        rows: list[dict[str, Any]] = []
        for page in range(self._settings.ibkr_max_position_pages):
            batch = await self._request("GET", f"/portfolio/{account_id}/positions/{page}")
            if not isinstance(batch, list) or not batch:
                break
            rows.extend(batch)
            if len(batch) < POSITIONS_PAGE_SIZE:
                break

        return [self.map_position(p) for p in rows if to_decimal(p.get("position")) != ZERO]

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def get_open_orders(self, symbol: str | None = None) -> list[Order]:
        self._require_account()
        data = await self._request("GET", "/iserver/account/orders")
        rows = data.get("orders") or [] if isinstance(data, dict) else []
        if symbol:
            rows = [o for o in rows if o.get("ticker") == symbol]

        orders = []
        for o in rows:
            updated_at = ms_to_datetime(o.get("lastExecutionTime_r"))
            orders.append(
                Order(
                    id=str(o["orderId"]),
                    symbol=o.get("ticker", ""),
                    side=_side(o.get("side", "")),
                    type=IBKR_ORDER_TYPE_MAP.get(o.get("orderType", ""), OrderType.MARKET),
                    quantity=to_decimal(o.get("totalSize") or o.get("quantity")),
                    price=to_optional_decimal(o.get("price")),
                    stop_price=to_optional_decimal(o.get("auxPrice")),
                    time_in_force=IBKR_TIME_IN_FORCE_MAP.get(
                        (o.get("timeInForce") or "").upper(), TimeInForce.GTC
                    ),
                    status=IBKR_STATUS_MAP.get(o.get("status", ""), OrderStatus.PENDING),
                    filled_quantity=to_decimal(o.get("filledQuantity")),
                    avg_fill_price=to_optional_decimal(o.get("avgPrice")),
                    created_at=updated_at,
                    updated_at=updated_at,
                )
            )
        return orders

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------

    async def get_symbols(self) -> list[Symbol]:
        # No listing endpoint; contracts are resolved one at a time by search
        return []

    async def get_ticker(self, symbol: str) -> Ticker:
        self._require_credentials()
        matches = await self._request("GET", "/iserver/secdef/search", params={"symbol": symbol})
        conid = matches[0].get("conid") if isinstance(matches, list) and matches else None
        if not conid:
            raise BrokerError(f"Symbol {symbol} not found", code=BrokerErrorCode.INVALID_SYMBOL)

        snapshot = await self._request(
            "GET",
            "/iserver/marketdata/snapshot",
            params={"conids": conid, "fields": SNAPSHOT_FIELDS},
        )
        data = snapshot[0] if isinstance(snapshot, list) and snapshot else {}

        return Ticker(
            symbol=symbol,
            last_price=_snapshot_decimal(data, "31"),
            bid_price=_snapshot_decimal(data, "84"),
            ask_price=_snapshot_decimal(data, "85"),
            high_24h=_snapshot_decimal(data, "70"),
            low_24h=_snapshot_decimal(data, "71"),
            price_change_24h=_snapshot_decimal(data, "82"),
            price_change_percent_24h=_snapshot_decimal(data, "83"),
            volume_24h=_snapshot_decimal(data, "88"),
            timestamp=ms_to_datetime(data.get("_updated")),
        )

    # ------------------------------------------------------------------
    # Mapping
    # ------------------------------------------------------------------

    def map_trade(self, broker_trade: dict[str, Any]) -> Trade:
        t = broker_trade
        size = abs(to_decimal(t.get("size")))
        price = to_decimal(t.get("price"))
        executed_at = ms_to_datetime(t.get("trade_time_r"))
        return Trade(
            id=f"interactive_brokers_{t['execution_id']}",
            broker_id="interactive_brokers",
            broker_order_id=str(t.get("order_ref") or t.get("order_id") or t["execution_id"]),
            symbol=t.get("symbol", ""),
            side=_side(t.get("side", "")),
            type=OrderType.MARKET,
            quantity=size,
            price=price,
            filled_quantity=size,
            avg_fill_price=price,
            status=OrderStatus.FILLED,
            fee=abs(to_decimal(t.get("commission"))),
            fee_currency=t.get("currency") or "USD",
            created_at=executed_at,
            updated_at=executed_at,
            raw=dict(t),
        )

    def map_position(self, broker_position: dict[str, Any]) -> Position:
        p = broker_position
        quantity = to_decimal(p.get("position"))
        avg_cost = to_decimal(p.get("avgCost"))
        now = utc_now()
        return Position(
            id=f"interactive_brokers_{p['conid']}",
            symbol=p.get("ticker") or p.get("contractDesc", ""),
            side=PositionSide.LONG if quantity >= ZERO else PositionSide.SHORT,
            quantity=abs(quantity),
            entry_price=to_decimal(p.get("avgPrice"), default=avg_cost),
            current_price=to_decimal(p.get("mktPrice")),
            unrealized_pnl=to_decimal(p.get("unrealizedPnl")),
            realized_pnl=to_decimal(p.get("realizedPnl")),
            asset_type=IBKR_ASSET_CLASS_MAP.get(p.get("assetClass", ""), AssetType.STOCK),
            cost_basis=abs(quantity) * avg_cost,
            created_at=now,
            updated_at=now,
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _require_account(self) -> str:
        self._require_credentials()
        if not self._account_id:
            raise BrokerError(
                "No Interactive Brokers account selected",
                code=BrokerErrorCode.INVALID_CREDENTIALS,
            )
        return self._account_id

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        credentials: BrokerCredentials | None = None,
    ) -> Any:
        """Call the API; with explicit credentials the call is a probe and never refreshes."""

        def headers() -> dict[str, str]:
            current = credentials or self._credentials
            if current is not None and current.access_token:
                return {"Authorization": f"Bearer {current.access_token}"}
            return {}

        async def send() -> httpx.Response:
            return await self._api.request(
                method, f"{self._base_url}{path}", params=params, headers=headers()
            )

        if credentials is not None:
            response = await send()
        else:
            response = await send_with_refresh(send, self.refresh_auth)

        if not response.is_success:
            body = json_body(response)
            message = body.get("error") if isinstance(body, dict) else None
            self._api.raise_for_status(response, message=message)
        return json_body(response)


def _snapshot_decimal(data: dict[str, Any], field_id: str) -> Decimal:
    # Snapshot values may carry a prefix such as 'C' (close) or 'H' (halted)
    value = str(data.get(field_id) or "").lstrip("CH").replace(",", "").rstrip("%")
    return to_decimal(value)
