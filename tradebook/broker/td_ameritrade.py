# tradebook/broker/td_ameritrade.py
"""TD Ameritrade adapter (OAuth2 bearer tokens).

TD Ameritrade has merged into Charles Schwab; the v1 API shape is kept here.
"""

import logging
from datetime import datetime
from typing import Any, ClassVar

import httpx

from tradebook.broker.base import BaseBroker
from tradebook.broker.convert import (
    ZERO,
    ms_to_datetime,
    parse_iso,
    to_decimal,
    to_optional_decimal,
    utc_now,
)
from tradebook.broker.errors import BrokerError, BrokerErrorCode
from tradebook.broker.http import json_body
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
    OAuthConfig,
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

BASE_URL = "https://api.tdameritrade.com/v1"

OPEN_ORDER_STATUSES = frozenset({"QUEUED", "WORKING", "PENDING_ACTIVATION"})

TDA_STATUS_MAP: dict[str, OrderStatus] = {
    "AWAITING_PARENT_ORDER": OrderStatus.PENDING,
    "AWAITING_CONDITION": OrderStatus.PENDING,
    "AWAITING_MANUAL_REVIEW": OrderStatus.PENDING,
    "ACCEPTED": OrderStatus.PENDING,
    "PENDING_ACTIVATION": OrderStatus.PENDING,
    "QUEUED": OrderStatus.OPEN,
    "WORKING": OrderStatus.OPEN,
    "FILLED": OrderStatus.FILLED,
    "CANCELED": OrderStatus.CANCELLED,
    "REJECTED": OrderStatus.REJECTED,
    "EXPIRED": OrderStatus.EXPIRED,
}

TDA_ORDER_TYPE_MAP: dict[str, OrderType] = {
    "MARKET": OrderType.MARKET,
    "LIMIT": OrderType.LIMIT,
    "STOP": OrderType.STOP,
    "STOP_LIMIT": OrderType.STOP_LIMIT,
    "TRAILING_STOP": OrderType.TRAILING_STOP,
}

TDA_DURATION_MAP: dict[str, TimeInForce] = {
    "DAY": TimeInForce.GTC,
    "GOOD_TILL_CANCEL": TimeInForce.GTC,
    "FILL_OR_KILL": TimeInForce.FOK,
    "IMMEDIATE_OR_CANCEL": TimeInForce.IOC,
}

TDA_ASSET_TYPE_MAP: dict[str, AssetType] = {
    "EQUITY": AssetType.STOCK,
    "ETF": AssetType.ETF,
    "OPTION": AssetType.OPTION,
    "FIXED_INCOME": AssetType.BOND,
    "INDEX": AssetType.INDEX,
    "CURRENCY": AssetType.FOREX,
}


def _instruction_side(instruction: str) -> OrderSide:
    # BUY, BUY_TO_OPEN, BUY_TO_COVER, BUY_TO_CLOSE vs the SELL variants
    return OrderSide.BUY if instruction.upper().startswith("BUY") else OrderSide.SELL


class TDAmeritradeBroker(BaseBroker):
    """Broker adapter for TD Ameritrade."""

    metadata = BrokerMetadata(
        id="td_ameritrade",
        name="td_ameritrade",
        display_name="TD Ameritrade",
        logo="/brokers/tda.svg",
        category=BrokerCategory.STOCKS,
        connection_type=ConnectionType.OAUTH,
        features=(BrokerFeature.SPOT, BrokerFeature.MARGIN, BrokerFeature.OPTIONS),
        supported_asset_types=(AssetType.STOCK, AssetType.ETF, AssetType.OPTION),
        api_docs_url="https://developer.tdameritrade.com/apis",
        website_url="https://www.tdameritrade.com",
        supports_testnet=False,
        supports_oauth=True,
        rate_limits=RateLimits(requests_per_minute=120, orders_per_second=2),
    )

    oauth_config: ClassVar[OAuthConfig] = OAuthConfig(
        client_id="",
        token_url=f"{BASE_URL}/oauth2/token",
        authorization_url="https://auth.tdameritrade.com/auth",
        scopes=("PlaceTrades", "AccountAccess", "MoveMoney"),
    )

    def __init__(self, client: httpx.AsyncClient | None = None, settings=None):
        super().__init__(client=client, settings=settings)
        self._account_id: str | None = None

    @property
    def account_id(self) -> str | None:
        return self._account_id

    @property
    def client_id(self) -> str:
        return self._settings.tda_client_id or self.oauth_config.client_id

    def _validate_credentials(self, credentials: BrokerCredentials) -> None:
        if not credentials.access_token:
            raise BrokerError(
                "TD Ameritrade requires OAuth authentication",
                code=BrokerErrorCode.INVALID_CREDENTIALS,
            )

    def _on_disconnect(self) -> None:
        self._account_id = None

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def test_connection(self, credentials: BrokerCredentials) -> ConnectionTestResult:
        try:
            accounts = await self._request("/accounts", credentials=credentials)
        except BrokerError as e:
            if e.code == BrokerErrorCode.INVALID_CREDENTIALS:
                return ConnectionTestResult.failed(
                    "Access token expired. Please re-authenticate.", error_code=e.broker_code
                )
            return ConnectionTestResult.from_error(e)

        if not isinstance(accounts, list) or not accounts:
            return ConnectionTestResult.failed("No accounts found")

        ids = [a["securitiesAccount"]["accountId"] for a in accounts]
        if credentials.account_id in ids:
            index = ids.index(credentials.account_id)
        else:
            index = 0
        account = accounts[index]["securitiesAccount"]
        self._account_id = account["accountId"]

        return ConnectionTestResult(
            success=True,
            account_info=AccountInfo(
                id=self._account_id,
                name=f"TDA {account.get('type', '')}".strip(),
                permissions=(BrokerPermission.READ, BrokerPermission.TRADE),
            ),
        )

    async def refresh_auth(self) -> BrokerCredentials:
        """Exchange the refresh token for a new access token."""
        credentials = self._require_credentials()
        refreshed = await exchange_refresh_token(
            self._http, self.oauth_config.token_url, credentials, self.client_id
        )
        self._store_refreshed_credentials(refreshed)
        logger.info("TD Ameritrade access token refreshed")
        return refreshed

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def get_accounts(self) -> list[BrokerAccount]:
        self._require_credentials()
        accounts = await self._request("/accounts")
        return [self._map_account(a["securitiesAccount"]) for a in accounts or []]

    async def get_account(self) -> BrokerAccount:
        account = await self._securities_account()
        return self._map_account(account)

    async def get_balances(self) -> list[Balance]:
        account = await self._securities_account()
        current = account.get("currentBalances") or {}
        cash = to_decimal(current.get("cashBalance"))
        available = to_decimal(current.get("cashAvailableForTrading"), default=cash)
        return [Balance.from_total("USD", cash, min(available, cash), usd_value=cash)]

    async def _securities_account(self, fields: str | None = None) -> dict[str, Any]:
        account_id = self._require_account()
        params = {"fields": fields} if fields else None
        data = await self._request(f"/accounts/{account_id}", params=params)
        return data.get("securitiesAccount") or {}

    def _map_account(self, account: dict[str, Any]) -> BrokerAccount:
        current = account.get("currentBalances") or {}
        return BrokerAccount(
            id=str(account["accountId"]),
            name=f"TD Ameritrade {account.get('type', '')}".strip(),
            type=AccountType.LIVE,
            currency="USD",
            balance=to_decimal(current.get("liquidationValue") or current.get("accountValue")),
            available_balance=to_decimal(
                current.get("availableFunds") or current.get("cashAvailableForTrading")
            ),
            permissions=(BrokerPermission.READ, BrokerPermission.TRADE, BrokerPermission.MARGIN),
            margin_used=to_optional_decimal(current.get("maintenanceRequirement")),
            margin_available=to_optional_decimal(current.get("buyingPower")),
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
        account_id = self._require_account()

        params: dict[str, Any] = {"type": "TRADE"}
        if symbol:
            params["symbol"] = symbol
        if start_time:
            params["startDate"] = start_time.date().isoformat()
        if end_time:
            params["endDate"] = end_time.date().isoformat()

        rows = await self._request(f"/accounts/{account_id}/transactions", params=params)
        trades = [self.map_trade(t) for t in rows or [] if t.get("type") == "TRADE"]
        trades.sort(key=lambda t: t.created_at, reverse=True)
        return trades[: limit or self._settings.default_trade_limit]

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    async def get_positions(self) -> list[Position]:
        account = await self._securities_account(fields="positions")
        return [
            self.map_position(p)
            for p in account.get("positions") or []
            if to_decimal(p.get("longQuantity")) != ZERO or to_decimal(p.get("shortQuantity")) != ZERO
        ]

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def get_open_orders(self, symbol: str | None = None) -> list[Order]:
        account_id = self._require_account()
        rows = await self._request(f"/accounts/{account_id}/orders")
        orders = [self._map_order(o) for o in rows or [] if o.get("status") in OPEN_ORDER_STATUSES]
        if symbol:
            orders = [o for o in orders if o.symbol == symbol]
        return orders

    def _map_order(self, o: dict[str, Any]) -> Order:
        legs = o.get("orderLegCollection") or [{}]
        leg = legs[0]
        entered_at = parse_iso(o.get("enteredTime"))
        return Order(
            id=str(o["orderId"]),
            client_order_id=o.get("tag") or None,
            symbol=(leg.get("instrument") or {}).get("symbol", ""),
            side=_instruction_side(leg.get("instruction", "")),
            type=TDA_ORDER_TYPE_MAP.get(o.get("orderType", ""), OrderType.MARKET),
            quantity=to_decimal(o.get("quantity")),
            price=to_optional_decimal(o.get("price")),
            stop_price=to_optional_decimal(o.get("stopPrice")),
            time_in_force=TDA_DURATION_MAP.get(o.get("duration", ""), TimeInForce.GTC),
            status=TDA_STATUS_MAP.get(o.get("status", ""), OrderStatus.PENDING),
            filled_quantity=to_decimal(o.get("filledQuantity")),
            created_at=entered_at,
            updated_at=parse_iso(o["closeTime"]) if o.get("closeTime") else entered_at,
        )

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------

    async def get_symbols(self) -> list[Symbol]:
        # Instruments are searched individually; there is no listing endpoint
        return []

    async def get_ticker(self, symbol: str) -> Ticker:
        self._require_credentials()
        try:
            data = await self._request(f"/marketdata/{symbol}/quotes")
        except BrokerError as e:
            if e.code == BrokerErrorCode.UNKNOWN_ERROR:
                raise BrokerError(
                    f"Failed to get ticker for {symbol}",
                    code=BrokerErrorCode.INVALID_SYMBOL,
                    broker_code=e.broker_code,
                ) from e
            raise

        quote = data.get(symbol) if isinstance(data, dict) else None
        if not quote:
            raise BrokerError(f"No quote for {symbol}", code=BrokerErrorCode.INVALID_SYMBOL)

        return Ticker(
            symbol=quote.get("symbol", symbol),
            last_price=to_decimal(quote.get("lastPrice")),
            bid_price=to_decimal(quote.get("bidPrice")),
            ask_price=to_decimal(quote.get("askPrice")),
            high_24h=to_decimal(quote.get("highPrice")),
            low_24h=to_decimal(quote.get("lowPrice")),
            volume_24h=to_decimal(quote.get("totalVolume")),
            price_change_24h=to_decimal(quote.get("netChange")),
            price_change_percent_24h=to_decimal(quote.get("netPercentChangeInDouble")),
            timestamp=ms_to_datetime(quote.get("quoteTimeInLong")),
        )

    # ------------------------------------------------------------------
    # Mapping
    # ------------------------------------------------------------------

    def map_trade(self, broker_trade: dict[str, Any]) -> Trade:
        t = broker_trade
        item = t.get("transactionItem") or {}
        quantity = abs(to_decimal(item.get("amount")))
        price = to_decimal(item.get("price"))
        fees = sum((to_decimal(v) for v in (t.get("fees") or {}).values()), ZERO)
        executed_at = parse_iso(t.get("transactionDate"))
        return Trade(
            id=f"td_ameritrade_{t['transactionId']}",
            broker_id="td_ameritrade",
            broker_order_id=str(t.get("orderId", "")),
            symbol=(item.get("instrument") or {}).get("symbol", ""),
            side=_instruction_side(item.get("instruction", "")),
            type=OrderType.MARKET,
            quantity=quantity,
            price=price,
            filled_quantity=quantity,
            avg_fill_price=price,
            status=OrderStatus.FILLED,
            fee=fees,
            fee_currency="USD",
            created_at=executed_at,
            updated_at=parse_iso(t["settlementDate"]) if t.get("settlementDate") else executed_at,
            raw=dict(t),
        )

    def map_position(self, broker_position: dict[str, Any]) -> Position:
        p = broker_position
        instrument = p.get("instrument") or {}
        long_qty = to_decimal(p.get("longQuantity"))
        short_qty = to_decimal(p.get("shortQuantity"))
        is_long = long_qty > ZERO
        quantity = long_qty if is_long else short_qty

        average_price = to_decimal(p.get("averagePrice"))
        market_value = to_decimal(p.get("marketValue"))
        cost_basis = quantity * average_price
        # Short market values are reported negative
        if is_long:
            unrealized = market_value - cost_basis
        else:
            unrealized = cost_basis - abs(market_value)
        now = utc_now()

        return Position(
            id=f"td_ameritrade_{instrument.get('symbol', '')}",
            symbol=instrument.get("symbol", ""),
            side=PositionSide.LONG if is_long else PositionSide.SHORT,
            quantity=quantity,
            entry_price=average_price,
            current_price=abs(market_value) / quantity if quantity else ZERO,
            unrealized_pnl=unrealized,
            realized_pnl=ZERO,
            asset_type=TDA_ASSET_TYPE_MAP.get(instrument.get("assetType", ""), AssetType.STOCK),
            cost_basis=cost_basis,
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
                "No TD Ameritrade account selected",
                code=BrokerErrorCode.INVALID_CREDENTIALS,
            )
        return self._account_id

    async def _request(
        self,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        credentials: BrokerCredentials | None = None,
    ) -> Any:
        """GET with bearer auth; explicit credentials mark a probe that never refreshes."""

        async def send() -> httpx.Response:
            current = credentials or self._require_credentials()
            return await self._http.request(
                "GET",
                f"{BASE_URL}{path}",
                params=params,
                headers={"Authorization": f"Bearer {current.access_token}"},
            )

        if credentials is not None:
            response = await send()
        else:
            response = await send_with_refresh(send, self.refresh_auth)

        if not response.is_success:
            body = json_body(response)
            message = body.get("error") if isinstance(body, dict) else None
            self._http.raise_for_status(response, message=message)
        return json_body(response)
