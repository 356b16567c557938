# tradebook/broker/bybit.py
"""Bybit v5 adapter (unified trading account, USDT linear contracts).

Every response is wrapped in a {retCode, retMsg, result} envelope; retCode 0
means success regardless of the HTTP status.
"""

import logging
from datetime import datetime
from typing import Any

import httpx

from tradebook.broker.base import BaseBroker
from tradebook.broker.convert import (
    ZERO,
    count_decimals,
    datetime_to_ms,
    ms_to_datetime,
    to_decimal,
    to_optional_decimal,
)
from tradebook.broker.errors import BrokerError, BrokerErrorCode
from tradebook.broker.http import json_body, retry_after
from tradebook.broker.models import (
    OHLCV,
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
    MarginType,
    Order,
    OrderSide,
    OrderStatus,
    OrderType,
    Position,
    PositionSide,
    RateLimits,
    Symbol,
    SymbolStatus,
    Ticker,
    TimeInForce,
    Trade,
)
from tradebook.broker.signing import build_query, bybit_signature, now_ms

logger = logging.getLogger(__name__)

LIVE_URL = "https://api.bybit.com"
TESTNET_URL = "https://api-testnet.bybit.com"

BYBIT_ERROR_CODES: dict[int, BrokerErrorCode] = {
    10003: BrokerErrorCode.INVALID_CREDENTIALS,  # invalid api key
    10004: BrokerErrorCode.INVALID_CREDENTIALS,  # bad signature
    33004: BrokerErrorCode.INVALID_CREDENTIALS,  # api key expired
    10005: BrokerErrorCode.INSUFFICIENT_PERMISSIONS,
    10006: BrokerErrorCode.RATE_LIMITED,
    10018: BrokerErrorCode.RATE_LIMITED,
    10016: BrokerErrorCode.BROKER_UNAVAILABLE,
    110007: BrokerErrorCode.INSUFFICIENT_BALANCE,
}

BYBIT_STATUS_MAP: dict[str, OrderStatus] = {
    "Created": OrderStatus.PENDING,
    "New": OrderStatus.OPEN,
    "Untriggered": OrderStatus.OPEN,
    "PartiallyFilled": OrderStatus.PARTIALLY_FILLED,
    "Filled": OrderStatus.FILLED,
    "Cancelled": OrderStatus.CANCELLED,
    "PartiallyFilledCanceled": OrderStatus.CANCELLED,
    "Rejected": OrderStatus.REJECTED,
    "Deactivated": OrderStatus.EXPIRED,
    "Expired": OrderStatus.EXPIRED,
    "PendingCancel": OrderStatus.PENDING,
}

BYBIT_ORDER_TYPE_MAP: dict[str, OrderType] = {
    "Market": OrderType.MARKET,
    "Limit": OrderType.LIMIT,
    "Stop": OrderType.STOP,
    "StopLimit": OrderType.STOP_LIMIT,
}

BYBIT_TIME_IN_FORCE_MAP: dict[str, TimeInForce] = {
    "GTC": TimeInForce.GTC,
    "IOC": TimeInForce.IOC,
    "FOK": TimeInForce.FOK,
    "PostOnly": TimeInForce.GTC,
}


def map_ret_code(ret_code: int, message: str) -> BrokerErrorCode:
    """Translate a Bybit retCode into the shared taxonomy."""
    if ret_code in BYBIT_ERROR_CODES:
        return BYBIT_ERROR_CODES[ret_code]
    if ret_code == 10001 and "symbol" in message.lower():
        return BrokerErrorCode.INVALID_SYMBOL
    return BrokerErrorCode.UNKNOWN_ERROR


class BybitBroker(BaseBroker):
    """Broker adapter for Bybit via signed v5 REST."""

    metadata = BrokerMetadata(
        id="bybit",
        name="bybit",
        display_name="Bybit",
        logo="/exchanges/bybit.svg",
        category=BrokerCategory.CRYPTO_CEX,
        connection_type=ConnectionType.API_KEY,
        features=(
            BrokerFeature.SPOT,
            BrokerFeature.FUTURES,
            BrokerFeature.OPTIONS,
            BrokerFeature.COPY_TRADING,
        ),
        supported_asset_types=(AssetType.CRYPTO,),
        api_docs_url="https://bybit-exchange.github.io/docs/",
        website_url="https://www.bybit.com",
        supports_testnet=True,
        rate_limits=RateLimits(requests_per_minute=600, orders_per_second=10),
    )

    def __init__(self, client: httpx.AsyncClient | None = None, settings=None):
        super().__init__(client=client, settings=settings)
        self._base_url = LIVE_URL

    def _configure_environment(self, credentials: BrokerCredentials) -> None:
        self._base_url = TESTNET_URL if credentials.is_testnet else LIVE_URL

    async def test_connection(self, credentials: BrokerCredentials) -> ConnectionTestResult:
        try:
            key_info = await self._signed_request("/v5/user/query-api", credentials=credentials)
        except BrokerError as e:
            return ConnectionTestResult.from_error(e)

        permissions = [BrokerPermission.READ]
        granted = key_info.get("permissions") or {}
        if granted.get("SpotTrade") or granted.get("ContractTrade"):
            permissions.append(BrokerPermission.TRADE)
        if "AccountTransfer" in (granted.get("Wallet") or []):
            permissions.append(BrokerPermission.WITHDRAW)
        if granted.get("Options"):
            permissions.append(BrokerPermission.OPTIONS)

        return ConnectionTestResult(
            success=True,
            account_info=AccountInfo(
                id=str(key_info.get("id", "")),
                name=key_info.get("note") or "Bybit Account",
                permissions=tuple(permissions),
            ),
        )

    # ------------------------------------------------------------------
    # Account information
    # ------------------------------------------------------------------

    async def get_account(self) -> BrokerAccount:
        credentials = self._require_credentials()
        wallet = await self._wallet()

        return BrokerAccount(
            id="unified",
            name="Bybit Unified",
            type=AccountType.TESTNET if credentials.is_testnet else AccountType.LIVE,
            currency="USDT",
            balance=to_decimal(wallet.get("totalEquity")),
            available_balance=to_decimal(wallet.get("totalAvailableBalance")),
            permissions=(BrokerPermission.READ, BrokerPermission.TRADE),
            margin_used=to_optional_decimal(wallet.get("totalInitialMargin")),
            margin_available=to_optional_decimal(wallet.get("totalAvailableBalance")),
            unrealized_pnl=to_decimal(wallet.get("totalPerpUPL")),
        )

    async def get_balances(self) -> list[Balance]:
        self._require_credentials()
        wallet = await self._wallet()

        balances = []
        for c in wallet.get("coin") or []:
            total = to_decimal(c.get("walletBalance"))
            if total <= ZERO:
                continue
            # availableToWithdraw replaced availableBalance in later v5 releases
            available = c.get("availableToWithdraw") or c.get("availableBalance")
            free = to_decimal(available, default=total)
            balances.append(
                Balance.from_total(c["coin"], total, free, to_optional_decimal(c.get("usdValue")))
            )
        return balances

    async def _wallet(self) -> dict[str, Any]:
        data = await self._signed_request(
            "/v5/account/wallet-balance", {"accountType": "UNIFIED"}
        )
        accounts = data.get("list") or []
        return accounts[0] if accounts else {}

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
        self._require_credentials()

        params: dict[str, Any] = {
            "category": "linear",
            "limit": min(limit or self._settings.bybit_page_limit, 100),
        }
        if symbol:
            params["symbol"] = symbol
        if start_time:
            params["startTime"] = datetime_to_ms(start_time)
        if end_time:
            params["endTime"] = datetime_to_ms(end_time)

        rows: list[dict[str, Any]] = []
        cursor = None
        for _ in range(self._settings.bybit_max_pages):
            page_params = {**params, "cursor": cursor} if cursor else params
            data = await self._signed_request("/v5/execution/list", page_params)
            rows.extend(data.get("list") or [])
            cursor = data.get("nextPageCursor")
            if not cursor or (limit and len(rows) >= limit):
                break
        else:
            if cursor:
                logger.info(
                    "Bybit execution history truncated after %d pages",
                    self._settings.bybit_max_pages,
                )

        if limit:
            rows = rows[:limit]
        trades = [self.map_trade(row) for row in rows]
        return sorted(trades, key=lambda t: t.created_at, reverse=True)

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    async def get_positions(self) -> list[Position]:
        self._require_credentials()
        data = await self._signed_request(
            "/v5/position/list", {"category": "linear", "settleCoin": "USDT"}
        )
        return [
            self.map_position(p) for p in data.get("list") or [] if to_decimal(p.get("size")) != ZERO
        ]

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def get_open_orders(self, symbol: str | None = None) -> list[Order]:
        self._require_credentials()
        params: dict[str, Any] = {"category": "linear"}
        if symbol:
            params["symbol"] = symbol
        else:
            params["settleCoin"] = "USDT"
        data = await self._signed_request("/v5/order/realtime", params)

        return [
            Order(
                id=o["orderId"],
                client_order_id=o.get("orderLinkId") or None,
                symbol=o["symbol"],
                side=OrderSide(o["side"].lower()),
                type=BYBIT_ORDER_TYPE_MAP.get(o.get("orderType", ""), OrderType.MARKET),
                quantity=to_decimal(o.get("qty")),
                price=to_optional_decimal(o.get("price")),
                stop_price=to_optional_decimal(o.get("triggerPrice")),
                time_in_force=BYBIT_TIME_IN_FORCE_MAP.get(o.get("timeInForce", ""), TimeInForce.GTC),
                status=BYBIT_STATUS_MAP.get(o.get("orderStatus", ""), OrderStatus.PENDING),
                filled_quantity=to_decimal(o.get("cumExecQty")),
                avg_fill_price=to_optional_decimal(o.get("avgPrice")),
                created_at=ms_to_datetime(o.get("createdTime")),
                updated_at=ms_to_datetime(o.get("updatedTime")),
            )
            for o in data.get("list") or []
        ]

    # ------------------------------------------------------------------
    # Market data (public)
    # ------------------------------------------------------------------

    async def get_symbols(self) -> list[Symbol]:
        data = await self._public_request("/v5/market/instruments-info", {"category": "linear"})
        symbols = []
        for s in data.get("list") or []:
            lot = s.get("lotSizeFilter") or {}
            price_filter = s.get("priceFilter") or {}
            leverage = (s.get("leverageFilter") or {}).get("maxLeverage")
            symbols.append(
                Symbol(
                    symbol=s["symbol"],
                    base_asset=s.get("baseCoin", ""),
                    quote_asset=s.get("quoteCoin", ""),
                    status=SymbolStatus.TRADING if s.get("status") == "Trading" else SymbolStatus.HALTED,
                    min_quantity=to_decimal(lot.get("minOrderQty")),
                    max_quantity=to_decimal(lot.get("maxOrderQty")),
                    step_size=to_decimal(lot.get("qtyStep")),
                    min_notional=to_decimal(lot.get("minNotionalValue")),
                    price_precision=count_decimals(price_filter.get("tickSize", "")),
                    quantity_precision=count_decimals(lot.get("qtyStep", "")),
                    is_futures_trading_allowed=True,
                    max_leverage=int(float(leverage)) if leverage else None,
                )
            )
        return symbols

    async def get_ticker(self, symbol: str) -> Ticker:
        data = await self._public_request(
            "/v5/market/tickers", {"category": "linear", "symbol": symbol}
        )
        rows = data.get("list") or []
        if not rows:
            raise BrokerError(
                f"Unknown Bybit symbol: {symbol}", code=BrokerErrorCode.INVALID_SYMBOL
            )
        t = rows[0]
        last_price = to_decimal(t.get("lastPrice"))
        change_ratio = to_decimal(t.get("price24hPcnt"))
        prev_price = to_decimal(t.get("prevPrice24h"))
        return Ticker(
            symbol=t["symbol"],
            last_price=last_price,
            bid_price=to_decimal(t.get("bid1Price")),
            ask_price=to_decimal(t.get("ask1Price")),
            high_24h=to_decimal(t.get("highPrice24h")),
            low_24h=to_decimal(t.get("lowPrice24h")),
            volume_24h=to_decimal(t.get("volume24h")),
            price_change_24h=last_price - prev_price if prev_price else None,
            price_change_percent_24h=change_ratio * 100,
            timestamp=ms_to_datetime(data.get("time")),
        )

    async def get_ohlcv(
        self,
        symbol: str,
        interval: str,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        limit: int | None = None,
    ) -> list[OHLCV]:
        params: dict[str, Any] = {"category": "linear", "symbol": symbol, "interval": interval}
        if start_time:
            params["start"] = datetime_to_ms(start_time)
        if end_time:
            params["end"] = datetime_to_ms(end_time)
        if limit:
            params["limit"] = limit

        data = await self._public_request("/v5/market/kline", params)
        # Bybit returns newest first
        candles = [
            OHLCV(
                timestamp=ms_to_datetime(k[0]),
                open=to_decimal(k[1]),
                high=to_decimal(k[2]),
                low=to_decimal(k[3]),
                close=to_decimal(k[4]),
                volume=to_decimal(k[5]),
            )
            for k in data.get("list") or []
        ]
        return sorted(candles, key=lambda c: c.timestamp)

    # ------------------------------------------------------------------
    # Mapping
    # ------------------------------------------------------------------

    def map_trade(self, broker_trade: dict[str, Any]) -> Trade:
        t = broker_trade
        qty = to_decimal(t.get("execQty"))
        price = to_decimal(t.get("execPrice"))
        executed_at = ms_to_datetime(t.get("execTime"))
        return Trade(
            id=f"bybit_{t['execId']}",
            broker_id="bybit",
            broker_order_id=t.get("orderId", ""),
            symbol=t["symbol"],
            side=OrderSide(t["side"].lower()),
            type=BYBIT_ORDER_TYPE_MAP.get(t.get("orderType", ""), OrderType.MARKET),
            quantity=qty,
            price=price,
            filled_quantity=qty,
            avg_fill_price=price,
            status=OrderStatus.FILLED,
            fee=to_decimal(t.get("execFee")),
            fee_currency=t.get("feeCurrency") or "USDT",
            created_at=executed_at,
            updated_at=executed_at,
            raw=dict(t),
        )

    def map_position(self, broker_position: dict[str, Any]) -> Position:
        p = broker_position
        return Position(
            id=f"bybit_{p['symbol']}_{p.get('side', '')}",
            symbol=p["symbol"],
            side=PositionSide.LONG if p.get("side") == "Buy" else PositionSide.SHORT,
            quantity=to_decimal(p.get("size")),
            entry_price=to_decimal(p.get("avgPrice") or p.get("entryPrice")),
            current_price=to_decimal(p.get("markPrice")),
            unrealized_pnl=to_decimal(p.get("unrealisedPnl")),
            realized_pnl=to_decimal(p.get("cumRealisedPnl")),
            leverage=to_optional_decimal(p.get("leverage")),
            liquidation_price=to_optional_decimal(p.get("liqPrice")),
            margin_type=MarginType.CROSS if p.get("tradeMode", 0) == 0 else MarginType.ISOLATED,
            asset_type=AssetType.CRYPTO,
            created_at=ms_to_datetime(p.get("createdTime")),
            updated_at=ms_to_datetime(p.get("updatedTime")),
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _signed_request(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        *,
        credentials: BrokerCredentials | None = None,
    ) -> dict[str, Any]:
        credentials = credentials or self._require_credentials()
        query = build_query(params or {})
        timestamp = now_ms()
        recv_window = self._settings.recv_window_ms

        url = f"{self._base_url}{path}?{query}" if query else f"{self._base_url}{path}"
        response = await self._http.request(
            "GET",
            url,
            headers={
                "X-BAPI-API-KEY": credentials.api_key,
                "X-BAPI-SIGN": bybit_signature(
                    timestamp, credentials.api_key, recv_window, query, credentials.api_secret
                ),
                "X-BAPI-TIMESTAMP": str(timestamp),
                "X-BAPI-RECV-WINDOW": str(recv_window),
            },
        )
        return self._unwrap(response)

    async def _public_request(self, path: str, params: dict[str, Any]) -> dict[str, Any]:
        response = await self._http.request("GET", f"{self._base_url}{path}", params=params)
        return self._unwrap(response)

    def _unwrap(self, response: httpx.Response) -> dict[str, Any]:
        """Track rate limits, check the envelope and return its result."""
        self._track_rate_limit(response)

        body = json_body(response)
        if not isinstance(body, dict) or "retCode" not in body:
            self._http.raise_for_status(response)
            raise BrokerError(
                "Bybit returned an unexpected response body",
                code=BrokerErrorCode.UNKNOWN_ERROR,
            )

        ret_code = body["retCode"]
        if ret_code != 0:
            message = body.get("retMsg") or "Bybit request failed"
            raise BrokerError(
                message,
                code=map_ret_code(ret_code, message),
                broker_code=str(ret_code),
                retry_after=retry_after(response),
            )
        if "time" in body and isinstance(body.get("result"), dict):
            return {"time": body["time"], **body["result"]}
        return body.get("result") or {}

    def _track_rate_limit(self, response: httpx.Response) -> None:
        remaining = response.headers.get("X-Bapi-Limit-Status")
        if remaining is None or not remaining.isdigit():
            return
        reset = response.headers.get("X-Bapi-Limit-Reset-Timestamp")
        reset_at = ms_to_datetime(reset) if reset and reset.isdigit() else None
        self.update_rate_limit(int(remaining), reset_at)
