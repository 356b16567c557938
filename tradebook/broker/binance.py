# tradebook/broker/binance.py
"""Binance adapter (spot account, USD-M futures positions).

Requests are signed with HMAC-SHA256 over the literal query string; the API
key travels in the X-MBX-APIKEY header.

Binance has no "all my trades" endpoint. Trade history is fetched per symbol,
and when no symbol is given the symbols are derived from current non-zero
balances paired with the quote asset. Pairs that are no longer held (fully
exited positions) are therefore missed; pass explicit symbols to sync() to
cover them.
"""

import asyncio
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
from tradebook.broker.errors import BrokerError, BrokerErrorCode, error_from_status
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
from tradebook.broker.signing import binance_signature, build_binance_query, now_ms

logger = logging.getLogger(__name__)

LIVE_URL = "https://api.binance.com"
LIVE_FUTURES_URL = "https://fapi.binance.com"
TESTNET_URL = "https://testnet.binance.vision"
TESTNET_FUTURES_URL = "https://testnet.binancefuture.com"

# Valued 1:1 in USD for account totals.
STABLECOINS = frozenset({"USDT", "USDC", "BUSD", "FDUSD", "TUSD", "DAI"})

BINANCE_ERROR_CODES: dict[int, BrokerErrorCode] = {
    -1002: BrokerErrorCode.INVALID_CREDENTIALS,
    -1003: BrokerErrorCode.RATE_LIMITED,
    -1015: BrokerErrorCode.RATE_LIMITED,
    -1016: BrokerErrorCode.BROKER_UNAVAILABLE,
    -1022: BrokerErrorCode.INVALID_CREDENTIALS,
    -1121: BrokerErrorCode.INVALID_SYMBOL,
    -2010: BrokerErrorCode.ORDER_REJECTED,
    -2013: BrokerErrorCode.UNKNOWN_ERROR,  # order does not exist
    -2014: BrokerErrorCode.INVALID_CREDENTIALS,
    -2015: BrokerErrorCode.INVALID_CREDENTIALS,
    -2018: BrokerErrorCode.INSUFFICIENT_BALANCE,
    -2019: BrokerErrorCode.INSUFFICIENT_BALANCE,
}

BINANCE_STATUS_MAP: dict[str, OrderStatus] = {
    "NEW": OrderStatus.OPEN,
    "PARTIALLY_FILLED": OrderStatus.PARTIALLY_FILLED,
    "FILLED": OrderStatus.FILLED,
    "CANCELED": OrderStatus.CANCELLED,
    "PENDING_CANCEL": OrderStatus.PENDING,
    "REJECTED": OrderStatus.REJECTED,
    "EXPIRED": OrderStatus.EXPIRED,
    "EXPIRED_IN_MATCH": OrderStatus.EXPIRED,
}

BINANCE_ORDER_TYPE_MAP: dict[str, OrderType] = {
    "MARKET": OrderType.MARKET,
    "LIMIT": OrderType.LIMIT,
    "LIMIT_MAKER": OrderType.LIMIT,
    "STOP_LOSS": OrderType.STOP,
    "TAKE_PROFIT": OrderType.STOP,
    "STOP_LOSS_LIMIT": OrderType.STOP_LIMIT,
    "TAKE_PROFIT_LIMIT": OrderType.STOP_LIMIT,
}

BINANCE_SYMBOL_STATUS_MAP: dict[str, SymbolStatus] = {
    "TRADING": SymbolStatus.TRADING,
    "HALT": SymbolStatus.HALTED,
    "BREAK": SymbolStatus.HALTED,
    "END_OF_DAY": SymbolStatus.CLOSED,
}


class BinanceBroker(BaseBroker):
    """Broker adapter for Binance via signed REST."""

    metadata = BrokerMetadata(
        id="binance",
        name="binance",
        display_name="Binance",
        logo="/exchanges/binance.svg",
        category=BrokerCategory.CRYPTO_CEX,
        connection_type=ConnectionType.API_KEY,
        features=(
            BrokerFeature.SPOT,
            BrokerFeature.MARGIN,
            BrokerFeature.FUTURES,
            BrokerFeature.STAKING,
        ),
        supported_asset_types=(AssetType.CRYPTO,),
        api_docs_url="https://binance-docs.github.io/apidocs/",
        website_url="https://www.binance.com",
        supports_testnet=True,
        rate_limits=RateLimits(requests_per_minute=1200, orders_per_second=10),
    )

    def __init__(self, client: httpx.AsyncClient | None = None, settings=None):
        super().__init__(client=client, settings=settings)
        self._base_url = LIVE_URL
        self._futures_url = LIVE_FUTURES_URL

    def _configure_environment(self, credentials: BrokerCredentials) -> None:
        if credentials.is_testnet:
            self._base_url = TESTNET_URL
            self._futures_url = TESTNET_FUTURES_URL
        else:
            self._base_url = LIVE_URL
            self._futures_url = LIVE_FUTURES_URL

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def test_connection(self, credentials: BrokerCredentials) -> ConnectionTestResult:
        try:
            account_info = await self._signed_request(
                "/api/v3/account", credentials=credentials
            )
        except BrokerError as e:
            return ConnectionTestResult.from_error(e)

        account_type = account_info.get("accountType", "SPOT")
        return ConnectionTestResult(
            success=True,
            account_info=AccountInfo(
                id=account_type,
                name=f"Binance {account_type}",
                permissions=self._map_permissions(account_info),
            ),
        )

    # ------------------------------------------------------------------
    # Account information
    # ------------------------------------------------------------------

    async def get_account(self) -> BrokerAccount:
        credentials = self._require_credentials()
        account_info = await self._signed_request("/api/v3/account")
        balances = self._map_balances(account_info)

        total_usd = sum((b.usd_value or ZERO for b in balances), ZERO)
        free_usd = sum((b.free for b in balances if b.asset in STABLECOINS), ZERO)
        account_type = account_info.get("accountType", "SPOT")

        return BrokerAccount(
            id=account_type,
            name=f"Binance {account_type}",
            type=AccountType.TESTNET if credentials.is_testnet else AccountType.LIVE,
            currency="USDT",
            balance=total_usd,
            available_balance=free_usd,
            permissions=self._map_permissions(account_info),
        )

    async def get_balances(self) -> list[Balance]:
        self._require_credentials()
        account_info = await self._signed_request("/api/v3/account")
        return self._map_balances(account_info)

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

        params: dict[str, Any] = {}
        if start_time:
            params["startTime"] = datetime_to_ms(start_time)
        if end_time:
            params["endTime"] = datetime_to_ms(end_time)
        if limit:
            params["limit"] = limit

        if symbol:
            trades = await self._fetch_symbol_trades(symbol, params)
            return sorted(trades, key=lambda t: t.created_at, reverse=True)

        balances = await self.get_balances()
        symbols = self._symbols_from_balances(balances)

        results = await asyncio.gather(
            *(self._fetch_symbol_trades(s, params) for s in symbols),
            return_exceptions=True,
        )

        trades: list[Trade] = []
        for traded_symbol, outcome in zip(symbols, results):
            if isinstance(outcome, BaseException):
                # Pair may not exist (e.g. asset only quoted in BTC)
                logger.debug(f"Skipping Binance trades for {traded_symbol}: {outcome}")
                continue
            trades.extend(outcome)

        return sorted(trades, key=lambda t: t.created_at, reverse=True)

    def _symbols_from_balances(self, balances: list[Balance]) -> list[str]:
        quote = self._settings.binance_quote_asset
        symbols = [f"{b.asset}{quote}" for b in balances if b.total > ZERO and b.asset != quote]
        cap = self._settings.binance_max_trade_symbols
        if len(symbols) > cap:
            logger.info(
                "Binance trade fetch limited to %d of %d symbols derived from balances",
                cap,
                len(symbols),
            )
        return symbols[:cap]

    async def _fetch_symbol_trades(self, symbol: str, params: dict[str, Any]) -> list[Trade]:
        rows = await self._signed_request("/api/v3/myTrades", {"symbol": symbol, **params})
        return [self.map_trade(row) for row in rows]

    # ------------------------------------------------------------------
    # Positions (USD-M futures)
    # ------------------------------------------------------------------

    async def get_positions(self) -> list[Position]:
        self._require_credentials()
        try:
            rows = await self._signed_request("/fapi/v2/positionRisk", futures=True)
        except BrokerError as e:
            logger.info(f"Binance futures positions unavailable, returning none: {e.message}")
            return []

        return [self.map_position(row) for row in rows if to_decimal(row.get("positionAmt")) != ZERO]

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def get_open_orders(self, symbol: str | None = None) -> list[Order]:
        self._require_credentials()
        params = {"symbol": symbol} if symbol else {}
        rows = await self._signed_request("/api/v3/openOrders", params)

        return [
            Order(
                id=str(o["orderId"]),
                client_order_id=o.get("clientOrderId"),
                symbol=o["symbol"],
                side=OrderSide(o["side"].lower()),
                type=BINANCE_ORDER_TYPE_MAP.get(o.get("type", ""), OrderType.LIMIT),
                quantity=to_decimal(o.get("origQty")),
                price=to_optional_decimal(o.get("price")),
                stop_price=to_optional_decimal(o.get("stopPrice")),
                time_in_force=_time_in_force(o.get("timeInForce")),
                status=BINANCE_STATUS_MAP.get(o.get("status", ""), OrderStatus.PENDING),
                filled_quantity=to_decimal(o.get("executedQty")),
                created_at=ms_to_datetime(o.get("time")),
                updated_at=ms_to_datetime(o.get("updateTime") or o.get("time")),
            )
            for o in rows
        ]

    # ------------------------------------------------------------------
    # Market data (public)
    # ------------------------------------------------------------------

    async def get_symbols(self) -> list[Symbol]:
        data = await self._public_request("/api/v3/exchangeInfo")
        return [self._map_symbol(s) for s in data.get("symbols", [])]

    async def get_ticker(self, symbol: str) -> Ticker:
        data = await self._public_request("/api/v3/ticker/24hr", {"symbol": symbol})
        return Ticker(
            symbol=data["symbol"],
            last_price=to_decimal(data.get("lastPrice")),
            bid_price=to_decimal(data.get("bidPrice")),
            ask_price=to_decimal(data.get("askPrice")),
            high_24h=to_decimal(data.get("highPrice")),
            low_24h=to_decimal(data.get("lowPrice")),
            volume_24h=to_decimal(data.get("volume")),
            price_change_24h=to_decimal(data.get("priceChange")),
            price_change_percent_24h=to_decimal(data.get("priceChangePercent")),
            timestamp=ms_to_datetime(data.get("closeTime")),
        )

    async def get_ohlcv(
        self,
        symbol: str,
        interval: str,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        limit: int | None = None,
    ) -> list[OHLCV]:
        params: dict[str, Any] = {"symbol": symbol, "interval": interval}
        if start_time:
            params["startTime"] = datetime_to_ms(start_time)
        if end_time:
            params["endTime"] = datetime_to_ms(end_time)
        if limit:
            params["limit"] = limit

        rows = await self._public_request("/api/v3/klines", params)
        return [
            OHLCV(
                timestamp=ms_to_datetime(k[0]),
                open=to_decimal(k[1]),
                high=to_decimal(k[2]),
                low=to_decimal(k[3]),
                close=to_decimal(k[4]),
                volume=to_decimal(k[5]),
            )
            for k in rows
        ]

    # ------------------------------------------------------------------
    # Mapping
    # ------------------------------------------------------------------

    def map_trade(self, broker_trade: dict[str, Any]) -> Trade:
        t = broker_trade
        qty = to_decimal(t.get("qty"))
        price = to_decimal(t.get("price"))
        executed_at = ms_to_datetime(t.get("time"))
        return Trade(
            id=f"binance_{t['id']}",
            broker_id="binance",
            broker_order_id=str(t.get("orderId", "")),
            symbol=t["symbol"],
            side=OrderSide.BUY if t.get("isBuyer") else OrderSide.SELL,
            # Trade history has no order type; maker fills can only come from limit orders
            type=OrderType.LIMIT if t.get("isMaker") else OrderType.MARKET,
            quantity=qty,
            price=price,
            filled_quantity=qty,
            avg_fill_price=price,
            status=OrderStatus.FILLED,
            fee=to_decimal(t.get("commission")),
            fee_currency=t.get("commissionAsset", ""),
            created_at=executed_at,
            updated_at=executed_at,
            raw=dict(t),
        )

    def map_position(self, broker_position: dict[str, Any]) -> Position:
        p = broker_position
        amount = to_decimal(p.get("positionAmt"))
        position_side = p.get("positionSide", "BOTH")
        if position_side == "LONG":
            side = PositionSide.LONG
        elif position_side == "SHORT":
            side = PositionSide.SHORT
        else:
            side = PositionSide.LONG if amount >= ZERO else PositionSide.SHORT
        updated_at = ms_to_datetime(p.get("updateTime"))
        margin_type = (p.get("marginType") or "cross").lower()

        return Position(
            id=f"binance_{p['symbol']}_{position_side}",
            symbol=p["symbol"],
            side=side,
            quantity=abs(amount),
            entry_price=to_decimal(p.get("entryPrice")),
            current_price=to_decimal(p.get("markPrice")),
            unrealized_pnl=to_decimal(p.get("unRealizedProfit")),
            realized_pnl=ZERO,
            leverage=to_optional_decimal(p.get("leverage")),
            liquidation_price=to_optional_decimal(p.get("liquidationPrice")),
            margin_type=MarginType.ISOLATED if margin_type == "isolated" else MarginType.CROSS,
            asset_type=AssetType.CRYPTO,
            created_at=updated_at,
            updated_at=updated_at,
        )

    def _map_balances(self, account_info: dict[str, Any]) -> list[Balance]:
        balances = []
        for b in account_info.get("balances", []):
            free = to_decimal(b.get("free"))
            locked = to_decimal(b.get("locked"))
            if free <= ZERO and locked <= ZERO:
                continue
            usd_value = free + locked if b["asset"] in STABLECOINS else None
            balances.append(Balance.from_parts(b["asset"], free, locked, usd_value))
        return balances

    def _map_symbol(self, s: dict[str, Any]) -> Symbol:
        filters = {f.get("filterType"): f for f in s.get("filters", [])}
        lot_size = filters.get("LOT_SIZE", {})
        notional = filters.get("MIN_NOTIONAL") or filters.get("NOTIONAL") or {}
        price_filter = filters.get("PRICE_FILTER", {})
        tick_size = price_filter.get("tickSize")
        step_size = lot_size.get("stepSize")

        return Symbol(
            symbol=s["symbol"],
            base_asset=s.get("baseAsset", ""),
            quote_asset=s.get("quoteAsset", ""),
            status=BINANCE_SYMBOL_STATUS_MAP.get(s.get("status", ""), SymbolStatus.HALTED),
            min_quantity=to_decimal(lot_size.get("minQty")),
            max_quantity=to_decimal(lot_size.get("maxQty")),
            step_size=to_decimal(step_size),
            min_notional=to_decimal(notional.get("minNotional")),
            price_precision=count_decimals(tick_size) if tick_size else s.get("quotePrecision", 8),
            quantity_precision=(
                count_decimals(step_size) if step_size else s.get("baseAssetPrecision", 8)
            ),
            is_margin_trading_allowed=s.get("isMarginTradingAllowed"),
        )

    def _map_permissions(self, account_info: dict[str, Any]) -> tuple[BrokerPermission, ...]:
        permissions = [BrokerPermission.READ]
        granted = account_info.get("permissions") or []
        if account_info.get("canTrade"):
            permissions.append(BrokerPermission.TRADE)
        if account_info.get("canWithdraw"):
            permissions.append(BrokerPermission.WITHDRAW)
        if "MARGIN" in granted:
            permissions.append(BrokerPermission.MARGIN)
        if "FUTURES" in granted:
            permissions.append(BrokerPermission.FUTURES)
        return tuple(permissions)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _signed_request(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        *,
        futures: bool = False,
        credentials: BrokerCredentials | None = None,
    ) -> Any:
        credentials = credentials or self._require_credentials()
        base_url = self._futures_url if futures else self._base_url

        query = build_binance_query(
            {**(params or {}), "recvWindow": self._settings.recv_window_ms},
            timestamp=now_ms(),
        )
        signature = binance_signature(query, credentials.api_secret)

        response = await self._http.request(
            "GET",
            f"{base_url}{path}?{query}&signature={signature}",
            headers={"X-MBX-APIKEY": credentials.api_key},
        )
        self._track_rate_limit(response)
        self._raise_for_response(response)
        return json_body(response)

    async def _public_request(self, path: str, params: dict[str, Any] | None = None) -> Any:
        response = await self._http.request("GET", f"{self._base_url}{path}", params=params)
        self._track_rate_limit(response)
        self._raise_for_response(response)
        return json_body(response)

    def _raise_for_response(self, response: httpx.Response) -> None:
        if response.is_success:
            return

        body = json_body(response)
        native_code = body.get("code") if isinstance(body, dict) else None
        message = (body.get("msg") if isinstance(body, dict) else None) or (
            f"Binance request failed with status {response.status_code}"
        )
        mapped = BINANCE_ERROR_CODES.get(native_code)
        if mapped is None:
            raise error_from_status(
                response.status_code,
                message,
                broker_code=str(native_code) if native_code is not None else None,
                retry_after=retry_after(response),
            )
        raise BrokerError(
            message,
            code=mapped,
            broker_code=str(native_code),
            retry_after=retry_after(response),
        )

    def _track_rate_limit(self, response: httpx.Response) -> None:
        used = response.headers.get("X-MBX-USED-WEIGHT-1M")
        if used is None or not used.isdigit():
            return
        limit = self.metadata.rate_limits.requests_per_minute
        self.update_rate_limit(max(limit - int(used), 0))


def _time_in_force(value: str | None) -> TimeInForce:
    try:
        return TimeInForce(value)
    except ValueError:
        return TimeInForce.GTC
