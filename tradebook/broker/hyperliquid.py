# tradebook/broker/hyperliquid.py
"""Hyperliquid adapter.

Read-only: all data comes from the public info endpoint, keyed by the
account's wallet address. No request is signed and no secret is needed.
Symbols are exposed as '<COIN>-PERP'.
"""

import logging
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

logger = logging.getLogger(__name__)

LIVE_URL = "https://api.hyperliquid.xyz"
TESTNET_URL = "https://api.hyperliquid-testnet.xyz"

QUOTE_ASSET = "USDC"
PERP_SUFFIX = "-PERP"

# Fill side codes: B = bid (buy), A = ask (sell)
SIDE_MAP = {"B": OrderSide.BUY, "A": OrderSide.SELL}


def to_symbol(coin: str) -> str:
    return f"{coin}{PERP_SUFFIX}"


def to_coin(symbol: str) -> str:
    """Strip the '-PERP' suffix (and a USD/USDC quote) from a symbol."""
    coin = symbol.removesuffix(PERP_SUFFIX)
    for quote in ("USDC", "USD"):
        if coin.endswith(quote) and coin != quote:
            return coin.removesuffix(quote)
    return coin


def _side(value: str) -> OrderSide:
    if value in SIDE_MAP:
        return SIDE_MAP[value]
    return OrderSide(value.lower())


def _short_address(address: str) -> str:
    return f"{address[:6]}...{address[-4:]}"


class HyperliquidBroker(BaseBroker):
    """Broker adapter for the Hyperliquid perpetuals DEX."""

    metadata = BrokerMetadata(
        id="hyperliquid",
        name="hyperliquid",
        display_name="Hyperliquid",
        logo="/exchanges/hyperliquid.svg",
        category=BrokerCategory.CRYPTO_DEX,
        connection_type=ConnectionType.WALLET_ADDRESS,
        features=(BrokerFeature.PERPETUALS,),
        supported_asset_types=(AssetType.CRYPTO,),
        api_docs_url="https://hyperliquid.gitbook.io/hyperliquid-docs/for-developers/api",
        website_url="https://hyperliquid.xyz",
        supports_testnet=True,
        rate_limits=RateLimits(requests_per_minute=1200, orders_per_second=10),
    )

    def __init__(self, client: httpx.AsyncClient | None = None, settings=None):
        super().__init__(client=client, settings=settings)
        self._info_url = f"{LIVE_URL}/info"

    def _configure_environment(self, credentials: BrokerCredentials) -> None:
        base_url = TESTNET_URL if credentials.is_testnet else LIVE_URL
        self._info_url = f"{base_url}/info"

    @property
    def _address(self) -> str:
        return self._require_credentials().api_key

    async def test_connection(self, credentials: BrokerCredentials) -> ConnectionTestResult:
        try:
            state = await self._info({"type": "clearinghouseState", "user": credentials.api_key})
        except BrokerError as e:
            return ConnectionTestResult.from_error(e)

        if not isinstance(state, dict) or not (
            "marginSummary" in state or "crossMarginSummary" in state
        ):
            return ConnectionTestResult.failed(
                "Hyperliquid returned no account state for this address"
            )

        return ConnectionTestResult(
            success=True,
            account_info=AccountInfo(
                id=credentials.api_key,
                name=f"Hyperliquid {_short_address(credentials.api_key)}",
                permissions=(BrokerPermission.READ,),
            ),
        )

    # ------------------------------------------------------------------
    # Account information
    # ------------------------------------------------------------------

    async def get_account(self) -> BrokerAccount:
        credentials = self._require_credentials()
        state = await self._user_state(credentials.api_key)
        summary = _margin_summary(state)

        unrealized = sum(
            (
                to_decimal(ap.get("position", {}).get("unrealizedPnl"))
                for ap in state.get("assetPositions") or []
            ),
            ZERO,
        )
        margin_used = to_decimal(summary.get("totalMarginUsed"))
        return BrokerAccount(
            id=credentials.api_key,
            name=f"Hyperliquid {_short_address(credentials.api_key)}",
            type=AccountType.TESTNET if credentials.is_testnet else AccountType.LIVE,
            currency=QUOTE_ASSET,
            balance=to_decimal(summary.get("accountValue")),
            available_balance=to_decimal(state.get("withdrawable")),
            permissions=(BrokerPermission.READ,),
            margin_used=margin_used,
            margin_available=to_decimal(state.get("withdrawable")),
            unrealized_pnl=unrealized,
        )

    async def get_balances(self) -> list[Balance]:
        state = await self._user_state(self._address)
        summary = _margin_summary(state)
        account_value = to_decimal(summary.get("accountValue"))
        margin_used = to_decimal(summary.get("totalMarginUsed"))

        free = max(account_value - margin_used, ZERO)
        return [Balance.from_total(QUOTE_ASSET, account_value, free, usd_value=account_value)]

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
        address = self._address

        if start_time:
            payload: dict[str, Any] = {
                "type": "userFillsByTime",
                "user": address,
                "startTime": datetime_to_ms(start_time),
            }
            if end_time:
                payload["endTime"] = datetime_to_ms(end_time)
        else:
            payload = {"type": "userFills", "user": address}

        fills = await self._info(payload) or []

        if symbol:
            coin = to_coin(symbol)
            fills = [f for f in fills if f.get("coin") == coin]
        if end_time:
            end_ms = datetime_to_ms(end_time)
            fills = [f for f in fills if int(f.get("time", 0)) <= end_ms]

        trades = sorted(
            (self.map_trade(f) for f in fills), key=lambda t: t.created_at, reverse=True
        )
        return trades[:limit] if limit else trades

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    async def get_positions(self) -> list[Position]:
        state = await self._user_state(self._address)
        return [
            self.map_position(ap)
            for ap in state.get("assetPositions") or []
            if to_decimal(ap.get("position", {}).get("szi")) != ZERO
        ]

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def get_open_orders(self, symbol: str | None = None) -> list[Order]:
        rows = await self._info({"type": "openOrders", "user": self._address}) or []
        if symbol:
            coin = to_coin(symbol)
            rows = [o for o in rows if o.get("coin") == coin]

        return [
            Order(
                id=str(o["oid"]),
                client_order_id=o.get("cloid"),
                symbol=to_symbol(o["coin"]),
                side=_side(o["side"]),
                type=OrderType.LIMIT,
                quantity=to_decimal(o.get("origSz") or o.get("sz")),
                price=to_decimal(o.get("limitPx")),
                time_in_force=TimeInForce.GTC,
                status=OrderStatus.OPEN,
                filled_quantity=max(
                    to_decimal(o.get("origSz") or o.get("sz")) - to_decimal(o.get("sz")), ZERO
                ),
                created_at=ms_to_datetime(o.get("timestamp")),
                updated_at=ms_to_datetime(o.get("timestamp")),
            )
            for o in rows
        ]

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------

    async def get_symbols(self) -> list[Symbol]:
        meta = await self._info({"type": "meta"})
        symbols = []
        for asset in meta.get("universe") or []:
            sz_decimals = int(asset.get("szDecimals", 0))
            step = to_decimal(1).scaleb(-sz_decimals)
            symbols.append(
                Symbol(
                    symbol=to_symbol(asset["name"]),
                    base_asset=asset["name"],
                    quote_asset=QUOTE_ASSET,
                    status=SymbolStatus.HALTED if asset.get("isDelisted") else SymbolStatus.TRADING,
                    min_quantity=step,
                    max_quantity=ZERO,
                    step_size=step,
                    min_notional=to_decimal(10),
                    # Prices carry at most six decimals minus the size decimals
                    price_precision=max(6 - sz_decimals, 0),
                    quantity_precision=sz_decimals,
                    is_margin_trading_allowed=True,
                    is_futures_trading_allowed=True,
                    max_leverage=asset.get("maxLeverage"),
                )
            )
        return symbols

    async def get_ticker(self, symbol: str) -> Ticker:
        coin = to_coin(symbol)
        meta, contexts = await self._info({"type": "metaAndAssetCtxs"})
        names = [asset["name"] for asset in meta.get("universe") or []]
        if coin not in names:
            raise BrokerError(
                f"Unknown Hyperliquid symbol: {symbol}", code=BrokerErrorCode.INVALID_SYMBOL
            )

        ctx = contexts[names.index(coin)]
        mark = to_decimal(ctx.get("markPx"))
        mid = to_decimal(ctx.get("midPx"), default=mark)
        prev_day = to_decimal(ctx.get("prevDayPx"))
        impact = ctx.get("impactPxs") or [mid, mid]
        change = mark - prev_day if prev_day else ZERO

        return Ticker(
            symbol=to_symbol(coin),
            last_price=mark,
            bid_price=to_decimal(impact[0], default=mid),
            ask_price=to_decimal(impact[1], default=mid),
            volume_24h=to_decimal(ctx.get("dayBaseVlm")),
            price_change_24h=change,
            price_change_percent_24h=change / prev_day * 100 if prev_day else ZERO,
            timestamp=utc_now(),
        )

    async def get_mid_prices(self) -> dict[str, Decimal]:
        """Current mid price per coin, keyed by '<COIN>-PERP'."""
        mids = await self._info({"type": "allMids"}) or {}
        return {to_symbol(coin): to_decimal(px) for coin, px in mids.items()}

    # ------------------------------------------------------------------
    # Mapping
    # ------------------------------------------------------------------

    def map_trade(self, broker_trade: dict[str, Any]) -> Trade:
        f = broker_trade
        size = to_decimal(f.get("sz"))
        price = to_decimal(f.get("px"))
        executed_at = ms_to_datetime(f.get("time"))
        return Trade(
            id=f"hyperliquid_{f['tid']}",
            broker_id="hyperliquid",
            broker_order_id=str(f.get("oid", "")),
            symbol=to_symbol(f["coin"]),
            side=_side(f["side"]),
            # crossed = the fill took liquidity
            type=OrderType.MARKET if f.get("crossed") else OrderType.LIMIT,
            quantity=size,
            price=price,
            filled_quantity=size,
            avg_fill_price=price,
            status=OrderStatus.FILLED,
            fee=to_decimal(f.get("fee")),
            fee_currency=f.get("feeToken") or QUOTE_ASSET,
            realized_pnl=to_decimal(f.get("closedPnl")),
            created_at=executed_at,
            updated_at=executed_at,
            raw=dict(f),
        )

    def map_position(self, broker_position: dict[str, Any]) -> Position:
        p = broker_position.get("position", broker_position)
        szi = to_decimal(p.get("szi"))
        size = abs(szi)
        entry_price = to_decimal(p.get("entryPx"))
        position_value = to_decimal(p.get("positionValue"))
        mark_price = position_value / size if size and position_value else entry_price
        leverage = p.get("leverage") or {}
        now = utc_now()

        return Position(
            id=f"hyperliquid_{p['coin']}",
            symbol=to_symbol(p["coin"]),
            side=PositionSide.LONG if szi >= ZERO else PositionSide.SHORT,
            quantity=size,
            entry_price=entry_price,
            current_price=mark_price,
            unrealized_pnl=to_decimal(p.get("unrealizedPnl")),
            realized_pnl=ZERO,
            leverage=to_optional_decimal(leverage.get("value")),
            liquidation_price=to_optional_decimal(p.get("liquidationPx")),
            margin_type=MarginType.CROSS if leverage.get("type") == "cross" else MarginType.ISOLATED,
            asset_type=AssetType.CRYPTO,
            cost_basis=size * entry_price,
            created_at=now,
            updated_at=now,
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _user_state(self, address: str) -> dict[str, Any]:
        return await self._info({"type": "clearinghouseState", "user": address}) or {}

    async def _info(self, payload: dict[str, Any]) -> Any:
        response = await self._http.request(
            "POST",
            self._info_url,
            json=payload,
            headers={"Content-Type": "application/json"},
        )
        self._http.raise_for_status(
            response, message=f"Hyperliquid {payload['type']} request failed"
        )
        return json_body(response)


def _margin_summary(state: dict[str, Any]) -> dict[str, Any]:
    return state.get("crossMarginSummary") or state.get("marginSummary") or {}
