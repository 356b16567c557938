# tests/broker/test_hyperliquid.py
"""Tests for the Hyperliquid info-endpoint adapter."""

import json
from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest

from tradebook.broker.errors import BrokerError, BrokerErrorCode
from tradebook.broker.hyperliquid import HyperliquidBroker, to_coin
from tradebook.broker.models import BrokerCredentials, MarginType, OrderSide, OrderType, PositionSide

ADDRESS = "0x" + "ab12" * 10

STATE = {
    "marginSummary": {"accountValue": "10500.5", "totalMarginUsed": "2000"},
    "crossMarginSummary": {"accountValue": "10500.5", "totalMarginUsed": "2000"},
    "withdrawable": "8500.5",
    "assetPositions": [
        {
            "type": "oneWay",
            "position": {
                "coin": "ETH",
                "szi": "-2.0",
                "entryPx": "2000",
                "positionValue": "3900",
                "unrealizedPnl": "100",
                "liquidationPx": "2600",
                "leverage": {"type": "cross", "value": 5},
            },
        },
        {"type": "oneWay", "position": {"coin": "BTC", "szi": "0.0", "entryPx": "0"}},
    ],
}

EMPTY_STATE = {
    "marginSummary": {"accountValue": "0.0", "totalMarginUsed": "0.0"},
    "withdrawable": "0.0",
    "assetPositions": [],
}


def fill(tid, time_ms, coin="ETH", side="B", crossed=True):
    return {
        "tid": tid,
        "oid": 1000 + tid,
        "coin": coin,
        "side": side,
        "px": "2010.5",
        "sz": "0.5",
        "fee": "0.35",
        "feeToken": "USDC",
        "closedPnl": "12.0",
        "crossed": crossed,
        "time": time_ms,
    }


FILLS = [
    fill(1, 1700000000000),
    fill(2, 1700000900000, coin="BTC", side="A", crossed=False),
    fill(3, 1700000500000),
]


def info_handler(state=STATE, fills=FILLS):
    def handler(request):
        payload = json.loads(request.content)
        kind = payload["type"]
        if kind == "clearinghouseState":
            return httpx.Response(200, json=state)
        if kind in ("userFills", "userFillsByTime"):
            return httpx.Response(200, json=fills)
        if kind == "metaAndAssetCtxs":
            return httpx.Response(
                200,
                json=[
                    {"universe": [{"name": "BTC", "szDecimals": 5}, {"name": "ETH", "szDecimals": 4}]},
                    [
                        {"markPx": "65000", "midPx": "65001", "prevDayPx": "64000", "dayBaseVlm": "100"},
                        {"markPx": "2000", "midPx": "2000.5", "prevDayPx": "2100", "dayBaseVlm": "900",
                         "impactPxs": ["1999.9", "2000.1"]},
                    ],
                ],
            )
        return httpx.Response(422, text="Failed to deserialize the JSON body")

    return handler


async def connected_broker(fake, settings, address=ADDRESS):
    broker = HyperliquidBroker(client=fake.client(), settings=settings)
    await broker.connect(BrokerCredentials(api_key=address))
    return broker


class TestSymbols:
    @pytest.mark.parametrize(
        "symbol,coin",
        [
            ("ETH-PERP", "ETH"),
            ("ETH", "ETH"),
            ("BTCUSDC", "BTC"),
            ("USDC", "USDC"),
            ("kPEPE-PERP", "kPEPE"),
        ],
    )
    def test_to_coin(self, symbol, coin):
        assert to_coin(symbol) == coin


class TestConnect:
    @pytest.mark.asyncio
    async def test_valid_address_connects(self, exchange, broker_settings):
        fake = exchange({("POST", "/info"): info_handler()})
        broker = await connected_broker(fake, broker_settings)

        assert broker.status.is_connected
        body = fake.body(fake.requests[0])
        assert body == {"type": "clearinghouseState", "user": ADDRESS}
        assert fake.requests[0].url.host == "api.hyperliquid.xyz"

    @pytest.mark.asyncio
    async def test_empty_wallet_still_connects(self, exchange, broker_settings):
        fake = exchange({("POST", "/info"): info_handler(state=EMPTY_STATE)})
        broker = await connected_broker(fake, broker_settings)

        assert broker.status.is_connected
        assert await broker.get_positions() == []

    @pytest.mark.asyncio
    async def test_malformed_address_rejected_without_request(self, exchange, broker_settings):
        fake = exchange({("POST", "/info"): info_handler()})
        broker = HyperliquidBroker(client=fake.client(), settings=broker_settings)

        with pytest.raises(BrokerError) as exc:
            await broker.connect(BrokerCredentials(api_key="0x1234"))

        assert exc.value.code == BrokerErrorCode.INVALID_CREDENTIALS
        assert fake.requests == []

    @pytest.mark.asyncio
    async def test_unrecognized_state_fails(self, exchange, broker_settings):
        fake = exchange({("POST", "/info"): lambda r: httpx.Response(200, json=None)})
        broker = HyperliquidBroker(client=fake.client(), settings=broker_settings)

        with pytest.raises(BrokerError) as exc:
            await broker.connect(BrokerCredentials(api_key=ADDRESS))

        assert exc.value.code == BrokerErrorCode.INVALID_CREDENTIALS

    @pytest.mark.asyncio
    async def test_testnet_host(self, exchange, broker_settings):
        fake = exchange({("POST", "/info"): info_handler()})
        broker = HyperliquidBroker(client=fake.client(), settings=broker_settings)
        await broker.connect(BrokerCredentials(api_key=ADDRESS, is_testnet=True))

        assert fake.requests[0].url.host == "api.hyperliquid-testnet.xyz"


class TestAccount:
    @pytest.mark.asyncio
    async def test_account_summary(self, exchange, broker_settings):
        broker = await connected_broker(exchange({("POST", "/info"): info_handler()}), broker_settings)

        account = await broker.get_account()

        assert account.balance == Decimal("10500.5")
        assert account.available_balance == Decimal("8500.5")
        assert account.margin_used == Decimal("2000")
        assert account.unrealized_pnl == Decimal("100")
        assert account.currency == "USDC"

    @pytest.mark.asyncio
    async def test_single_usdc_balance(self, exchange, broker_settings):
        broker = await connected_broker(exchange({("POST", "/info"): info_handler()}), broker_settings)

        [balance] = await broker.get_balances()

        assert balance.asset == "USDC"
        assert balance.free == Decimal("8500.5")
        assert balance.locked == Decimal("2000")
        assert balance.total == Decimal("10500.5")


class TestTrades:
    @pytest.mark.asyncio
    async def test_recent_fills_newest_first(self, exchange, broker_settings):
        fake = exchange({("POST", "/info"): info_handler()})
        broker = await connected_broker(fake, broker_settings)

        trades = await broker.get_trades()

        assert fake.body(fake.requests[-1])["type"] == "userFills"
        assert [t.id for t in trades] == ["hyperliquid_2", "hyperliquid_3", "hyperliquid_1"]
        sell = trades[0]
        assert sell.symbol == "BTC-PERP"
        assert sell.side == OrderSide.SELL
        assert sell.type == OrderType.LIMIT
        assert trades[1].type == OrderType.MARKET
        assert trades[1].realized_pnl == Decimal("12.0")

    @pytest.mark.asyncio
    async def test_start_time_uses_time_range_query(self, exchange, broker_settings):
        fake = exchange({("POST", "/info"): info_handler()})
        broker = await connected_broker(fake, broker_settings)
        start = datetime(2023, 11, 14, tzinfo=timezone.utc)

        await broker.get_trades(start_time=start)

        body = fake.body(fake.requests[-1])
        assert body["type"] == "userFillsByTime"
        assert body["startTime"] == int(start.timestamp() * 1000)
        assert "endTime" not in body

    @pytest.mark.asyncio
    async def test_symbol_end_time_and_limit_filters(self, exchange, broker_settings):
        broker = await connected_broker(exchange({("POST", "/info"): info_handler()}), broker_settings)
        end = datetime.fromtimestamp(1700000600, tz=timezone.utc)

        trades = await broker.get_trades(symbol="ETH-PERP", end_time=end, limit=1)

        assert [t.id for t in trades] == ["hyperliquid_3"]

    @pytest.mark.asyncio
    async def test_emitted_symbol_filters_case_sensitive_coin(self, exchange, broker_settings):
        fills = [fill(7, 1700000000000, coin="kPEPE"), fill(8, 1700000100000)]
        broker = await connected_broker(
            exchange({("POST", "/info"): info_handler(fills=fills)}), broker_settings
        )

        symbol = (await broker.get_trades())[-1].symbol
        trades = await broker.get_trades(symbol=symbol)

        assert symbol == "kPEPE-PERP"
        assert [t.id for t in trades] == ["hyperliquid_7"]


class TestPositions:
    @pytest.mark.asyncio
    async def test_short_position_mark_price(self, exchange, broker_settings):
        broker = await connected_broker(exchange({("POST", "/info"): info_handler()}), broker_settings)

        [position] = await broker.get_positions()

        assert position.symbol == "ETH-PERP"
        assert position.side == PositionSide.SHORT
        assert position.quantity == Decimal("2.0")
        assert position.current_price == Decimal("1950")
        assert position.cost_basis == Decimal("4000")
        assert position.leverage == Decimal("5")
        assert position.margin_type == MarginType.CROSS


class TestMarketData:
    @pytest.mark.asyncio
    async def test_ticker(self, exchange, broker_settings):
        broker = HyperliquidBroker(
            client=exchange({("POST", "/info"): info_handler()}).client(), settings=broker_settings
        )

        ticker = await broker.get_ticker("ETH-PERP")

        assert ticker.symbol == "ETH-PERP"
        assert ticker.last_price == Decimal("2000")
        assert ticker.bid_price == Decimal("1999.9")
        assert ticker.ask_price == Decimal("2000.1")
        assert ticker.price_change_24h == Decimal("-100")

    @pytest.mark.asyncio
    async def test_unknown_ticker(self, exchange, broker_settings):
        broker = HyperliquidBroker(
            client=exchange({("POST", "/info"): info_handler()}).client(), settings=broker_settings
        )

        with pytest.raises(BrokerError) as exc:
            await broker.get_ticker("DOGE-PERP")

        assert exc.value.code == BrokerErrorCode.INVALID_SYMBOL
