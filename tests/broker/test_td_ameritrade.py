# tests/broker/test_td_ameritrade.py
"""Tests for the TD Ameritrade OAuth adapter."""

from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest

from tradebook.broker.errors import BrokerError, BrokerErrorCode
from tradebook.broker.models import AssetType, BrokerCredentials, OrderSide, PositionSide
from tradebook.broker.td_ameritrade import TDAmeritradeBroker

V1 = "/v1"
ACCOUNT_ID = "123456789"

SECURITIES_ACCOUNT = {
    "securitiesAccount": {
        "type": "MARGIN",
        "accountId": ACCOUNT_ID,
        "currentBalances": {
            "liquidationValue": 52000.75,
            "availableFunds": 20000.0,
            "cashBalance": 15000.0,
            "cashAvailableForTrading": 12000.0,
            "maintenanceRequirement": 8000.0,
            "buyingPower": 40000.0,
        },
        "positions": [
            {
                "longQuantity": 10.0,
                "shortQuantity": 0.0,
                "averagePrice": 150.0,
                "marketValue": 1750.0,
                "instrument": {"symbol": "AAPL", "assetType": "EQUITY"},
            },
            {
                "longQuantity": 0.0,
                "shortQuantity": 5.0,
                "averagePrice": 100.0,
                "marketValue": -450.0,
                "instrument": {"symbol": "SPY", "assetType": "ETF"},
            },
            {
                "longQuantity": 0.0,
                "shortQuantity": 0.0,
                "averagePrice": 0.0,
                "marketValue": 0.0,
                "instrument": {"symbol": "CLOSED", "assetType": "EQUITY"},
            },
        ],
    }
}

TRANSACTIONS = [
    {
        "type": "TRADE",
        "transactionId": 9001,
        "orderId": "T-1",
        "transactionDate": "2024-01-05T14:30:00+0000",
        "settlementDate": "2024-01-09",
        "fees": {"commission": 0.65, "secFee": 0.02, "regFee": 0.0},
        "transactionItem": {
            "instruction": "SELL",
            "amount": 10.0,
            "price": 175.0,
            "instrument": {"symbol": "AAPL"},
        },
    },
    {
        "type": "TRADE",
        "transactionId": 9000,
        "orderId": "T-0",
        "transactionDate": "2024-01-02T15:00:00+0000",
        "fees": {},
        "transactionItem": {
            "instruction": "BUY_TO_OPEN",
            "amount": 1.0,
            "price": 2.5,
            "instrument": {"symbol": "AAPL_011924C180"},
        },
    },
    {"type": "DIVIDEND_OR_INTEREST", "transactionId": 8999, "transactionDate": "2024-01-01T00:00:00+0000"},
]


def bearer(request):
    return request.headers.get("Authorization", "")


@pytest.fixture
def routes():
    return {
        ("GET", f"{V1}/accounts"): [SECURITIES_ACCOUNT],
        ("GET", f"{V1}/accounts/{ACCOUNT_ID}"): SECURITIES_ACCOUNT,
    }


async def connected_broker(fake, settings, **creds):
    broker = TDAmeritradeBroker(client=fake.client(), settings=settings)
    await broker.connect(
        BrokerCredentials(**{"access_token": "access-1", "refresh_token": "refresh-1", **creds})
    )
    return broker


class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_with_token(self, exchange, routes, broker_settings):
        fake = exchange(routes)
        broker = await connected_broker(fake, broker_settings)

        assert broker.status.is_connected
        assert broker.account_id == ACCOUNT_ID
        assert bearer(fake.requests[0]) == "Bearer access-1"

    @pytest.mark.asyncio
    async def test_requires_oauth_token(self, exchange, routes, broker_settings):
        fake = exchange(routes)
        broker = TDAmeritradeBroker(client=fake.client(), settings=broker_settings)

        with pytest.raises(BrokerError) as exc:
            await broker.connect(BrokerCredentials(api_key="key", api_secret="secret"))

        assert exc.value.code == BrokerErrorCode.INVALID_CREDENTIALS
        assert exc.value.message == "TD Ameritrade requires OAuth authentication"
        assert fake.requests == []

    @pytest.mark.asyncio
    async def test_expired_token_probe_does_not_refresh(self, exchange, broker_settings):
        fake = exchange(
            {("GET", f"{V1}/accounts"): lambda r: httpx.Response(401, json={"error": "Not Authorized"})}
        )
        broker = TDAmeritradeBroker(client=fake.client(), settings=broker_settings)

        result = await broker.test_connection(
            BrokerCredentials(access_token="stale", refresh_token="refresh-1")
        )

        assert not result.success
        assert result.error == "Access token expired. Please re-authenticate."
        assert fake.calls(f"{V1}/oauth2/token") == []


class TestTokenRefresh:
    @pytest.mark.asyncio
    async def test_single_refresh_then_retry(self, exchange, routes, broker_settings):
        def account(request):
            if bearer(request) == "Bearer access-2":
                return httpx.Response(200, json=SECURITIES_ACCOUNT)
            return httpx.Response(401, json={"error": "The access token being passed has expired"})

        routes[("GET", f"{V1}/accounts/{ACCOUNT_ID}")] = account
        routes[("POST", f"{V1}/oauth2/token")] = {
            "access_token": "access-2",
            "refresh_token": "refresh-2",
            "expires_in": 1800,
        }
        fake = exchange(routes)
        broker = await connected_broker(fake, broker_settings)
        stored = []
        broker.subscribe_credentials(stored.append)

        account_info = await broker.get_account()

        assert account_info.id == ACCOUNT_ID
        token_calls = fake.calls(f"{V1}/oauth2/token")
        assert len(token_calls) == 1
        form = token_calls[0].content.decode()
        assert "grant_type=refresh_token" in form
        assert "refresh_token=refresh-1" in form
        assert "client_id=tda-client" in form
        assert len(fake.calls(f"{V1}/accounts/{ACCOUNT_ID}")) == 2

        [refreshed] = stored
        assert refreshed.access_token == "access-2"
        assert refreshed.refresh_token == "refresh-2"
        assert refreshed.expires_at is not None

    @pytest.mark.asyncio
    async def test_second_401_is_fatal(self, exchange, routes, broker_settings):
        routes[("GET", f"{V1}/accounts/{ACCOUNT_ID}")] = lambda r: httpx.Response(401)
        routes[("POST", f"{V1}/oauth2/token")] = {"access_token": "access-2"}
        fake = exchange(routes)
        broker = await connected_broker(fake, broker_settings)

        with pytest.raises(BrokerError) as exc:
            await broker.get_account()

        assert exc.value.code == BrokerErrorCode.INVALID_CREDENTIALS
        assert len(fake.calls(f"{V1}/oauth2/token")) == 1
        assert len(fake.calls(f"{V1}/accounts/{ACCOUNT_ID}")) == 2

    @pytest.mark.asyncio
    async def test_rejected_refresh_token(self, exchange, routes, broker_settings):
        routes[("GET", f"{V1}/accounts/{ACCOUNT_ID}")] = lambda r: httpx.Response(401)
        routes[("POST", f"{V1}/oauth2/token")] = lambda r: httpx.Response(
            400, json={"error": "invalid_grant"}
        )
        broker = await connected_broker(exchange(routes), broker_settings)

        with pytest.raises(BrokerError) as exc:
            await broker.get_balances()

        assert exc.value.code == BrokerErrorCode.INVALID_CREDENTIALS
        assert "re-authenticate" in exc.value.message

    @pytest.mark.asyncio
    async def test_missing_refresh_token(self, exchange, routes, broker_settings):
        routes[("GET", f"{V1}/accounts/{ACCOUNT_ID}")] = lambda r: httpx.Response(401)
        broker = await connected_broker(exchange(routes), broker_settings, refresh_token=None)

        with pytest.raises(BrokerError) as exc:
            await broker.refresh_auth()

        assert exc.value.code == BrokerErrorCode.INVALID_CREDENTIALS


class TestAccount:
    @pytest.mark.asyncio
    async def test_account_balances(self, exchange, routes, broker_settings):
        broker = await connected_broker(exchange(routes), broker_settings)

        account = await broker.get_account()
        [cash] = await broker.get_balances()

        assert account.balance == Decimal("52000.75")
        assert account.available_balance == Decimal("20000.0")
        assert account.margin_used == Decimal("8000.0")
        assert cash.asset == "USD"
        assert cash.total == Decimal("15000.0")
        assert cash.free == Decimal("12000.0")
        assert cash.locked == Decimal("3000.0")


class TestTrades:
    @pytest.mark.asyncio
    async def test_trade_transactions(self, exchange, routes, broker_settings):
        routes[("GET", f"{V1}/accounts/{ACCOUNT_ID}/transactions")] = TRANSACTIONS
        fake = exchange(routes)
        broker = await connected_broker(fake, broker_settings)

        trades = await broker.get_trades(
            start_time=datetime(2024, 1, 1, tzinfo=timezone.utc),
            end_time=datetime(2024, 1, 31, tzinfo=timezone.utc),
        )

        params = fake.calls(f"{V1}/accounts/{ACCOUNT_ID}/transactions")[0].url.params
        assert params["type"] == "TRADE"
        assert params["startDate"] == "2024-01-01"
        assert params["endDate"] == "2024-01-31"

        assert [t.id for t in trades] == ["td_ameritrade_9001", "td_ameritrade_9000"]
        sell, option_buy = trades
        assert sell.side == OrderSide.SELL
        assert sell.fee == Decimal("0.67")
        assert sell.created_at == datetime(2024, 1, 5, 14, 30, tzinfo=timezone.utc)
        assert option_buy.side == OrderSide.BUY
        assert option_buy.fee == Decimal("0")


class TestPositions:
    @pytest.mark.asyncio
    async def test_long_and_short_pnl(self, exchange, routes, broker_settings):
        fake = exchange(routes)
        broker = await connected_broker(fake, broker_settings)

        positions = {p.symbol: p for p in await broker.get_positions()}

        assert fake.calls(f"{V1}/accounts/{ACCOUNT_ID}")[-1].url.params["fields"] == "positions"
        assert set(positions) == {"AAPL", "SPY"}

        aapl = positions["AAPL"]
        assert aapl.side == PositionSide.LONG
        assert aapl.unrealized_pnl == Decimal("250.0")
        assert aapl.current_price == Decimal("175")

        spy = positions["SPY"]
        assert spy.side == PositionSide.SHORT
        assert spy.quantity == Decimal("5.0")
        assert spy.unrealized_pnl == Decimal("50.0")
        assert spy.asset_type == AssetType.ETF


class TestMarketData:
    @pytest.mark.asyncio
    async def test_unknown_symbol(self, exchange, routes, broker_settings):
        routes[("GET", f"{V1}/marketdata/NOPE/quotes")] = lambda r: httpx.Response(
            400, json={"error": "Invalid symbol"}
        )
        broker = await connected_broker(exchange(routes), broker_settings)

        with pytest.raises(BrokerError) as exc:
            await broker.get_ticker("NOPE")

        assert exc.value.code == BrokerErrorCode.INVALID_SYMBOL

    @pytest.mark.asyncio
    async def test_quote(self, exchange, routes, broker_settings):
        routes[("GET", f"{V1}/marketdata/AAPL/quotes")] = {
            "AAPL": {
                "symbol": "AAPL",
                "lastPrice": 187.25,
                "bidPrice": 187.2,
                "askPrice": 187.3,
                "netChange": 1.5,
                "quoteTimeInLong": 1700000000000,
            }
        }
        broker = await connected_broker(exchange(routes), broker_settings)

        ticker = await broker.get_ticker("AAPL")

        assert ticker.last_price == Decimal("187.25")
        assert ticker.price_change_24h == Decimal("1.5")
