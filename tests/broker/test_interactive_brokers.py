# tests/broker/test_interactive_brokers.py
"""Tests for the Interactive Brokers Client Portal adapter."""

from datetime import timedelta
from decimal import Decimal

import httpx
import pytest

from tradebook.broker.convert import datetime_to_ms, utc_now
from tradebook.broker.errors import BrokerError, BrokerErrorCode
from tradebook.broker.interactive_brokers import InteractiveBrokersBroker
from tradebook.broker.models import AccountType, AssetType, BrokerCredentials, OrderSide, PositionSide

API = "/v1/api"

SUMMARY = {
    "netliquidation": {"amount": 125000.5, "currency": "USD"},
    "availablefunds": {"amount": 40000.0, "currency": "USD"},
    "totalcashvalue": {"amount": 50000.0, "currency": "USD"},
    "maintenancemarginreq": {"amount": 15000.0, "currency": "USD"},
    "unrealizedpnl": {"amount": 2300.25, "currency": "USD"},
}


def position(conid, ticker, qty, asset_class="STK"):
    return {
        "conid": conid,
        "ticker": ticker,
        "position": qty,
        "avgCost": 100.0,
        "avgPrice": 100.0,
        "mktPrice": 110.0,
        "unrealizedPnl": 10.0 * qty,
        "realizedPnl": 0.0,
        "assetClass": asset_class,
    }


def execution(execution_id, symbol, side, minutes_ago):
    return {
        "execution_id": execution_id,
        "symbol": symbol,
        "side": side,
        "size": 10,
        "price": "187.25",
        "commission": "-1.00",
        "currency": "USD",
        "order_ref": f"ref-{execution_id}",
        "trade_time_r": datetime_to_ms(utc_now() - timedelta(minutes=minutes_ago)),
    }


@pytest.fixture
def routes():
    return {
        ("GET", f"{API}/iserver/accounts"): {"accounts": ["U1234567", "DU7654321"], "selectedAccount": "U1234567"},
        ("GET", f"{API}/portfolio/U1234567/summary"): SUMMARY,
    }


async def gateway_broker(fake, settings, **creds):
    broker = InteractiveBrokersBroker(client=fake.client(), settings=settings)
    await broker.connect(BrokerCredentials(**creds))
    return broker


class TestConnect:
    @pytest.mark.asyncio
    async def test_gateway_connect_selects_account(self, exchange, routes, broker_settings):
        fake = exchange(routes)
        broker = await gateway_broker(fake, broker_settings)

        assert broker.status.is_connected
        assert broker.account_id == "U1234567"
        request = fake.requests[0]
        assert request.url.host == "localhost"
        assert "Authorization" not in request.headers

    @pytest.mark.asyncio
    async def test_configured_account_wins(self, exchange, routes, broker_settings):
        broker = await gateway_broker(exchange(routes), broker_settings, account_id="DU7654321")

        assert broker.account_id == "DU7654321"

    @pytest.mark.asyncio
    async def test_oauth_mode_sends_bearer_token(self, exchange, routes, broker_settings):
        fake = exchange(routes)
        await gateway_broker(fake, broker_settings, access_token="ibkr-access")

        request = fake.requests[0]
        assert request.url.host == "api.ibkr.com"
        assert request.headers["Authorization"] == "Bearer ibkr-access"

    @pytest.mark.asyncio
    async def test_gateway_not_running(self, broker_settings):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        broker = InteractiveBrokersBroker(
            client=httpx.AsyncClient(transport=httpx.MockTransport(refuse)),
            settings=broker_settings,
        )
        with pytest.raises(BrokerError) as exc:
            await broker.connect(BrokerCredentials())

        assert exc.value.code == BrokerErrorCode.BROKER_UNAVAILABLE
        assert not broker.status.is_connected

    @pytest.mark.asyncio
    async def test_expired_session(self, exchange, broker_settings):
        fake = exchange(
            {
                ("GET", f"{API}/iserver/accounts"): lambda r: httpx.Response(
                    401, json={"error": "not authenticated"}
                )
            }
        )
        broker = InteractiveBrokersBroker(client=fake.client(), settings=broker_settings)

        result = await broker.test_connection(BrokerCredentials())

        assert not result.success
        assert result.error.startswith("Session expired")
        assert len(fake.requests) == 1

    @pytest.mark.asyncio
    async def test_no_accounts(self, exchange, broker_settings):
        fake = exchange({("GET", f"{API}/iserver/accounts"): {"accounts": []}})
        broker = InteractiveBrokersBroker(client=fake.client(), settings=broker_settings)

        result = await broker.test_connection(BrokerCredentials())

        assert not result.success
        assert "No accounts found" in result.error

    @pytest.mark.asyncio
    async def test_disconnect_clears_account(self, exchange, routes, broker_settings):
        broker = await gateway_broker(exchange(routes), broker_settings)
        await broker.disconnect()

        assert broker.account_id is None
        with pytest.raises(BrokerError):
            await broker.get_account()


class TestAccounts:
    @pytest.mark.asyncio
    async def test_account_from_summary(self, exchange, routes, broker_settings):
        broker = await gateway_broker(exchange(routes), broker_settings)

        account = await broker.get_account()

        assert account.id == "U1234567"
        assert account.type == AccountType.LIVE
        assert account.balance == Decimal("125000.5")
        assert account.available_balance == Decimal("40000.0")
        assert account.margin_used == Decimal("15000.0")
        assert account.unrealized_pnl == Decimal("2300.25")

    @pytest.mark.asyncio
    async def test_inaccessible_accounts_skipped(self, exchange, routes, broker_settings):
        routes[("GET", f"{API}/portfolio/DU7654321/summary")] = lambda r: httpx.Response(
            500, json={"error": "internal"}
        )
        broker = await gateway_broker(exchange(routes), broker_settings)

        accounts = await broker.get_accounts()

        assert [a.id for a in accounts] == ["U1234567"]

    @pytest.mark.asyncio
    async def test_paper_account_detected_by_prefix(self, exchange, routes, broker_settings):
        routes[("GET", f"{API}/portfolio/DU7654321/summary")] = SUMMARY
        broker = await gateway_broker(exchange(routes), broker_settings)

        accounts = {a.id: a for a in await broker.get_accounts()}

        assert accounts["DU7654321"].type == AccountType.PAPER
        assert accounts["U1234567"].type == AccountType.LIVE

    @pytest.mark.asyncio
    async def test_cash_balance(self, exchange, routes, broker_settings):
        broker = await gateway_broker(exchange(routes), broker_settings)

        [balance] = await broker.get_balances()

        assert balance.asset == "USD"
        assert balance.total == Decimal("50000.0")
        assert balance.free == Decimal("40000.0")
        assert balance.locked == Decimal("10000.0")


class TestTrades:
    @pytest.mark.asyncio
    async def test_lookback_clamped_and_filtered(self, exchange, routes, broker_settings):
        routes[("GET", f"{API}/iserver/account/trades")] = [
            execution("0001", "AAPL", "B", 30),
            execution("0002", "MSFT", "S", 10),
            execution("0003", "AAPL", "S", 60 * 24 * 3),
        ]
        fake = exchange(routes)
        broker = await gateway_broker(fake, broker_settings)

        trades = await broker.get_trades(start_time=utc_now() - timedelta(days=30))

        assert fake.calls(f"{API}/iserver/account/trades")[0].url.params["days"] == "7"
        assert [t.id for t in trades] == [
            "interactive_brokers_0002",
            "interactive_brokers_0001",
            "interactive_brokers_0003",
        ]
        assert trades[0].side == OrderSide.SELL
        assert trades[1].fee == Decimal("1.00")
        assert trades[1].broker_order_id == "ref-0001"

    @pytest.mark.asyncio
    async def test_symbol_and_start_filter(self, exchange, routes, broker_settings):
        routes[("GET", f"{API}/iserver/account/trades")] = [
            execution("0001", "AAPL", "B", 30),
            execution("0002", "MSFT", "S", 10),
            execution("0003", "AAPL", "S", 60 * 24 * 3),
        ]
        fake = exchange(routes)
        broker = await gateway_broker(fake, broker_settings)

        trades = await broker.get_trades(symbol="AAPL", start_time=utc_now() - timedelta(hours=12))

        assert fake.calls(f"{API}/iserver/account/trades")[0].url.params["days"] == "1"
        assert [t.id for t in trades] == ["interactive_brokers_0001"]

    @pytest.mark.asyncio
    async def test_naive_start_time_treated_as_utc(self, exchange, routes, broker_settings):
        routes[("GET", f"{API}/iserver/account/trades")] = [execution("0001", "AAPL", "B", 30)]
        fake = exchange(routes)
        broker = await gateway_broker(fake, broker_settings)
        start = (utc_now() - timedelta(hours=36)).replace(tzinfo=None)

        trades = await broker.get_trades(start_time=start)

        assert fake.calls(f"{API}/iserver/account/trades")[0].url.params["days"] == "2"
        assert [t.id for t in trades] == ["interactive_brokers_0001"]


class TestPositions:
    @pytest.mark.asyncio
    async def test_paged_positions(self, exchange, routes, broker_settings):
        full_page = [position(i, f"T{i}", 1) for i in range(100)]
        routes[("GET", f"{API}/portfolio/U1234567/positions/0")] = full_page
        routes[("GET", f"{API}/portfolio/U1234567/positions/1")] = [
            position(500, "ES", -2, "FUT"),
            position(501, "GONE", 0),
        ]
        fake = exchange(routes)
        broker = await gateway_broker(fake, broker_settings)

        positions = await broker.get_positions()

        assert len(positions) == 101
        assert fake.calls(f"{API}/portfolio/U1234567/positions/2") == []
        future = positions[-1]
        assert future.side == PositionSide.SHORT
        assert future.quantity == Decimal("2")
        assert future.asset_type == AssetType.FUTURE
        assert future.cost_basis == Decimal("200.0")


class TestTokenRefresh:
    @pytest.mark.asyncio
    async def test_oauth_refresh_on_401(self, exchange, routes, broker_settings):
        def summary(request):
            if request.headers.get("Authorization") == "Bearer fresh":
                return httpx.Response(200, json=SUMMARY)
            return httpx.Response(401, json={"error": "token expired"})

        routes[("GET", f"{API}/portfolio/U1234567/summary")] = summary
        routes[("POST", "/oauth2/api/v1/token")] = {"access_token": "fresh", "expires_in": 3600}
        fake = exchange(routes)
        broker = await gateway_broker(
            fake, broker_settings, access_token="stale", refresh_token="refresh-1"
        )

        account = await broker.get_account()

        assert account.id == "U1234567"
        token_calls = fake.calls("/oauth2/api/v1/token")
        assert len(token_calls) == 1
        assert b"client_id=ibkr-client" in token_calls[0].content

    @pytest.mark.asyncio
    async def test_gateway_reauthenticates_on_401(self, exchange, routes, broker_settings):
        state = {"authenticated": False}

        def summary(request):
            if state["authenticated"]:
                return httpx.Response(200, json=SUMMARY)
            return httpx.Response(401, json={"error": "not authenticated"})

        def reauthenticate(request):
            state["authenticated"] = True
            return httpx.Response(200, json={"message": "triggered"})

        routes[("GET", f"{API}/portfolio/U1234567/summary")] = summary
        routes[("POST", f"{API}/iserver/reauthenticate")] = reauthenticate
        fake = exchange(routes)
        broker = await gateway_broker(fake, broker_settings)

        account = await broker.get_account()

        assert account.id == "U1234567"
        assert len(fake.calls(f"{API}/iserver/reauthenticate")) == 1


class TestMarketData:
    @pytest.mark.asyncio
    async def test_ticker_from_snapshot(self, exchange, routes, broker_settings):
        routes[("GET", f"{API}/iserver/secdef/search")] = [{"conid": 265598, "symbol": "AAPL"}]
        routes[("GET", f"{API}/iserver/marketdata/snapshot")] = [
            {"31": "C187.25", "84": "187.20", "85": "187.30", "83": "1.25%", "88": "1,234", "_updated": 1700000000000}
        ]
        fake = exchange(routes)
        broker = await gateway_broker(fake, broker_settings)

        ticker = await broker.get_ticker("AAPL")

        assert ticker.last_price == Decimal("187.25")
        assert ticker.price_change_percent_24h == Decimal("1.25")
        assert ticker.volume_24h == Decimal("1234")
        assert fake.calls(f"{API}/iserver/marketdata/snapshot")[0].url.params["conids"] == "265598"

    @pytest.mark.asyncio
    async def test_unknown_symbol(self, exchange, routes, broker_settings):
        routes[("GET", f"{API}/iserver/secdef/search")] = []
        broker = await gateway_broker(exchange(routes), broker_settings)

        with pytest.raises(BrokerError) as exc:
            await broker.get_ticker("NOPE")

        assert exc.value.code == BrokerErrorCode.INVALID_SYMBOL


class TestTlsVerification:
    @pytest.fixture
    def sent(self, exchange, routes, monkeypatch):
        """Record (host, verify) for every request sent by adapter-built clients."""
        routes[("POST", "/oauth2/api/v1/token")] = {"access_token": "fresh", "expires_in": 3600}
        fake = exchange(routes)
        records = []
        real_client = httpx.AsyncClient

        def build(**kwargs):
            verify = kwargs["verify"]

            def handler(request):
                records.append((request.url.host, verify))
                return fake(request)

            return real_client(transport=httpx.MockTransport(handler))

        monkeypatch.setattr(httpx, "AsyncClient", build)
        return records

    @pytest.mark.asyncio
    async def test_gateway_skips_verification(self, sent, broker_settings):
        broker = InteractiveBrokersBroker(settings=broker_settings)

        await broker.connect(BrokerCredentials())
        await broker.aclose()

        assert sent == [("localhost", False)]

    @pytest.mark.asyncio
    async def test_oauth_and_token_requests_are_verified(self, sent, broker_settings):
        broker = InteractiveBrokersBroker(settings=broker_settings)

        await broker.connect(BrokerCredentials(access_token="ibkr-access", refresh_token="refresh-1"))
        await broker.refresh_auth()
        await broker.aclose()

        assert sent == [("api.ibkr.com", True), ("api.ibkr.com", True)]

    @pytest.mark.asyncio
    async def test_oauth_credential_check_is_verified(self, sent, broker_settings):
        broker = InteractiveBrokersBroker(settings=broker_settings)

        result = await broker.check_credentials(BrokerCredentials(access_token="ibkr-access"))
        await broker.aclose()

        assert result.success
        assert sent == [("api.ibkr.com", True)]
