# tests/broker/test_health.py
"""Tests for broker connection health checks."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from tradebook.broker.errors import BrokerError, BrokerErrorCode
from tradebook.broker.health import BrokerHealthChecker, ComponentStatus, check_registry
from tradebook.broker.models import ConnectionStatus


def make_broker(broker_id="binance", connected=True, get_account=None):
    broker = MagicMock()
    broker.metadata.id = broker_id
    broker.status = ConnectionStatus(is_connected=connected)
    broker.get_account = get_account or AsyncMock(return_value=MagicMock())
    return broker


class TestBrokerHealthChecker:
    @pytest.mark.asyncio
    async def test_healthy(self):
        checker = BrokerHealthChecker(make_broker(), timeout=1.0)

        result = await checker.check()

        assert result.status == ComponentStatus.HEALTHY
        assert result.connection_id == "binance_default"
        assert result.broker_id == "binance"
        assert result.latency_ms is not None
        assert result.message is None

    @pytest.mark.asyncio
    async def test_not_connected_is_unknown(self):
        broker = make_broker(connected=False)

        result = await BrokerHealthChecker(broker).check()

        assert result.status == ComponentStatus.UNKNOWN
        broker.get_account.assert_not_called()

    @pytest.mark.asyncio
    async def test_timeout_is_down(self):
        async def hang():
            await asyncio.sleep(10)

        broker = make_broker(get_account=hang)

        result = await BrokerHealthChecker(broker, "slow", timeout=0.01).check()

        assert result.status == ComponentStatus.DOWN
        assert result.message == "Health check timeout"
        assert result.connection_id == "slow"

    @pytest.mark.asyncio
    async def test_rate_limited_is_degraded(self):
        broker = make_broker(
            get_account=AsyncMock(
                side_effect=BrokerError("Too many requests", code=BrokerErrorCode.RATE_LIMITED)
            )
        )

        result = await BrokerHealthChecker(broker).check()

        assert result.status == ComponentStatus.DEGRADED
        assert result.message == "Too many requests"

    @pytest.mark.asyncio
    async def test_broker_error_is_down(self):
        broker = make_broker(
            get_account=AsyncMock(
                side_effect=BrokerError("Session expired", code=BrokerErrorCode.INVALID_CREDENTIALS)
            )
        )

        result = await BrokerHealthChecker(broker).check()

        assert result.status == ComponentStatus.DOWN
        assert result.message == "[INVALID_CREDENTIALS] Session expired"
        assert result.latency_ms is None

    @pytest.mark.asyncio
    async def test_unexpected_error_is_down(self):
        broker = make_broker(get_account=AsyncMock(side_effect=RuntimeError("boom")))

        result = await BrokerHealthChecker(broker).check()

        assert result.status == ComponentStatus.DOWN
        assert result.message == "boom"


class TestCheckRegistry:
    @staticmethod
    def registry_with(**brokers):
        registry = MagicMock()
        registry.active_connections.return_value = brokers
        return registry

    @pytest.mark.asyncio
    async def test_empty_registry_unknown(self):
        health = await check_registry(self.registry_with())

        assert health.overall_status == ComponentStatus.UNKNOWN
        assert health.connections == []

    @pytest.mark.asyncio
    async def test_all_healthy(self):
        health = await check_registry(
            self.registry_with(a=make_broker("binance"), b=make_broker("bybit"))
        )

        assert health.overall_status == ComponentStatus.HEALTHY
        assert {c.connection_id for c in health.connections} == {"a", "b"}

    @pytest.mark.asyncio
    async def test_mixed_is_degraded(self):
        failing = make_broker("bybit", get_account=AsyncMock(side_effect=RuntimeError("down")))

        health = await check_registry(self.registry_with(a=make_broker(), b=failing))

        assert health.overall_status == ComponentStatus.DEGRADED

    @pytest.mark.asyncio
    async def test_all_down(self):
        failing = make_broker(get_account=AsyncMock(side_effect=RuntimeError("down")))

        health = await check_registry(self.registry_with(a=failing))

        assert health.overall_status == ComponentStatus.DOWN
