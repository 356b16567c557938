"""Health checks for live broker connections."""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from tradebook.broker.base import BaseBroker
from tradebook.broker.convert import utc_now
from tradebook.broker.errors import BrokerError, BrokerErrorCode
from tradebook.config import settings


class ComponentStatus(str, Enum):
    """Status of a broker connection."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    DOWN = "down"
    UNKNOWN = "unknown"


@dataclass
class BrokerHealth:
    """Health of a single broker connection.

    Attributes:
        connection_id: Registry cache key of the connection
        broker_id: Adapter id (binance, bybit, ...)
        status: Current status
        latency_ms: Probe round trip in milliseconds, None if the probe failed
        last_check: Timestamp of the probe
        message: Optional status message (usually for errors)
    """

    connection_id: str
    broker_id: str
    status: ComponentStatus
    latency_ms: float | None
    last_check: datetime
    message: str | None


@dataclass
class RegistryHealth:
    """Aggregate health of every cached connection.

    Attributes:
        overall_status: HEALTHY if all connections are healthy, DOWN if all
            are down, DEGRADED otherwise; UNKNOWN with no connections
        connections: Individual connection statuses
        checked_at: When this aggregate was computed
    """

    overall_status: ComponentStatus
    connections: list[BrokerHealth]
    checked_at: datetime


class BrokerHealthChecker:
    """Probes a connected adapter with get_account() under a deadline."""

    def __init__(
        self,
        broker: BaseBroker,
        connection_id: str | None = None,
        timeout: float | None = None,
    ) -> None:
        """Initialize with a broker adapter.

        Args:
            broker: Adapter to probe
            connection_id: Label for the result (defaults to '<broker_id>_default')
            timeout: Probe deadline in seconds (defaults to settings)
        """
        self._broker = broker
        self._connection_id = connection_id or f"{broker.metadata.id}_default"
        self._timeout = timeout if timeout is not None else settings.health_check_timeout_seconds

    def _result(
        self, status: ComponentStatus, latency_ms: float | None = None, message: str | None = None
    ) -> BrokerHealth:
        return BrokerHealth(
            connection_id=self._connection_id,
            broker_id=self._broker.metadata.id,
            status=status,
            latency_ms=latency_ms,
            last_check=utc_now(),
            message=message,
        )

    async def check(self) -> BrokerHealth:
        """Check the connection.

        Returns:
            HEALTHY on a successful probe, DEGRADED when rate limited, DOWN on
            timeout or any other failure, UNKNOWN when not connected
        """
        if not self._broker.status.is_connected:
            return self._result(ComponentStatus.UNKNOWN, message="Not connected")

        start = time.perf_counter()
        try:
            await asyncio.wait_for(self._broker.get_account(), timeout=self._timeout)
            latency_ms = (time.perf_counter() - start) * 1000
            return self._result(ComponentStatus.HEALTHY, latency_ms=latency_ms)
        except TimeoutError:
            return self._result(ComponentStatus.DOWN, message="Health check timeout")
        except BrokerError as e:
            if e.code == BrokerErrorCode.RATE_LIMITED:
                return self._result(ComponentStatus.DEGRADED, message=e.message)
            return self._result(ComponentStatus.DOWN, message=f"[{e.code.value}] {e.message}")
        except Exception as e:
            return self._result(ComponentStatus.DOWN, message=str(e))


async def check_registry(registry, timeout: float | None = None) -> RegistryHealth:
    """Check every connection cached in a BrokerRegistry concurrently."""
    checkers = [
        BrokerHealthChecker(broker, connection_id, timeout)
        for connection_id, broker in registry.active_connections().items()
    ]
    results = list(await asyncio.gather(*(c.check() for c in checkers)))

    statuses = {r.status for r in results}
    if not results:
        overall = ComponentStatus.UNKNOWN
    elif statuses == {ComponentStatus.HEALTHY}:
        overall = ComponentStatus.HEALTHY
    elif statuses == {ComponentStatus.DOWN}:
        overall = ComponentStatus.DOWN
    else:
        overall = ComponentStatus.DEGRADED

    return RegistryHealth(overall_status=overall, connections=results, checked_at=utc_now())
