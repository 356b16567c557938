# tradebook/broker/registry.py
"""Broker registry: adapter factory and cache of live connections."""

import asyncio
import logging
from collections.abc import Callable

import httpx

from tradebook.broker.base import BaseBroker
from tradebook.broker.binance import BinanceBroker
from tradebook.broker.bybit import BybitBroker
from tradebook.broker.hyperliquid import HyperliquidBroker
from tradebook.broker.interactive_brokers import InteractiveBrokersBroker
from tradebook.broker.models import (
    BrokerCategory,
    BrokerCredentials,
    BrokerMetadata,
    ConnectionTestResult,
)
from tradebook.broker.td_ameritrade import TDAmeritradeBroker
from tradebook.config import Settings

logger = logging.getLogger(__name__)

BUILTIN_BROKERS: dict[str, type[BaseBroker]] = {
    "binance": BinanceBroker,
    "bybit": BybitBroker,
    "hyperliquid": HyperliquidBroker,
    "interactive_brokers": InteractiveBrokersBroker,
    "td_ameritrade": TDAmeritradeBroker,
}

CRYPTO_CATEGORIES = (BrokerCategory.CRYPTO_CEX, BrokerCategory.CRYPTO_DEX)
TRADITIONAL_CATEGORIES = (
    BrokerCategory.STOCKS,
    BrokerCategory.FOREX,
    BrokerCategory.FUTURES,
    BrokerCategory.OPTIONS,
)


class BrokerRegistry:
    """Creates adapters by broker id and caches connected instances.

    Instances are cached by connection id (default '<broker_id>_default'),
    so one broker can hold several connections with different credentials.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        client_factory: Callable[[], httpx.AsyncClient] | None = None,
        brokers: dict[str, type[BaseBroker]] | None = None,
    ):
        """Initialize the registry.

        Args:
            settings: Passed to every adapter (defaults to process settings)
            client_factory: Builds the httpx client for each new adapter;
                adapters create their own when None
            brokers: Initial broker id -> adapter class mapping
        """
        self._settings = settings
        self._client_factory = client_factory
        self._brokers: dict[str, type[BaseBroker]] = dict(
            BUILTIN_BROKERS if brokers is None else brokers
        )
        self._instances: dict[str, BaseBroker] = {}
        # One lock per connection id so concurrent connects share one attempt
        self._connect_locks: dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    def create_broker(self, broker_id: str) -> BaseBroker:
        """Build a fresh, unconnected adapter.

        Raises:
            ValueError: If broker_id is not registered
        """
        broker_cls = self._brokers.get(broker_id)
        if broker_cls is None:
            raise ValueError(f"Unsupported broker: {broker_id}")
        client = self._client_factory() if self._client_factory else None
        return broker_cls(client=client, settings=self._settings)

    # ------------------------------------------------------------------
    # Live connections
    # ------------------------------------------------------------------

    async def connect_broker(
        self,
        broker_id: str,
        credentials: BrokerCredentials,
        connection_id: str | None = None,
    ) -> BaseBroker:
        """Return a connected adapter, reusing the cached one when connected.

        A cache hit performs no network call; the credentials argument is
        ignored in that case.
        """
        key = connection_id or f"{broker_id}_default"
        lock = self._connect_locks.setdefault(key, asyncio.Lock())

        async with lock:
            cached = self._instances.get(key)
            if cached is not None and cached.status.is_connected:
                return cached

            broker = self.create_broker(broker_id)
            try:
                await broker.connect(credentials)
            except Exception:
                await broker.aclose()
                raise

            if cached is not None:
                await cached.aclose()
            self._instances[key] = broker
            logger.info("Connected %s as %s", broker_id, key)
            return broker

    def get_active_broker(self, connection_id: str) -> BaseBroker | None:
        return self._instances.get(connection_id)

    def active_connections(self) -> dict[str, BaseBroker]:
        return dict(self._instances)

    async def disconnect_broker(self, connection_id: str) -> None:
        broker = self._instances.pop(connection_id, None)
        if broker is None:
            return
        try:
            await broker.disconnect()
        finally:
            await broker.aclose()
        logger.info("Disconnected %s", connection_id)

    async def disconnect_all_brokers(self) -> None:
        """Disconnect every cached instance concurrently.

        Instances whose disconnect fails are logged and stay cached; the
        rest are evicted.
        """
        keys = list(self._instances)
        results = await asyncio.gather(
            *(self._instances[key].disconnect() for key in keys),
            return_exceptions=True,
        )

        for key, outcome in zip(keys, results):
            if isinstance(outcome, BaseException):
                logger.error(f"Failed to disconnect {key}: {outcome}")
                continue
            broker = self._instances.pop(key)
            await broker.aclose()

    async def test_broker_connection(
        self, broker_id: str, credentials: BrokerCredentials
    ) -> ConnectionTestResult:
        """Probe credentials on a throw-away instance that is never cached."""
        broker = self.create_broker(broker_id)
        try:
            return await broker.check_credentials(credentials)
        finally:
            await broker.aclose()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_broker(self, broker_id: str, broker_cls: type[BaseBroker]) -> None:
        if broker_id in self._brokers:
            logger.warning(f"Broker {broker_id} is already registered, overwriting")
        self._brokers[broker_id] = broker_cls

    async def unregister_broker(self, broker_id: str) -> None:
        """Remove a broker and disconnect its live instances."""
        self._brokers.pop(broker_id, None)

        keys = [
            key
            for key, broker in self._instances.items()
            if key.startswith(broker_id) or broker.metadata.id == broker_id
        ]
        for key in keys:
            await self.disconnect_broker(key)

    # ------------------------------------------------------------------
    # Metadata projections
    # ------------------------------------------------------------------

    def get_supported_brokers(self) -> list[BrokerMetadata]:
        return [broker_cls.metadata for broker_cls in self._brokers.values()]

    def get_broker_metadata(self, broker_id: str) -> BrokerMetadata | None:
        broker_cls = self._brokers.get(broker_id)
        return broker_cls.metadata if broker_cls else None

    def is_broker_supported(self, broker_id: str) -> bool:
        return broker_id in self._brokers

    def get_brokers_by_category(self, category: BrokerCategory) -> list[BrokerMetadata]:
        return [m for m in self.get_supported_brokers() if m.category == category]

    def get_crypto_exchanges(self) -> list[BrokerMetadata]:
        return [m for m in self.get_supported_brokers() if m.category in CRYPTO_CATEGORIES]

    def get_traditional_brokers(self) -> list[BrokerMetadata]:
        return [m for m in self.get_supported_brokers() if m.category in TRADITIONAL_CATEGORIES]


_default_registry: BrokerRegistry | None = None


def default_registry() -> BrokerRegistry:
    """Process-wide registry with the bundled adapters, built on first use."""
    global _default_registry
    if _default_registry is None:
        _default_registry = BrokerRegistry()
    return _default_registry


# Module-level shortcuts over the process-wide registry


def create_broker(broker_id: str) -> BaseBroker:
    return default_registry().create_broker(broker_id)


async def connect_broker(
    broker_id: str, credentials: BrokerCredentials, connection_id: str | None = None
) -> BaseBroker:
    return await default_registry().connect_broker(broker_id, credentials, connection_id)


def get_active_broker(connection_id: str) -> BaseBroker | None:
    return default_registry().get_active_broker(connection_id)


async def disconnect_broker(connection_id: str) -> None:
    await default_registry().disconnect_broker(connection_id)


async def disconnect_all_brokers() -> None:
    await default_registry().disconnect_all_brokers()


async def test_broker_connection(
    broker_id: str, credentials: BrokerCredentials
) -> ConnectionTestResult:
    return await default_registry().test_broker_connection(broker_id, credentials)


def get_supported_brokers() -> list[BrokerMetadata]:
    return default_registry().get_supported_brokers()


def get_broker_metadata(broker_id: str) -> BrokerMetadata | None:
    return default_registry().get_broker_metadata(broker_id)


def is_broker_supported(broker_id: str) -> bool:
    return default_registry().is_broker_supported(broker_id)


def get_brokers_by_category(category: BrokerCategory) -> list[BrokerMetadata]:
    return default_registry().get_brokers_by_category(category)


def get_crypto_exchanges() -> list[BrokerMetadata]:
    return default_registry().get_crypto_exchanges()


def get_traditional_brokers() -> list[BrokerMetadata]:
    return default_registry().get_traditional_brokers()
