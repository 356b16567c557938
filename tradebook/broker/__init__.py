"""Broker abstraction module."""

from tradebook.broker.base import OPTIONAL_CAPABILITIES, BaseBroker, Broker, supports
from tradebook.broker.binance import BinanceBroker
from tradebook.broker.bybit import BybitBroker
from tradebook.broker.config import ConnectionConfig, load_connections
from tradebook.broker.errors import BrokerError, BrokerErrorCode
from tradebook.broker.health import BrokerHealth, BrokerHealthChecker, check_registry
from tradebook.broker.hyperliquid import HyperliquidBroker
from tradebook.broker.interactive_brokers import InteractiveBrokersBroker
from tradebook.broker.models import (
    OHLCV,
    AccountType,
    AssetType,
    Balance,
    BrokerAccount,
    BrokerCategory,
    BrokerCredentials,
    BrokerFeature,
    BrokerMetadata,
    BrokerPermission,
    ConnectionStatus,
    ConnectionTestResult,
    ConnectionType,
    Order,
    OrderSide,
    OrderStatus,
    OrderType,
    Position,
    PositionSide,
    Symbol,
    SyncOptions,
    SyncResult,
    Ticker,
    Trade,
)
from tradebook.broker.registry import (
    BrokerRegistry,
    connect_broker,
    create_broker,
    default_registry,
    disconnect_all_brokers,
    disconnect_broker,
    get_active_broker,
    get_broker_metadata,
    get_brokers_by_category,
    get_crypto_exchanges,
    get_supported_brokers,
    get_traditional_brokers,
    is_broker_supported,
    test_broker_connection,
)
from tradebook.broker.td_ameritrade import TDAmeritradeBroker

__all__ = [
    "OHLCV",
    "OPTIONAL_CAPABILITIES",
    "AccountType",
    "AssetType",
    "Balance",
    "BaseBroker",
    "BinanceBroker",
    "Broker",
    "BrokerAccount",
    "BrokerCategory",
    "BrokerCredentials",
    "BrokerError",
    "BrokerErrorCode",
    "BrokerFeature",
    "BrokerHealth",
    "BrokerHealthChecker",
    "BrokerMetadata",
    "BrokerPermission",
    "BrokerRegistry",
    "BybitBroker",
    "ConnectionConfig",
    "ConnectionStatus",
    "ConnectionTestResult",
    "ConnectionType",
    "HyperliquidBroker",
    "InteractiveBrokersBroker",
    "Order",
    "OrderSide",
    "OrderStatus",
    "OrderType",
    "Position",
    "PositionSide",
    "Symbol",
    "SyncOptions",
    "SyncResult",
    "TDAmeritradeBroker",
    "Ticker",
    "Trade",
    "check_registry",
    "connect_broker",
    "create_broker",
    "default_registry",
    "disconnect_all_brokers",
    "disconnect_broker",
    "get_active_broker",
    "get_broker_metadata",
    "get_brokers_by_category",
    "get_crypto_exchanges",
    "get_supported_brokers",
    "get_traditional_brokers",
    "is_broker_supported",
    "load_connections",
    "supports",
    "test_broker_connection",
]
