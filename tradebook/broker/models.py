# tradebook/broker/models.py
"""Canonical broker-agnostic records produced by every adapter.

All records except ConnectionStatus are immutable and built fresh on each
call. Money and quantities are Decimal; timestamps are UTC datetimes.
"""

import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from decimal import ROUND_DOWN, Decimal
from enum import Enum
from typing import Any

from tradebook.broker.convert import ZERO, utc_now
from tradebook.broker.errors import BrokerError, BrokerErrorCode

WALLET_ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")


class BrokerCategory(str, Enum):
    CRYPTO_CEX = "crypto_cex"
    CRYPTO_DEX = "crypto_dex"
    STOCKS = "stocks"
    FOREX = "forex"
    FUTURES = "futures"
    OPTIONS = "options"


class ConnectionType(str, Enum):
    """How an adapter authenticates."""

    API_KEY = "api_key"  # key + secret
    OAUTH = "oauth"  # bearer token with refresh
    BRIDGE = "bridge"  # local bridge process
    WEBSOCKET = "websocket"
    WALLET_ADDRESS = "wallet_address"  # public address, no secret


class BrokerFeature(str, Enum):
    SPOT = "spot"
    MARGIN = "margin"
    FUTURES = "futures"
    PERPETUALS = "perpetuals"
    OPTIONS = "options"
    COPY_TRADING = "copy_trading"
    STAKING = "staking"
    LENDING = "lending"
    EARN = "earn"
    NFT = "nft"


class AssetType(str, Enum):
    CRYPTO = "crypto"
    STOCK = "stock"
    ETF = "etf"
    FOREX = "forex"
    COMMODITY = "commodity"
    INDEX = "index"
    BOND = "bond"
    OPTION = "option"
    FUTURE = "future"


class BrokerPermission(str, Enum):
    READ = "read"
    TRADE = "trade"
    WITHDRAW = "withdraw"
    TRANSFER = "transfer"
    MARGIN = "margin"
    FUTURES = "futures"
    OPTIONS = "options"


class AccountType(str, Enum):
    LIVE = "live"
    PAPER = "paper"
    TESTNET = "testnet"


class OrderSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


class OrderType(str, Enum):
    MARKET = "market"
    LIMIT = "limit"
    STOP = "stop"
    STOP_LIMIT = "stop_limit"
    TRAILING_STOP = "trailing_stop"


class OrderStatus(str, Enum):
    PENDING = "pending"
    OPEN = "open"
    FILLED = "filled"
    PARTIALLY_FILLED = "partially_filled"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    EXPIRED = "expired"


class PositionSide(str, Enum):
    LONG = "long"
    SHORT = "short"
    BOTH = "both"


class MarginType(str, Enum):
    CROSS = "cross"
    ISOLATED = "isolated"


class TimeInForce(str, Enum):
    GTC = "GTC"
    IOC = "IOC"
    FOK = "FOK"
    GTD = "GTD"


class SymbolStatus(str, Enum):
    TRADING = "trading"
    HALTED = "halted"
    CLOSED = "closed"


# ---------------------------------------------------------------------------
# Credentials and metadata
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BrokerCredentials:
    """Decrypted exchange credentials supplied by the storage layer.

    Secret fields are excluded from repr so credentials never leak into logs.
    """

    api_key: str = ""
    api_secret: str = field(default="", repr=False)
    passphrase: str | None = field(default=None, repr=False)
    is_testnet: bool = False
    access_token: str | None = field(default=None, repr=False)
    refresh_token: str | None = field(default=None, repr=False)
    expires_at: datetime | None = None
    account_id: str | None = None

    @property
    def has_api_key_pair(self) -> bool:
        return bool(self.api_key and self.api_secret)

    @property
    def is_token_expired(self) -> bool:
        if self.expires_at is None:
            return False
        return utc_now() >= self.expires_at

    def validate_for(self, connection_type: ConnectionType) -> None:
        """Check the fields required by a connection type are present.

        Raises:
            BrokerError(INVALID_CREDENTIALS) when a required field is missing
        """
        if connection_type == ConnectionType.API_KEY and not self.has_api_key_pair:
            raise BrokerError(
                "API key and secret are required",
                code=BrokerErrorCode.INVALID_CREDENTIALS,
            )
        if connection_type == ConnectionType.OAUTH and not self.access_token:
            raise BrokerError(
                "OAuth access token is required",
                code=BrokerErrorCode.INVALID_CREDENTIALS,
            )
        if connection_type == ConnectionType.WALLET_ADDRESS and not WALLET_ADDRESS_PATTERN.match(
            self.api_key or ""
        ):
            raise BrokerError(
                "A 0x-prefixed 40 hex digit wallet address is required",
                code=BrokerErrorCode.INVALID_CREDENTIALS,
            )

    def with_tokens(
        self,
        access_token: str,
        refresh_token: str | None = None,
        expires_in: float | None = None,
    ) -> "BrokerCredentials":
        """Return a copy carrying freshly issued OAuth tokens."""
        return replace(
            self,
            access_token=access_token,
            refresh_token=refresh_token or self.refresh_token,
            expires_at=utc_now() + timedelta(seconds=expires_in) if expires_in else None,
        )

    def masked_key(self) -> str:
        """Short non-secret label for logs, e.g. 'abcd…wxyz'."""
        key = self.api_key or ""
        if len(key) <= 10:
            return "***"
        return f"{key[:4]}…{key[-4:]}"


@dataclass(frozen=True)
class OAuthConfig:
    client_id: str
    token_url: str
    authorization_url: str = ""
    redirect_uri: str = ""
    client_secret: str = field(default="", repr=False)
    scopes: tuple[str, ...] = ()


@dataclass(frozen=True)
class RateLimits:
    requests_per_minute: int
    orders_per_second: int | None = None


@dataclass(frozen=True)
class BrokerMetadata:
    """Static descriptor published by each adapter class."""

    id: str
    name: str
    display_name: str
    category: BrokerCategory
    connection_type: ConnectionType
    features: tuple[BrokerFeature, ...]
    supported_asset_types: tuple[AssetType, ...]
    logo: str | None = None
    api_docs_url: str | None = None
    website_url: str | None = None
    requires_passphrase: bool = False
    supports_testnet: bool = False
    supports_oauth: bool = False
    rate_limits: RateLimits | None = None


# ---------------------------------------------------------------------------
# Account state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BrokerAccount:
    """Normalized account snapshot (unified wallet or brokerage sub-account)."""

    id: str
    name: str
    type: AccountType
    currency: str
    balance: Decimal
    available_balance: Decimal
    permissions: tuple[BrokerPermission, ...] = (BrokerPermission.READ,)
    margin_used: Decimal | None = None
    margin_available: Decimal | None = None
    unrealized_pnl: Decimal | None = None


@dataclass(frozen=True)
class Balance:
    """Per-asset balance. total always equals free + locked."""

    asset: str
    free: Decimal
    locked: Decimal
    total: Decimal
    usd_value: Decimal | None = None

    def __post_init__(self):
        if self.total != self.free + self.locked:
            raise ValueError(
                f"Balance for {self.asset} violates total == free + locked "
                f"({self.total} != {self.free} + {self.locked})"
            )

    @classmethod
    def from_parts(
        cls, asset: str, free: Decimal, locked: Decimal, usd_value: Decimal | None = None
    ) -> "Balance":
        return cls(asset=asset, free=free, locked=locked, total=free + locked, usd_value=usd_value)

    @classmethod
    def from_total(
        cls, asset: str, total: Decimal, free: Decimal, usd_value: Decimal | None = None
    ) -> "Balance":
        """Build from a reported total and available amount.

        Brokers occasionally report available > total; locked is clamped to
        zero and total is recomputed so the invariant holds.
        """
        locked = max(total - free, ZERO)
        return cls.from_parts(asset, free, locked, usd_value)


# ---------------------------------------------------------------------------
# Trading records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Trade:
    """A filled execution. id is '<broker_id>_<native id>'."""

    id: str
    broker_id: str
    broker_order_id: str
    symbol: str
    side: OrderSide
    type: OrderType
    quantity: Decimal
    price: Decimal
    filled_quantity: Decimal
    avg_fill_price: Decimal
    status: OrderStatus
    fee: Decimal
    fee_currency: str
    created_at: datetime
    updated_at: datetime
    realized_pnl: Decimal | None = None
    leverage: Decimal | None = None
    position_side: PositionSide | None = None
    closed_at: datetime | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False, hash=False)


@dataclass(frozen=True)
class Position:
    """An open exposure, recomputed from live broker state on every call."""

    id: str
    symbol: str
    side: PositionSide
    quantity: Decimal
    entry_price: Decimal
    current_price: Decimal
    unrealized_pnl: Decimal
    realized_pnl: Decimal
    created_at: datetime
    updated_at: datetime
    leverage: Decimal | None = None
    liquidation_price: Decimal | None = None
    margin_type: MarginType | None = None
    asset_type: AssetType | None = None
    cost_basis: Decimal | None = None


@dataclass(frozen=True)
class Order:
    """A resting (not yet fully filled) order."""

    id: str
    symbol: str
    side: OrderSide
    type: OrderType
    quantity: Decimal
    time_in_force: TimeInForce
    status: OrderStatus
    filled_quantity: Decimal
    created_at: datetime
    updated_at: datetime
    client_order_id: str | None = None
    price: Decimal | None = None
    stop_price: Decimal | None = None
    avg_fill_price: Decimal | None = None
    fee: Decimal | None = None
    fee_currency: str | None = None

    @property
    def remaining_quantity(self) -> Decimal:
        return max(self.quantity - self.filled_quantity, ZERO)


# ---------------------------------------------------------------------------
# Market data
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Symbol:
    """Tradable instrument rules used to validate and round order inputs."""

    symbol: str
    base_asset: str
    quote_asset: str
    status: SymbolStatus
    min_quantity: Decimal
    max_quantity: Decimal
    step_size: Decimal
    min_notional: Decimal
    price_precision: int
    quantity_precision: int
    is_margin_trading_allowed: bool | None = None
    is_futures_trading_allowed: bool | None = None
    max_leverage: int | None = None

    def round_quantity(self, quantity: Decimal) -> Decimal:
        """Round down to a multiple of step_size."""
        if self.step_size <= ZERO:
            return quantity.quantize(Decimal(1).scaleb(-self.quantity_precision), ROUND_DOWN)
        steps = (quantity / self.step_size).to_integral_value(rounding=ROUND_DOWN)
        return (steps * self.step_size).normalize()

    def round_price(self, price: Decimal) -> Decimal:
        return price.quantize(Decimal(1).scaleb(-self.price_precision), ROUND_DOWN)

    def validate_order(self, quantity: Decimal, price: Decimal) -> list[str]:
        """Return a list of rule violations (empty when the order is valid)."""
        problems = []
        if self.status != SymbolStatus.TRADING:
            problems.append(f"{self.symbol} is not trading ({self.status.value})")
        if quantity < self.min_quantity:
            problems.append(f"Quantity {quantity} below minimum {self.min_quantity}")
        if self.max_quantity > ZERO and quantity > self.max_quantity:
            problems.append(f"Quantity {quantity} above maximum {self.max_quantity}")
        if self.step_size > ZERO and self.round_quantity(quantity) != quantity:
            problems.append(f"Quantity {quantity} is not a multiple of step {self.step_size}")
        if self.min_notional > ZERO and quantity * price < self.min_notional:
            problems.append(f"Notional {quantity * price} below minimum {self.min_notional}")
        return problems


@dataclass(frozen=True)
class Ticker:
    symbol: str
    last_price: Decimal
    bid_price: Decimal
    ask_price: Decimal
    timestamp: datetime
    high_24h: Decimal | None = None
    low_24h: Decimal | None = None
    volume_24h: Decimal | None = None
    price_change_24h: Decimal | None = None
    price_change_percent_24h: Decimal | None = None


@dataclass(frozen=True)
class OHLCV:
    timestamp: datetime
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal


# ---------------------------------------------------------------------------
# Sync and connection state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SyncOptions:
    start_date: datetime | None = None
    end_date: datetime | None = None
    symbols: tuple[str, ...] = ()
    include_open_orders: bool = False
    include_positions: bool = True
    include_balances: bool = True


@dataclass
class SyncResult:
    """Outcome of a sync pass. Partial failures land in errors, never raise."""

    synced_at: datetime
    trades_imported: int = 0
    trades_mapped: int = 0
    positions_updated: int = 0
    balances_updated: int = 0
    open_orders: int = 0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    trades: list[Trade] = field(default_factory=list, repr=False)
    positions: list[Position] = field(default_factory=list, repr=False)
    balances: list[Balance] = field(default_factory=list, repr=False)
    orders: list[Order] = field(default_factory=list, repr=False)

    @property
    def success(self) -> bool:
        return not self.errors


@dataclass
class ConnectionStatus:
    """Mutable per-adapter connection state."""

    is_connected: bool = False
    last_connected_at: datetime | None = None
    last_sync_at: datetime | None = None
    error: str | None = None
    rate_limit_remaining: int | None = None
    rate_limit_reset_at: datetime | None = None


@dataclass(frozen=True)
class AccountInfo:
    id: str
    name: str
    permissions: tuple[BrokerPermission, ...]


@dataclass(frozen=True)
class ConnectionTestResult:
    """Result of probing credentials.

    failure_code tells connect() which BrokerError to raise; it is None on
    success and defaults to INVALID_CREDENTIALS for rejected credentials.
    """

    success: bool
    account_info: AccountInfo | None = None
    error: str | None = None
    error_code: str | None = None
    failure_code: BrokerErrorCode | None = None

    @classmethod
    def failed(
        cls,
        error: str,
        error_code: str | None = None,
        failure_code: BrokerErrorCode = BrokerErrorCode.INVALID_CREDENTIALS,
    ) -> "ConnectionTestResult":
        return cls(success=False, error=error, error_code=error_code, failure_code=failure_code)

    @classmethod
    def from_error(cls, error: BrokerError) -> "ConnectionTestResult":
        return cls.failed(error.message, error_code=error.broker_code, failure_code=error.code)
