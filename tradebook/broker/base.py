# tradebook/broker/base.py
"""Broker capability contract and the shared adapter base."""

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime
from typing import Any, ClassVar, Protocol, runtime_checkable

import httpx

from tradebook.broker.convert import utc_now
from tradebook.broker.errors import BrokerError, BrokerErrorCode
from tradebook.broker.http import RestClient
from tradebook.broker.models import (
    Balance,
    BrokerAccount,
    BrokerCredentials,
    BrokerMetadata,
    ConnectionStatus,
    ConnectionTestResult,
    Order,
    Position,
    SyncOptions,
    SyncResult,
    Trade,
)
from tradebook.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

OPTIONAL_CAPABILITIES = (
    "get_accounts",
    "refresh_auth",
    "get_open_orders",
    "get_order",
    "place_order",
    "cancel_order",
    "cancel_all_orders",
    "get_symbols",
    "get_ticker",
    "get_ohlcv",
    "map_position",
)


def supports(broker: object, capability: str) -> bool:
    """Check whether a broker implements an optional capability."""
    return callable(getattr(broker, capability, None))


@runtime_checkable
class Broker(Protocol):
    """
    Capability set every adapter satisfies.

    Implementations:
    - BinanceBroker, BybitBroker: HMAC-signed REST
    - HyperliquidBroker: unsigned info-endpoint polling
    - InteractiveBrokersBroker, TDAmeritradeBroker: OAuth bearer REST

    Optional capabilities are listed in OPTIONAL_CAPABILITIES; check them
    with supports().
    """

    metadata: BrokerMetadata

    @property
    def status(self) -> ConnectionStatus:
        """Snapshot of the connection state."""
        ...

    async def connect(self, credentials: BrokerCredentials) -> None:
        """
        Verify credentials and mark the adapter connected.

        Raises:
            BrokerError(INVALID_CREDENTIALS) when the broker rejects them
        """
        ...

    async def disconnect(self) -> None:
        """Forget credentials. Idempotent, never raises."""
        ...

    async def test_connection(self, credentials: BrokerCredentials) -> ConnectionTestResult:
        """Probe credentials without changing connection state."""
        ...

    async def get_account(self) -> BrokerAccount: ...

    async def get_balances(self) -> list[Balance]: ...

    async def get_balance(self, asset: str) -> Balance | None: ...

    async def get_trades(
        self,
        symbol: str | None = None,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        limit: int | None = None,
    ) -> list[Trade]: ...

    async def get_trade(self, trade_id: str) -> Trade | None: ...

    async def get_positions(self) -> list[Position]: ...

    async def get_position(self, symbol: str) -> Position | None: ...

    async def sync(self, options: SyncOptions | None = None) -> SyncResult:
        """Pull trades, positions and balances. Never raises for sub-failures."""
        ...

    def map_trade(self, broker_trade: dict[str, Any]) -> Trade: ...


class BaseBroker(ABC):
    """Shared base for all adapters.

    Supplies the connect/disconnect protocol, default single-item lookups
    over the plural operations, a sync pass that collects failures instead
    of raising, and uniform ConnectionStatus bookkeeping.
    """

    metadata: ClassVar[BrokerMetadata]
    connect_error_code: ClassVar[BrokerErrorCode] = BrokerErrorCode.NETWORK_ERROR

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        settings: Settings | None = None,
    ):
        self._settings = settings or default_settings
        self._status = ConnectionStatus()
        self._credentials: BrokerCredentials | None = None
        self._credential_callbacks: list[Callable[[BrokerCredentials], None]] = []
        self._http = RestClient(
            self.metadata.id,
            client=client,
            timeout=self._settings.http_timeout_seconds,
            connect_error_code=self.connect_error_code,
        )

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    @property
    def status(self) -> ConnectionStatus:
        return replace(self._status)

    @property
    def is_connected(self) -> bool:
        return self._status.is_connected

    async def connect(self, credentials: BrokerCredentials) -> None:
        try:
            self._validate_credentials(credentials)
        except BrokerError as e:
            self.set_error(e.message)
            raise

        self._configure_environment(credentials)

        result = await self.test_connection(credentials)
        if not result.success:
            self._credentials = None
            self._status.is_connected = False
            self.set_error(result.error or "Failed to connect")
            logger.warning("%s connection failed: %s", self.metadata.id, result.error)
            raise BrokerError(
                result.error or "Failed to connect",
                code=result.failure_code or BrokerErrorCode.INVALID_CREDENTIALS,
                broker_code=result.error_code,
            )

        self._credentials = credentials
        self.set_error(None)
        self.set_connected(True)
        logger.info(
            "%s connected: key=%s testnet=%s",
            self.metadata.id,
            credentials.masked_key(),
            credentials.is_testnet,
        )

    async def disconnect(self) -> None:
        self._credentials = None
        self._on_disconnect()
        self.set_connected(False)
        logger.info("%s disconnected", self.metadata.id)

    async def aclose(self) -> None:
        """Release the HTTP client if this adapter created it."""
        await self._http.aclose()

    async def check_credentials(self, credentials: BrokerCredentials) -> ConnectionTestResult:
        """Test credentials against the endpoints they select, without connecting."""
        self._configure_environment(credentials)
        return await self.test_connection(credentials)

    @abstractmethod
    async def test_connection(self, credentials: BrokerCredentials) -> ConnectionTestResult: ...

    def _validate_credentials(self, credentials: BrokerCredentials) -> None:
        credentials.validate_for(self.metadata.connection_type)

    def _configure_environment(self, credentials: BrokerCredentials) -> None:
        """Select testnet or live endpoints. Called before test_connection."""

    def _on_disconnect(self) -> None:
        """Clear adapter-specific cached state (account ids etc.)."""

    def _require_credentials(self) -> BrokerCredentials:
        if self._credentials is None or not self._status.is_connected:
            raise BrokerError(
                f"Not connected to {self.metadata.display_name}",
                code=BrokerErrorCode.INVALID_CREDENTIALS,
            )
        return self._credentials

    # ------------------------------------------------------------------
    # Credential rotation
    # ------------------------------------------------------------------

    def subscribe_credentials(self, callback: Callable[[BrokerCredentials], None]) -> None:
        """Register a callback for refreshed OAuth credentials.

        The storage layer uses this to persist rotated tokens.
        """
        self._credential_callbacks.append(callback)

    def _store_refreshed_credentials(self, credentials: BrokerCredentials) -> None:
        self._credentials = credentials
        for callback in self._credential_callbacks:
            try:
                callback(credentials)
            except Exception as e:
                logger.error(f"Credential callback failed for {self.metadata.id}: {e}")

    # ------------------------------------------------------------------
    # Required data operations
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_account(self) -> BrokerAccount: ...

    @abstractmethod
    async def get_balances(self) -> list[Balance]: ...

    @abstractmethod
    async def get_trades(
        self,
        symbol: str | None = None,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        limit: int | None = None,
    ) -> list[Trade]: ...

    @abstractmethod
    async def get_positions(self) -> list[Position]: ...

    @abstractmethod
    def map_trade(self, broker_trade: dict[str, Any]) -> Trade: ...

    # ------------------------------------------------------------------
    # Default single-item lookups
    # ------------------------------------------------------------------

    async def get_balance(self, asset: str) -> Balance | None:
        balances = await self.get_balances()
        return next((b for b in balances if b.asset == asset), None)

    async def get_trade(self, trade_id: str) -> Trade | None:
        trades = await self.get_trades()
        return next((t for t in trades if t.id == trade_id), None)

    async def get_position(self, symbol: str) -> Position | None:
        positions = await self.get_positions()
        return next((p for p in positions if p.symbol == symbol), None)

    async def get_order(self, order_id: str) -> Order | None:
        if not supports(self, "get_open_orders"):
            raise BrokerError(
                f"{self.metadata.display_name} does not expose orders",
                code=BrokerErrorCode.UNKNOWN_ERROR,
            )
        orders = await self.get_open_orders()
        return next((o for o in orders if o.id == order_id), None)

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync(self, options: SyncOptions | None = None) -> SyncResult:
        options = options or SyncOptions()
        result = SyncResult(synced_at=utc_now())
        succeeded = False

        trades: dict[str, Trade] = {}
        for symbol in options.symbols or (None,):
            try:
                fetched = await self.get_trades(
                    symbol=symbol,
                    start_time=options.start_date,
                    end_time=options.end_date,
                )
            except Exception as e:
                self._record_sync_failure(result, "trades", e, symbol)
                continue
            succeeded = True
            for trade in fetched:
                trades.setdefault(trade.id, trade)
        result.trades = sorted(trades.values(), key=lambda t: t.created_at, reverse=True)
        result.trades_imported = len(result.trades)
        result.trades_mapped = len(result.trades)

        if options.include_positions:
            try:
                result.positions = await self.get_positions()
                result.positions_updated = len(result.positions)
                succeeded = True
            except Exception as e:
                self._record_sync_failure(result, "positions", e)

        if options.include_balances:
            try:
                result.balances = await self.get_balances()
                result.balances_updated = len(result.balances)
                succeeded = True
            except Exception as e:
                self._record_sync_failure(result, "balances", e)

        if options.include_open_orders:
            if supports(self, "get_open_orders"):
                try:
                    result.orders = await self.get_open_orders()
                    result.open_orders = len(result.orders)
                    succeeded = True
                except Exception as e:
                    self._record_sync_failure(result, "open orders", e)
            else:
                result.warnings.append(
                    f"{self.metadata.display_name} does not expose open orders"
                )

        if succeeded:
            self.set_sync_time()
        result.synced_at = utc_now()

        if result.errors:
            logger.warning(
                "%s sync finished with %d error(s): %s",
                self.metadata.id,
                len(result.errors),
                "; ".join(result.errors),
            )
        else:
            logger.info(
                "%s sync: %d trades, %d positions, %d balances",
                self.metadata.id,
                result.trades_imported,
                result.positions_updated,
                result.balances_updated,
            )
        return result

    def _record_sync_failure(
        self, result: SyncResult, resource: str, error: Exception, symbol: str | None = None
    ) -> None:
        target = f"{resource} ({symbol})" if symbol else resource
        if isinstance(error, BrokerError):
            result.errors.append(f"{target}: [{error.code.value}] {error.message}")
            if error.code == BrokerErrorCode.INVALID_CREDENTIALS:
                self.set_error(error.message)
        else:
            logger.error(f"Unexpected error syncing {target} from {self.metadata.id}: {error}")
            result.errors.append(f"{target}: {error}")

    # ------------------------------------------------------------------
    # Status helpers
    # ------------------------------------------------------------------

    def set_connected(self, connected: bool) -> None:
        self._status.is_connected = connected
        if connected:
            self._status.last_connected_at = utc_now()

    def set_error(self, error: str | None) -> None:
        self._status.error = error

    def set_sync_time(self) -> None:
        self._status.last_sync_at = utc_now()

    def update_rate_limit(self, remaining: int, reset_at: datetime | None = None) -> None:
        self._status.rate_limit_remaining = remaining
        self._status.rate_limit_reset_at = reset_at
