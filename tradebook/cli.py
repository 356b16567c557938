"""Command line entry point.

Usage:
    tradebook brokers [--category crypto_cex]
    tradebook test <connection> [--config connections.yaml]
    tradebook sync <connection> [--since 2024-01-01] [--until ...] [--symbol BTCUSDT]

Results are written to stdout as JSON; logs go to stderr.
"""

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict, is_dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from tradebook.broker.config import ConnectionConfig
from tradebook.broker.convert import parse_iso
from tradebook.broker.errors import BrokerError
from tradebook.broker.models import BrokerCategory, SyncOptions
from tradebook.broker.registry import BrokerRegistry
from tradebook.config import settings

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "connections.yaml"


def to_jsonable(value: Any) -> Any:
    """Convert records to JSON-safe structures (Decimal -> str, datetime -> ISO)."""
    if is_dataclass(value) and not isinstance(value, type):
        data = asdict(value)
        data.pop("raw", None)
        return to_jsonable(data)
    if isinstance(value, dict):
        return {k: to_jsonable(v) for k, v in value.items() if k != "raw"}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def emit(payload: Any) -> None:
    print(json.dumps(to_jsonable(payload), indent=2))


def list_brokers(registry: BrokerRegistry, category: str | None) -> int:
    if category:
        brokers = registry.get_brokers_by_category(BrokerCategory(category))
    else:
        brokers = registry.get_supported_brokers()
    emit(brokers)
    return 0


async def test_connection(registry: BrokerRegistry, connection: ConnectionConfig) -> int:
    result = await registry.test_broker_connection(
        connection.broker_id, connection.credentials()
    )
    emit(result)
    return 0 if result.success else 1


async def sync_connection(
    registry: BrokerRegistry, connection: ConnectionConfig, options: SyncOptions
) -> int:
    try:
        broker = await registry.connect_broker(
            connection.broker_id,
            connection.credentials(),
            connection_id=connection.connection_id,
        )
        result = await broker.sync(options)
    finally:
        await registry.disconnect_all_brokers()

    emit(
        {
            "success": result.success,
            "synced_at": result.synced_at,
            "trades_imported": result.trades_imported,
            "positions_updated": result.positions_updated,
            "balances_updated": result.balances_updated,
            "errors": result.errors,
            "warnings": result.warnings,
            "trades": result.trades,
            "positions": result.positions,
            "balances": result.balances,
        }
    )
    return 0 if result.success else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tradebook", description="Broker integration tools")
    subparsers = parser.add_subparsers(dest="command", required=True)

    brokers = subparsers.add_parser("brokers", help="List supported brokers")
    brokers.add_argument(
        "--category",
        choices=[c.value for c in BrokerCategory],
        help="Only list brokers in this category",
    )

    for name, help_text in (("test", "Test a connection"), ("sync", "Sync a connection")):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("connection", help="Connection id from the config file")
        sub.add_argument(
            "--config", default=DEFAULT_CONFIG_PATH, help="YAML connections file"
        )
        if name == "sync":
            sub.add_argument("--since", type=parse_iso, help="ISO start date")
            sub.add_argument("--until", type=parse_iso, help="ISO end date")
            sub.add_argument(
                "--symbol",
                action="append",
                default=[],
                help="Symbol to fetch trades for (repeatable)",
            )
    return parser


def run(args: argparse.Namespace, registry: BrokerRegistry | None = None) -> int:
    registry = registry or BrokerRegistry()

    if args.command == "brokers":
        return list_brokers(registry, args.category)

    connection = ConnectionConfig.from_yaml(args.config, args.connection)
    if args.command == "test":
        return asyncio.run(test_connection(registry, connection))

    options = SyncOptions(start_date=args.since, end_date=args.until, symbols=tuple(args.symbol))
    return asyncio.run(sync_connection(registry, connection, options))


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI."""
    # Logs to stderr to keep stdout clean for JSON output
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    args = build_parser().parse_args(argv)
    try:
        return run(args)
    except BrokerError as e:
        logger.error(f"{args.command} failed: {e.message}")
        emit({"success": False, "error": e.message, "code": e.code})
        return 1
    except (FileNotFoundError, KeyError, ValueError) as e:
        logger.error(f"{args.command} failed: {e}")
        emit({"success": False, "error": str(e)})
        return 2


if __name__ == "__main__":
    sys.exit(main())
