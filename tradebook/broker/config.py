# tradebook/broker/config.py
"""Broker connection configuration loading.

Connections are declared in YAML. Secrets never appear in the file: each
secret field names the environment variable that holds it.

    connections:
      binance_main:
        broker: binance
        testnet: false
        api_key_env: BINANCE_API_KEY
        api_secret_env: BINANCE_API_SECRET
      hl_wallet:
        broker: hyperliquid
        wallet_address: "0x0123...abcd"
"""

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

import yaml

from tradebook.broker.errors import BrokerError, BrokerErrorCode
from tradebook.broker.models import BrokerCredentials


@dataclass
class ConnectionConfig:
    """One named broker connection."""

    connection_id: str
    broker_id: str
    is_testnet: bool = False

    # Public identifiers, safe to keep in the file
    wallet_address: str = ""
    account_id: str = ""

    # Environment variable names for secrets
    api_key_env: str = ""
    api_secret_env: str = ""
    passphrase_env: str = ""
    access_token_env: str = ""
    refresh_token_env: str = ""

    @classmethod
    def from_dict(cls, connection_id: str, data: dict) -> "ConnectionConfig":
        broker_id = data.get("broker")
        if not broker_id:
            raise ValueError(f"Connection {connection_id} has no 'broker' field")
        return cls(
            connection_id=connection_id,
            broker_id=broker_id,
            is_testnet=bool(data.get("testnet", False)),
            wallet_address=data.get("wallet_address", ""),
            account_id=str(data.get("account_id", "")),
            api_key_env=data.get("api_key_env", ""),
            api_secret_env=data.get("api_secret_env", ""),
            passphrase_env=data.get("passphrase_env", ""),
            access_token_env=data.get("access_token_env", ""),
            refresh_token_env=data.get("refresh_token_env", ""),
        )

    @classmethod
    def from_yaml(cls, path: str, connection_id: str) -> "ConnectionConfig":
        """Load a single named connection from a YAML file."""
        connections = load_connections(path)
        if connection_id not in connections:
            raise KeyError(f"Connection not found in {path}: {connection_id}")
        return connections[connection_id]

    def credentials(self, environ: Mapping[str, str] | None = None) -> BrokerCredentials:
        """Resolve secrets from the environment into BrokerCredentials.

        Raises:
            BrokerError(INVALID_CREDENTIALS): A named variable is not set
        """
        env = os.environ if environ is None else environ

        def secret(var_name: str) -> str | None:
            if not var_name:
                return None
            value = env.get(var_name)
            if not value:
                raise BrokerError(
                    f"Environment variable {var_name} for connection "
                    f"{self.connection_id} is not set",
                    code=BrokerErrorCode.INVALID_CREDENTIALS,
                )
            return value

        return BrokerCredentials(
            api_key=self.wallet_address or secret(self.api_key_env) or "",
            api_secret=secret(self.api_secret_env) or "",
            passphrase=secret(self.passphrase_env),
            is_testnet=self.is_testnet,
            access_token=secret(self.access_token_env),
            refresh_token=secret(self.refresh_token_env),
            account_id=self.account_id or None,
        )


def load_connections(path: str) -> dict[str, ConnectionConfig]:
    """Load every connection declared in a YAML file, keyed by connection id."""
    file_path = Path(path)
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(file_path) as f:
        data = yaml.safe_load(f) or {}

    return {
        connection_id: ConnectionConfig.from_dict(connection_id, entry or {})
        for connection_id, entry in (data.get("connections") or {}).items()
    }
