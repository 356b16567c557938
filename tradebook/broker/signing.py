"""HMAC-SHA256 request signing for Binance and Bybit.

Both exchanges reject signatures computed over anything but the exact bytes
sent, so the query string is built once and reused for signing and sending.
"""

import hashlib
import hmac
import time
from urllib.parse import urlencode


def now_ms() -> int:
    """Wall-clock epoch milliseconds, read at call time."""
    return int(time.time() * 1000)


def hmac_sha256_hex(payload: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).hexdigest()


def build_query(params: dict[str, str | int]) -> str:
    """URL-encode params in insertion order (k1=v1&k2=v2)."""
    return urlencode([(k, str(v)) for k, v in params.items()])


def build_binance_query(params: dict[str, str | int], timestamp: int) -> str:
    """Query string with timestamp appended last, as Binance signs it."""
    return build_query({**params, "timestamp": timestamp})


def binance_signature(query_string: str, secret: str) -> str:
    return hmac_sha256_hex(query_string, secret)


def bybit_signature(
    timestamp: int, api_key: str, recv_window: int, payload: str, secret: str
) -> str:
    """Sign '<timestamp><api_key><recv_window><payload>' (payload = query string or body)."""
    return hmac_sha256_hex(f"{timestamp}{api_key}{recv_window}{payload}", secret)
