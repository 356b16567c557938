# tradebook/broker/errors.py
"""Broker error types."""

from enum import Enum


class BrokerErrorCode(str, Enum):
    """Closed set of failure categories shared by every adapter."""

    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    INSUFFICIENT_PERMISSIONS = "INSUFFICIENT_PERMISSIONS"
    RATE_LIMITED = "RATE_LIMITED"
    NETWORK_ERROR = "NETWORK_ERROR"
    INVALID_SYMBOL = "INVALID_SYMBOL"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    ORDER_REJECTED = "ORDER_REJECTED"
    POSITION_NOT_FOUND = "POSITION_NOT_FOUND"
    BROKER_UNAVAILABLE = "BROKER_UNAVAILABLE"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


RETRYABLE_CODES = frozenset(
    {
        BrokerErrorCode.RATE_LIMITED,
        BrokerErrorCode.NETWORK_ERROR,
        BrokerErrorCode.BROKER_UNAVAILABLE,
    }
)


class BrokerError(Exception):
    """Error raised by any adapter for a broker-side failure.

    Attributes:
        code: Category from BrokerErrorCode
        broker_code: Native error code reported by the broker, if any
        is_retryable: Whether repeating the call later may succeed
        retry_after: Seconds to wait before retrying, when the broker says so
    """

    def __init__(
        self,
        message: str,
        code: BrokerErrorCode = BrokerErrorCode.UNKNOWN_ERROR,
        broker_code: str | None = None,
        is_retryable: bool | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = BrokerErrorCode(code)
        self.broker_code = broker_code
        self.is_retryable = self.code in RETRYABLE_CODES if is_retryable is None else is_retryable
        self.retry_after = retry_after

    def __repr__(self) -> str:
        return (
            f"BrokerError(code={self.code.value}, message={self.message!r}, "
            f"broker_code={self.broker_code!r}, retryable={self.is_retryable})"
        )


def error_from_status(
    status_code: int,
    message: str,
    broker_code: str | None = None,
    retry_after: float | None = None,
) -> BrokerError:
    """Build a BrokerError from an HTTP status code."""
    if status_code == 401:
        code = BrokerErrorCode.INVALID_CREDENTIALS
    elif status_code == 403:
        code = BrokerErrorCode.INSUFFICIENT_PERMISSIONS
    elif status_code in (418, 429):
        code = BrokerErrorCode.RATE_LIMITED
    elif status_code >= 500:
        code = BrokerErrorCode.BROKER_UNAVAILABLE
    else:
        code = BrokerErrorCode.UNKNOWN_ERROR

    return BrokerError(
        message,
        code=code,
        broker_code=broker_code if broker_code is not None else str(status_code),
        retry_after=retry_after,
    )
