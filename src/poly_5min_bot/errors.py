"""
Error taxonomy for the five-minute bot.

Every error raised by the core derives from BotError. The cycle runner
decides per class whether to retry, skip the window, or halt the market.
Raw exchange error strings are mapped to stable codes by normalize_error().
"""

from enum import Enum
from typing import Optional


class BotError(Exception):
    """Base exception for bot errors."""
    pass


class ConfigurationError(BotError):
    """Raised when configuration is invalid."""
    pass


class TransientNetworkError(BotError):
    """
    Retryable network failure.

    request_sent is False when the request provably never reached the
    exchange (connection refused, DNS failure), which makes an order
    submission safe to retry without an idempotency key.
    """

    def __init__(self, message: str, request_sent: bool = True, status: Optional[int] = None):
        super().__init__(message)
        self.request_sent = request_sent
        self.status = status


class AuthError(BotError):
    """Credentials rejected by the exchange. Fatal for the affected market."""
    pass


class ExchangeRequestError(BotError):
    """Non-retryable 4xx response (bad request, unknown market)."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class StaleDataError(BotError):
    """Raised when data is stale and cannot be used for trading decisions."""
    pass


class RiskLimitExceeded(BotError):
    """Raised when an intent would violate a risk limit. Never submitted."""
    pass


class OrderRejected(BotError):
    """The exchange definitively refused an order."""
    pass


class AmbiguousOrderOutcome(BotError):
    """
    The outcome of a submission is unknown (timeout after sending).

    The order record goes to UNKNOWN and is resolved by a status query.
    """

    def __init__(self, message: str, order_id: Optional[str] = None):
        super().__init__(message)
        self.order_id = order_id


class LedgerDriftDetected(BotError):
    """Ledger position diverges from the exchange. Requires an operator."""

    def __init__(self, market_id: str, ledger_quantity: float, exchange_quantity: float):
        super().__init__(
            f"Ledger drift on {market_id}: ledger={ledger_quantity} exchange={exchange_quantity}"
        )
        self.market_id = market_id
        self.ledger_quantity = ledger_quantity
        self.exchange_quantity = exchange_quantity


class InvalidTransition(BotError):
    """Illegal order state machine transition."""
    pass


class IdempotencyConflict(BotError):
    """An intent reuses the key of a recorded order for a different action."""

    def __init__(self, idempotency_key: str, message: str):
        super().__init__(f"Key {idempotency_key}: {message}")
        self.idempotency_key = idempotency_key


class ErrorCode(Enum):
    """Normalized error codes for exchange results."""
    AUTH = "auth"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    CONNECTION = "connection"
    SERVER_ERROR = "server_error"
    ORDER_NOT_FOUND = "order_not_found"
    INVALID_PRICE = "invalid_price"
    INVALID_SIZE = "invalid_size"
    MARKET_CLOSED = "market_closed"
    UNKNOWN = "unknown"


def normalize_error(
    error_msg: Optional[str] = None,
    exception_name: Optional[str] = None,
) -> ErrorCode:
    """
    Map raw error strings to normalized codes.

    Args:
        error_msg: Raw error message from the exchange
        exception_name: Exception class name if available

    Returns:
        Normalized ErrorCode
    """
    msg = (error_msg or "").lower()
    exc = (exception_name or "").lower()

    if any(kw in msg for kw in ("401", "403", "unauthorized", "forbidden", "invalid api key", "invalid signature")):
        return ErrorCode.AUTH

    if any(kw in msg for kw in ("balance", "insufficient", "not enough")):
        return ErrorCode.INSUFFICIENT_BALANCE

    if any(kw in msg for kw in ("rate limit", "429", "throttle", "too many requests")):
        return ErrorCode.RATE_LIMIT

    if "timeout" in msg or "timed out" in msg or "timeout" in exc:
        return ErrorCode.TIMEOUT

    if any(kw in msg for kw in ("connection refused", "name resolution", "cannot connect", "connect call failed")):
        return ErrorCode.CONNECTION
    if "connect" in exc:
        return ErrorCode.CONNECTION

    if any(kw in msg for kw in ("500", "502", "503", "504", "internal server error", "bad gateway", "unavailable")):
        return ErrorCode.SERVER_ERROR

    if any(kw in msg for kw in ("not found", "not exist", "unknown order")):
        return ErrorCode.ORDER_NOT_FOUND

    if any(kw in msg for kw in ("invalid price", "price out of range", "tick size")):
        return ErrorCode.INVALID_PRICE

    if any(kw in msg for kw in ("invalid size", "size too small", "minimum", "min size")):
        return ErrorCode.INVALID_SIZE

    if any(kw in msg for kw in ("closed", "not trading", "halted", "resolved")):
        return ErrorCode.MARKET_CLOSED

    return ErrorCode.UNKNOWN


def classify_exception(exc: Exception) -> BotError:
    """
    Turn an arbitrary client exception into a member of the taxonomy.

    Used around py-clob-client calls, which raise generic exceptions
    carrying the HTTP status in their message.

    Args:
        exc: Exception raised by a client library
    """
    if isinstance(exc, BotError):
        return exc

    code = normalize_error(str(exc), type(exc).__name__)

    if code == ErrorCode.AUTH:
        return AuthError(str(exc))
    if code == ErrorCode.CONNECTION:
        return TransientNetworkError(str(exc), request_sent=False)
    if code in (ErrorCode.RATE_LIMIT, ErrorCode.SERVER_ERROR):
        return TransientNetworkError(str(exc), request_sent=True)
    if code == ErrorCode.TIMEOUT:
        return AmbiguousOrderOutcome(str(exc))
    if code in (
        ErrorCode.INSUFFICIENT_BALANCE,
        ErrorCode.INVALID_PRICE,
        ErrorCode.INVALID_SIZE,
        ErrorCode.MARKET_CLOSED,
    ):
        return OrderRejected(str(exc))
    return ExchangeRequestError(str(exc))
