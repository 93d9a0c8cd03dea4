"""Exchange error types and HTTP/body error classification."""
from enum import Enum
from typing import Any, Iterable, Optional


class ExchangeErrorType(Enum):
    AUTHENTICATION = "authentication"
    RATE_LIMIT = "rate_limit"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    INVALID_REQUEST = "invalid_request"
    NOT_FOUND = "not_found"
    SERVER_ERROR = "server_error"
    NETWORK = "network"
    UNKNOWN = "unknown"


RETRYABLE_ERRORS = frozenset(
    {ExchangeErrorType.RATE_LIMIT, ExchangeErrorType.SERVER_ERROR, ExchangeErrorType.NETWORK}
)


class ExchangeAPIError(Exception):
    """Raised by exchange adapters for any failed request.

    Attributes:
        error_type: Classified ExchangeErrorType
        status_code: HTTP status, if a response was received
        details: Parsed error body (dict, list or text), if any
    """

    def __init__(
        self,
        message: str,
        error_type: ExchangeErrorType = ExchangeErrorType.UNKNOWN,
        status_code: Optional[int] = None,
        details: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.status_code = status_code
        self.details = details

    @property
    def retryable(self) -> bool:
        return self.error_type in RETRYABLE_ERRORS

    def __str__(self) -> str:
        if self.status_code is not None:
            return f"{self.status_code}: {self.message}"
        return self.message


class CoinbaseAPIError(ExchangeAPIError):
    pass


class KrakenAPIError(ExchangeAPIError):
    pass


class RateLimitError(ExchangeAPIError):
    """Raised when rate limit is hit and backoff is exhausted."""

    def __init__(self, message: str, status_code: Optional[int] = 429, details: Any = None):
        super().__init__(message, ExchangeErrorType.RATE_LIMIT, status_code, details)


def _extract_message(body: Any) -> str:
    if isinstance(body, dict):
        for key in ("message", "error_details", "error", "preview_failure_reason"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
        return ""
    if isinstance(body, str):
        return body
    return ""


def classify_http_error(status: int, body: Any = None) -> ExchangeErrorType:
    """Map an HTTP status and error body to an ExchangeErrorType."""
    message = _extract_message(body).lower()
    if status in (401, 403):
        return ExchangeErrorType.AUTHENTICATION
    if status == 429:
        return ExchangeErrorType.RATE_LIMIT
    if status in (400, 422):
        if "insufficient" in message and "fund" in message:
            return ExchangeErrorType.INSUFFICIENT_FUNDS
        return ExchangeErrorType.INVALID_REQUEST
    if status == 404:
        return ExchangeErrorType.NOT_FOUND
    if status >= 500:
        return ExchangeErrorType.SERVER_ERROR
    return ExchangeErrorType.UNKNOWN


# Coinbase order endpoints answer 200 with success=false and one of these codes
_COINBASE_ORDER_FAILURES = {
    "INSUFFICIENT_FUND": ExchangeErrorType.INSUFFICIENT_FUNDS,
    "INSUFFICIENT_FUNDS": ExchangeErrorType.INSUFFICIENT_FUNDS,
    "INVALID_LIMIT_PRICE": ExchangeErrorType.INVALID_REQUEST,
    "INVALID_LIMIT_PRICE_POST_ONLY": ExchangeErrorType.INVALID_REQUEST,
    "INVALID_PRODUCT_ID": ExchangeErrorType.INVALID_REQUEST,
    "INVALID_SIDE": ExchangeErrorType.INVALID_REQUEST,
    "INVALID_ORDER_CONFIG": ExchangeErrorType.INVALID_REQUEST,
    "UNSUPPORTED_ORDER_CONFIGURATION": ExchangeErrorType.INVALID_REQUEST,
    "INVALID_NO_LIQUIDITY": ExchangeErrorType.INVALID_REQUEST,
    "ORDER_ENTRY_DISABLED": ExchangeErrorType.SERVER_ERROR,
}


def classify_coinbase_order_failure(error_code: Optional[str]) -> ExchangeErrorType:
    if not error_code:
        return ExchangeErrorType.UNKNOWN
    return _COINBASE_ORDER_FAILURES.get(error_code.upper(), ExchangeErrorType.INVALID_REQUEST)


def classify_kraken_errors(errors: Iterable[str]) -> ExchangeErrorType:
    """Classify Kraken's ``error`` array (e.g. ``["EAPI:Invalid key"]``)."""
    joined = ", ".join(errors)
    if any(s in joined for s in ("Invalid key", "Invalid signature", "Invalid nonce", "Permission denied")):
        return ExchangeErrorType.AUTHENTICATION
    if "Rate limit exceeded" in joined or "Too many requests" in joined:
        return ExchangeErrorType.RATE_LIMIT
    if "Insufficient funds" in joined:
        return ExchangeErrorType.INSUFFICIENT_FUNDS
    if "Invalid arguments" in joined or "Unknown asset pair" in joined or "Unknown order" in joined:
        return ExchangeErrorType.INVALID_REQUEST
    if "Service:Unavailable" in joined or "Service:Busy" in joined or "Internal error" in joined:
        return ExchangeErrorType.SERVER_ERROR
    return ExchangeErrorType.UNKNOWN
