"""
Reconciliation Engine - Error Taxonomy.

============================================================
PURPOSE
============================================================
Exception classes for the reconciliation core, and the mapping
from Bybit V5 error codes onto them.

ERROR CATEGORIES:
1. NETWORK         - Connection issues, timeouts (retry)
2. RATE_LIMIT      - Too many requests (retry, longer backoff)
3. EXCHANGE_ERROR  - Exchange internal errors (retry)
4. AUTHENTICATION  - Invalid credentials (terminal)
5. INVALID_PARAMS  - Rejected parameters (terminal)
6. INSUFFICIENT    - Insufficient balance (terminal)
7. UNKNOWN         - Unclassified (terminal)

RECORD-LEVEL ERRORS (never abort a pass):
- DataIntegrityError     - malformed exchange data, skipped
- ReconciliationConflict - lost a conditional write, re-evaluated next pass

============================================================
"""

from enum import Enum
from typing import Any, Dict, Optional, Tuple


# ============================================================
# ERROR TAXONOMY
# ============================================================

class ErrorCategory(Enum):
    """Standardized error categories."""

    NETWORK = "NETWORK"
    TIMEOUT = "TIMEOUT"
    RATE_LIMIT = "RATE_LIMIT"
    EXCHANGE_ERROR = "EXCHANGE_ERROR"
    AUTHENTICATION = "AUTHENTICATION"
    INVALID_PARAMS = "INVALID_PARAMS"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    UNKNOWN = "UNKNOWN"


class RetryEligibility(Enum):
    """Whether error is eligible for retry."""

    RETRY = "RETRY"           # Safe to retry
    NO_RETRY = "NO_RETRY"     # Should not retry
    BACKOFF = "BACKOFF"       # Retry with a longer exponential backoff


# ============================================================
# BASE EXCEPTIONS
# ============================================================

class ReconciliationEngineError(Exception):
    """Base exception for the reconciliation engine."""


class GatewayError(ReconciliationEngineError):
    """
    Failure talking to the exchange.

    Subclasses fix the category and retry eligibility.
    """

    category: ErrorCategory = ErrorCategory.UNKNOWN
    retry_eligible: RetryEligibility = RetryEligibility.NO_RETRY

    def __init__(
        self,
        message: str,
        ret_code: Optional[int] = None,
        http_status: Optional[int] = None,
        endpoint: Optional[str] = None,
    ):
        self.message = message
        self.ret_code = ret_code
        self.http_status = http_status
        self.endpoint = endpoint
        super().__init__(str(self))

    def is_retryable(self) -> bool:
        """Check if error is retryable."""
        return self.retry_eligible in (RetryEligibility.RETRY, RetryEligibility.BACKOFF)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "category": self.category.value,
            "message": self.message,
            "retry_eligible": self.retry_eligible.value,
            "ret_code": self.ret_code,
            "http_status": self.http_status,
            "endpoint": self.endpoint,
        }

    def __str__(self) -> str:
        code = f" (code {self.ret_code})" if self.ret_code is not None else ""
        return f"[{self.category.value}] {self.message}{code}"


# ============================================================
# RETRYABLE GATEWAY ERRORS
# ============================================================

class NetworkError(GatewayError):
    """Connection failure or timeout."""

    category = ErrorCategory.NETWORK
    retry_eligible = RetryEligibility.RETRY


class RateLimitError(GatewayError):
    """Exchange rate limit hit."""

    category = ErrorCategory.RATE_LIMIT
    retry_eligible = RetryEligibility.BACKOFF


class ExchangeServerError(GatewayError):
    """Exchange-side internal error."""

    category = ErrorCategory.EXCHANGE_ERROR
    retry_eligible = RetryEligibility.RETRY


# ============================================================
# TERMINAL GATEWAY ERRORS
# ============================================================

class AuthenticationError(GatewayError):
    """Invalid or expired API credentials."""

    category = ErrorCategory.AUTHENTICATION


class InvalidParameterError(GatewayError):
    """Request parameters rejected by the exchange."""

    category = ErrorCategory.INVALID_PARAMS


class InsufficientBalanceError(GatewayError):
    """Not enough balance to place the order."""

    category = ErrorCategory.INSUFFICIENT_BALANCE


class UnknownGatewayError(GatewayError):
    """Unclassified exchange failure."""

    category = ErrorCategory.UNKNOWN


class CircuitOpenError(GatewayError):
    """Circuit breaker is open for this endpoint; no call was issued."""

    category = ErrorCategory.CIRCUIT_OPEN


# ============================================================
# RECORD / PASS LEVEL ERRORS
# ============================================================

class DataIntegrityError(ReconciliationEngineError):
    """Malformed exchange or ledger data (zero quantity, bad price, ...)."""

    def __init__(self, message: str, payload: Optional[Dict[str, Any]] = None):
        self.payload = payload or {}
        super().__init__(message)


class ReconciliationConflict(ReconciliationEngineError):
    """
    A conditional write matched zero rows, or one local row was
    claimed twice. Not fatal: the next pass re-evaluates from fresh state.
    """

    def __init__(self, message: str, trade_id: Optional[str] = None):
        self.trade_id = trade_id
        super().__init__(message)


class LedgerError(ReconciliationEngineError):
    """Ledger store operation failed."""


class ReconciliationFetchError(ReconciliationEngineError):
    """The exchange could not be read at all; the pass did not run."""

    def __init__(self, message: str, summary: Optional[Any] = None):
        self.summary = summary
        super().__init__(message)


# ============================================================
# BYBIT ERROR MAPPING
# ============================================================

# Bybit V5 retCodes -> exception class
BYBIT_ERROR_MAP: Dict[int, type] = {
    # Rate limiting
    10006: RateLimitError,
    10018: RateLimitError,

    # Authentication
    10003: AuthenticationError,
    10004: AuthenticationError,
    10005: AuthenticationError,
    10007: AuthenticationError,
    33004: AuthenticationError,

    # Parameters
    10001: InvalidParameterError,
    10002: InvalidParameterError,
    110003: InvalidParameterError,
    110004: InvalidParameterError,
    110005: InvalidParameterError,
    110009: InvalidParameterError,
    110010: InvalidParameterError,
    110011: InvalidParameterError,
    170136: InvalidParameterError,
    170137: InvalidParameterError,

    # Balance
    110007: InsufficientBalanceError,
    110012: InsufficientBalanceError,
    170131: InsufficientBalanceError,
    170213: InsufficientBalanceError,

    # Exchange internal
    10000: ExchangeServerError,
    10016: ExchangeServerError,
    10027: NetworkError,
}

# Substrings that classify transport-level failures
_NETWORK_MARKERS: Tuple[str, ...] = ("timeout", "timed out", "network", "connection", "econnreset")
_RATE_LIMIT_MARKERS: Tuple[str, ...] = ("rate limit", "too many requests")


def map_bybit_error(
    ret_code: int,
    ret_msg: str,
    http_status: Optional[int] = None,
    endpoint: Optional[str] = None,
) -> GatewayError:
    """
    Map a Bybit error response to a GatewayError subclass.

    Args:
        ret_code: Bybit retCode (non-zero)
        ret_msg: Bybit retMsg
        http_status: HTTP status code
        endpoint: Endpoint that failed

    Returns:
        GatewayError instance
    """
    error_cls = BYBIT_ERROR_MAP.get(ret_code)

    if error_cls is None:
        lowered = (ret_msg or "").lower()
        if http_status == 429 or any(m in lowered for m in _RATE_LIMIT_MARKERS):
            error_cls = RateLimitError
        elif http_status in (401, 403):
            error_cls = AuthenticationError
        elif http_status is not None and http_status >= 500:
            error_cls = ExchangeServerError
        elif any(m in lowered for m in _NETWORK_MARKERS):
            error_cls = NetworkError
        else:
            error_cls = UnknownGatewayError

    return error_cls(
        ret_msg or "Bybit request failed",
        ret_code=ret_code,
        http_status=http_status,
        endpoint=endpoint,
    )
