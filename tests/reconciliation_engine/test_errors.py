"""
Error Taxonomy Tests.

============================================================
PURPOSE
============================================================
Bybit error code mapping and retry eligibility.

============================================================
"""

import pytest

from reconciliation_engine.errors import (
    AuthenticationError,
    CircuitOpenError,
    ErrorCategory,
    ExchangeServerError,
    InsufficientBalanceError,
    InvalidParameterError,
    NetworkError,
    RateLimitError,
    RetryEligibility,
    UnknownGatewayError,
    map_bybit_error,
)


class TestBybitErrorMapping:
    """Tests for map_bybit_error."""

    @pytest.mark.parametrize("ret_code,expected", [
        (10006, RateLimitError),
        (10018, RateLimitError),
        (10003, AuthenticationError),
        (10004, AuthenticationError),
        (10001, InvalidParameterError),
        (110007, InsufficientBalanceError),
        (170131, InsufficientBalanceError),
        (10016, ExchangeServerError),
    ])
    def test_known_codes(self, ret_code, expected):
        error = map_bybit_error(ret_code, "error")

        assert isinstance(error, expected)
        assert error.ret_code == ret_code

    def test_http_429_is_rate_limit(self):
        error = map_bybit_error(99999, "slow down", http_status=429)

        assert isinstance(error, RateLimitError)

    def test_http_5xx_is_exchange_error(self):
        error = map_bybit_error(99999, "oops", http_status=502)

        assert isinstance(error, ExchangeServerError)

    def test_message_markers(self):
        assert isinstance(map_bybit_error(99999, "Too many requests"), RateLimitError)
        assert isinstance(map_bybit_error(99999, "Connection reset"), NetworkError)

    def test_unknown_code(self):
        error = map_bybit_error(99999, "???", http_status=200, endpoint="/v5/order/history")

        assert isinstance(error, UnknownGatewayError)
        assert error.endpoint == "/v5/order/history"
        assert not error.is_retryable()

    def test_empty_message(self):
        error = map_bybit_error(99999, "")

        assert error.message == "Bybit request failed"


class TestRetryEligibility:
    """Retryable vs terminal errors."""

    def test_transient_errors_are_retryable(self):
        assert NetworkError("x").is_retryable()
        assert RateLimitError("x").is_retryable()
        assert ExchangeServerError("x").is_retryable()

    def test_terminal_errors_are_not_retryable(self):
        assert not AuthenticationError("x").is_retryable()
        assert not InvalidParameterError("x").is_retryable()
        assert not InsufficientBalanceError("x").is_retryable()
        assert not CircuitOpenError("x").is_retryable()

    def test_rate_limit_uses_backoff(self):
        assert RateLimitError("x").retry_eligible == RetryEligibility.BACKOFF

    def test_to_dict(self):
        error = RateLimitError("limited", ret_code=10006, http_status=200, endpoint="/v5/order/realtime")

        data = error.to_dict()

        assert data["category"] == ErrorCategory.RATE_LIMIT.value
        assert data["ret_code"] == 10006
        assert data["endpoint"] == "/v5/order/realtime"
        assert "code 10006" in str(error)
