"""
Reconciliation Engine - Resilience.

============================================================
PURPOSE
============================================================
Retry and circuit breaking for gateway calls.

RETRY POLICY:
- At most `max_attempts` attempts, first call included
- delay = base(category) * 2^(attempt-1), plus up to 10% jitter,
  capped at `max_delay_seconds`
- Base delay: rate limit 5s, network/timeout 2s, other retryable 1s
- Terminal errors (auth, invalid params, balance, unknown) propagate
  immediately

CIRCUIT BREAKER (per logical endpoint):

    CLOSED ──(N consecutive transient failures)──► OPEN
       ▲                                            │
       │                                     (cooldown elapsed)
       │                                            ▼
       └────────(probe succeeds)────────────── HALF_OPEN
                                                    │
                          OPEN ◄──(probe fails)─────┘

Only transient (retryable) failures count toward opening.

============================================================
"""

import asyncio
import logging
import random
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, TypeVar

from .clock import ClockProtocol, SystemClock
from .config import CircuitBreakerConfig, RetryConfig
from .errors import (
    CircuitOpenError,
    ErrorCategory,
    GatewayError,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


# ============================================================
# RETRY POLICY
# ============================================================

class RetryPolicy:
    """
    Categorized exponential backoff.

    `sleep` and `rng` are injectable so tests run without real waits.
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        sleep: Optional[SleepFn] = None,
        rng: Optional[random.Random] = None,
    ):
        self._config = config or RetryConfig()
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.Random()

    @property
    def config(self) -> RetryConfig:
        return self._config

    def base_delay(self, error: GatewayError) -> float:
        """Base delay for an error category."""
        if error.category == ErrorCategory.RATE_LIMIT:
            return self._config.rate_limit_base_delay_seconds
        if error.category in (ErrorCategory.NETWORK, ErrorCategory.TIMEOUT):
            return self._config.network_base_delay_seconds
        return self._config.default_base_delay_seconds

    def compute_delay(self, error: GatewayError, attempt: int) -> float:
        """
        Delay before the next attempt.

        Args:
            error: The failure of attempt `attempt`
            attempt: 1-based attempt number that just failed

        Returns:
            Delay in seconds, never above the configured cap
        """
        delay = self.base_delay(error) * (2 ** (attempt - 1))
        delay += delay * self._config.jitter_ratio * self._rng.random()
        return min(delay, self._config.max_delay_seconds)

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        name: str = "operation",
        should_retry: Optional[Callable[[GatewayError], bool]] = None,
    ) -> T:
        """
        Run `operation` with retries.

        Args:
            operation: Zero-argument coroutine factory
            name: Label for logs
            should_retry: Narrows which retryable errors are retried

        Raises:
            GatewayError: the last failure, or the first terminal one
        """
        max_attempts = max(1, self._config.max_attempts)

        for attempt in range(1, max_attempts + 1):
            try:
                return await operation()
            except GatewayError as e:
                retryable = e.is_retryable() and (should_retry is None or should_retry(e))
                if not retryable or attempt >= max_attempts:
                    if retryable:
                        logger.error(f"{name} failed after {attempt} attempts: {e}")
                    raise

                delay = self.compute_delay(e, attempt)
                logger.warning(
                    f"{name} failed (attempt {attempt}/{max_attempts}): {e}. "
                    f"Retrying in {delay:.1f}s..."
                )
                await self._sleep(delay)

        # Unreachable: the loop either returns or raises
        raise RuntimeError(f"{name}: retry loop exited without result")


# ============================================================
# CIRCUIT BREAKER
# ============================================================

class CircuitState(Enum):
    """Circuit breaker state."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """
    Circuit breaker for one logical endpoint.

    While HALF_OPEN exactly one probe is in flight; concurrent callers
    are rejected as if the circuit were open.
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self.name = name
        self._config = config or CircuitBreakerConfig()
        self._clock = clock or SystemClock()
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at: Optional[float] = None
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitState:
        """Current state, promoting OPEN to HALF_OPEN once the cooldown is over."""
        if self._state == CircuitState.OPEN and self._cooldown_elapsed():
            self._state = CircuitState.HALF_OPEN
            self._probe_in_flight = False
            logger.info(f"Circuit {self.name}: OPEN -> HALF_OPEN")
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def _cooldown_elapsed(self) -> bool:
        if self._opened_at is None:
            return True
        return self._clock.monotonic() - self._opened_at >= self._config.cooldown_seconds

    def before_call(self) -> None:
        """
        Admit or reject a call.

        Raises:
            CircuitOpenError: if the call must not be issued
        """
        state = self.state
        if state == CircuitState.CLOSED:
            return
        if state == CircuitState.HALF_OPEN and not self._probe_in_flight:
            self._probe_in_flight = True
            return
        raise CircuitOpenError(
            f"Circuit open for {self.name}",
            endpoint=self.name,
        )

    def record_success(self) -> None:
        """A call succeeded."""
        if self._state != CircuitState.CLOSED:
            logger.info(f"Circuit {self.name}: {self._state.value} -> CLOSED")
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = None
        self._probe_in_flight = False

    def record_failure(self, error: GatewayError) -> None:
        """A call failed."""
        if not error.is_retryable():
            # Terminal errors say nothing about endpoint health
            if self._state == CircuitState.HALF_OPEN:
                self._probe_in_flight = False
            return

        if self._state == CircuitState.HALF_OPEN:
            self._open()
            return

        self._consecutive_failures += 1
        if self._consecutive_failures >= self._config.failure_threshold:
            self._open()

    def _open(self) -> None:
        logger.warning(
            f"Circuit {self.name}: -> OPEN after {self._consecutive_failures} "
            f"consecutive failures (cooldown {self._config.cooldown_seconds}s)"
        )
        self._state = CircuitState.OPEN
        self._opened_at = self._clock.monotonic()
        self._probe_in_flight = False

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run one attempt through the breaker."""
        self.before_call()
        try:
            result = await operation()
        except GatewayError as e:
            self.record_failure(e)
            raise
        except Exception:
            # Malformed response: a failed probe
            if self._state == CircuitState.HALF_OPEN:
                self._open()
            raise
        except BaseException:
            # Cancelled: no verdict, give the probe slot back
            self._probe_in_flight = False
            raise
        self.record_success()
        return result


class CircuitBreakerRegistry:
    """One breaker per logical endpoint, created lazily."""

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._config = config or CircuitBreakerConfig()
        self._clock = clock or SystemClock()
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get(self, endpoint: str) -> CircuitBreaker:
        """Breaker for an endpoint."""
        breaker = self._breakers.get(endpoint)
        if breaker is None:
            breaker = CircuitBreaker(endpoint, self._config, self._clock)
            self._breakers[endpoint] = breaker
        return breaker

    def states(self) -> Dict[str, str]:
        """Endpoint -> state, for health logging."""
        return {name: b.state.value for name, b in self._breakers.items()}
