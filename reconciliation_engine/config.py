"""
Reconciliation Engine - Configuration.

============================================================
PURPOSE
============================================================
All configuration for the reconciliation engine.

CRITICAL CONSTRAINTS:
- No blind retries
- No infinite loops
- Tolerances live here, not in the algorithms

============================================================
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Tuple

from dotenv import load_dotenv


# ============================================================
# TOLERANCES
# ============================================================

@dataclass
class ToleranceConfig:
    """
    Matching and comparison tolerances.

    Pending product sign-off; see DESIGN.md.
    """

    quantity_tolerance_pct: Decimal = Decimal("0.05")
    """Fuzzy quantity tolerance as a fraction of the local quantity (inclusive)."""

    quantity_abs_tolerance: Decimal = Decimal("0.001")
    """Fixed quantity tolerance for the precise-quantity case."""

    price_tolerance: Decimal = Decimal("0.01")
    """Price difference above which a price mismatch is reported."""

    fill_price_epsilon: Decimal = Decimal("0.01")
    """Fill price difference above which the ledger is patched."""

    balance_epsilon: Decimal = Decimal("0.00001")
    """Wallet balance at or below which a position counts as closed."""


# ============================================================
# RETRY CONFIGURATION
# ============================================================

@dataclass
class RetryConfig:
    """
    Retry configuration for gateway calls.

    SAFETY: Limited attempts with exponential backoff and jitter.
    """

    max_attempts: int = 3
    """Maximum number of attempts, first call included."""

    rate_limit_base_delay_seconds: float = 5.0
    """Base delay after a rate-limit error."""

    network_base_delay_seconds: float = 2.0
    """Base delay after a network/timeout error."""

    default_base_delay_seconds: float = 1.0
    """Base delay for any other retryable error."""

    max_delay_seconds: float = 30.0
    """Cap on a single delay."""

    jitter_ratio: float = 0.1
    """Maximum jitter as a fraction of the computed delay."""


@dataclass
class CircuitBreakerConfig:
    """Per-endpoint circuit breaker configuration."""

    failure_threshold: int = 5
    """Consecutive transient failures before opening."""

    cooldown_seconds: float = 30.0
    """Time spent OPEN before one probe is allowed."""


# ============================================================
# EXCHANGE CONFIGURATION
# ============================================================

@dataclass
class ExchangeConfig:
    """
    Exchange-specific configuration.
    """

    exchange_id: str = "bybit"
    """Exchange identifier."""

    testnet: bool = True
    """Whether to use testnet."""

    category: str = "spot"
    """Bybit product category."""

    api_key: str = ""
    """API key (loaded from env)."""

    api_secret: str = ""
    """API secret (loaded from env)."""

    recv_window: int = 5000
    """Request validity window in ms."""

    timeout_seconds: float = 15.0
    """Per-request timeout."""

    instrument_cache_ttl_seconds: float = 3600.0
    """Instrument info cache TTL."""

    instrument_cache_max_size: int = 500
    """Instrument info cache capacity."""


# ============================================================
# RECONCILIATION CONFIGURATION
# ============================================================

@dataclass
class ReconciliationConfig:
    """
    Reconciliation pass configuration.
    """

    user_id: str = ""
    """Owner of the ledger records being reconciled."""

    lookback_hours: float = 72.0
    """Default lookback window."""

    history_limit: int = 200
    """Orders requested from the exchange history endpoint."""

    interval_seconds: float = 300.0
    """Interval between scheduled passes."""

    run_position_close_detection: bool = True
    """Whether to run the position-close detector after healing."""

    follow_up_delay_seconds: float = 5.0
    """Delay before the follow-up sync after an order is placed."""

    quote_assets: Tuple[str, ...] = ("FDUSD", "USDT", "USDC", "BUSD", "BTC", "ETH", "EUR")
    """Quote currencies stripped to derive a base asset."""


@dataclass
class DatabaseConfig:
    """Ledger database configuration."""

    url: str = "sqlite+aiosqlite:///./ledger.db"
    """SQLAlchemy async URL."""

    echo: bool = False
    """Log SQL statements."""


# ============================================================
# MASTER CONFIGURATION
# ============================================================

@dataclass
class EngineConfig:
    """
    Master configuration for the reconciliation engine.
    """

    tolerance: ToleranceConfig = field(default_factory=ToleranceConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)
    reconciliation: ReconciliationConfig = field(default_factory=ReconciliationConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Build configuration from environment (and a .env file if present)."""
        load_dotenv()

        exchange = ExchangeConfig(
            api_key=os.environ.get("BYBIT_API_KEY", ""),
            api_secret=os.environ.get("BYBIT_API_SECRET", ""),
            testnet=os.environ.get("BYBIT_TESTNET", "true").lower() in ("1", "true", "yes"),
            category=os.environ.get("BYBIT_CATEGORY", "spot"),
        )
        reconciliation = ReconciliationConfig(
            user_id=os.environ.get("RECONCILIATION_USER_ID", ""),
            lookback_hours=float(os.environ.get("RECONCILIATION_LOOKBACK_HOURS", "72")),
            interval_seconds=float(os.environ.get("RECONCILIATION_INTERVAL_SECONDS", "300")),
        )
        database = DatabaseConfig(
            url=os.environ.get("DATABASE_URL", DatabaseConfig.url),
        )
        return cls(exchange=exchange, reconciliation=reconciliation, database=database)

    @classmethod
    def for_testing(cls) -> "EngineConfig":
        """Get configuration for testing."""
        return cls(
            retry=RetryConfig(
                rate_limit_base_delay_seconds=0.0,
                network_base_delay_seconds=0.0,
                default_base_delay_seconds=0.0,
            ),
            reconciliation=ReconciliationConfig(
                user_id="test-user",
                follow_up_delay_seconds=0.0,
            ),
            database=DatabaseConfig(url="sqlite+aiosqlite://"),
        )
