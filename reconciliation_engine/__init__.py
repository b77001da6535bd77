"""
Reconciliation Engine Package.

============================================================
PURPOSE
============================================================
Reconciles a user's local trade ledger against the exchange's
order history, heals the ledger where it is safe to do so, and
detects closed positions with realized P&L.

CRITICAL PRINCIPLE:
    "The exchange is authoritative for order status."
    "Every ledger write is conditional on the state observed."

============================================================
MODULES
============================================================
- types: Trade records, exchange orders, statuses
- config: Engine configuration
- errors: Error taxonomy and Bybit code mapping
- clock: Injectable clock
- event_log: Structured event logging
- state_machine: Trade status transitions
- matcher: Order matcher
- classifier: Discrepancy classifier
- orchestrator: Reconciliation passes
- position_close: Position-close detector
- resilience: Retry policy and circuit breakers
- audit: Ledger auditor
- placement: Order placement with follow-up sync
- scheduler: Periodic reconciliation
- gateway: Exchange gateways
- ledger: SQL trade ledger

============================================================
"""

# ============================================================
# TYPES
# ============================================================
from .types import (
    # Enums
    TradeSide,
    OrderKind,
    TradeStatus,
    ExchangeOrderStatus,
    MismatchType,
    MismatchSeverity,
    # Dataclasses
    TradeRecord,
    TradeUpdate,
    ExchangeOrder,
    AccountBalances,
    PlaceOrderRequest,
    PlaceOrderResult,
)

# ============================================================
# CONFIG
# ============================================================
from .config import (
    ToleranceConfig,
    RetryConfig,
    CircuitBreakerConfig,
    ExchangeConfig,
    ReconciliationConfig,
    DatabaseConfig,
    EngineConfig,
)

# ============================================================
# ERRORS
# ============================================================
from .errors import (
    ErrorCategory,
    RetryEligibility,
    ReconciliationEngineError,
    GatewayError,
    NetworkError,
    RateLimitError,
    ExchangeServerError,
    AuthenticationError,
    InvalidParameterError,
    InsufficientBalanceError,
    UnknownGatewayError,
    CircuitOpenError,
    DataIntegrityError,
    ReconciliationConflict,
    LedgerError,
    ReconciliationFetchError,
    map_bybit_error,
)

# ============================================================
# CORE
# ============================================================
from .clock import ClockProtocol, SystemClock, MockClock
from .event_log import EventType, EventSink, MemoryEventSink, EventLogger
from .state_machine import TransitionGuard
from .matcher import OrderMatcher, find_match
from .classifier import DiscrepancyClassifier, ReconciliationReport, Recommendation
from .position_close import PositionCloseDetector, PositionCloseResult
from .orchestrator import ReconciliationOrchestrator, ReconciliationSummary
from .resilience import RetryPolicy, CircuitBreaker, CircuitBreakerRegistry, CircuitState

# ============================================================
# SERVICES
# ============================================================
from .audit import LedgerAuditor, AuditReport, AuditFinding
from .placement import OrderPlacementService, PlacementResult
from .scheduler import ReconciliationScheduler


# ============================================================
# VERSION
# ============================================================
__version__ = "1.0.0"


# ============================================================
# ALL EXPORTS
# ============================================================
__all__ = [
    # Types
    "TradeSide",
    "OrderKind",
    "TradeStatus",
    "ExchangeOrderStatus",
    "MismatchType",
    "MismatchSeverity",
    "TradeRecord",
    "TradeUpdate",
    "ExchangeOrder",
    "AccountBalances",
    "PlaceOrderRequest",
    "PlaceOrderResult",
    # Config
    "ToleranceConfig",
    "RetryConfig",
    "CircuitBreakerConfig",
    "ExchangeConfig",
    "ReconciliationConfig",
    "DatabaseConfig",
    "EngineConfig",
    # Errors
    "ErrorCategory",
    "RetryEligibility",
    "ReconciliationEngineError",
    "GatewayError",
    "NetworkError",
    "RateLimitError",
    "ExchangeServerError",
    "AuthenticationError",
    "InvalidParameterError",
    "InsufficientBalanceError",
    "UnknownGatewayError",
    "CircuitOpenError",
    "DataIntegrityError",
    "ReconciliationConflict",
    "LedgerError",
    "ReconciliationFetchError",
    "map_bybit_error",
    # Core
    "ClockProtocol",
    "SystemClock",
    "MockClock",
    "EventType",
    "EventSink",
    "MemoryEventSink",
    "EventLogger",
    "TransitionGuard",
    "OrderMatcher",
    "find_match",
    "DiscrepancyClassifier",
    "ReconciliationReport",
    "Recommendation",
    "PositionCloseDetector",
    "PositionCloseResult",
    "ReconciliationOrchestrator",
    "ReconciliationSummary",
    "RetryPolicy",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
    # Services
    "LedgerAuditor",
    "AuditReport",
    "AuditFinding",
    "OrderPlacementService",
    "PlacementResult",
    "ReconciliationScheduler",
]
