"""
Reconciliation Engine - Orchestrator.

============================================================
PURPOSE
============================================================
Drives one reconciliation pass for one user:

1. Fetch active orders and order history; merge by order id,
   the active view wins
2. Fetch local records in the window (emergency: no time filter)
3. Classify discrepancies
4. Unknown open/filled orders: link to a legacy record the
   classifier matched, or create a new record
5. Known orders: heal status / fill price / quantity with one
   conditional update; exchange termination closes the record
6. Position-close detection
7. Structured summary

CRITICAL INVARIANT:
    "Exchange state is authoritative for order status, and every
    ledger write is conditioned on the status observed this pass."

Only a failure to read the exchange aborts a pass. Per-record
failures are logged with context, counted, and skipped.

============================================================
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from .classifier import DiscrepancyClassifier, ReconciliationReport
from .clock import ClockProtocol, SystemClock
from .config import EngineConfig
from .errors import (
    DataIntegrityError,
    GatewayError,
    LedgerError,
    ReconciliationConflict,
    ReconciliationFetchError,
)
from .event_log import EventLogger, EventType
from .gateway.base import ExchangeGateway
from .ledger.store import LedgerStore
from .matcher import OrderMatcher
from .position_close import PositionCloseDetector
from .state_machine import TransitionGuard
from .types import (
    ExchangeOrder,
    MismatchSeverity,
    TradeRecord,
    TradeSide,
    TradeStatus,
    TradeUpdate,
)


logger = logging.getLogger(__name__)


# ============================================================
# SUMMARY
# ============================================================

@dataclass
class ReconciliationSummary:
    """Counts for one reconciliation pass."""

    run_id: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    emergency: bool = False

    exchange_orders: int = 0
    local_records: int = 0

    created: int = 0
    updated: int = 0
    linked: int = 0
    closed: int = 0
    """Records closed because the exchange terminated the order."""

    positions_closed: int = 0
    """Records closed by the position-close detector."""

    skipped: int = 0
    conflicts: int = 0
    errors: int = 0
    fetch_failed: bool = False

    report: Optional[ReconciliationReport] = field(default=None, repr=False)

    @property
    def processed(self) -> int:
        """Ledger writes applied this pass."""
        return self.created + self.updated + self.linked + self.closed + self.positions_closed

    def describe(self) -> str:
        """One-line human summary."""
        if self.fetch_failed:
            return "0 processed, fetch failed"
        return (
            f"{self.processed} processed: {self.created} created, {self.updated} updated, "
            f"{self.linked} linked, {self.closed} closed, "
            f"{self.positions_closed} positions closed, {self.skipped} skipped, "
            f"{self.conflicts} conflicts, {self.errors} errors"
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "run_id": self.run_id,
            "emergency": self.emergency,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "exchange_orders": self.exchange_orders,
            "local_records": self.local_records,
            "created": self.created,
            "updated": self.updated,
            "linked": self.linked,
            "closed": self.closed,
            "positions_closed": self.positions_closed,
            "skipped": self.skipped,
            "conflicts": self.conflicts,
            "errors": self.errors,
            "fetch_failed": self.fetch_failed,
        }
        if self.report is not None:
            data["report"] = self.report.summary()
        return data


# ============================================================
# ORCHESTRATOR
# ============================================================

class ReconciliationOrchestrator:
    """
    Reconciles one user's ledger against the exchange.

    Regular and emergency passes share one code path; emergency
    only drops the time filters.

    Usage:
        orchestrator = ReconciliationOrchestrator(gateway, store, events, config)
        summary = await orchestrator.run_reconciliation(timedelta(hours=72))
    """

    def __init__(
        self,
        gateway: ExchangeGateway,
        store: LedgerStore,
        events: EventLogger,
        config: Optional[EngineConfig] = None,
        classifier: Optional[DiscrepancyClassifier] = None,
        detector: Optional[PositionCloseDetector] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._config = config or EngineConfig()
        self._gateway = gateway
        self._store = store
        self._events = events
        self._clock = clock or SystemClock()
        self._user_id = self._config.reconciliation.user_id or events.user_id
        self._tolerance = self._config.tolerance

        self._classifier = classifier or DiscrepancyClassifier(
            self._tolerance, OrderMatcher(self._tolerance)
        )
        self._detector = detector or PositionCloseDetector(
            gateway,
            store,
            events,
            user_id=self._user_id,
            tolerance=self._tolerance,
            quote_assets=self._config.reconciliation.quote_assets,
            history_limit=self._config.reconciliation.history_limit,
        )

        self._run_counter = 0

    @property
    def user_id(self) -> str:
        return self._user_id

    def _lookback(self, lookback: Optional[timedelta]) -> timedelta:
        if lookback is None:
            return timedelta(hours=self._config.reconciliation.lookback_hours)
        return lookback

    def _next_run_id(self) -> str:
        self._run_counter += 1
        return f"REC_{self._clock.now():%Y%m%d%H%M%S}_{self._run_counter:04d}"

    # --------------------------------------------------------
    # PASS
    # --------------------------------------------------------

    async def run_reconciliation(
        self,
        lookback: Optional[timedelta] = None,
        emergency: bool = False,
    ) -> ReconciliationSummary:
        """
        Run one reconciliation pass.

        Args:
            lookback: Window size; config default when omitted
            emergency: Drop time filters on both sides

        Returns:
            ReconciliationSummary

        Raises:
            ReconciliationFetchError: the exchange could not be read
        """
        window = self._lookback(lookback)
        summary = ReconciliationSummary(
            run_id=self._next_run_id(),
            started_at=self._clock.now(),
            emergency=emergency,
        )
        window_start = None if emergency else summary.started_at - window

        await self._events.log(
            EventType.RECONCILIATION_STARTED,
            f"Reconciliation {summary.run_id} started ({'emergency' if emergency else 'regular'})",
            {"run_id": summary.run_id, "lookback_hours": window.total_seconds() / 3600},
        )

        try:
            orders = await self._fetch_exchange_orders(window_start)
        except ReconciliationFetchError as e:
            summary.fetch_failed = True
            summary.completed_at = self._clock.now()
            e.summary = summary
            await self._events.log(
                EventType.RECONCILIATION_FAILED,
                f"Reconciliation {summary.run_id}: {summary.describe()}",
                {"run_id": summary.run_id, "error": str(e)},
            )
            raise

        local = await self._store.query_trades(self._user_id, created_from=window_start)
        summary.exchange_orders = len(orders)
        summary.local_records = len(local)

        report = self._classifier.classify(orders, local)
        summary.report = report
        summary.skipped += len(report.skipped)
        malformed = {s.execution.order_id for s in report.skipped}
        for skipped in report.skipped:
            await self._events.log(EventType.DATA_INTEGRITY, skipped.reason, skipped.execution.to_log_dict())

        known = await self._known_records(orders)

        for order in orders:
            if order.order_id in malformed:
                continue
            try:
                await self._process_order(order, known.get(order.order_id, []), report, summary)
            except Exception as e:
                summary.errors += 1
                await self._events.log(
                    EventType.RECORD_ERROR,
                    f"Failed to reconcile order {order.order_id}: {e}",
                    {"order": order.to_log_dict(), "error": str(e)},
                )

        await self._log_critical(report)

        if self._config.reconciliation.run_position_close_detection:
            try:
                result = await self._detector.detect(orders)
                summary.positions_closed = result.total_closed
                summary.conflicts += result.conflicts
                summary.errors += result.errors
            except (GatewayError, LedgerError) as e:
                summary.errors += 1
                await self._events.log(
                    EventType.RECORD_ERROR,
                    f"Position-close detection failed: {e}",
                    {"run_id": summary.run_id, "error": str(e)},
                )

        summary.completed_at = self._clock.now()
        await self._events.log(
            EventType.RECONCILIATION_COMPLETED,
            f"Reconciliation {summary.run_id} complete: {summary.describe()}",
            summary.to_dict(),
        )
        return summary

    async def analyze(self, lookback: Optional[timedelta] = None) -> ReconciliationReport:
        """
        Classify without writing anything.

        Raises:
            ReconciliationFetchError: the exchange could not be read
        """
        window_start = self._clock.now() - self._lookback(lookback)
        orders = await self._fetch_exchange_orders(window_start)
        local = await self._store.query_trades(self._user_id, created_from=window_start)

        report = self._classifier.classify(orders, local)
        await self._events.log(
            EventType.RECONCILIATION_ANALYSIS,
            f"Reconciliation analysis: {report.matched_count} matched, "
            f"{len(report.missing_from_local)} missing, {len(report.extra_in_local)} extra",
            {
                **report.summary(),
                "recommendations": [
                    {"severity": r.severity.value, "type": r.mismatch_type.value, "message": r.message}
                    for r in report.recommendations
                ],
            },
        )
        await self._log_critical(report)
        return report

    # --------------------------------------------------------
    # FETCH
    # --------------------------------------------------------

    async def _fetch_exchange_orders(self, window_start: Optional[datetime]) -> List[ExchangeOrder]:
        try:
            active = await self._gateway.get_active_orders()
            history = await self._gateway.get_order_history(self._config.reconciliation.history_limit)
        except GatewayError as e:
            raise ReconciliationFetchError(f"Exchange fetch failed: {e}") from e

        merged: Dict[str, ExchangeOrder] = {}
        for order in history:
            if window_start is not None and order.timestamp is not None and order.timestamp < window_start:
                continue
            merged[order.order_id] = order
        for order in active:
            merged[order.order_id] = order

        logger.info(
            f"Fetched {len(active)} active and {len(history)} historical orders "
            f"({len(merged)} after merge)"
        )
        return list(merged.values())

    async def _known_records(self, orders: Sequence[ExchangeOrder]) -> Dict[str, List[TradeRecord]]:
        records = await self._store.find_by_external_order_ids(
            self._user_id, [o.order_id for o in orders]
        )
        known: Dict[str, List[TradeRecord]] = {}
        for record in records:
            known.setdefault(record.external_order_id, []).append(record)
        return known

    # --------------------------------------------------------
    # PER ORDER
    # --------------------------------------------------------

    async def _process_order(
        self,
        order: ExchangeOrder,
        matches: List[TradeRecord],
        report: ReconciliationReport,
        summary: ReconciliationSummary,
    ) -> None:
        if len(matches) > 1:
            conflict = ReconciliationConflict(
                f"{len(matches)} local records share external order {order.order_id}"
            )
            summary.conflicts += 1
            await self._events.log(
                EventType.CONFLICT,
                str(conflict),
                {"order": order.to_log_dict(), "trade_ids": [m.id for m in matches]},
            )
            return

        if matches:
            await self._heal_known(order, matches[0], summary)
            return

        if not order.status.is_importable:
            logger.debug(f"Ignoring unknown terminated order {order.order_id} ({order.status.value})")
            return

        try:
            self._validate_importable(order)
        except DataIntegrityError as e:
            summary.skipped += 1
            await self._events.log(EventType.DATA_INTEGRITY, str(e), e.payload)
            return

        legacy = report.match_for(order.order_id)
        if legacy is not None and legacy.external_order_id is None:
            await self._link(order, legacy, summary)
        else:
            await self._import(order, summary)

    @staticmethod
    def _fill_price(order: ExchangeOrder) -> Optional[Decimal]:
        if order.side != TradeSide.BUY:
            return None
        if order.average_price or order.is_trade:
            return order.executed_price
        return None

    @staticmethod
    def _record_price(order: ExchangeOrder) -> Decimal:
        return order.price if order.price > 0 else order.executed_price

    def _validate_importable(self, order: ExchangeOrder) -> None:
        if order.quantity <= 0:
            raise DataIntegrityError(
                f"Order {order.order_id} has non-positive quantity, not imported",
                payload=order.to_log_dict(),
            )
        if self._record_price(order) <= 0:
            raise DataIntegrityError(
                f"Order {order.order_id} has no usable price, not imported",
                payload=order.to_log_dict(),
            )

    async def _import(self, order: ExchangeOrder, summary: ReconciliationSummary) -> None:
        record = TradeRecord(
            user_id=self._user_id,
            symbol=order.symbol,
            side=order.side,
            quantity=order.quantity,
            price=self._record_price(order),
            status=order.status.to_trade_status(),
            order_type=order.order_type,
            external_order_id=order.order_id,
            external_trade_id=order.execution_id,
            buy_fill_price=self._fill_price(order),
            created_at=order.created_time or self._clock.now(),
        )

        inserted = await self._store.insert_trade(record)
        if inserted is None:
            summary.conflicts += 1
            await self._events.log(
                EventType.CONFLICT,
                f"Order {order.order_id} was recorded concurrently, insert skipped",
                {"order": order.to_log_dict()},
            )
            return

        summary.created += 1
        await self._events.log(
            EventType.TRADE_CREATED,
            f"Imported {order.side.value} {order.symbol} order {order.order_id} as {inserted.status.value}",
            inserted.to_log_dict(),
        )

    async def _link(self, order: ExchangeOrder, legacy: TradeRecord, summary: ReconciliationSummary) -> None:
        update = self._healing_update(order, legacy)
        update.external_order_id = order.order_id
        if order.execution_id:
            update.external_trade_id = order.execution_id

        applied = await self._store.conditional_update(legacy.id, legacy.status, update)
        if not applied:
            summary.conflicts += 1
            await self._events.log(
                EventType.CONFLICT,
                f"Trade {legacy.id} changed before it could be linked to {order.order_id}",
                {"trade": legacy.to_log_dict(), "order": order.to_log_dict()},
            )
            return

        summary.linked += 1
        await self._events.log(
            EventType.TRADE_LINKED,
            f"Linked trade {legacy.id} to exchange order {order.order_id}",
            {"trade": legacy.to_log_dict(), "changes": update.changes()},
        )

    async def _heal_known(self, order: ExchangeOrder, local: TradeRecord, summary: ReconciliationSummary) -> None:
        if order.status.is_terminated:
            if not TransitionGuard.can_force_close(local.status):
                return
            update = TradeUpdate(status=TradeStatus.CLOSED)
            applied = await self._store.conditional_update(local.id, local.status, update)
            if applied:
                summary.closed += 1
                await self._events.log(
                    EventType.TRADE_UPDATED,
                    f"Closed trade {local.id}: exchange order {order.order_id} {order.status.value}",
                    {"trade": local.to_log_dict(), "exchange_status": order.status.value},
                )
            else:
                summary.conflicts += 1
                await self._events.log(
                    EventType.CONFLICT,
                    f"Trade {local.id} changed before close",
                    {"trade": local.to_log_dict()},
                )
            return

        update = self._healing_update(order, local)
        if update.is_empty():
            return

        applied = await self._store.conditional_update(local.id, local.status, update)
        if not applied:
            summary.conflicts += 1
            await self._events.log(
                EventType.CONFLICT,
                f"Trade {local.id} changed before update",
                {"trade": local.to_log_dict(), "changes": update.changes()},
            )
            return

        summary.updated += 1
        await self._events.log(
            EventType.TRADE_UPDATED,
            f"Updated trade {local.id} from exchange order {order.order_id}",
            {"trade": local.to_log_dict(), "changes": update.changes()},
        )

    def _healing_update(self, order: ExchangeOrder, local: TradeRecord) -> TradeUpdate:
        """Status, fill price and quantity changes the exchange view implies."""
        update = TradeUpdate()

        target = order.status.to_trade_status()
        if target != local.status:
            allowed, reason = TransitionGuard.can_transition(local.status, target)
            if allowed:
                update.status = target
            else:
                logger.debug(f"Trade {local.id}: keeping {local.status.value} ({reason})")

        if local.side == TradeSide.BUY and order.average_price:
            if (
                local.buy_fill_price is None
                or abs(order.average_price - local.buy_fill_price) > self._tolerance.fill_price_epsilon
            ):
                update.buy_fill_price = order.average_price

        if abs(order.quantity - local.quantity) > self._tolerance.quantity_abs_tolerance and order.quantity > 0:
            update.quantity = order.quantity

        return update

    # --------------------------------------------------------
    # REPORTING
    # --------------------------------------------------------

    async def _log_critical(self, report: ReconciliationReport) -> None:
        for recommendation in report.recommendations:
            if recommendation.severity == MismatchSeverity.CRITICAL:
                await self._events.log(
                    EventType.CRITICAL_MISMATCH,
                    recommendation.message,
                    {
                        "count": recommendation.count,
                        "trades": [
                            m.local.to_log_dict() for m in report.status_mismatches if m.is_closed_buy
                        ],
                    },
                )
