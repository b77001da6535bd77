"""
Reconciliation Engine - Discrepancy Classifier.

============================================================
PURPOSE
============================================================
Partitions exchange orders and local trade records into:

- matched
- missing_from_local   (exchange order, no local record)
- extra_in_local       (local record, no exchange order)
- status_mismatches    (matched, status differs)
- price_mismatches     (matched, price differs by > 0.01)

and derives a deterministic recommendation list.

CLAIMING:
    Local records are claimed greedily in exchange-order order.
    A claimed record leaves the candidate pool, so one local row
    can never absorb two different fills.

============================================================
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from .config import ToleranceConfig
from .errors import DataIntegrityError
from .matcher import OrderMatcher
from .types import (
    ExchangeOrder,
    MismatchSeverity,
    MismatchType,
    TradeRecord,
    TradeSide,
    TradeStatus,
)


logger = logging.getLogger(__name__)


# ============================================================
# REPORT TYPES
# ============================================================

@dataclass
class MatchedPair:
    """One exchange order and the local record it claimed."""

    execution: ExchangeOrder
    local: TradeRecord


@dataclass
class StatusMismatch:
    """Matched pair whose statuses disagree."""

    execution: ExchangeOrder
    local: TradeRecord
    expected_status: TradeStatus

    @property
    def issue(self) -> str:
        return (
            f"Local status: {self.local.status.value}, "
            f"exchange status: {self.expected_status.value}"
        )

    @property
    def is_closed_buy(self) -> bool:
        """
        A buy the ledger treats as resolved with no close evidence.

        Position-close writes always set profit_loss; an exchange-side
        termination explains a close on its own.
        """
        return (
            self.local.side == TradeSide.BUY
            and self.local.status == TradeStatus.CLOSED
            and self.local.profit_loss is None
            and not self.execution.status.is_terminated
        )


@dataclass
class PriceMismatch:
    """Matched pair whose prices disagree."""

    execution: ExchangeOrder
    local: TradeRecord
    price_diff: Decimal


@dataclass
class SkippedExecution:
    """Malformed exchange order left out of the analysis."""

    execution: ExchangeOrder
    reason: str


@dataclass
class Recommendation:
    """Operator-facing recommendation."""

    severity: MismatchSeverity
    mismatch_type: MismatchType
    count: int
    message: str


@dataclass
class ReconciliationReport:
    """
    Result of classifying one exchange window against one ledger window.

    Ephemeral: produced per pass, logged, then discarded.
    """

    exchange_count: int = 0
    local_count: int = 0
    matched: List[MatchedPair] = field(default_factory=list)
    missing_from_local: List[ExchangeOrder] = field(default_factory=list)
    extra_in_local: List[TradeRecord] = field(default_factory=list)
    status_mismatches: List[StatusMismatch] = field(default_factory=list)
    price_mismatches: List[PriceMismatch] = field(default_factory=list)
    skipped: List[SkippedExecution] = field(default_factory=list)
    recommendations: List[Recommendation] = field(default_factory=list)

    @property
    def matched_count(self) -> int:
        return len(self.matched)

    @property
    def has_critical(self) -> bool:
        """Whether any recommendation is critical."""
        return any(r.severity == MismatchSeverity.CRITICAL for r in self.recommendations)

    def match_for(self, order_id: str) -> Optional[TradeRecord]:
        """Local record claimed by an exchange order, if any."""
        for pair in self.matched:
            if pair.execution.order_id == order_id:
                return pair.local
        return None

    def summary(self) -> Dict[str, Any]:
        """Counts only, for structured logging."""
        return {
            "exchange_orders": self.exchange_count,
            "local_trades": self.local_count,
            "matched": self.matched_count,
            "missing_from_local": len(self.missing_from_local),
            "extra_in_local": len(self.extra_in_local),
            "status_mismatches": len(self.status_mismatches),
            "price_mismatches": len(self.price_mismatches),
            "skipped": len(self.skipped),
        }


# ============================================================
# CLASSIFIER
# ============================================================

class DiscrepancyClassifier:
    """
    Classifies discrepancies between exchange and ledger.

    Pure: reads its inputs, writes nothing.
    """

    def __init__(
        self,
        tolerance: Optional[ToleranceConfig] = None,
        matcher: Optional[OrderMatcher] = None,
    ):
        self._tolerance = tolerance or ToleranceConfig()
        self._matcher = matcher or OrderMatcher(self._tolerance)

    def classify(
        self,
        executions: Sequence[ExchangeOrder],
        local_records: Sequence[TradeRecord],
    ) -> ReconciliationReport:
        """
        Classify exchange orders against local records.

        Args:
            executions: Exchange orders, in processing order
            local_records: Local records in the same window

        Returns:
            ReconciliationReport
        """
        report = ReconciliationReport(
            exchange_count=len(executions),
            local_count=len(local_records),
        )

        pool: List[TradeRecord] = list(local_records)

        for execution in executions:
            try:
                self._validate(execution)
            except DataIntegrityError as e:
                logger.warning(f"Skipping malformed exchange order: {e} {e.payload}")
                report.skipped.append(SkippedExecution(execution=execution, reason=str(e)))
                continue

            local = self._matcher.find_match(execution, pool)
            if local is None:
                report.missing_from_local.append(execution)
                continue

            pool.remove(local)
            report.matched.append(MatchedPair(execution=execution, local=local))

            expected_status = TradeStatus.FILLED if execution.is_trade else TradeStatus.PENDING
            if local.status != expected_status:
                report.status_mismatches.append(StatusMismatch(
                    execution=execution,
                    local=local,
                    expected_status=expected_status,
                ))

            price_diff = abs(execution.executed_price - local.price)
            if price_diff > self._tolerance.price_tolerance:
                report.price_mismatches.append(PriceMismatch(
                    execution=execution,
                    local=local,
                    price_diff=price_diff,
                ))

        report.extra_in_local = pool
        report.recommendations = self.recommend(report)

        logger.info(f"Classification complete: {report.summary()}")
        return report

    @staticmethod
    def recommend(report: ReconciliationReport) -> List[Recommendation]:
        """Deterministic recommendations from report contents."""
        recommendations: List[Recommendation] = []

        missing = len(report.missing_from_local)
        if missing:
            recommendations.append(Recommendation(
                severity=MismatchSeverity.WARNING,
                mismatch_type=MismatchType.MISSING_FROM_LOCAL,
                count=missing,
                message=f"Import {missing} missing trades from the exchange into the ledger",
            ))

        extra = len(report.extra_in_local)
        if extra:
            recommendations.append(Recommendation(
                severity=MismatchSeverity.WARNING,
                mismatch_type=MismatchType.EXTRA_IN_LOCAL,
                count=extra,
                message=f"Review {extra} orphaned local trades with no exchange counterpart",
            ))

        mismatched = len(report.status_mismatches)
        if mismatched:
            recommendations.append(Recommendation(
                severity=MismatchSeverity.WARNING,
                mismatch_type=MismatchType.STATUS_MISMATCH,
                count=mismatched,
                message=f"Fix {mismatched} status mismatches against the exchange",
            ))

            closed_buys = sum(1 for m in report.status_mismatches if m.is_closed_buy)
            if closed_buys:
                recommendations.append(Recommendation(
                    severity=MismatchSeverity.CRITICAL,
                    mismatch_type=MismatchType.STATUS_MISMATCH,
                    count=closed_buys,
                    message=(
                        f"CRITICAL: {closed_buys} buy orders marked 'closed' without "
                        f"position-close evidence; open positions may be treated as resolved"
                    ),
                ))

        priced = len(report.price_mismatches)
        if priced:
            recommendations.append(Recommendation(
                severity=MismatchSeverity.INFO,
                mismatch_type=MismatchType.PRICE_MISMATCH,
                count=priced,
                message=f"Review {priced} price mismatches",
            ))

        return recommendations

    @staticmethod
    def _validate(execution: ExchangeOrder) -> None:
        if execution.quantity <= 0:
            raise DataIntegrityError(
                f"Exchange order {execution.order_id} has non-positive quantity",
                payload=execution.to_log_dict(),
            )
        if execution.executed_price < 0:
            raise DataIntegrityError(
                f"Exchange order {execution.order_id} has negative price",
                payload=execution.to_log_dict(),
            )
