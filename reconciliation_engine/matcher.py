"""
Reconciliation Engine - Order Matcher.

============================================================
PURPOSE
============================================================
Maps one exchange order onto at most one local trade record.

ALGORITHM:
1. Exact: external order id equality is authoritative.
2. Fuzzy (records without an external id only):
   same symbol, same side, execution after record creation,
   quantity within 5% (inclusive) or within 0.001 units.
3. Closest quantity wins; ties go to the most recent record.
4. No qualifier -> None.

Pure functions, no I/O.

============================================================
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, Iterable, Optional, Sequence, TypeVar

from .config import ToleranceConfig
from .types import ExchangeOrder, TradeRecord


logger = logging.getLogger(__name__)

T = TypeVar("T")


def quantity_within_tolerance(
    observed: Decimal,
    recorded: Decimal,
    tolerance: ToleranceConfig,
) -> bool:
    """Whether observed quantity is close enough to the recorded one."""
    if recorded <= 0:
        return False
    diff = abs(observed - recorded)
    return diff <= recorded * tolerance.quantity_tolerance_pct or diff <= tolerance.quantity_abs_tolerance


def pick_closest(
    candidates: Iterable[T],
    quantity_of: Callable[[T], Decimal],
    time_of: Callable[[T], Optional[datetime]],
    target_quantity: Decimal,
) -> Optional[T]:
    """
    Closest-quantity candidate; ties broken by the most recent timestamp.

    Shared by the matcher and the position-close detector.
    """
    best: Optional[T] = None
    best_key = None
    for candidate in candidates:
        diff = abs(quantity_of(candidate) - target_quantity)
        when = time_of(candidate)
        # Smaller diff first, then later timestamp
        key = (diff, -(when.timestamp() if when else float("-inf")))
        if best_key is None or key < best_key:
            best, best_key = candidate, key
    return best


class OrderMatcher:
    """
    Matches exchange orders against local trade records.

    Case-sensitive on symbol: exchange symbols are canonical uppercase.

    Fuzzy matching compares the ordered quantity, not the executed
    quantity: open and partially filled orders have executed little or
    nothing yet, and the local record stores what was ordered.
    """

    def __init__(self, tolerance: Optional[ToleranceConfig] = None):
        self._tolerance = tolerance or ToleranceConfig()

    @property
    def tolerance(self) -> ToleranceConfig:
        return self._tolerance

    def find_match(
        self,
        execution: ExchangeOrder,
        candidates: Sequence[TradeRecord],
    ) -> Optional[TradeRecord]:
        """
        Find the local record for an exchange order.

        Args:
            execution: Exchange order snapshot
            candidates: Local records still available for matching

        Returns:
            Matching record or None
        """
        if execution.quantity <= 0:
            logger.warning(
                f"Skipping exchange order {execution.order_id}: "
                f"non-positive quantity {execution.quantity}"
            )
            return None

        for record in candidates:
            if record.external_order_id and record.external_order_id == execution.order_id:
                return record

        qualifiers = [r for r in candidates if self._fuzzy_qualifies(execution, r)]
        if not qualifiers:
            return None

        match = pick_closest(
            qualifiers,
            quantity_of=lambda r: r.quantity,
            time_of=lambda r: r.created_at,
            target_quantity=execution.quantity,
        )
        logger.debug(
            f"Fuzzy matched exchange order {execution.order_id} to trade {match.id} "
            f"({len(qualifiers)} qualifiers)"
        )
        return match

    def _fuzzy_qualifies(self, execution: ExchangeOrder, record: TradeRecord) -> bool:
        if record.external_order_id:
            return False
        if record.symbol != execution.symbol or record.side != execution.side:
            return False
        executed_at = execution.timestamp
        if executed_at is None or record.created_at is None or executed_at <= record.created_at:
            return False
        return quantity_within_tolerance(execution.quantity, record.quantity, self._tolerance)


def find_match(
    execution: ExchangeOrder,
    candidates: Sequence[TradeRecord],
    tolerance: Optional[ToleranceConfig] = None,
) -> Optional[TradeRecord]:
    """Functional form of OrderMatcher.find_match."""
    return OrderMatcher(tolerance).find_match(execution, candidates)
