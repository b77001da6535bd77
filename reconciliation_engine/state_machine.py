"""
Reconciliation Engine - Trade State Machine.

============================================================
PURPOSE
============================================================
Allowed ledger status transitions.

STATE MACHINE:

    pending ──────────► filled ─────────► closed
       │  │              ▲  │               ▲
       │  │              │  ▼               │
       │  └─────► partial_filled ───────────┘
       ▼
    cancelled

INVARIANTS:
- cancelled and closed are terminal
- Every transition is applied with a conditional write on the
  status observed when the decision was made
- Exchange-driven termination (Cancelled/Rejected/Deactivated)
  closes a record from any status, see `can_force_close`

============================================================
"""

import logging
from typing import Dict, Set, Tuple

from .types import TradeStatus


logger = logging.getLogger(__name__)


VALID_TRANSITIONS: Dict[TradeStatus, Set[TradeStatus]] = {
    TradeStatus.PENDING: {
        TradeStatus.FILLED,
        TradeStatus.PARTIAL_FILLED,
        TradeStatus.CANCELLED,
    },
    TradeStatus.FILLED: {
        TradeStatus.PARTIAL_FILLED,
        TradeStatus.CLOSED,
    },
    TradeStatus.PARTIAL_FILLED: {
        TradeStatus.FILLED,
        TradeStatus.CLOSED,
    },
    # Terminal states - no transitions out
    TradeStatus.CANCELLED: set(),
    TradeStatus.CLOSED: set(),
}


class TransitionGuard:
    """
    Guard for status transitions.

    Ensures transitions are valid and provides reason for denial.
    """

    @staticmethod
    def can_transition(
        from_status: TradeStatus,
        to_status: TradeStatus,
    ) -> Tuple[bool, str]:
        """
        Check if transition is allowed.

        Returns:
            Tuple of (allowed, reason)
        """
        if from_status == to_status:
            return True, "Same status"

        if to_status in VALID_TRANSITIONS.get(from_status, set()):
            return True, "Valid transition"

        if from_status.is_terminal():
            return False, f"Cannot transition from terminal status {from_status.value}"

        return False, f"Invalid transition: {from_status.value} -> {to_status.value}"

    @staticmethod
    def can_force_close(from_status: TradeStatus) -> bool:
        """Exchange termination closes any record not already closed."""
        return from_status != TradeStatus.CLOSED

    @staticmethod
    def can_close_position(from_status: TradeStatus) -> bool:
        """Position-close detection only ever closes filled records."""
        return from_status == TradeStatus.FILLED
