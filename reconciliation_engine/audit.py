"""
Reconciliation Engine - Ledger Auditor.

============================================================
PURPOSE
============================================================
Read-only consistency audit of one user's ledger.

CHECKS:
- closed buys with no P&L evidence               (CRITICAL)
- buys carrying P&L while still open             (CRITICAL)
- non-positive quantity or price                 (CRITICAL)
- duplicate external order ids                   (CRITICAL)
- filled/closed buys without a fill price        (WARNING)
- pending records older than 24 hours            (WARNING)

Nothing is repaired here; findings feed the operator and the
next reconciliation pass.

============================================================
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Optional

from .clock import ClockProtocol, SystemClock
from .event_log import EventLogger, EventType
from .ledger.store import LedgerStore
from .types import MismatchSeverity, TradeRecord, TradeSide, TradeStatus


logger = logging.getLogger(__name__)


STALE_PENDING_AFTER = timedelta(hours=24)


@dataclass
class AuditFinding:
    """One audit issue."""

    issue_type: str
    severity: MismatchSeverity
    trade_id: Optional[str]
    symbol: str
    description: str


@dataclass
class AuditReport:
    """Result of one audit."""

    total_records: int = 0
    status_counts: Dict[str, int] = field(default_factory=dict)
    findings: List[AuditFinding] = field(default_factory=list)

    @property
    def critical_count(self) -> int:
        return sum(1 for f in self.findings if f.severity == MismatchSeverity.CRITICAL)

    @property
    def warning_count(self) -> int:
        return sum(1 for f in self.findings if f.severity == MismatchSeverity.WARNING)

    def by_type(self, issue_type: str) -> List[AuditFinding]:
        return [f for f in self.findings if f.issue_type == issue_type]

    def summary(self) -> Dict[str, object]:
        return {
            "total_records": self.total_records,
            "status_counts": self.status_counts,
            "findings": len(self.findings),
            "critical": self.critical_count,
            "warning": self.warning_count,
            "issue_types": dict(Counter(f.issue_type for f in self.findings)),
        }


class LedgerAuditor:
    """
    Audits ledger invariants for one user.

    Usage:
        auditor = LedgerAuditor(store, events, user_id="u1")
        report = await auditor.audit(timedelta(days=30))
    """

    def __init__(
        self,
        store: LedgerStore,
        events: EventLogger,
        user_id: str,
        clock: Optional[ClockProtocol] = None,
    ):
        self._store = store
        self._events = events
        self._user_id = user_id
        self._clock = clock or SystemClock()

    async def audit(self, lookback: Optional[timedelta] = None) -> AuditReport:
        """
        Audit records created within `lookback` (all records when omitted).
        """
        now = self._clock.now()
        created_from = now - lookback if lookback is not None else None
        records = await self._store.query_trades(self._user_id, created_from=created_from)

        report = AuditReport(
            total_records=len(records),
            status_counts=dict(Counter(r.status.value for r in records)),
        )

        for record in records:
            report.findings.extend(self._check_record(record, now))
        report.findings.extend(self._check_duplicates(records))

        await self._events.log(
            EventType.AUDIT,
            f"Ledger audit: {len(report.findings)} findings ({report.critical_count} critical)",
            report.summary(),
        )
        return report

    def _check_record(self, record: TradeRecord, now) -> List[AuditFinding]:
        findings: List[AuditFinding] = []

        def add(issue_type: str, severity: MismatchSeverity, description: str) -> None:
            findings.append(AuditFinding(
                issue_type=issue_type,
                severity=severity,
                trade_id=record.id,
                symbol=record.symbol,
                description=description,
            ))

        if record.quantity <= 0 or record.price <= 0:
            add(
                "corrupt_record",
                MismatchSeverity.CRITICAL,
                f"Non-positive quantity ({record.quantity}) or price ({record.price})",
            )

        if record.side == TradeSide.BUY:
            if record.status == TradeStatus.CLOSED and record.profit_loss is None:
                add(
                    "closed_without_pnl",
                    MismatchSeverity.CRITICAL,
                    "Buy marked closed without P&L evidence",
                )
            if record.status.is_live() and record.profit_loss is not None:
                add(
                    "pnl_on_open_position",
                    MismatchSeverity.CRITICAL,
                    f"Buy in {record.status.value} carries P&L {record.profit_loss}",
                )
            if record.status in (TradeStatus.FILLED, TradeStatus.CLOSED) and not record.buy_fill_price:
                add(
                    "missing_buy_fill_price",
                    MismatchSeverity.WARNING,
                    f"Buy trade ({record.status.value}) missing fill price",
                )

        if (
            record.status == TradeStatus.PENDING
            and record.created_at is not None
            and now - record.created_at > STALE_PENDING_AFTER
        ):
            add(
                "stale_pending",
                MismatchSeverity.WARNING,
                "Trade stuck in pending for more than 24 hours",
            )

        return findings

    @staticmethod
    def _check_duplicates(records: List[TradeRecord]) -> List[AuditFinding]:
        by_external: Dict[str, List[TradeRecord]] = {}
        for record in records:
            if record.external_order_id:
                by_external.setdefault(record.external_order_id, []).append(record)

        findings: List[AuditFinding] = []
        for external_id, group in by_external.items():
            if len(group) < 2:
                continue
            findings.append(AuditFinding(
                issue_type="duplicate_external_order_id",
                severity=MismatchSeverity.CRITICAL,
                trade_id=None,
                symbol=group[0].symbol,
                description=(
                    f"External order {external_id} recorded {len(group)} times: "
                    f"{', '.join(str(r.id) for r in group)}"
                ),
            ))
        return findings
