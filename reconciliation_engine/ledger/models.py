"""
Ledger ORM Models.

============================================================
PURPOSE
============================================================
SQLAlchemy models for the trade ledger and the persistent
event log.

============================================================
TABLES
============================================================
- trades: one row per local trade record
- trading_logs: structured reconciliation events

One record per external order id per user, and one closed buy per
closing sell, are enforced by unique indexes; NULLs are not
constrained.

============================================================
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import JSON, DateTime, Index, Numeric, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from ..clock import ensure_utc
from ..types import OrderKind, TradeRecord, TradeSide, TradeStatus


class Base(DeclarativeBase):
    """Declarative base for ledger models."""

    type_annotation_map = {
        datetime: DateTime(timezone=True),
    }


def _new_id() -> str:
    return str(uuid.uuid4())


class TradeModel(Base):
    """
    A local trade record.

    Statuses: pending, partial_filled, filled, cancelled, closed.
    """

    __tablename__ = "trades"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    external_order_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    external_trade_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    closing_order_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    side: Mapped[str] = mapped_column(String(8), nullable=False)
    order_type: Mapped[str] = mapped_column(String(16), nullable=False, default=OrderKind.LIMIT.value)
    quantity: Mapped[Decimal] = mapped_column(Numeric(28, 10), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(28, 10), nullable=False)
    buy_fill_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(28, 10), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=TradeStatus.PENDING.value)
    profit_loss: Mapped[Optional[Decimal]] = mapped_column(Numeric(28, 10), nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    updated_at: Mapped[datetime] = mapped_column(nullable=False)

    __table_args__ = (
        Index("uq_trades_user_external_order", "user_id", "external_order_id", unique=True),
        Index("uq_trades_user_closing_order", "user_id", "closing_order_id", unique=True),
        Index("ix_trades_user_created", "user_id", "created_at"),
        Index("ix_trades_user_status", "user_id", "status"),
    )

    def to_record(self) -> TradeRecord:
        """Convert to a domain record (timestamps as aware UTC)."""
        return TradeRecord(
            id=self.id,
            user_id=self.user_id,
            external_order_id=self.external_order_id,
            external_trade_id=self.external_trade_id,
            closing_order_id=self.closing_order_id,
            symbol=self.symbol,
            side=TradeSide(self.side),
            order_type=OrderKind(self.order_type),
            quantity=Decimal(self.quantity),
            price=Decimal(self.price),
            buy_fill_price=Decimal(self.buy_fill_price) if self.buy_fill_price is not None else None,
            status=TradeStatus(self.status),
            profit_loss=Decimal(self.profit_loss) if self.profit_loss is not None else None,
            created_at=ensure_utc(self.created_at),
            updated_at=ensure_utc(self.updated_at),
        )

    @classmethod
    def from_record(cls, record: TradeRecord) -> "TradeModel":
        return cls(
            id=record.id or _new_id(),
            user_id=record.user_id,
            external_order_id=record.external_order_id,
            external_trade_id=record.external_trade_id,
            closing_order_id=record.closing_order_id,
            symbol=record.symbol,
            side=record.side.value,
            order_type=record.order_type.value,
            quantity=record.quantity,
            price=record.price,
            buy_fill_price=record.buy_fill_price,
            status=record.status.value,
            profit_loss=record.profit_loss,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


class TradingLogModel(Base):
    """Persistent reconciliation event."""

    __tablename__ = "trading_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    log_type: Mapped[str] = mapped_column(String(48), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
