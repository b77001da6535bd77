"""
Ledger - Trade Store.

============================================================
PURPOSE
============================================================
Durable storage of trade records, scoped by user.

OPERATIONS:
- query_trades: filtered read
- find_by_external_order_ids: direct lookup, no time filter
- insert_trade: returns None if the unique external id already exists
- conditional_update: compare-and-set on status, returns applied

Each call opens its own session and transaction. Database errors
are wrapped in LedgerError.

============================================================
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import select, update as update_stmt
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..clock import ClockProtocol, SystemClock
from ..errors import LedgerError
from ..event_log import EventSink
from ..types import TradeRecord, TradeSide, TradeStatus, TradeUpdate
from .models import TradeModel, TradingLogModel


logger = logging.getLogger(__name__)


# ============================================================
# INTERFACE
# ============================================================

class LedgerStore(ABC):
    """Trade ledger interface."""

    @abstractmethod
    async def query_trades(
        self,
        user_id: str,
        symbol: Optional[str] = None,
        statuses: Optional[Iterable[TradeStatus]] = None,
        side: Optional[TradeSide] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
    ) -> List[TradeRecord]:
        """Records matching every given filter, oldest first."""
        pass

    @abstractmethod
    async def find_by_external_order_ids(
        self,
        user_id: str,
        external_order_ids: Sequence[str],
    ) -> List[TradeRecord]:
        """Records carrying any of the given external order ids."""
        pass

    @abstractmethod
    async def insert_trade(self, record: TradeRecord) -> Optional[TradeRecord]:
        """Insert a record; None if its external order id is already recorded."""
        pass

    @abstractmethod
    async def conditional_update(
        self,
        trade_id: str,
        expected_status: TradeStatus,
        update: TradeUpdate,
    ) -> bool:
        """Apply `update` only if the record still has `expected_status`."""
        pass


# ============================================================
# SQL IMPLEMENTATION
# ============================================================

class SqlLedgerStore(LedgerStore):
    """
    SQLAlchemy async ledger store.

    Usage:
        engine = create_ledger_engine(config.database)
        store = SqlLedgerStore(create_session_factory(engine))
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Optional[ClockProtocol] = None,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()

    async def query_trades(
        self,
        user_id: str,
        symbol: Optional[str] = None,
        statuses: Optional[Iterable[TradeStatus]] = None,
        side: Optional[TradeSide] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
    ) -> List[TradeRecord]:
        stmt = select(TradeModel).where(TradeModel.user_id == user_id)
        if symbol is not None:
            stmt = stmt.where(TradeModel.symbol == symbol)
        if statuses is not None:
            stmt = stmt.where(TradeModel.status.in_([s.value for s in statuses]))
        if side is not None:
            stmt = stmt.where(TradeModel.side == side.value)
        if created_from is not None:
            stmt = stmt.where(TradeModel.created_at >= created_from)
        if created_to is not None:
            stmt = stmt.where(TradeModel.created_at <= created_to)
        stmt = stmt.order_by(TradeModel.created_at, TradeModel.id)

        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as e:
            raise LedgerError(f"query_trades failed for user {user_id}: {e}") from e
        return [row.to_record() for row in rows]

    async def find_by_external_order_ids(
        self,
        user_id: str,
        external_order_ids: Sequence[str],
    ) -> List[TradeRecord]:
        if not external_order_ids:
            return []
        stmt = (
            select(TradeModel)
            .where(TradeModel.user_id == user_id)
            .where(TradeModel.external_order_id.in_(list(external_order_ids)))
            .order_by(TradeModel.created_at, TradeModel.id)
        )
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as e:
            raise LedgerError(f"find_by_external_order_ids failed for user {user_id}: {e}") from e
        return [row.to_record() for row in rows]

    async def insert_trade(self, record: TradeRecord) -> Optional[TradeRecord]:
        now = self._clock.now()
        record = replace(
            record,
            created_at=record.created_at or now,
            updated_at=record.updated_at or now,
        )
        model = TradeModel.from_record(record)

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(model)
        except IntegrityError:
            logger.warning(
                f"Insert skipped, external order {record.external_order_id} "
                f"already recorded for user {record.user_id}"
            )
            return None
        except SQLAlchemyError as e:
            raise LedgerError(f"insert_trade failed: {e}") from e

        logger.debug(f"Inserted trade {model.id} ({record.symbol} {record.side.value})")
        return replace(record, id=model.id)

    async def conditional_update(
        self,
        trade_id: str,
        expected_status: TradeStatus,
        update: TradeUpdate,
    ) -> bool:
        values: Dict[str, Any] = update.changes()
        if not values:
            return False
        values["updated_at"] = self._clock.now()

        stmt = (
            update_stmt(TradeModel)
            .where(TradeModel.id == trade_id)
            .where(TradeModel.status == expected_status.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(stmt)
        except IntegrityError as e:
            logger.warning(f"Conditional update of trade {trade_id} violated a constraint: {e}")
            return False
        except SQLAlchemyError as e:
            raise LedgerError(f"conditional_update failed for trade {trade_id}: {e}") from e

        applied = result.rowcount == 1
        if not applied:
            logger.info(
                f"Conditional update of trade {trade_id} not applied "
                f"(status no longer {expected_status.value})"
            )
        return applied


# ============================================================
# EVENT SINK
# ============================================================

class SqlEventSink(EventSink):
    """Writes events to the trading_logs table."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Optional[ClockProtocol] = None,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()

    async def write(self, user_id, event_type, message, payload) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                session.add(TradingLogModel(
                    user_id=user_id,
                    log_type=event_type,
                    message=message,
                    data=payload,
                    created_at=self._clock.now(),
                ))

    async def recent(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Most recent events for a user, newest first."""
        stmt = (
            select(TradingLogModel)
            .where(TradingLogModel.user_id == user_id)
            .order_by(TradingLogModel.created_at.desc())
            .limit(limit)
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [
            {
                "event_type": row.log_type,
                "message": row.message,
                "payload": row.data or {},
                "created_at": row.created_at,
            }
            for row in rows
        ]
