"""
Reconciliation Engine - Trade Ledger.

SQLAlchemy-backed storage for local trade records and the
persistent event log.
"""

from .engine import create_ledger_engine, create_session_factory, init_models
from .models import Base, TradeModel, TradingLogModel
from .store import LedgerStore, SqlEventSink, SqlLedgerStore


__all__ = [
    "create_ledger_engine",
    "create_session_factory",
    "init_models",
    "Base",
    "TradeModel",
    "TradingLogModel",
    "LedgerStore",
    "SqlEventSink",
    "SqlLedgerStore",
]
