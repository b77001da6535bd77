"""
Shared fixtures for reconciliation engine tests.

The ledger runs on in-memory SQLite (aiosqlite); the exchange is the
in-memory mock gateway; time is a MockClock pinned to NOW.
"""

import pytest

from reconciliation_engine.clock import MockClock
from reconciliation_engine.config import EngineConfig
from reconciliation_engine.event_log import EventLogger, MemoryEventSink
from reconciliation_engine.gateway.mock import MockExchangeGateway
from reconciliation_engine.ledger.engine import (
    create_ledger_engine,
    create_session_factory,
    init_models,
)
from reconciliation_engine.ledger.store import SqlLedgerStore
from reconciliation_engine.orchestrator import ReconciliationOrchestrator

from .factories import NOW, USER_ID


@pytest.fixture
def clock():
    """Clock pinned to NOW."""
    return MockClock(NOW)


@pytest.fixture
def config():
    """Test configuration (zero delays, in-memory database)."""
    return EngineConfig.for_testing()


@pytest.fixture
async def session_factory(config):
    """Fresh in-memory ledger database."""
    engine = create_ledger_engine(config.database)
    await init_models(engine)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def store(session_factory, clock):
    """SQL ledger store on the in-memory database."""
    return SqlLedgerStore(session_factory, clock)


@pytest.fixture
def sink():
    """In-memory event sink."""
    return MemoryEventSink()


@pytest.fixture
def events(sink):
    """Event logger writing to the memory sink."""
    return EventLogger(USER_ID, [sink])


@pytest.fixture
def gateway(clock):
    """Mock exchange gateway."""
    return MockExchangeGateway(clock=clock)


@pytest.fixture
def orchestrator(gateway, store, events, config, clock):
    """Orchestrator wired to the mock gateway and SQLite ledger."""
    return ReconciliationOrchestrator(gateway, store, events, config, clock=clock)
