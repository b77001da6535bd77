"""
Reconciliation Engine - Event Log.

============================================================
PURPOSE
============================================================
Write-only logging collaborator: (event_type, message, payload).

- Every event goes to the standard `logging` module
- Events are also handed to optional sinks (e.g. a database table)
- A failing sink NEVER aborts the calling operation

============================================================
"""

import json
import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


logger = logging.getLogger(__name__)


class EventType(Enum):
    """Event types emitted by the reconciliation core."""

    RECONCILIATION_STARTED = "reconciliation_started"
    RECONCILIATION_COMPLETED = "reconciliation_completed"
    RECONCILIATION_FAILED = "reconciliation_failed"
    RECONCILIATION_ANALYSIS = "reconciliation_analysis"
    TRADE_CREATED = "trade_created"
    TRADE_UPDATED = "trade_updated"
    TRADE_LINKED = "trade_linked"
    POSITION_CLOSED = "position_closed"
    ORDER_PLACED = "order_placed"
    DATA_INTEGRITY = "data_integrity"
    CONFLICT = "conflict"
    CRITICAL_MISMATCH = "critical_mismatch"
    RECORD_ERROR = "record_error"
    AUDIT = "audit"


# Python logging level per event type
_LEVELS: Dict[EventType, int] = {
    EventType.RECONCILIATION_FAILED: logging.ERROR,
    EventType.RECORD_ERROR: logging.ERROR,
    EventType.CRITICAL_MISMATCH: logging.CRITICAL,
    EventType.DATA_INTEGRITY: logging.WARNING,
    EventType.CONFLICT: logging.WARNING,
}


class EventSink(ABC):
    """Destination for structured events."""

    @abstractmethod
    async def write(
        self,
        user_id: str,
        event_type: str,
        message: str,
        payload: Dict[str, Any],
    ) -> None:
        """Persist one event."""
        pass


class MemoryEventSink(EventSink):
    """Keeps events in memory. Used by tests and the CLI summary."""

    def __init__(self):
        self.events: List[Dict[str, Any]] = []

    async def write(self, user_id, event_type, message, payload) -> None:
        self.events.append({
            "user_id": user_id,
            "event_type": event_type,
            "message": message,
            "payload": payload,
        })

    def of_type(self, event_type: EventType) -> List[Dict[str, Any]]:
        """Events of one type."""
        return [e for e in self.events if e["event_type"] == event_type.value]


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


def to_payload(data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Make a payload JSON-safe (decimals, enums and datetimes as strings)."""
    if not data:
        return {}
    return json.loads(json.dumps(data, default=_json_default))


class EventLogger:
    """
    Structured event logger bound to one user.

    Usage:
        events = EventLogger("user-1", sinks=[SqlEventSink(factory)])
        await events.log(EventType.TRADE_CREATED, "Imported order", {...})
    """

    def __init__(self, user_id: str, sinks: Optional[List[EventSink]] = None):
        self._user_id = user_id
        self._sinks = list(sinks or [])

    @property
    def user_id(self) -> str:
        return self._user_id

    def add_sink(self, sink: EventSink) -> None:
        """Attach another sink."""
        self._sinks.append(sink)

    async def log(
        self,
        event_type: EventType,
        message: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Record an event. Never raises.

        Args:
            event_type: Event type
            message: Human-readable message
            payload: Structured details
        """
        safe_payload = to_payload(payload)
        level = _LEVELS.get(event_type, logging.INFO)
        logger.log(level, f"[{event_type.value}] {message} {safe_payload}")

        for sink in self._sinks:
            try:
                await sink.write(self._user_id, event_type.value, message, safe_payload)
            except Exception as e:
                logger.error(
                    f"Event sink {type(sink).__name__} failed for {event_type.value}: {e}"
                )
