"""
Event Sink - the narrow interface the core pushes observations to.

Events are observational: they describe what happened without altering it.

Design rules:
- Events are immutable, timestamped at creation
- Event capture NEVER gates execution
- A failing sink NEVER halts execution (logged and skipped)
- The core does not throttle; a sink that renders synchronously must
  throttle itself
"""

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Types of observable events."""

    RUN_STARTED = "run_started"
    RUN_FINISHED = "run_finished"
    ITEM_TRANSITION = "item_transition"
    ITEM_PROGRESS = "item_progress"
    ITEM_SKIPPED = "item_skipped"
    STATS_UPDATED = "stats_updated"
    DIAGNOSTIC = "diagnostic"


@dataclass(frozen=True)
class SyncEvent:
    """
    Immutable event record.
    """

    event_id: str
    event_type: EventType
    timestamp: str  # ISO 8601, always UTC
    item_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        event_type: EventType,
        item_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> "SyncEvent":
        """Create a new event with auto-generated ID and timestamp."""
        return cls(
            event_id=str(uuid.uuid4()),
            event_type=event_type,
            timestamp=datetime.now(timezone.utc).isoformat(),
            item_id=item_id,
            payload=payload or {},
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize event to dictionary."""
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "timestamp": self.timestamp,
            "item_id": self.item_id,
            "payload": self.payload,
        }


class EventSink(ABC):
    """Receiver of core events (status transitions, stats, diagnostics)."""

    @abstractmethod
    def emit(self, event: SyncEvent) -> None:
        """Handle one event. May be called from any worker thread."""
        pass


class NullEventSink(EventSink):
    """Discards every event."""

    def emit(self, event: SyncEvent) -> None:
        pass


class LoggingEventSink(EventSink):
    """Renders events as log lines."""

    def __init__(self, name: str = "mediasync.events"):
        self._logger = logging.getLogger(name)

    def emit(self, event: SyncEvent) -> None:
        p = event.payload
        if event.event_type == EventType.ITEM_TRANSITION:
            label = p.get("title") or event.item_id
            self._logger.info(f"{label}: {p.get('from')} → {p.get('to')}")
        elif event.event_type == EventType.ITEM_PROGRESS:
            self._logger.debug(f"{event.item_id}: {p.get('stage')} {p.get('percent', 0.0):.1f}%")
        elif event.event_type == EventType.ITEM_SKIPPED:
            self._logger.info(f"Skipping {event.item_id}: {p.get('reason')}")
        elif event.event_type == EventType.STATS_UPDATED:
            self._logger.debug(
                f"Total: {p.get('total')} | Completed: {p.get('completed')} | "
                f"Failed: {p.get('failed')} | Skipped: {p.get('skipped')} | "
                f"In flight: {p.get('in_flight')}"
            )
        elif event.event_type == EventType.DIAGNOSTIC:
            level = logging.getLevelName(str(p.get("level", "INFO")).upper())
            if not isinstance(level, int):
                level = logging.INFO
            self._logger.log(level, p.get("message", ""))
        else:
            self._logger.info(f"{event.event_type.value}: {p}")


class EventBuffer(EventSink):
    """
    Bounded in-memory ring buffer of recent events.

    Readers get copies; they cannot mutate what the core recorded.
    """

    def __init__(self, maxlen: int = 1000):
        self._events: Deque[SyncEvent] = deque(maxlen=maxlen)
        self._lock = threading.Lock()

    def emit(self, event: SyncEvent) -> None:
        with self._lock:
            self._events.append(event)

    def recent(self, limit: Optional[int] = None, event_type: Optional[EventType] = None) -> List[SyncEvent]:
        """
        Most recent events, oldest first.

        Args:
            limit: Keep only the last N matching events
            event_type: Filter by type
        """
        with self._lock:
            events = list(self._events)
        if event_type is not None:
            events = [e for e in events if e.event_type == event_type]
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


class FanoutEventSink(EventSink):
    """
    Forwards each event to several sinks.

    A sink that raises is logged and skipped; the others still receive
    the event.
    """

    def __init__(self, sinks: Iterable[EventSink]):
        self._sinks = list(sinks)

    def emit(self, event: SyncEvent) -> None:
        for sink in self._sinks:
            try:
                sink.emit(event)
            except Exception:
                logger.exception(f"[Events] Sink {type(sink).__name__} failed on {event.event_type.value}")


def isolate_sink(sink: Optional[EventSink]) -> EventSink:
    """
    Wrap a caller-supplied sink so its failures never reach the core.

    Returns:
        NullEventSink when sink is None, otherwise a single-sink fanout
    """
    if sink is None:
        return NullEventSink()
    if isinstance(sink, (NullEventSink, FanoutEventSink)):
        return sink
    return FanoutEventSink([sink])
