"""
Observation surface: events and the read-only monitor API.

The API lives in monitor.api and is imported explicitly (it pulls in FastAPI).
"""

from .events import (
    EventBuffer,
    EventSink,
    EventType,
    FanoutEventSink,
    LoggingEventSink,
    NullEventSink,
    SyncEvent,
    isolate_sink,
)

__all__ = [
    "EventBuffer",
    "EventSink",
    "EventType",
    "FanoutEventSink",
    "LoggingEventSink",
    "NullEventSink",
    "SyncEvent",
    "isolate_sink",
]
