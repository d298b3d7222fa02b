"""
Tests for event sinks and active-item tracking.
"""

import logging

import pytest

from mediasync.execution.active import ActiveItems
from mediasync.jobs.models import ItemStatus
from mediasync.monitor.events import (
    EventBuffer,
    EventSink,
    EventType,
    FanoutEventSink,
    LoggingEventSink,
    SyncEvent,
)


class TestEventBuffer:

    def test_buffer_is_bounded(self):
        buffer = EventBuffer(maxlen=3)
        for n in range(5):
            buffer.emit(SyncEvent.create(EventType.DIAGNOSTIC, payload={"message": str(n)}))

        assert len(buffer) == 3
        assert [e.payload["message"] for e in buffer.recent()] == ["2", "3", "4"]

    def test_filter_and_limit(self):
        buffer = EventBuffer()
        buffer.emit(SyncEvent.create(EventType.RUN_STARTED))
        buffer.emit(SyncEvent.create(EventType.ITEM_TRANSITION, item_id="a"))
        buffer.emit(SyncEvent.create(EventType.ITEM_TRANSITION, item_id="b"))

        transitions = buffer.recent(event_type=EventType.ITEM_TRANSITION)
        assert [e.item_id for e in transitions] == ["a", "b"]
        assert [e.item_id for e in buffer.recent(limit=1)] == ["b"]

    def test_event_serialization(self):
        event = SyncEvent.create(EventType.ITEM_SKIPPED, item_id="a", payload={"reason": "done"})
        data = event.to_dict()
        assert data["event_type"] == "item_skipped"
        assert data["item_id"] == "a"
        assert data["payload"] == {"reason": "done"}
        assert data["timestamp"].endswith("+00:00")


class TestFanout:

    def test_failing_sink_does_not_block_others(self):
        """A sink that raises is skipped; the rest still receive the event."""

        class Broken(EventSink):
            def emit(self, event):
                raise RuntimeError("render failed")

        buffer = EventBuffer()
        FanoutEventSink([Broken(), buffer]).emit(SyncEvent.create(EventType.RUN_STARTED))

        assert len(buffer) == 1

    def test_logging_sink_renders_transitions(self, caplog):
        caplog.set_level(logging.INFO, logger="mediasync.events")
        LoggingEventSink().emit(SyncEvent.create(
            EventType.ITEM_TRANSITION,
            item_id="a",
            payload={"from": "pending", "to": "fetching", "title": "Song"},
        ))
        assert "Song: pending → fetching" in caplog.text


class TestActiveItems:

    def test_capacity_is_enforced(self):
        active = ActiveItems(2)
        active.enter("a")
        active.enter("b")
        with pytest.raises(RuntimeError):
            active.enter("c")

    def test_duplicate_entry_rejected(self):
        active = ActiveItems(2)
        active.enter("a")
        with pytest.raises(RuntimeError):
            active.enter("a")

    def test_snapshot_is_a_copy(self):
        """Readers cannot change what workers record."""
        active = ActiveItems(2)
        active.enter("a")
        view = active.snapshot()
        view.pop("a")

        assert active.get("a") is not None

    def test_update_and_leave(self):
        active = ActiveItems(2)
        active.enter("a")
        active.update("a", status=ItemStatus.ACQUIRING, progress_percent=12.5)
        active.update("unknown", status=ItemStatus.ACQUIRING)

        entry = active.get("a")
        assert entry.status == ItemStatus.ACQUIRING
        assert entry.progress_percent == 12.5

        active.leave("a")
        assert len(active) == 0
        assert active.peak == 1
