"""
Tests for the item state machine.

Tests:
- Forward pipeline edges are linear
- Every working state may fail
- Requeue requires remaining budget
- Demotion edges are separate from pipeline edges
"""

import pytest

from mediasync.jobs.errors import InvalidStateTransitionError
from mediasync.jobs.models import Item, ItemStatus, WORKING_STATES
from mediasync.jobs.state import (
    can_demote,
    can_requeue,
    can_transition,
    is_item_terminal,
    is_working,
    validate_transition,
)


class TestPipelineTransitions:
    """Forward edges."""

    def test_linear_path_is_legal(self):
        """Each stage leads to the next one only."""
        path = [
            ItemStatus.PENDING,
            ItemStatus.FETCHING,
            ItemStatus.ACQUIRING,
            ItemStatus.TRANSFORMING,
            ItemStatus.FINALIZING,
            ItemStatus.COMPLETED,
        ]
        for current, nxt in zip(path, path[1:]):
            assert can_transition(current, nxt)

    def test_stages_cannot_be_skipped(self):
        """Skipping a stage is illegal."""
        assert not can_transition(ItemStatus.PENDING, ItemStatus.ACQUIRING)
        assert not can_transition(ItemStatus.FETCHING, ItemStatus.TRANSFORMING)
        assert not can_transition(ItemStatus.ACQUIRING, ItemStatus.COMPLETED)

    def test_every_working_state_can_fail(self):
        """Each working state has an exit edge to FAILED."""
        for status in WORKING_STATES:
            assert can_transition(status, ItemStatus.FAILED)

    def test_pending_and_completed_cannot_fail(self):
        """Only working states fail."""
        assert not can_transition(ItemStatus.PENDING, ItemStatus.FAILED)
        assert not can_transition(ItemStatus.COMPLETED, ItemStatus.FAILED)

    def test_pipeline_never_demotes_completed(self):
        """COMPLETED → PENDING is not a pipeline edge."""
        assert not can_transition(ItemStatus.COMPLETED, ItemStatus.PENDING)
        assert not can_transition(ItemStatus.COMPLETED, ItemStatus.FETCHING)

    def test_validate_transition_raises_on_illegal_edge(self):
        """Illegal edges raise with both states in the message."""
        with pytest.raises(InvalidStateTransitionError) as exc_info:
            validate_transition("item-1", ItemStatus.PENDING, ItemStatus.COMPLETED)
        assert "pending" in str(exc_info.value)
        assert "completed" in str(exc_info.value)

    def test_validate_transition_accepts_legal_edge(self):
        validate_transition("item-1", ItemStatus.PENDING, ItemStatus.FETCHING)


class TestRequeueAndDemotion:
    """Edges back to PENDING."""

    def test_requeue_only_with_budget(self):
        """FAILED → PENDING requires retry_count < retry_limit."""
        assert can_requeue(ItemStatus.FAILED, 0, 3)
        assert can_requeue(ItemStatus.FAILED, 2, 3)
        assert not can_requeue(ItemStatus.FAILED, 3, 3)
        assert not can_requeue(ItemStatus.FAILED, 5, 3)

    def test_requeue_only_from_failed(self):
        assert not can_requeue(ItemStatus.ACQUIRING, 0, 3)
        assert not can_requeue(ItemStatus.COMPLETED, 0, 3)

    def test_demotion_sources(self):
        """Reconciler may demote COMPLETED, working and FAILED items."""
        assert can_demote(ItemStatus.COMPLETED)
        assert can_demote(ItemStatus.FAILED)
        for status in WORKING_STATES:
            assert can_demote(status)
        assert not can_demote(ItemStatus.PENDING)


class TestStatusHelpers:

    def test_terminal_states(self):
        assert is_item_terminal(ItemStatus.COMPLETED)
        assert is_item_terminal(ItemStatus.FAILED)
        assert not is_item_terminal(ItemStatus.PENDING)
        assert not is_item_terminal(ItemStatus.FINALIZING)

    def test_working_states(self):
        assert is_working(ItemStatus.TRANSFORMING)
        assert not is_working(ItemStatus.PENDING)
        assert not is_working(ItemStatus.COMPLETED)

    def test_item_exhaustion(self):
        """An item is exhausted once retry_count reaches the limit."""
        item = Item(id="x", retry_count=2)
        assert not item.is_exhausted(3)
        item.retry_count = 3
        assert item.is_exhausted(3)

    def test_item_label_prefers_title(self):
        assert Item(id="x").label == "x"
        assert Item(id="x", title="Song").label == "Song"
