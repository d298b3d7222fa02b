"""
State transition validation for items.

Item lifecycle:
    PENDING → FETCHING → ACQUIRING → TRANSFORMING → FINALIZING → COMPLETED
with one exit edge to FAILED from every working state.

Two edges lead back to PENDING:
    FAILED → PENDING      retry requeue, only while retry budget remains
    * → PENDING           Reconciler demotion (stale COMPLETED, stranded
                          working state after a crash)

INVARIANT: The pipeline never moves a persisted COMPLETED item to a lesser
state. Only the Reconciler may demote, and it logs every demotion.
"""

from typing import FrozenSet, Set, Tuple

from .errors import InvalidStateTransitionError
from .models import ItemStatus, WORKING_STATES


TERMINAL_ITEM_STATES: FrozenSet[ItemStatus] = frozenset({
    ItemStatus.COMPLETED,
    ItemStatus.FAILED,
})


def is_item_terminal(status: ItemStatus) -> bool:
    """
    Check if an item status is terminal for the pipeline.

    Args:
        status: The item status to check

    Returns:
        True if the status is terminal, False otherwise
    """
    return status in TERMINAL_ITEM_STATES


def is_working(status: ItemStatus) -> bool:
    """True while an item is inside one of the four stages."""
    return status in WORKING_STATES


# Forward pipeline edges (strictly linear)
_PIPELINE_TRANSITIONS: Set[Tuple[ItemStatus, ItemStatus]] = {
    (ItemStatus.PENDING, ItemStatus.FETCHING),
    (ItemStatus.FETCHING, ItemStatus.ACQUIRING),
    (ItemStatus.ACQUIRING, ItemStatus.TRANSFORMING),
    (ItemStatus.TRANSFORMING, ItemStatus.FINALIZING),
    (ItemStatus.FINALIZING, ItemStatus.COMPLETED),

    # Failure exit from every working state
    (ItemStatus.FETCHING, ItemStatus.FAILED),
    (ItemStatus.ACQUIRING, ItemStatus.FAILED),
    (ItemStatus.TRANSFORMING, ItemStatus.FAILED),
    (ItemStatus.FINALIZING, ItemStatus.FAILED),
}

# Reconciler-only edges
_DEMOTION_TRANSITIONS: Set[Tuple[ItemStatus, ItemStatus]] = {
    (ItemStatus.COMPLETED, ItemStatus.PENDING),
    (ItemStatus.FETCHING, ItemStatus.PENDING),
    (ItemStatus.ACQUIRING, ItemStatus.PENDING),
    (ItemStatus.TRANSFORMING, ItemStatus.PENDING),
    (ItemStatus.FINALIZING, ItemStatus.PENDING),
    (ItemStatus.FAILED, ItemStatus.PENDING),
}


def can_transition(from_status: ItemStatus, to_status: ItemStatus) -> bool:
    """
    Check if a pipeline transition is legal.

    Does not cover retry requeue (see can_requeue) or Reconciler demotion
    (see can_demote).

    Args:
        from_status: Current item status
        to_status: Target item status

    Returns:
        True if the transition is allowed, False otherwise
    """
    return (from_status, to_status) in _PIPELINE_TRANSITIONS


def can_requeue(from_status: ItemStatus, retry_count: int, retry_limit: int) -> bool:
    """
    Check if a failed item may go back to PENDING for another attempt.

    Args:
        from_status: Current item status
        retry_count: Attempts already failed
        retry_limit: Lifetime retry budget

    Returns:
        True only for FAILED items with budget remaining
    """
    return from_status == ItemStatus.FAILED and retry_count < retry_limit


def can_demote(from_status: ItemStatus) -> bool:
    """Check if the Reconciler may demote an item in this state to PENDING."""
    return (from_status, ItemStatus.PENDING) in _DEMOTION_TRANSITIONS


def validate_transition(item_id: str, from_status: ItemStatus, to_status: ItemStatus) -> None:
    """
    Validate a pipeline transition, raising an exception if illegal.

    Args:
        item_id: Item being transitioned (for the error message)
        from_status: Current item status
        to_status: Target item status

    Raises:
        InvalidStateTransitionError: If the transition is not allowed
    """
    if not can_transition(from_status, to_status):
        raise InvalidStateTransitionError(item_id, from_status.value, to_status.value)
