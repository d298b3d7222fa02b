"""
Item model and lifecycle rules.

This module defines what an item is and which state changes are legal.
It does NOT talk to the catalog, spawn processes or touch the disk.
"""

from .errors import (
    SyncError,
    ItemNotFoundError,
    InvalidStateTransitionError,
)
from .models import (
    ItemStatus,
    ItemOutcome,
    Item,
    RunStats,
    StoreSnapshot,
    WORKING_STATES,
)
from .state import (
    can_transition,
    can_requeue,
    can_demote,
    is_item_terminal,
    validate_transition,
)

__all__ = [
    # Errors
    "SyncError",
    "ItemNotFoundError",
    "InvalidStateTransitionError",
    # Models
    "ItemStatus",
    "ItemOutcome",
    "Item",
    "RunStats",
    "StoreSnapshot",
    "WORKING_STATES",
    # State validation
    "can_transition",
    "can_requeue",
    "can_demote",
    "is_item_terminal",
    "validate_transition",
]
