"""
Item-specific error types.

All errors inherit from SyncError for easy catching.
Errors are explicit and provide actionable messages.
"""


class SyncError(Exception):
    """Base exception for all mediasync failures."""
    pass


class ItemNotFoundError(SyncError):
    """Raised when an item cannot be found in the store."""
    
    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Item not found: {item_id}")


class InvalidStateTransitionError(SyncError):
    """Raised when attempting an illegal state transition."""
    
    def __init__(self, item_id: str, current_state: str, target_state: str):
        self.item_id = item_id
        self.current_state = current_state
        self.target_state = target_state
        super().__init__(
            f"Invalid item state transition for {item_id}: "
            f"{current_state} -> {target_state}"
        )
