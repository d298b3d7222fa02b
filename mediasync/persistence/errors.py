"""
Persistence-specific errors.
"""

from ..jobs.errors import SyncError


class PersistenceError(SyncError):
    """Base exception for persistence operations."""
    
    pass


class CorruptStateError(PersistenceError):
    """
    The state file exists but cannot be parsed.
    
    Recoverable: callers fall back to an empty snapshot and continue.
    """
    
    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Corrupt state file {path}: {reason}")


class StoreWriteError(PersistenceError):
    """
    Failed to write state to durable storage.
    
    Run-fatal: continuing would silently lose resumability.
    """
    
    pass
