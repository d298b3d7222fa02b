"""
Persistence layer for mediasync state.

Single JSON file holding every item and the latest RunStats.
Rewritten wholesale after every item transition.
"""

from .store import StateStore
from .errors import PersistenceError, CorruptStateError, StoreWriteError

__all__ = ["StateStore", "PersistenceError", "CorruptStateError", "StoreWriteError"]
