"""
Active item tracking.

Bounded concurrent map of item id → what that item's worker is doing now.

Invariants:
- Only the worker that owns an item writes its entry
- Readers receive copies (snapshot semantics), never live entries
- Size never exceeds the capacity (the run's concurrency)
"""

import threading
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Dict, Optional

from ..jobs.models import ItemStatus


@dataclass(frozen=True)
class ActiveItem:
    """What one in-flight item is doing."""

    item_id: str
    status: ItemStatus
    title: Optional[str] = None
    progress_percent: Optional[float] = None
    eta_seconds: Optional[float] = None
    started_at: datetime = datetime.min

    @property
    def label(self) -> str:
        return self.title or self.item_id


class ActiveItems:
    """
    Thread-safe map of in-flight items, capped at a fixed capacity.
    """

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._items: Dict[str, ActiveItem] = {}
        self._peak = 0
        self._lock = threading.Lock()

    def enter(self, item_id: str) -> None:
        """
        Mark an item as in flight.

        Raises:
            RuntimeError: If the map is full or the item is already in flight
        """
        with self._lock:
            if item_id in self._items:
                raise RuntimeError(f"Item already in flight: {item_id}")
            if len(self._items) >= self.capacity:
                raise RuntimeError(f"Active item capacity {self.capacity} exceeded by {item_id}")
            self._items[item_id] = ActiveItem(
                item_id=item_id,
                status=ItemStatus.PENDING,
                started_at=datetime.now(),
            )
            self._peak = max(self._peak, len(self._items))

    def update(self, item_id: str, **changes) -> None:
        """Replace fields of an in-flight entry. Unknown ids are ignored."""
        with self._lock:
            current = self._items.get(item_id)
            if current is not None:
                self._items[item_id] = replace(current, **changes)

    def leave(self, item_id: str) -> None:
        with self._lock:
            self._items.pop(item_id, None)

    def get(self, item_id: str) -> Optional[ActiveItem]:
        with self._lock:
            return self._items.get(item_id)

    def snapshot(self) -> Dict[str, ActiveItem]:
        """Copy of the current map."""
        with self._lock:
            return dict(self._items)

    @property
    def peak(self) -> int:
        """Highest simultaneous occupancy seen."""
        with self._lock:
            return self._peak

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
