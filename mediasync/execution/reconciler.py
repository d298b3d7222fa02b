"""
Reconciler: validate persisted claims against the filesystem.

Runs once at startup, before any work is admitted, and again for a single
item right before the scheduler skips it as already completed.

Rules:
- COMPLETED whose artifact is missing → PENDING (logged as a recoverable
  inconsistency, WARNING, never an error)
- Stranded working state (crash or interrupt mid-stage) → PENDING
- FAILED with retry budget left (e.g. the limit was raised) → PENDING
- retry_count is preserved in every case: reconciliation never replenishes
  the lifetime retry budget

Idempotent: reconciling an already reconciled snapshot changes nothing.
"""

import logging
from typing import List, Optional

from ..jobs.models import Item, ItemStatus, StoreSnapshot
from ..jobs.state import can_demote, is_working
from ..monitor.events import EventSink, EventType, SyncEvent, isolate_sink
from ..persistence.store import StateStore
from .naming import OutputLayout

logger = logging.getLogger(__name__)


class Reconciler:
    """Demotes items whose persisted status no longer matches reality."""

    def __init__(self, layout: OutputLayout, retry_limit: int, sink: Optional[EventSink] = None):
        self.layout = layout
        self.retry_limit = retry_limit
        self.sink = isolate_sink(sink)

    def check(self, item: Item) -> Optional[Item]:
        """
        Decide whether one item must be demoted.

        Args:
            item: Item as persisted

        Returns:
            A demoted copy, or None if the item is consistent
        """
        reason: Optional[str] = None

        if item.status == ItemStatus.COMPLETED:
            artifact = self.layout.artifact_path(item)
            if artifact is None:
                reason = "completed item has no known output path"
            elif not artifact.is_file():
                reason = f"output artifact missing: {artifact}"
        elif is_working(item.status):
            reason = f"interrupted while {item.status.value}"
        elif item.status == ItemStatus.FAILED and item.retry_count < self.retry_limit:
            reason = f"retry budget available ({item.retry_count}/{self.retry_limit})"

        if reason is None or not can_demote(item.status):
            return None

        demoted = item.model_copy(deep=True)
        demoted.status = ItemStatus.PENDING
        demoted.completed_at = None
        if item.status == ItemStatus.COMPLETED:
            demoted.last_error = reason

        logger.warning(f"[Reconciler] Demoting {item.id} from {item.status.value} to pending: {reason}")
        self._emit_demotion(item, reason)
        return demoted

    def reconcile(self, snapshot: StoreSnapshot) -> StoreSnapshot:
        """
        Return an adjusted copy of a snapshot.

        The input snapshot is not modified.
        """
        adjusted = snapshot.model_copy(deep=True)
        for item_id, item in snapshot.items.items():
            demoted = self.check(item)
            if demoted is not None:
                adjusted.items[item_id] = demoted
        return adjusted

    def reconcile_store(self, store: StateStore) -> List[str]:
        """
        Reconcile a store in place, saving once if anything changed.

        Returns:
            Ids of demoted items
        """
        with store.lock:
            before = store.snapshot()
            after = self.reconcile(before)
            demoted = [
                item_id for item_id, item in after.items.items()
                if item != before.items[item_id]
            ]
            if demoted:
                store.save(after)
        if demoted:
            logger.info(f"[Reconciler] {len(demoted)} item(s) demoted to pending")
        else:
            logger.info(f"[Reconciler] {len(before.items)} item(s) consistent")
        return demoted

    def recheck(self, store: StateStore, item_id: str) -> Optional[Item]:
        """
        Re-verify one stored item right before it is skipped.

        Returns:
            The item as it now stands in the store (demoted or not), or None
            if the store does not know it
        """
        with store.lock:
            item = store.get(item_id)
            if item is None:
                return None
            demoted = self.check(item)
            if demoted is None:
                return item
            store.upsert(demoted)
            return demoted

    def _emit_demotion(self, item: Item, reason: str) -> None:
        self.sink.emit(SyncEvent.create(
            EventType.ITEM_TRANSITION,
            item_id=item.id,
            payload={
                "from": item.status.value,
                "to": ItemStatus.PENDING.value,
                "title": item.title,
                "retry_count": item.retry_count,
                "reason": reason,
            },
        ))
        self.sink.emit(SyncEvent.create(
            EventType.DIAGNOSTIC,
            item_id=item.id,
            payload={"level": "WARNING", "message": f"Reconciled {item.label}: {reason}"},
        ))
