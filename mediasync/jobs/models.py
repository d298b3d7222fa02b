"""
Item, RunStats and snapshot data models.

Represents the unit of work (one remote media item) and the aggregate
counters derived from item outcomes.
One item failing must never block other items.

All models use Pydantic for validation.
State transitions are validated externally (see state.py).
"""

from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field


class ItemStatus(str, Enum):
    """
    Item-level status.

    An item moves through these states strictly in order.
    Every working state has one exit edge to FAILED.
    """

    PENDING = "pending"  # Not yet started, or requeued for another attempt
    FETCHING = "fetching"  # Metadata lookup in progress
    ACQUIRING = "acquiring"  # Payload download in progress
    TRANSFORMING = "transforming"  # Re-encode in progress
    FINALIZING = "finalizing"  # Publishing the encoded artifact
    COMPLETED = "completed"  # Artifact published (re-verified by the Reconciler)
    FAILED = "failed"  # Retry budget exhausted


# Working states, in pipeline order
WORKING_STATES = (
    ItemStatus.FETCHING,
    ItemStatus.ACQUIRING,
    ItemStatus.TRANSFORMING,
    ItemStatus.FINALIZING,
)


class ItemOutcome(str, Enum):
    """
    Terminal accounting outcome of one item within one run.

    Every submitted item reaches exactly one of these per completed run.
    """

    COMPLETED = "completed"
    FAILED = "failed"  # Abandoned this run: retry budget reached
    SKIPPED = "skipped"  # Arrived already exhausted from an earlier run


class Item(BaseModel):
    """
    A single sync item.

    Keyed by its stable remote identifier (canonical URL).
    Each item has its own independent state and outcome.
    """

    model_config = ConfigDict(extra="forbid")

    # Identity
    id: str

    # State
    status: ItemStatus = ItemStatus.PENDING

    # Metadata (populated by the Fetching stage)
    title: Optional[str] = None
    normalized_name: Optional[str] = None
    duration: Optional[float] = None  # Seconds, when the catalog reports it

    # Output: published location, resolved once metadata is known
    output_path: Optional[str] = None

    # Attempt bookkeeping
    retry_count: int = Field(default=0, ge=0)
    last_error: Optional[str] = None
    last_attempt_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def label(self) -> str:
        """Human label: title once known, id before that."""
        return self.title or self.id

    def is_exhausted(self, retry_limit: int) -> bool:
        """True once the lifetime retry budget is used up."""
        return self.retry_count >= retry_limit


class RunStats(BaseModel):
    """
    Aggregate counters for one run.

    Derived from, never authoritative over, item outcomes.
    Recomputed from the outcome map on every change.
    """

    model_config = ConfigDict(extra="forbid")

    total: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    in_flight: int = 0

    @property
    def remaining(self) -> int:
        """Items not yet accounted for."""
        return self.total - self.completed - self.failed - self.skipped

    @property
    def accounted(self) -> int:
        """Items that reached a terminal outcome."""
        return self.completed + self.failed + self.skipped

    @classmethod
    def from_outcomes(
        cls,
        total: int,
        outcomes: Iterable[ItemOutcome],
        in_flight: int = 0,
    ) -> "RunStats":
        """
        Recompute counters from per-item outcomes.

        Args:
            total: Number of distinct items submitted to the run
            outcomes: One outcome per accounted item
            in_flight: Items currently inside a pipeline

        Returns:
            Fresh RunStats
        """
        counts = {outcome: 0 for outcome in ItemOutcome}
        for outcome in outcomes:
            counts[outcome] += 1
        return cls(
            total=total,
            completed=counts[ItemOutcome.COMPLETED],
            failed=counts[ItemOutcome.FAILED],
            skipped=counts[ItemOutcome.SKIPPED],
            in_flight=in_flight,
        )


class StoreSnapshot(BaseModel):
    """
    Durable key → Item mapping plus the latest RunStats.

    Persisted as a whole after every item transition.
    """

    model_config = ConfigDict(extra="forbid")

    items: Dict[str, Item] = Field(default_factory=dict)
    stats: RunStats = Field(default_factory=RunStats)
    saved_at: Optional[datetime] = None

    def count_by_status(self) -> Dict[ItemStatus, int]:
        """Number of items per status (all statuses present)."""
        counts = {status: 0 for status in ItemStatus}
        for item in self.items.values():
            counts[item.status] += 1
        return counts
