"""
Scheduler: bounded concurrent execution of item pipelines.

ADMISSION:
- Submitted ids are de-duplicated, preserving first-seen order
- Items are admitted FIFO into at most `concurrency` workers
- The Reconciler runs once before anything is admitted

PER ITEM (one worker, start to finish):
- COMPLETED with a verified artifact → counted completed, Store untouched
- Retry budget already exhausted → counted skipped, Store untouched
- Otherwise attempt, requeue, attempt again until COMPLETED or the budget
  runs out (counted failed)

ACCOUNTING:
- Exactly one outcome per submitted item per completed run
- RunStats are recomputed from the outcome map under the store lock

SHUTDOWN:
- shutdown() stops admission, SIGTERMs every registered process and
  flushes the Store; it is idempotent and safe from a signal handler
- run() then waits up to grace_seconds and SIGKILLs stragglers
- StoreWriteError from any worker is run-fatal: shutdown, then re-raise
"""

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Dict, Iterable, List, Optional, Set

from ..jobs.models import ItemOutcome, ItemStatus, RunStats
from ..monitor.events import EventSink, EventType, SyncEvent, isolate_sink
from ..persistence.errors import StoreWriteError
from ..persistence.store import StateStore
from .active import ActiveItems
from .base import MetadataFetcher, PayloadAcquirer, Transformer
from .errors import RunCancelledError
from .naming import OutputLayout
from .pipeline import ItemPipeline
from .processes import ProcessRegistry
from .reconciler import Reconciler

logger = logging.getLogger(__name__)


# Seconds between wake-ups of the supervising thread (lets signal handlers run)
POLL_INTERVAL = 0.5


def dedupe_ids(item_ids: Iterable[str]) -> List[str]:
    """Drop repeated ids, keeping the first occurrence of each."""
    seen: Set[str] = set()
    unique: List[str] = []
    for item_id in item_ids:
        if item_id not in seen:
            seen.add(item_id)
            unique.append(item_id)
    return unique


class Scheduler:
    """
    Runs a set of items through their pipelines with bounded concurrency.

    One Scheduler drives one run at a time. After shutdown() it admits
    nothing further.
    """

    def __init__(
        self,
        store: StateStore,
        layout: OutputLayout,
        fetcher: MetadataFetcher,
        acquirer: PayloadAcquirer,
        transformer: Transformer,
        retry_limit: int = 3,
        concurrency: int = 1,
        grace_seconds: float = 5.0,
        sink: Optional[EventSink] = None,
        registry: Optional[ProcessRegistry] = None,
    ):
        if retry_limit < 1:
            raise ValueError(f"retry_limit must be at least 1, got {retry_limit}")
        if concurrency < 1:
            raise ValueError(f"concurrency must be at least 1, got {concurrency}")

        self.store = store
        self.layout = layout
        self.fetcher = fetcher
        self.acquirer = acquirer
        self.transformer = transformer
        self.retry_limit = retry_limit
        self.concurrency = concurrency
        self.grace_seconds = grace_seconds
        self.sink = isolate_sink(sink)
        self.registry = registry if registry is not None else ProcessRegistry()
        self.reconciler = Reconciler(layout, retry_limit, self.sink)

        self.active = ActiveItems(concurrency)
        self._cancel = threading.Event()
        self._shutdown_lock = threading.Lock()
        self._outcomes: Dict[str, ItemOutcome] = {}
        self._total = 0

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @property
    def stats(self) -> RunStats:
        """Current counters of the active (or last) run."""
        with self.store.lock:
            return self._compute_stats()

    # =========================================================================
    # Run
    # =========================================================================

    def run(self, item_ids: Iterable[str]) -> RunStats:
        """
        Process every item once, returning the final counters.

        Args:
            item_ids: Item ids in admission order (duplicates are dropped)

        Returns:
            Final RunStats; after a completed run
            completed + failed + skipped == total

        Raises:
            StoreWriteError: The state file could not be written
        """
        ids = dedupe_ids(item_ids)
        self.layout.ensure_directories()
        self.reconciler.reconcile_store(self.store)

        with self.store.lock:
            self._outcomes = {}
            self._total = len(ids)

        pipeline = ItemPipeline(
            store=self.store,
            registry=self.registry,
            layout=self.layout,
            fetcher=self.fetcher,
            acquirer=self.acquirer,
            transformer=self.transformer,
            retry_limit=self.retry_limit,
            active=self.active,
            cancel_event=self._cancel,
            sink=self.sink,
        )

        logger.info(f"[Scheduler] Starting run: {len(ids)} item(s), concurrency {self.concurrency}")
        self.sink.emit(SyncEvent.create(
            EventType.RUN_STARTED,
            payload={"total": len(ids), "concurrency": self.concurrency},
        ))
        self._publish_stats()

        fatal: Optional[StoreWriteError] = None
        executor = ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="mediasync-worker")
        try:
            # DETERMINISM: submitted in admission order, the pool starts them FIFO
            pending: Set[Future] = {executor.submit(self._work, item_id, pipeline) for item_id in ids}

            while pending and not self._cancel.is_set():
                done, pending = wait(pending, timeout=POLL_INTERVAL, return_when=FIRST_COMPLETED)
                for future in done:
                    error = future.exception()
                    if isinstance(error, StoreWriteError):
                        logger.critical(f"[Scheduler] {error}")
                        fatal = fatal or error
                        self.shutdown("state store write failed")
                    elif error is not None:
                        logger.error(f"[Scheduler] Worker exception: {error!r}")

            if pending:
                self._drain(pending)
        finally:
            executor.shutdown(wait=not self._cancel.is_set(), cancel_futures=True)

        stats = self.stats
        if fatal is None:
            try:
                self.store.set_stats(stats, persist=True)
            except StoreWriteError as e:
                logger.critical(f"[Scheduler] {e}")
                fatal = e

        self.sink.emit(SyncEvent.create(
            EventType.RUN_FINISHED,
            payload={**stats.model_dump(), "cancelled": self._cancel.is_set()},
        ))
        logger.info(
            f"[Scheduler] Run finished: {stats.completed} completed, {stats.failed} failed, "
            f"{stats.skipped} skipped of {stats.total}"
            + (" (interrupted)" if self._cancel.is_set() else "")
        )

        if fatal is not None:
            raise fatal
        return stats

    def _drain(self, pending: Set[Future]) -> None:
        """Give in-flight workers the grace period, then force-kill what remains."""
        logger.info(f"[Scheduler] Waiting up to {self.grace_seconds}s for {len(self.active)} in-flight item(s)")
        _, still_running = wait(pending, timeout=self.grace_seconds)
        if still_running:
            killed = self.registry.kill_all()
            logger.warning(f"[Scheduler] Grace period expired, killed {killed} process(es)")
            wait(still_running, timeout=self.grace_seconds)
        else:
            # Processes that ignored SIGTERM but whose workers already returned
            self.registry.kill_all()

    # =========================================================================
    # Worker
    # =========================================================================

    def _work(self, item_id: str, pipeline: ItemPipeline) -> Optional[ItemOutcome]:
        """Own one item until it reaches an outcome or shutdown interrupts it."""
        if self._cancel.is_set():
            return None

        self.active.enter(item_id)
        self._publish_stats()
        try:
            outcome = self._drive(item_id, pipeline)
        except RunCancelledError:
            logger.info(f"[Scheduler] {item_id} interrupted by shutdown")
            return None
        finally:
            self.active.leave(item_id)
            self._publish_stats()

        self._record(item_id, outcome)
        return outcome

    def _drive(self, item_id: str, pipeline: ItemPipeline) -> ItemOutcome:
        item = self.store.get(item_id)

        if item is not None and item.status == ItemStatus.COMPLETED:
            item = self.reconciler.recheck(self.store, item_id)
            if item is not None and item.status == ItemStatus.COMPLETED:
                self._emit_skip(item_id, "already completed")
                return ItemOutcome.COMPLETED

        if item is not None and item.is_exhausted(self.retry_limit):
            self._emit_skip(item_id, f"too many retries ({item.retry_count}/{self.retry_limit})")
            return ItemOutcome.SKIPPED

        while True:
            if self._cancel.is_set():
                raise RunCancelledError("Shutdown requested")
            item = pipeline.run_attempt(item_id)
            if item.status == ItemStatus.COMPLETED:
                return ItemOutcome.COMPLETED
            if item.status == ItemStatus.FAILED:
                return ItemOutcome.FAILED
            logger.info(
                f"[Scheduler] Retrying {item.label} "
                f"(attempt {item.retry_count + 1}/{self.retry_limit})"
            )

    # =========================================================================
    # Accounting
    # =========================================================================

    def _record(self, item_id: str, outcome: ItemOutcome) -> None:
        with self.store.lock:
            self._outcomes[item_id] = outcome
            stats = self._compute_stats()
            self.store.set_stats(stats, persist=True)
        self._emit_stats(stats)

    def _publish_stats(self) -> None:
        with self.store.lock:
            stats = self._compute_stats()
            self.store.set_stats(stats)
        self._emit_stats(stats)

    def _compute_stats(self) -> RunStats:
        return RunStats.from_outcomes(self._total, self._outcomes.values(), in_flight=len(self.active))

    def _emit_stats(self, stats: RunStats) -> None:
        self.sink.emit(SyncEvent.create(EventType.STATS_UPDATED, payload=stats.model_dump()))

    def _emit_skip(self, item_id: str, reason: str) -> None:
        logger.info(f"[Scheduler] Skipping {item_id}: {reason}")
        self.sink.emit(SyncEvent.create(EventType.ITEM_SKIPPED, item_id=item_id, payload={"reason": reason}))

    # =========================================================================
    # Shutdown
    # =========================================================================

    def shutdown(self, reason: str = "shutdown requested") -> None:
        """
        Stop admitting work and terminate every live external process.

        Idempotent. Returns immediately; run() performs the grace wait and
        SIGKILL escalation.
        """
        with self._shutdown_lock:
            if self._cancel.is_set():
                return
            self._cancel.set()

        logger.warning(f"[Scheduler] Shutting down: {reason}")
        signalled = self.registry.terminate_all()
        logger.info(f"[Scheduler] Sent SIGTERM to {signalled} process(es)")
        self.store.flush()
        self.sink.emit(SyncEvent.create(
            EventType.DIAGNOSTIC,
            payload={"level": "WARNING", "message": f"Shutdown: {reason} ({signalled} process(es) signalled)"},
        ))
