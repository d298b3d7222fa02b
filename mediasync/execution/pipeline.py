"""
Single-item execution pipeline.

Runs ONE attempt of ONE item through the four stages:
1. FETCHING:     metadata lookup (title, normalized name, duration)
2. ACQUIRING:    download the payload into a stage-private temporary
3. TRANSFORMING: re-encode the payload into a second temporary
4. FINALIZING:   move the encoded artifact onto its published path

Design rules:
- Every transition is validated, persisted, then emitted, in that order
- Each stage writes only to its own temporary; the published path is
  touched only by FINALIZING
- Each external process is registered for its whole lifetime
- Stage errors never leave this module: they become a persisted failure
  (requeued to PENDING in the same write while retry budget remains)
- StoreWriteError and RunCancelledError DO leave this module; cancellation
  is not a failure and keeps the item's last-persisted state

NO RETRY LOOPS. The scheduler decides whether to attempt again.
"""

import logging
import os
import subprocess
import threading
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Deque, List, Optional

from ..jobs.errors import InvalidStateTransitionError
from ..jobs.models import Item, ItemStatus
from ..jobs.state import can_requeue, validate_transition
from ..monitor.events import EventSink, EventType, SyncEvent, isolate_sink
from ..persistence.errors import StoreWriteError
from ..persistence.store import StateStore
from .active import ActiveItems
from .base import ExternalTool, MetadataFetcher, PayloadAcquirer, Transformer
from .errors import RunCancelledError, StageError, ToolNotFoundError
from .naming import OutputLayout
from .processes import ProcessHandle, ProcessRegistry

logger = logging.getLogger(__name__)


# Lines of tool output kept for error messages
OUTPUT_TAIL_LINES = 20

# Characters of each tool output line written to the debug log
OUTPUT_LOG_CHARS = 500


class ItemPipeline:
    """
    Drives one attempt of one item from PENDING to COMPLETED or FAILED.

    Stateless between attempts; safe to share across worker threads.
    """

    def __init__(
        self,
        store: StateStore,
        registry: ProcessRegistry,
        layout: OutputLayout,
        fetcher: MetadataFetcher,
        acquirer: PayloadAcquirer,
        transformer: Transformer,
        retry_limit: int,
        active: ActiveItems,
        cancel_event: threading.Event,
        sink: Optional[EventSink] = None,
    ):
        self.store = store
        self.registry = registry
        self.layout = layout
        self.fetcher = fetcher
        self.acquirer = acquirer
        self.transformer = transformer
        self.retry_limit = retry_limit
        self.active = active
        self.sink = isolate_sink(sink)
        self._cancel = cancel_event

    def run_attempt(self, item_id: str) -> Item:
        """
        Run one attempt.

        Args:
            item_id: Item to process; created as PENDING if the store lacks it

        Returns:
            The item as persisted after the attempt: COMPLETED, PENDING
            (failed and requeued) or FAILED (budget exhausted)

        Raises:
            RunCancelledError: Shutdown interrupted the attempt
            StoreWriteError: The state file could not be written
            InvalidStateTransitionError: The item is not in a startable state
        """
        item = self._load(item_id)
        stage = ItemStatus.FETCHING

        try:
            self._check_cancelled()
            self._transition(item, ItemStatus.FETCHING)
            self._fetch(item)

            stage = ItemStatus.ACQUIRING
            self._check_cancelled()
            self._transition(item, ItemStatus.ACQUIRING)
            acquired = self._acquire(item)

            stage = ItemStatus.TRANSFORMING
            self._check_cancelled()
            self._transition(item, ItemStatus.TRANSFORMING)
            encoded = self._transform(item, acquired)

            stage = ItemStatus.FINALIZING
            self._check_cancelled()
            self._transition(item, ItemStatus.FINALIZING)
            self._finalize(item, encoded)

            item.completed_at = datetime.now()
            item.last_error = None
            self._transition(item, ItemStatus.COMPLETED)
            logger.info(f"[Pipeline] Completed {item.label} → {item.output_path}")
            return item

        except RunCancelledError:
            logger.info(f"[Pipeline] {item.label} cancelled during {stage.value}")
            self._cleanup_temporaries(item.id)
            raise
        except StoreWriteError:
            raise
        except StageError as e:
            self._cleanup_temporaries(item.id)
            self._fail(item, str(e), e.output_tail)
            return item
        except Exception as e:
            logger.exception(f"[Pipeline] Unexpected error processing {item.label}")
            self._cleanup_temporaries(item.id)
            self._fail(item, f"[{stage.value}] Unexpected error: {e}")
            return item

    # =========================================================================
    # Stages
    # =========================================================================

    def _fetch(self, item: Item) -> None:
        try:
            process = self.fetcher.start_fetch(item.id)
        except (OSError, ToolNotFoundError) as e:
            raise StageError(ItemStatus.FETCHING.value, f"Could not start {self.fetcher.name}: {e}") from e

        output = self._run_process(
            item,
            ItemStatus.FETCHING,
            self.fetcher,
            process,
            timeout=self.fetcher.metadata_timeout,
            collect=True,
        )
        metadata = self.fetcher.parse_metadata(item.id, output)
        item.title = metadata.title
        item.normalized_name = metadata.normalized_name
        item.duration = metadata.duration
        item.output_path = str(self.layout.published_path(metadata.normalized_name))
        self.store.upsert(item)
        self.active.update(item.id, title=item.title)
        logger.info(f"[Pipeline] Fetched metadata for {item.id}: {item.title}")

    def _acquire(self, item: Item) -> Path:
        dest = self.layout.acquire_temp(item.id)
        self._prepare_temp(dest)
        try:
            process = self.acquirer.acquire(item.id, dest)
        except (OSError, ToolNotFoundError) as e:
            raise StageError(ItemStatus.ACQUIRING.value, f"Could not start {self.acquirer.name}: {e}") from e

        self._run_process(item, ItemStatus.ACQUIRING, self.acquirer, process)
        if not dest.is_file():
            raise StageError(ItemStatus.ACQUIRING.value, f"{self.acquirer.name} exited cleanly but produced no file")
        return dest

    def _transform(self, item: Item, src: Path) -> Path:
        dest = self.layout.transform_temp(item.id)
        self._prepare_temp(dest)
        try:
            process = self.transformer.transform(src, dest)
        except (OSError, ToolNotFoundError) as e:
            raise StageError(ItemStatus.TRANSFORMING.value, f"Could not start {self.transformer.name}: {e}") from e

        self._run_process(item, ItemStatus.TRANSFORMING, self.transformer, process)
        if not dest.is_file():
            raise StageError(ItemStatus.TRANSFORMING.value, f"{self.transformer.name} exited cleanly but produced no file")
        return dest

    def _finalize(self, item: Item, encoded: Path) -> None:
        if not item.output_path:
            raise StageError(ItemStatus.FINALIZING.value, "No output path resolved")
        final = Path(item.output_path)
        try:
            final.parent.mkdir(parents=True, exist_ok=True)
            # Remove-then-rename, never rename over an existing file
            if final.exists():
                final.unlink()
            os.replace(encoded, final)
        except OSError as e:
            raise StageError(ItemStatus.FINALIZING.value, f"Could not publish {final}: {e}") from e
        self._cleanup_temporaries(item.id)

    # =========================================================================
    # Process supervision
    # =========================================================================

    def _run_process(
        self,
        item: Item,
        stage: ItemStatus,
        tool: ExternalTool,
        process: subprocess.Popen,
        timeout: Optional[float] = None,
        collect: bool = False,
    ) -> List[str]:
        """
        Register, stream and wait for one external process.

        Args:
            timeout: Seconds before the process is terminated as hung
            collect: Keep every output line and return them

        Returns:
            Output lines when collect is set, otherwise an empty list

        Raises:
            RunCancelledError: The process ended because of shutdown
            StageError: The process exited non-zero or timed out
        """
        handle = ProcessHandle(
            process=process,
            item_id=item.id,
            stage=stage,
            command=list(getattr(process, "args", None) or []),
        )
        self.registry.register(handle)
        # Shutdown may have swept the registry between spawn and register
        if self._cancel.is_set():
            handle.terminate()

        timed_out = threading.Event()
        timer: Optional[threading.Timer] = None
        if timeout is not None:
            def expire() -> None:
                timed_out.set()
                handle.terminate()

            timer = threading.Timer(timeout, expire)
            timer.daemon = True
            timer.start()

        tail: Deque[str] = deque(maxlen=OUTPUT_TAIL_LINES)
        output: List[str] = []
        try:
            try:
                if process.stdout is not None:
                    for raw in process.stdout:
                        line = raw.rstrip()
                        if not line:
                            continue
                        tail.append(line)
                        if collect:
                            output.append(line)
                        logger.debug(f"[{tool.name}] {line[:OUTPUT_LOG_CHARS]}")
                        update = tool.parse_progress(line, item.duration)
                        if update is not None:
                            self._report_progress(item, stage, update.percent, update.eta_seconds)
                exit_code = process.wait()
            except BaseException:
                # The child never outlives its registration
                handle.kill()
                process.wait()
                raise
        finally:
            if timer is not None:
                timer.cancel()
            self.registry.unregister(handle)

        if exit_code != 0 and self._cancel.is_set():
            raise RunCancelledError(f"{tool.name} stopped by shutdown (exit code {exit_code})")
        if exit_code != 0 and timed_out.is_set():
            raise StageError(
                stage.value,
                f"{tool.name} timed out after {timeout}s",
                exit_code=exit_code,
                output_tail="\n".join(tail),
            )
        if exit_code != 0:
            last_line = tail[-1] if tail else "no output"
            raise StageError(
                stage.value,
                f"{tool.name} failed: {last_line}",
                exit_code=exit_code,
                output_tail="\n".join(tail),
            )
        return output

    def _report_progress(
        self,
        item: Item,
        stage: ItemStatus,
        percent: float,
        eta_seconds: Optional[float],
    ) -> None:
        self.active.update(item.id, progress_percent=percent, eta_seconds=eta_seconds)
        self.sink.emit(SyncEvent.create(
            EventType.ITEM_PROGRESS,
            item_id=item.id,
            payload={"stage": stage.value, "percent": percent, "eta_seconds": eta_seconds},
        ))

    # =========================================================================
    # State handling
    # =========================================================================

    def _load(self, item_id: str) -> Item:
        item = self.store.get(item_id)
        if item is None:
            return Item(id=item_id)
        if item.status == ItemStatus.PENDING:
            return item
        if can_requeue(item.status, item.retry_count, self.retry_limit):
            self._requeue(item)
            return item
        raise InvalidStateTransitionError(item_id, item.status.value, ItemStatus.FETCHING.value)

    def _transition(self, item: Item, to_status: ItemStatus) -> None:
        """Validate, persist, then publish one transition."""
        from_status = item.status
        validate_transition(item.id, from_status, to_status)
        item.status = to_status
        if to_status == ItemStatus.FETCHING:
            item.last_attempt_at = datetime.now()
        self.store.upsert(item)

        self.active.update(item.id, status=to_status, progress_percent=None, eta_seconds=None)
        self._emit_transition(item, from_status, to_status)

    def _fail(self, item: Item, message: str, output_tail: Optional[str] = None) -> None:
        """
        Record a failed attempt in a single persisted write.

        Requeues to PENDING when retry budget remains.
        """
        from_status = item.status
        validate_transition(item.id, from_status, ItemStatus.FAILED)
        item.status = ItemStatus.FAILED
        item.retry_count += 1
        item.last_error = message
        item.last_attempt_at = datetime.now()

        requeue = can_requeue(item.status, item.retry_count, self.retry_limit)
        if requeue:
            item.status = ItemStatus.PENDING
        self.store.upsert(item)

        logger.error(
            f"[Pipeline] {item.label} failed (attempt {item.retry_count}/{self.retry_limit}): {message}"
        )
        if output_tail:
            logger.debug(f"[Pipeline] Output tail for {item.id}:\n{output_tail}")

        self._emit_transition(item, from_status, ItemStatus.FAILED, error=message)
        self.sink.emit(SyncEvent.create(
            EventType.DIAGNOSTIC,
            item_id=item.id,
            payload={"level": "ERROR", "message": f"{item.label}: {message}"},
        ))
        if requeue:
            self._emit_transition(item, ItemStatus.FAILED, ItemStatus.PENDING)
        self.active.update(item.id, status=item.status, progress_percent=None, eta_seconds=None)

    def _requeue(self, item: Item) -> None:
        item.status = ItemStatus.PENDING
        self.store.upsert(item)
        self._emit_transition(item, ItemStatus.FAILED, ItemStatus.PENDING)

    def _emit_transition(
        self,
        item: Item,
        from_status: ItemStatus,
        to_status: ItemStatus,
        error: Optional[str] = None,
    ) -> None:
        payload = {
            "from": from_status.value,
            "to": to_status.value,
            "title": item.title,
            "retry_count": item.retry_count,
        }
        if error is not None:
            payload["error"] = error
        self.sink.emit(SyncEvent.create(EventType.ITEM_TRANSITION, item_id=item.id, payload=payload))

    def _check_cancelled(self) -> None:
        if self._cancel.is_set():
            raise RunCancelledError("Shutdown requested")

    # =========================================================================
    # Temporaries
    # =========================================================================

    def _prepare_temp(self, path: Path) -> None:
        """Remove leftovers from an earlier attempt before a stage writes."""
        path.parent.mkdir(parents=True, exist_ok=True)
        _remove_with_siblings(path)

    def _cleanup_temporaries(self, item_id: str) -> None:
        for path in (self.layout.acquire_temp(item_id), self.layout.transform_temp(item_id)):
            _remove_with_siblings(path)


def _remove_with_siblings(path: Path) -> None:
    """
    Delete a temporary and any tool intermediates sharing its stem
    (e.g. yt-dlp's per-format '<stem>.f137.mp4' files).
    """
    candidates = [path]
    if path.parent.is_dir():
        candidates.extend(path.parent.glob(f"{path.stem}.*"))
    for candidate in candidates:
        try:
            if candidate.is_file():
                candidate.unlink()
                logger.debug(f"[Pipeline] Removed temporary {candidate}")
        except OSError as e:
            logger.warning(f"[Pipeline] Could not remove temporary {candidate}: {e}")
