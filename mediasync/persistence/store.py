"""
JSON snapshot store for item state.

Design rules:
- One file, one document: every item plus the latest RunStats
- Whole-snapshot overwrites only (no partial-item patching on disk)
- Write to a sibling temp file, fsync, then os.replace() so a reader never
  sees a half-written document
- Missing file = empty store, not an error
- Unparseable file = CorruptStateError; open() quarantines it and starts empty
- Write failure = StoreWriteError (run-fatal)

Concurrency: a single re-entrant lock guards every read-modify-write-persist
sequence. Workers never hold it across an external process call.
"""

import json
import logging
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from ..jobs.errors import ItemNotFoundError
from ..jobs.models import Item, ItemStatus, RunStats, StoreSnapshot
from .errors import CorruptStateError, StoreWriteError

logger = logging.getLogger(__name__)


DEFAULT_STATE_FILE = "sync_state.json"


class StateStore:
    """
    Durable mapping from item id to its last known state.

    Holds the in-memory snapshot; every mutation made through upsert()
    or set_stats(persist=True) is followed by a synchronous save.
    """

    def __init__(self, path: Union[str, Path, None] = None):
        """
        Initialize store.

        Args:
            path: Path to the JSON state file (defaults to ./sync_state.json)
        """
        self.path = Path(path) if path is not None else Path.cwd() / DEFAULT_STATE_FILE
        self._snapshot = StoreSnapshot()
        self._lock = threading.RLock()

    @property
    def lock(self) -> threading.RLock:
        """The single store-access lock."""
        return self._lock

    # =========================================================================
    # Load
    # =========================================================================

    def load(self) -> StoreSnapshot:
        """
        Read the snapshot from disk and make it the in-memory state.

        Returns:
            The loaded snapshot (empty if the file does not exist)

        Raises:
            CorruptStateError: If the file cannot be parsed or validated
        """
        if not self.path.is_file():
            logger.info(f"[Store] No state file at {self.path}, starting empty")
            snapshot = StoreSnapshot()
        else:
            try:
                raw = self.path.read_text(encoding="utf-8")
                data = json.loads(raw)
            except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
                raise CorruptStateError(str(self.path), str(e)) from e

            snapshot = _parse_snapshot(data, str(self.path))
            logger.info(f"[Store] Loaded state with {len(snapshot.items)} item entries")

        with self._lock:
            self._snapshot = snapshot
            return self._snapshot.model_copy(deep=True)

    def open(self) -> StoreSnapshot:
        """
        Load the snapshot, falling back to an empty one on corruption.

        The corrupt file is moved aside (not deleted) so it can be inspected.
        Never aborts the run.

        Returns:
            The loaded or empty snapshot
        """
        try:
            return self.load()
        except CorruptStateError as e:
            logger.error(f"[Store] {e}; continuing with an empty state")
            self._quarantine()
            with self._lock:
                self._snapshot = StoreSnapshot()
                return self._snapshot.model_copy(deep=True)

    def _quarantine(self) -> None:
        """Move an unreadable state file aside."""
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        target = self.path.with_name(f"{self.path.name}.corrupt-{stamp}")
        try:
            os.replace(self.path, target)
            logger.warning(f"[Store] Corrupt state file moved to {target}")
        except OSError as e:
            logger.warning(f"[Store] Could not move corrupt state file aside: {e}")

    # =========================================================================
    # Save
    # =========================================================================

    def save(self, snapshot: Optional[StoreSnapshot] = None) -> None:
        """
        Overwrite the durable copy with a whole snapshot.

        Args:
            snapshot: Snapshot to adopt and write; defaults to the in-memory one

        Raises:
            StoreWriteError: If the file cannot be written
        """
        with self._lock:
            if snapshot is not None:
                self._snapshot = snapshot.model_copy(deep=True)
            self._snapshot.saved_at = datetime.now()
            payload = self._snapshot.model_dump_json(indent=2)
            self._write(payload)

    def flush(self) -> None:
        """Best-effort final write used on shutdown."""
        try:
            self.save()
            logger.info(f"[Store] State flushed to {self.path}")
        except StoreWriteError as e:
            logger.error(f"[Store] Final flush failed: {e}")

    def _write(self, payload: str) -> None:
        tmp_path = self.path.with_name(f".{self.path.name}.tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except OSError as e:
            try:
                tmp_path.unlink()
            except OSError:
                pass
            raise StoreWriteError(f"Failed to write state file {self.path}: {e}") from e

    # =========================================================================
    # Item access
    # =========================================================================

    def get(self, item_id: str) -> Optional[Item]:
        """
        Retrieve an item by id.

        Returns:
            A copy of the stored item, or None if absent
        """
        with self._lock:
            item = self._snapshot.items.get(item_id)
            return item.model_copy(deep=True) if item is not None else None

    def require(self, item_id: str) -> Item:
        """
        Retrieve an item that must exist.

        Raises:
            ItemNotFoundError: If the store has no such item
        """
        item = self.get(item_id)
        if item is None:
            raise ItemNotFoundError(item_id)
        return item

    def upsert(self, item: Item, persist: bool = True) -> None:
        """
        Insert or replace one item, then write the whole snapshot.

        Args:
            item: The item to store (a copy is kept)
            persist: Write to disk immediately (default True)

        Raises:
            StoreWriteError: If persisting fails
        """
        with self._lock:
            self._snapshot.items[item.id] = item.model_copy(deep=True)
            if persist:
                self.save()

    def set_stats(self, stats: RunStats, persist: bool = False) -> None:
        """Replace the stored RunStats."""
        with self._lock:
            self._snapshot.stats = stats.model_copy()
            if persist:
                self.save()

    def snapshot(self) -> StoreSnapshot:
        """Deep copy of the in-memory snapshot (reader view)."""
        with self._lock:
            return self._snapshot.model_copy(deep=True)

    def items(self) -> List[Item]:
        """Copies of all stored items."""
        with self._lock:
            return [item.model_copy(deep=True) for item in self._snapshot.items.values()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._snapshot.items)

    def __contains__(self, item_id: object) -> bool:
        with self._lock:
            return item_id in self._snapshot.items


# =============================================================================
# Parsing
# =============================================================================

def _parse_snapshot(data: Any, path: str) -> StoreSnapshot:
    """Validate a decoded document, accepting the legacy track-map layout."""
    if not isinstance(data, dict):
        raise CorruptStateError(path, f"expected a JSON object, got {type(data).__name__}")

    if "tracks" in data and "items" not in data:
        return _from_legacy(data, path)

    try:
        return StoreSnapshot.model_validate(data)
    except ValidationError as e:
        raise CorruptStateError(path, f"schema mismatch: {e.error_count()} error(s)") from e


def _from_legacy(data: Dict[str, Any], path: str) -> StoreSnapshot:
    """
    Convert a legacy state document.

    Legacy layout:
        {"tracks": {url: {downloaded, title, error, retries, lastAttempt}},
         "stats": {totalTracks, completedTracks, errorTracks}}

    Counters are not carried over; they are recomputed per run.
    """
    tracks = data.get("tracks")
    if not isinstance(tracks, dict):
        raise CorruptStateError(path, "legacy 'tracks' is not an object")

    items: Dict[str, Item] = {}
    for url, track in tracks.items():
        if not isinstance(track, dict):
            raise CorruptStateError(path, f"legacy entry for {url} is not an object")
        try:
            last_attempt = track.get("lastAttempt")
            items[url] = Item(
                id=url,
                status=ItemStatus.COMPLETED if track.get("downloaded") else ItemStatus.PENDING,
                title=track.get("title"),
                retry_count=int(track.get("retries") or 0),
                last_error=track.get("error"),
                last_attempt_at=datetime.fromisoformat(last_attempt.replace("Z", "+00:00")) if last_attempt else None,
            )
        except (TypeError, ValueError, ValidationError) as e:
            raise CorruptStateError(path, f"legacy entry for {url}: {e}") from e

    logger.info(f"[Store] Imported {len(items)} legacy track entries")
    return StoreSnapshot(items=items)
