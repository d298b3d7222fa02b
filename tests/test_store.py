"""
Tests for the JSON state store.

Tests:
- Missing file starts empty
- Saved state reloads in a fresh store
- Corrupt file: load raises, open quarantines and starts empty
- Legacy track-map files are imported
- Write failures are StoreWriteError
"""

import json
import threading

import pytest

from mediasync.jobs.errors import ItemNotFoundError
from mediasync.jobs.models import Item, ItemStatus, RunStats
from mediasync.persistence.errors import CorruptStateError, StoreWriteError
from mediasync.persistence.store import StateStore


class TestStoreLoad:
    """Loading from disk."""

    def test_missing_file_is_empty(self, tmp_path):
        """A store without a file behaves as empty, not as an error."""
        store = StateStore(tmp_path / "none.json")
        snapshot = store.load()
        assert snapshot.items == {}
        assert len(store) == 0

    def test_state_survives_restart(self, tmp_path):
        """Items written by one store are visible to a new store on the same file."""
        path = tmp_path / "state.json"
        store = StateStore(path)
        store.upsert(Item(id="a", status=ItemStatus.COMPLETED, title="A", retry_count=1))
        store.upsert(Item(id="b", last_error="boom", retry_count=2))

        reloaded = StateStore(path)
        reloaded.load()

        assert reloaded.get("a").status == ItemStatus.COMPLETED
        assert reloaded.get("a").retry_count == 1
        assert reloaded.get("b").last_error == "boom"
        assert "b" in reloaded

    def test_stats_are_persisted(self, tmp_path):
        path = tmp_path / "state.json"
        store = StateStore(path)
        store.set_stats(RunStats(total=3, completed=2, failed=1), persist=True)

        snapshot = StateStore(path).load()
        assert snapshot.stats.completed == 2
        assert snapshot.stats.failed == 1


class TestStoreCorruption:
    """Unreadable state files."""

    def test_load_raises_on_invalid_json(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(CorruptStateError):
            StateStore(path).load()

    def test_load_raises_on_schema_mismatch(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text(json.dumps({"items": {"a": {"id": "a", "status": "exploded"}}}), encoding="utf-8")
        with pytest.raises(CorruptStateError):
            StateStore(path).load()

    def test_open_quarantines_and_starts_empty(self, tmp_path):
        """Corruption never aborts: the file is moved aside and the store is empty."""
        path = tmp_path / "state.json"
        path.write_text("[1, 2", encoding="utf-8")

        store = StateStore(path)
        snapshot = store.open()

        assert snapshot.items == {}
        assert not path.exists()
        quarantined = list(tmp_path.glob("state.json.corrupt-*"))
        assert len(quarantined) == 1
        assert quarantined[0].read_text(encoding="utf-8") == "[1, 2"

    def test_store_is_usable_after_corruption(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("garbage", encoding="utf-8")
        store = StateStore(path)
        store.open()

        store.upsert(Item(id="a"))

        assert StateStore(path).load().items["a"].status == ItemStatus.PENDING


class TestLegacyImport:
    """State files written by the earlier track-map format."""

    def test_legacy_tracks_are_converted(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text(json.dumps({
            "tracks": {
                "https://youtube.com/watch?v=done": {
                    "downloaded": True,
                    "title": "Done Song",
                    "retries": 0,
                    "lastAttempt": "2024-01-02T03:04:05.000Z",
                },
                "https://youtube.com/watch?v=bad": {
                    "downloaded": False,
                    "title": "Bad Song",
                    "error": "Failed after 3 retries",
                    "retries": 3,
                },
            },
            "stats": {"totalTracks": 2, "completedTracks": 1, "errorTracks": 1},
        }), encoding="utf-8")

        snapshot = StateStore(path).load()

        done = snapshot.items["https://youtube.com/watch?v=done"]
        assert done.status == ItemStatus.COMPLETED
        assert done.title == "Done Song"
        assert done.last_attempt_at is not None

        bad = snapshot.items["https://youtube.com/watch?v=bad"]
        assert bad.status == ItemStatus.PENDING
        assert bad.retry_count == 3
        assert bad.last_error == "Failed after 3 retries"

    def test_legacy_entry_must_be_object(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text(json.dumps({"tracks": {"x": "nope"}}), encoding="utf-8")
        with pytest.raises(CorruptStateError):
            StateStore(path).load()


class TestStoreWrites:
    """Durable writes."""

    def test_save_leaves_no_temp_file(self, tmp_path):
        path = tmp_path / "state.json"
        store = StateStore(path)
        store.upsert(Item(id="a"))

        assert path.is_file()
        assert [p.name for p in tmp_path.iterdir()] == ["state.json"]
        json.loads(path.read_text(encoding="utf-8"))

    def test_write_failure_raises_store_write_error(self, tmp_path):
        """An unwritable destination is reported as StoreWriteError."""
        target = tmp_path / "state.json"
        target.mkdir()
        store = StateStore(target)

        with pytest.raises(StoreWriteError):
            store.upsert(Item(id="a"))

    def test_flush_swallows_write_errors(self, tmp_path):
        target = tmp_path / "state.json"
        target.mkdir()
        StateStore(target).flush()

    def test_get_returns_copies(self, tmp_path):
        """Mutating a returned item does not change the store."""
        store = StateStore(tmp_path / "state.json")
        store.upsert(Item(id="a"), persist=False)

        item = store.get("a")
        item.status = ItemStatus.COMPLETED

        assert store.get("a").status == ItemStatus.PENDING

    def test_require_missing_item(self, tmp_path):
        store = StateStore(tmp_path / "state.json")
        with pytest.raises(ItemNotFoundError):
            store.require("missing")

    def test_concurrent_upserts_are_all_persisted(self, tmp_path):
        """Writers on several threads never lose each other's items."""
        path = tmp_path / "state.json"
        store = StateStore(path)

        def writer(prefix):
            for n in range(20):
                store.upsert(Item(id=f"{prefix}-{n}"))

        threads = [threading.Thread(target=writer, args=(p,)) for p in "abcd"]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(StateStore(path).load().items) == 80
