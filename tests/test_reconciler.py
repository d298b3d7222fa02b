"""
Tests for the Reconciler.

Tests:
- Completed items with missing artifacts are demoted, retry count kept
- Stranded working states are demoted
- Failed items are demoted only while budget remains
- Reconciling twice changes nothing the second time
- A demoted item is re-processed by the next run
"""

from mediasync.execution.reconciler import Reconciler
from mediasync.jobs.models import Item, ItemStatus, StoreSnapshot
from mediasync.persistence.store import StateStore

from conftest import FakeCatalog


def _completed(layout, item_id, name, write=True):
    path = layout.published_path(name)
    if write:
        layout.ensure_directories()
        path.write_bytes(b"artifact")
    return Item(
        id=item_id,
        status=ItemStatus.COMPLETED,
        title=name,
        normalized_name=name,
        output_path=str(path),
        retry_count=1,
    )


class TestReconcile:

    def test_present_artifact_is_kept(self, layout):
        item = _completed(layout, "a", "Alpha")
        assert Reconciler(layout, 3).check(item) is None

    def test_missing_artifact_is_demoted(self, layout):
        """Demotion keeps the retry count and records why."""
        item = _completed(layout, "a", "Alpha", write=False)

        demoted = Reconciler(layout, 3).check(item)

        assert demoted.status == ItemStatus.PENDING
        assert demoted.retry_count == 1
        assert demoted.completed_at is None
        assert "missing" in demoted.last_error

    def test_completed_without_any_name_is_demoted(self, layout):
        item = Item(id="a", status=ItemStatus.COMPLETED)
        assert Reconciler(layout, 3).check(item).status == ItemStatus.PENDING

    def test_stranded_working_state_is_demoted(self, layout):
        for status in (ItemStatus.FETCHING, ItemStatus.ACQUIRING, ItemStatus.TRANSFORMING, ItemStatus.FINALIZING):
            item = Item(id="a", status=status, retry_count=2)
            demoted = Reconciler(layout, 3).check(item)
            assert demoted.status == ItemStatus.PENDING
            assert demoted.retry_count == 2

    def test_failed_item_with_budget_is_demoted(self, layout):
        """A raised retry limit gives a failed item another chance."""
        item = Item(id="a", status=ItemStatus.FAILED, retry_count=3)
        assert Reconciler(layout, 3).check(item) is None
        assert Reconciler(layout, 5).check(item).status == ItemStatus.PENDING

    def test_pending_is_untouched(self, layout):
        assert Reconciler(layout, 3).check(Item(id="a")) is None

    def test_reconcile_does_not_modify_input(self, layout):
        snapshot = StoreSnapshot(items={"a": Item(id="a", status=ItemStatus.ACQUIRING)})
        adjusted = Reconciler(layout, 3).reconcile(snapshot)

        assert snapshot.items["a"].status == ItemStatus.ACQUIRING
        assert adjusted.items["a"].status == ItemStatus.PENDING

    def test_reconcile_is_idempotent(self, layout):
        snapshot = StoreSnapshot(items={
            "a": _completed(layout, "a", "Alpha", write=False),
            "b": _completed(layout, "b", "Bravo"),
            "c": Item(id="c", status=ItemStatus.TRANSFORMING),
        })
        reconciler = Reconciler(layout, 3)

        once = reconciler.reconcile(snapshot)
        twice = reconciler.reconcile(once)

        assert twice.items == once.items


class TestReconcileStore:

    def test_demotions_are_saved(self, store, layout, state_path):
        store.upsert(_completed(layout, "a", "Alpha", write=False))
        store.upsert(_completed(layout, "b", "Bravo"))

        demoted = Reconciler(layout, 3).reconcile_store(store)

        assert demoted == ["a"]
        assert StateStore(state_path).load().items["a"].status == ItemStatus.PENDING

    def test_second_pass_demotes_nothing(self, store, layout):
        store.upsert(Item(id="a", status=ItemStatus.FINALIZING))
        reconciler = Reconciler(layout, 3)

        assert reconciler.reconcile_store(store) == ["a"]
        assert reconciler.reconcile_store(store) == []

    def test_deleted_artifact_is_downloaded_again(self, make_scheduler, store, layout):
        """Deleting a published file makes the next run re-process the item."""
        catalog = FakeCatalog(titles={"a": "Alpha"})
        make_scheduler(catalog=catalog).run(["a"])
        layout.published_path("Alpha").unlink()

        stats = make_scheduler(catalog=catalog).run(["a"])

        assert catalog.fetch_calls["a"] == 2
        assert stats.completed == 1
        assert store.get("a").status == ItemStatus.COMPLETED
        assert layout.published_path("Alpha").is_file()
