"""
Shared fixtures and fake collaborators.

No network, no yt-dlp, no ffmpeg: collaborators hand back FakeProcess
objects that behave like subprocess.Popen for everything the pipeline uses.
"""

import itertools
import json
import threading
import time
from collections import Counter
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import pytest

from mediasync.execution.base import ItemMetadata, MetadataFetcher, PayloadAcquirer, Transformer
from mediasync.execution.naming import OutputLayout, sanitize_filename
from mediasync.execution.progress import parse_ffmpeg_progress, parse_ytdlp_progress
from mediasync.execution.scheduler import Scheduler
from mediasync.monitor.events import EventBuffer
from mediasync.persistence.store import StateStore


_pids = itertools.count(40000)


def wait_until(predicate, timeout: float = 10.0, interval: float = 0.01) -> bool:
    """Poll until predicate() is true or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class FakeProcess:
    """
    Stand-in for subprocess.Popen.

    Output lines are available immediately; wait() blocks on the optional
    gate until it is released or the process is terminated/killed.
    """

    def __init__(
        self,
        exit_code: int = 0,
        lines: Iterable[str] = (),
        on_success=None,
        gate: Optional[threading.Event] = None,
    ):
        self.pid = next(_pids)
        self.args = ["fake-tool"]
        self.stdout = iter([f"{line}\n" for line in lines])
        self.returncode: Optional[int] = None
        self.terminated = False
        self.killed = False
        self._exit_code = exit_code
        self._on_success = on_success
        self._gate = gate
        self._stopped = threading.Event()
        self._lock = threading.Lock()

    def wait(self, timeout: Optional[float] = None) -> int:
        if self._gate is not None:
            while not self._gate.is_set() and not self._stopped.is_set():
                self._stopped.wait(0.01)
        with self._lock:
            if self.returncode is None:
                if self._stopped.is_set():
                    self.returncode = -15
                else:
                    if self._exit_code == 0 and self._on_success is not None:
                        self._on_success()
                    self.returncode = self._exit_code
            return self.returncode

    def poll(self) -> Optional[int]:
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        self._stopped.set()

    def kill(self) -> None:
        self.killed = True
        self._stopped.set()


def _consume(failures: Dict[str, int], item_id: str) -> bool:
    remaining = failures.get(item_id, 0)
    if remaining > 0:
        failures[item_id] = remaining - 1
        return True
    return False


class FakeCatalog(MetadataFetcher, PayloadAcquirer):
    """
    Scripted metadata fetcher and downloader.

    fetch_failures / acquire_failures map item id → number of attempts that
    fail before the stage starts succeeding. fetch_gate holds every lookup
    process open until it is set.
    """

    name = "fake-dl"

    def __init__(
        self,
        titles: Optional[Dict[str, str]] = None,
        fetch_failures: Optional[Dict[str, int]] = None,
        acquire_failures: Optional[Dict[str, int]] = None,
        gate: Optional[threading.Event] = None,
        fetch_gate: Optional[threading.Event] = None,
        metadata_timeout: Optional[float] = None,
    ):
        self.titles = dict(titles or {})
        self.fetch_failures = dict(fetch_failures or {})
        self.acquire_failures = dict(acquire_failures or {})
        self.gate = gate
        self.fetch_gate = fetch_gate
        self.metadata_timeout = metadata_timeout
        self.fetch_calls: Counter = Counter()
        self.acquire_calls: Counter = Counter()
        self.processes: List[FakeProcess] = []
        self.fetch_processes: List[FakeProcess] = []
        self._lock = threading.Lock()

    def start_fetch(self, item_id: str) -> FakeProcess:
        with self._lock:
            self.fetch_calls[item_id] += 1
            fail = _consume(self.fetch_failures, item_id)

        if fail:
            lines = ["ERROR: [youtube] video unavailable"]
        else:
            title = self.titles.get(item_id, f"Title of {item_id}")
            lines = ["WARNING: falling back to generic extractor", json.dumps({"title": title, "duration": 10.0})]
        process = FakeProcess(exit_code=1 if fail else 0, lines=lines, gate=self.fetch_gate)
        with self._lock:
            self.fetch_processes.append(process)
        return process

    def parse_metadata(self, item_id: str, output: List[str]) -> ItemMetadata:
        data = json.loads(output[-1])
        return ItemMetadata(
            title=data["title"],
            normalized_name=sanitize_filename(data["title"], item_id),
            duration=data["duration"],
        )

    def acquire(self, item_id: str, dest_path: Path) -> FakeProcess:
        with self._lock:
            self.acquire_calls[item_id] += 1
            fail = _consume(self.acquire_failures, item_id)

        # Partial output appears as soon as the download starts
        dest_path.write_bytes(b"partial")
        lines = ["[download]  50.0% of 1.00MiB at 1.00MiB/s ETA 00:01"]
        if fail:
            lines.append("ERROR: unable to download video data: HTTP Error 403")
        process = FakeProcess(
            exit_code=1 if fail else 0,
            lines=lines,
            on_success=lambda: dest_path.write_bytes(f"payload:{item_id}".encode()),
            gate=self.gate,
        )
        with self._lock:
            self.processes.append(process)
        return process

    def parse_progress(self, line, duration=None):
        return parse_ytdlp_progress(line)


class FakeTransformer(Transformer):
    """Scripted encoder; transform_failures keyed by source file name stem."""

    name = "fake-encoder"

    def __init__(
        self,
        failures_by_key: Optional[Dict[str, int]] = None,
        gate: Optional[threading.Event] = None,
    ):
        self.failures_by_key = dict(failures_by_key or {})
        self.gate = gate
        self.calls: Counter = Counter()
        self.processes: List[FakeProcess] = []
        self._lock = threading.Lock()

    def transform(self, src_path: Path, dest_path: Path) -> FakeProcess:
        key = src_path.name.split(".")[0]
        with self._lock:
            self.calls[key] += 1
            fail = _consume(self.failures_by_key, key)

        def publish():
            dest_path.write_bytes(src_path.read_bytes() + b":encoded")

        process = FakeProcess(
            exit_code=1 if fail else 0,
            lines=["frame=  120 fps=60 q=28.0 size=  512kB time=00:00:05.00 bitrate=800kbits/s speed=2.0x"]
            + (["Conversion failed!"] if fail else []),
            on_success=publish,
            gate=self.gate,
        )
        with self._lock:
            self.processes.append(process)
        return process

    def parse_progress(self, line, duration=None):
        return parse_ffmpeg_progress(line, duration)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def layout(tmp_path) -> OutputLayout:
    return OutputLayout(tmp_path / "Downloaded")


@pytest.fixture
def state_path(tmp_path) -> Path:
    return tmp_path / "sync_state.json"


@pytest.fixture
def store(state_path) -> StateStore:
    store = StateStore(state_path)
    store.open()
    return store


@pytest.fixture
def events() -> EventBuffer:
    return EventBuffer(maxlen=10000)


@pytest.fixture
def make_scheduler(store, layout, events):
    """Factory for schedulers wired to fakes and the shared store."""

    def factory(
        catalog: Optional[FakeCatalog] = None,
        transformer: Optional[FakeTransformer] = None,
        retry_limit: int = 3,
        concurrency: int = 2,
        grace_seconds: float = 2.0,
        scheduler_store: Optional[StateStore] = None,
    ) -> Scheduler:
        catalog = catalog if catalog is not None else FakeCatalog()
        return Scheduler(
            store=scheduler_store if scheduler_store is not None else store,
            layout=layout,
            fetcher=catalog,
            acquirer=catalog,
            transformer=transformer if transformer is not None else FakeTransformer(),
            retry_limit=retry_limit,
            concurrency=concurrency,
            grace_seconds=grace_seconds,
            sink=events,
        )

    return factory
