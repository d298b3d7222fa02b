"""
Process registry: single source of truth for live external processes.

Design rules:
- Every process spawned by a stage is registered before the worker blocks on it
- Unregistered on exit (success or failure) and on forced cancellation
- terminate_all() sends SIGTERM to everything registered and returns at once
- kill_all() is the SIGKILL escalation used after the grace period
- A process that exits between lookup and signal is not an error
"""

import logging
import subprocess
import threading
from dataclasses import dataclass, field
from typing import Dict, List

from ..jobs.models import ItemStatus

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class ProcessHandle:
    """
    Ownership record for one spawned external process.

    Owned by the ProcessRegistry for the duration of the external call.
    """

    process: subprocess.Popen
    item_id: str
    stage: ItemStatus
    command: List[str] = field(default_factory=list)

    @property
    def pid(self) -> int:
        return self.process.pid

    def is_running(self) -> bool:
        return self.process.poll() is None

    def terminate(self) -> None:
        """Send SIGTERM; an already-exited process is ignored."""
        try:
            if self.process.poll() is None:
                self.process.terminate()
        except (ProcessLookupError, OSError):
            pass

    def kill(self) -> None:
        """Send SIGKILL; an already-exited process is ignored."""
        try:
            if self.process.poll() is None:
                self.process.kill()
        except (ProcessLookupError, OSError):
            pass


class ProcessRegistry:
    """
    Thread-safe registry of live external processes.

    Workers register/unregister their own handles; any thread may call
    terminate_all() to cancel everything at once.
    """

    def __init__(self):
        self._handles: Dict[int, ProcessHandle] = {}
        # Already sent SIGTERM, kept for SIGKILL escalation
        self._signalled: List[ProcessHandle] = []
        self._lock = threading.Lock()

    def register(self, handle: ProcessHandle) -> None:
        """
        Record a live process.

        Raises:
            ValueError: If the same handle is registered twice
        """
        with self._lock:
            if id(handle) in self._handles:
                raise ValueError(f"Process {handle.pid} already registered")
            self._handles[id(handle)] = handle
        logger.debug(
            f"[ProcessRegistry] Registered PID {handle.pid} "
            f"({handle.stage.value}) for {handle.item_id}"
        )

    def unregister(self, handle: ProcessHandle) -> None:
        """Forget a process. Unknown handles are ignored."""
        with self._lock:
            removed = self._handles.pop(id(handle), None)
        if removed is not None:
            logger.debug(f"[ProcessRegistry] Unregistered PID {handle.pid}")

    def terminate_all(self) -> int:
        """
        Send a termination signal to every registered process.

        Handles are removed from the registry; the caller allows a grace
        period before final shutdown.

        Returns:
            Number of processes signalled
        """
        with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()
            self._signalled.extend(handles)

        for handle in handles:
            logger.info(
                f"[ProcessRegistry] Sending SIGTERM to PID {handle.pid} "
                f"({handle.stage.value} {handle.item_id})"
            )
            handle.terminate()
        return len(handles)

    def kill_all(self) -> int:
        """
        SIGKILL every process signalled by terminate_all() that is still alive,
        plus anything registered since.

        Returns:
            Number of processes killed
        """
        with self._lock:
            handles = list(self._handles.values()) + self._signalled
            self._handles.clear()
            self._signalled = []

        killed = 0
        for handle in handles:
            if handle.is_running():
                logger.warning(f"[ProcessRegistry] PID {handle.pid} did not terminate, sending SIGKILL")
                handle.kill()
                killed += 1
        return killed

    def active(self) -> List[ProcessHandle]:
        """Snapshot of currently registered handles."""
        with self._lock:
            return list(self._handles.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)
