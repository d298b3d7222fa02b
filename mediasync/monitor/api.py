"""
Read-only HTTP monitor API.

Exposes item state, run counters, in-flight items and recent events.
This API is STRICTLY READ-ONLY: GET endpoints only, no run control.

Two modes:
- Alongside a run: shares the live StateStore, ActiveItems and EventBuffer
- Standalone (`mediasync monitor`): re-reads the state file per request;
  no in-flight or event data is available

Handlers are plain functions: they take the store lock and may read the
state file, so FastAPI runs them in its threadpool.

Binds to localhost by default. There is no authentication.
"""

import logging
import threading
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Query

from .. import __version__
from ..execution.active import ActiveItem, ActiveItems
from ..jobs.errors import ItemNotFoundError
from ..jobs.models import ItemStatus, StoreSnapshot
from ..persistence.errors import CorruptStateError
from ..persistence.store import StateStore
from .events import EventBuffer, EventType

logger = logging.getLogger(__name__)


DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 9876


def _active_to_dict(entry: ActiveItem) -> Dict[str, Any]:
    return {
        "item_id": entry.item_id,
        "status": entry.status.value,
        "title": entry.title,
        "progress_percent": entry.progress_percent,
        "eta_seconds": entry.eta_seconds,
        "started_at": entry.started_at.isoformat(),
    }


def create_monitor_app(
    store: StateStore,
    active: Optional[ActiveItems] = None,
    events: Optional[EventBuffer] = None,
    reload_from_disk: bool = False,
) -> FastAPI:
    """
    Create the read-only monitoring API application.

    Args:
        store: Store to read item state from
        active: Live in-flight map (only when running alongside a run)
        events: Recent event buffer (only when running alongside a run)
        reload_from_disk: Re-read the state file on every request

    Returns:
        FastAPI application with read-only endpoints
    """
    app = FastAPI(
        title="mediasync monitor",
        description="Read-only view of sync state. No run control is possible.",
        version=__version__,
    )

    def current_snapshot() -> StoreSnapshot:
        if not reload_from_disk:
            return store.snapshot()
        try:
            return store.load()
        except CorruptStateError as e:
            raise HTTPException(status_code=503, detail=str(e))

    # =========================================================================
    # READ-ONLY ENDPOINTS
    # =========================================================================

    @app.get("/health")
    def health():
        """Health check endpoint."""
        return {"status": "ok", "mode": "read-only", "version": __version__}

    @app.get("/stats")
    def stats():
        """Latest RunStats plus per-status item counts."""
        snapshot = current_snapshot()
        return {
            "run": snapshot.stats.model_dump(),
            "by_status": {status.value: count for status, count in snapshot.count_by_status().items()},
            "saved_at": snapshot.saved_at.isoformat() if snapshot.saved_at else None,
        }

    @app.get("/items")
    def list_items(
        status: Optional[str] = Query(None, description="Filter by item status"),
        limit: int = Query(500, ge=1, le=10000, description="Maximum results"),
    ):
        """List stored items, optionally filtered by status."""
        status_filter = None
        if status:
            try:
                status_filter = ItemStatus(status)
            except ValueError:
                valid = ", ".join(s.value for s in ItemStatus)
                raise HTTPException(status_code=400, detail=f"Invalid status: {status}. Valid values: {valid}")

        items = list(current_snapshot().items.values())
        if status_filter is not None:
            items = [item for item in items if item.status == status_filter]
        items = items[:limit]
        return {
            "count": len(items),
            "items": [item.model_dump(mode="json") for item in items],
        }

    @app.get("/items/{item_id:path}")
    def get_item(item_id: str):
        """Details for one item (ids are URLs, so the path is taken whole)."""
        current_snapshot()
        try:
            item = store.require(item_id)
        except ItemNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        return item.model_dump(mode="json")

    @app.get("/active")
    def list_active():
        """Items currently inside a pipeline."""
        entries = list(active.snapshot().values()) if active is not None else []
        return {
            "count": len(entries),
            "capacity": active.capacity if active is not None else None,
            "items": [_active_to_dict(entry) for entry in entries],
        }

    @app.get("/events")
    def list_events(
        event_type: Optional[str] = Query(None, description="Filter by event type"),
        limit: int = Query(100, ge=1, le=1000, description="Maximum results"),
    ):
        """Recent events, oldest first."""
        if events is None:
            return {"count": 0, "events": []}

        type_filter = None
        if event_type:
            try:
                type_filter = EventType(event_type)
            except ValueError:
                raise HTTPException(status_code=400, detail=f"Invalid event type: {event_type}")

        recent = events.recent(limit=limit, event_type=type_filter)
        return {
            "count": len(recent),
            "events": [event.to_dict() for event in recent],
        }

    return app


def run_monitor_server(app: FastAPI, host: str = DEFAULT_HOST, port: int = DEFAULT_PORT) -> None:
    """Serve the API in the foreground until interrupted."""
    import uvicorn

    logger.info(f"[Monitor] Serving read-only API on http://{host}:{port}")
    if host == "0.0.0.0":
        logger.warning("[Monitor] LAN exposure enabled; no authentication is configured")
    uvicorn.run(app, host=host, port=port, log_level="warning")


def start_monitor_thread(app: FastAPI, host: str = DEFAULT_HOST, port: int = DEFAULT_PORT):
    """
    Serve the API from a daemon thread alongside a run.

    Returns:
        The uvicorn Server; set `should_exit = True` to stop it
    """
    import uvicorn

    server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="warning"))
    thread = threading.Thread(target=server.run, name="mediasync-monitor", daemon=True)
    thread.start()
    logger.info(f"[Monitor] Serving read-only API on http://{host}:{port}")
    return server
