#!/usr/bin/env python3
"""
mediasync CLI - thin entrypoint for operator commands.

Commands:
- run:        expand sources, reconcile, download + transcode everything
- check:      verify yt-dlp and ffmpeg are installed
- status:     print stored item state
- reconcile:  re-verify completed items against the download directory
- monitor:    serve the read-only monitor API for a state file

Design Principles:
==================
- CLI is a dispatcher only; no execution logic lives here
- Surface errors verbatim from the layers below
- Exit non-zero on failure
- No interactive prompts

Exit Codes:
===========
- 0:   Success (every item completed or was already complete)
- 1:   Configuration or validation error
- 2:   Some items failed
- 3:   Missing requirements (yt-dlp / ffmpeg)
- 4:   State store error (unwritable or unreadable state file)
- 130: Interrupted (SIGINT / SIGTERM)
"""

import argparse
import json
import logging
import signal
import sys
import threading
from typing import Any, Dict, List, Optional, Sequence, Tuple

from . import __version__
from .execution.base import CollectionExpander, MetadataFetcher, PayloadAcquirer, Transformer
from .execution.ffmpeg import FFmpegTransformer
from .execution.naming import OutputLayout
from .execution.reconciler import Reconciler
from .execution.requirements import check_requirements
from .execution.scheduler import Scheduler, dedupe_ids
from .execution.ytdlp import YtDlpCatalog
from .jobs.models import ItemStatus, RunStats
from .logging_setup import configure_logging, level_for
from .monitor.events import EventBuffer, FanoutEventSink, LoggingEventSink
from .persistence.errors import CorruptStateError, StoreWriteError
from .persistence.store import StateStore
from .settings import SettingsError, SyncSettings

logger = logging.getLogger(__name__)


EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_ITEMS_FAILED = 2
EXIT_MISSING_REQUIREMENTS = 3
EXIT_STORE_ERROR = 4
EXIT_INTERRUPTED = 130


# =============================================================================
# Helpers
# =============================================================================

def _load_settings(args: argparse.Namespace) -> SyncSettings:
    overrides: Dict[str, Any] = {
        "download_dir": getattr(args, "download_dir", None),
        "state_file": getattr(args, "state_file", None),
        "concurrency": getattr(args, "concurrency", None),
        "retry_limit": getattr(args, "retry_limit", None),
    }
    settings = SyncSettings.load(config_path=args.config, overrides=overrides)

    playlists = list(getattr(args, "playlist", None) or [])
    videos = list(getattr(args, "video", None) or [])
    if playlists or videos:
        settings = settings.model_copy(update={
            "playlist_urls": settings.playlist_urls + playlists,
            "video_urls": settings.video_urls + videos,
        })
    return settings


def build_collaborators(
    settings: SyncSettings,
) -> Tuple[CollectionExpander, MetadataFetcher, PayloadAcquirer, Transformer]:
    """Construct the tool-backed collaborators for a run."""
    catalog = YtDlpCatalog(
        acquire_format=settings.acquire_format,
        metadata_timeout=settings.metadata_timeout,
    )
    transformer = FFmpegTransformer(video_format=settings.video_format)
    return catalog, catalog, catalog, transformer


def collect_item_ids(expander: CollectionExpander, settings: SyncSettings) -> List[str]:
    """
    Expand every playlist, then append single videos.

    One failing playlist never prevents the others from expanding.
    """
    item_ids: List[str] = []
    for playlist_url in settings.playlist_urls:
        try:
            item_ids.extend(expander.expand(playlist_url))
        except Exception as e:
            logger.error(f"[CLI] Playlist expansion failed for {playlist_url}: {e}")
    item_ids.extend(settings.video_urls)
    return dedupe_ids(item_ids)


def _print_summary(stats: RunStats) -> None:
    print("")
    print("=" * 60)
    print(
        f"Total: {stats.total} | Completed: {stats.completed} | "
        f"Failed: {stats.failed} | Skipped: {stats.skipped}"
    )
    print("=" * 60)


class _SignalHandlers:
    """Routes SIGINT/SIGTERM to Scheduler.shutdown while a run is active."""

    def __init__(self, scheduler: Scheduler):
        self.scheduler = scheduler
        self._previous: Dict[int, Any] = {}

    def __enter__(self) -> "_SignalHandlers":
        if threading.current_thread() is threading.main_thread():
            for signum in (signal.SIGINT, signal.SIGTERM):
                self._previous[signum] = signal.signal(signum, self._handle)
        return self

    def __exit__(self, *exc_info) -> None:
        for signum, handler in self._previous.items():
            signal.signal(signum, handler)
        self._previous.clear()

    def _handle(self, signum, frame) -> None:
        name = signal.Signals(signum).name
        # A second signal terminates the process immediately
        for other in self._previous:
            signal.signal(other, signal.SIG_DFL)
        print(f"\nReceived {name}, shutting down (repeat to force quit)...", file=sys.stderr)
        self.scheduler.shutdown(f"received {name}")


# =============================================================================
# Commands
# =============================================================================

def cmd_run(args: argparse.Namespace) -> int:
    """
    Sync every configured playlist and video.

    Exit codes:
        0: All items completed
        1: Configuration error
        2: Some items failed
        3: Missing requirements
        4: State store error
        130: Interrupted
    """
    try:
        settings = _load_settings(args)
    except SettingsError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    if not settings.playlist_urls and not settings.video_urls:
        print("ERROR: No playlist or video URLs configured", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    if not args.skip_check:
        missing = [status for status in check_requirements() if not status.available]
        if missing:
            for status in missing:
                print(f"ERROR: {status.name} is not available ({status.error})", file=sys.stderr)
                print(f"  Install: {status.install_hint}", file=sys.stderr)
            return EXIT_MISSING_REQUIREMENTS

    expander, fetcher, acquirer, transformer = build_collaborators(settings)
    item_ids = collect_item_ids(expander, settings)
    logger.info(f"[CLI] {len(item_ids)} unique item(s) to sync")

    store = StateStore(settings.state_file)
    store.open()

    events = EventBuffer()
    sink = FanoutEventSink([LoggingEventSink(), events])
    scheduler = Scheduler(
        store=store,
        layout=OutputLayout(settings.download_dir),
        fetcher=fetcher,
        acquirer=acquirer,
        transformer=transformer,
        retry_limit=settings.retry_limit,
        concurrency=settings.concurrency,
        grace_seconds=settings.grace_seconds,
        sink=sink,
    )

    server = None
    if args.monitor_port is not None:
        from .monitor.api import create_monitor_app, start_monitor_thread

        app = create_monitor_app(store, active=scheduler.active, events=events)
        server = start_monitor_thread(app, host=args.monitor_host, port=args.monitor_port)

    try:
        with _SignalHandlers(scheduler):
            stats = scheduler.run(item_ids)
    except StoreWriteError as e:
        print(f"FATAL: {e}", file=sys.stderr)
        return EXIT_STORE_ERROR
    except OSError as e:
        print(f"ERROR: Cannot prepare download directory {settings.download_dir}: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    finally:
        if server is not None:
            server.should_exit = True

    _print_summary(stats)

    if scheduler.cancelled:
        return EXIT_INTERRUPTED
    if stats.failed > 0:
        return EXIT_ITEMS_FAILED
    return EXIT_OK


def cmd_check(args: argparse.Namespace) -> int:
    """
    Report external tool availability.

    Exit codes:
        0: All tools available
        3: At least one tool missing
    """
    statuses = check_requirements()
    for status in statuses:
        if status.available:
            print(f"✓ {status.name}: {status.version or 'unknown version'} ({status.path})")
        else:
            print(f"✗ {status.name}: {status.error}")
            print(f"  Install: {status.install_hint}")
    if all(status.available for status in statuses):
        return EXIT_OK
    return EXIT_MISSING_REQUIREMENTS


def cmd_status(args: argparse.Namespace) -> int:
    """
    Print the stored state of every item.

    Exit codes:
        0: State printed
        1: Configuration error
        4: State file unreadable
    """
    try:
        settings = _load_settings(args)
    except SettingsError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    try:
        snapshot = StateStore(settings.state_file).load()
    except CorruptStateError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_STORE_ERROR

    if args.json:
        print(json.dumps(snapshot.model_dump(mode="json"), indent=2))
        return EXIT_OK

    if not snapshot.items:
        print(f"No items recorded in {settings.state_file}")
        return EXIT_OK

    for item in snapshot.items.values():
        line = f"{item.status.value:<13} retries={item.retry_count}  {item.label}"
        if item.last_error and item.status != ItemStatus.COMPLETED:
            line += f"\n{'':<13} last error: {item.last_error}"
        print(line)

    counts = snapshot.count_by_status()
    print("")
    print(" | ".join(f"{status.value}: {count}" for status, count in counts.items() if count))
    stats = snapshot.stats
    print(
        f"Last run - Total: {stats.total} | Completed: {stats.completed} | "
        f"Failed: {stats.failed} | Skipped: {stats.skipped}"
    )
    return EXIT_OK


def cmd_reconcile(args: argparse.Namespace) -> int:
    """
    Demote completed items whose files are gone, and stranded items.

    Exit codes:
        0: Reconciled
        1: Configuration error
        4: State file could not be written
    """
    try:
        settings = _load_settings(args)
    except SettingsError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    store = StateStore(settings.state_file)
    store.open()
    reconciler = Reconciler(OutputLayout(settings.download_dir), settings.retry_limit)
    try:
        demoted = reconciler.reconcile_store(store)
    except StoreWriteError as e:
        print(f"FATAL: {e}", file=sys.stderr)
        return EXIT_STORE_ERROR

    for item_id in demoted:
        print(f"→ pending: {item_id}")
    print(f"{len(demoted)} item(s) demoted, {len(store) - len(demoted)} unchanged")
    return EXIT_OK


def cmd_monitor(args: argparse.Namespace) -> int:
    """
    Serve the read-only monitor API for a state file.

    Exit codes:
        0: Server stopped
        1: Configuration error
    """
    try:
        settings = _load_settings(args)
    except SettingsError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    from .monitor.api import create_monitor_app, run_monitor_server

    app = create_monitor_app(StateStore(settings.state_file), reload_from_disk=True)
    try:
        run_monitor_server(app, host=args.host, port=args.port)
    except KeyboardInterrupt:
        print("\nMonitor stopped by user.", file=sys.stderr)
    return EXIT_OK


# =============================================================================
# Parser
# =============================================================================

def _add_location_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--download-dir',
        default=None,
        help='Directory for published files (default: ./Downloaded)'
    )
    parser.add_argument(
        '--state-file',
        default=None,
        help='Path to the JSON state file (default: ./sync_state.json)'
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='mediasync',
        description='Resumable playlist and video sync with transcoding',
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument('--config', default=None, help='JSON config file')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging (includes tool output)')
    parser.add_argument('-q', '--quiet', action='store_true', help='Warnings and errors only')
    parser.add_argument('--log-file', default=None, help='Also write logs to this file')

    subparsers = parser.add_subparsers(dest='command', required=True, help='Command to execute')

    # Run command
    parser_run = subparsers.add_parser('run', help='Sync all configured playlists and videos')
    _add_location_args(parser_run)
    parser_run.add_argument(
        '--playlist',
        action='append',
        metavar='URL',
        help='Playlist URL to sync (repeatable, added to configured playlists)'
    )
    parser_run.add_argument(
        '--video',
        action='append',
        metavar='URL',
        help='Single video URL to sync (repeatable, added to configured videos)'
    )
    parser_run.add_argument(
        '--concurrency',
        type=int,
        default=None,
        help='Maximum items processed at once (default: CPU count)'
    )
    parser_run.add_argument(
        '--retry-limit',
        type=int,
        default=None,
        help='Lifetime attempts per item before it is abandoned (default: 3)'
    )
    parser_run.add_argument(
        '--skip-check',
        action='store_true',
        help='Do not verify yt-dlp/ffmpeg before starting'
    )
    parser_run.add_argument(
        '--monitor-port',
        type=int,
        default=None,
        help='Serve the read-only monitor API on this port during the run'
    )
    parser_run.add_argument('--monitor-host', default='127.0.0.1', help='Monitor bind address')
    parser_run.set_defaults(func=cmd_run)

    # Check command
    parser_check = subparsers.add_parser('check', help='Verify yt-dlp and ffmpeg are installed')
    parser_check.set_defaults(func=cmd_check)

    # Status command
    parser_status = subparsers.add_parser('status', help='Show stored item state')
    _add_location_args(parser_status)
    parser_status.add_argument('--json', action='store_true', help='Print the raw snapshot as JSON')
    parser_status.set_defaults(func=cmd_status)

    # Reconcile command
    parser_reconcile = subparsers.add_parser('reconcile', help='Re-verify completed items against disk')
    _add_location_args(parser_reconcile)
    parser_reconcile.set_defaults(func=cmd_reconcile)

    # Monitor command
    parser_monitor = subparsers.add_parser('monitor', help='Serve the read-only monitor API')
    _add_location_args(parser_monitor)
    parser_monitor.add_argument('--host', default='127.0.0.1', help='Bind address (default: 127.0.0.1)')
    parser_monitor.add_argument('--port', type=int, default=9876, help='Port (default: 9876)')
    parser_monitor.set_defaults(func=cmd_monitor)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    Main CLI entrypoint.

    Parses arguments and dispatches to subcommands.
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(level_for(args.verbose, args.quiet), args.log_file)
    return args.func(args)


if __name__ == '__main__':
    sys.exit(main())
