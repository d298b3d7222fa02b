"""
yt-dlp catalog collaborator.

One class covers the three catalog-facing contracts:
- expand():  playlist reference → watch URLs    (yt-dlp --flat-playlist -J)
- start_fetch() / parse_metadata(): watch URL → title/duration (yt-dlp -j)
- acquire(): watch URL → local file, as a process (yt-dlp -f ... -o ...)

Design rules:
- Expansion never raises; a broken playlist yields [] and a log line
- Lookup and acquisition return the spawned process unwaited; the
  pipeline supervises both (registration, timeout, cancellation)
- Unusable metadata output raises StageError
- Output path is escaped so '%' in directories is not read as a template
"""

import json
import logging
import shutil
import subprocess
from pathlib import Path
from typing import List, Optional

from ..settings import DEFAULT_ACQUIRE_FORMAT
from .base import CollectionExpander, ItemMetadata, MetadataFetcher, PayloadAcquirer
from .errors import StageError, ToolNotFoundError
from .naming import sanitize_filename
from .progress import ProgressUpdate, parse_ytdlp_progress

logger = logging.getLogger(__name__)


WATCH_URL_TEMPLATE = "https://youtube.com/watch?v={id}"

# Characters of tool output kept in error messages
OUTPUT_TAIL_CHARS = 500


def find_ytdlp() -> Optional[str]:
    """Find the yt-dlp binary path, or None."""
    return shutil.which("yt-dlp")


def _tail(text: Optional[str], limit: int = OUTPUT_TAIL_CHARS) -> str:
    text = (text or "").strip()
    return text[-limit:]


class YtDlpCatalog(CollectionExpander, MetadataFetcher, PayloadAcquirer):
    """
    yt-dlp-backed expander, metadata fetcher and payload acquirer.
    """

    def __init__(
        self,
        acquire_format: str = DEFAULT_ACQUIRE_FORMAT,
        metadata_timeout: Optional[float] = 120.0,
        ytdlp_path: Optional[str] = None,
    ):
        self.acquire_format = acquire_format
        self.metadata_timeout = metadata_timeout
        self._ytdlp_path = ytdlp_path

    @property
    def name(self) -> str:
        return "yt-dlp"

    @property
    def ytdlp_path(self) -> str:
        if self._ytdlp_path is None:
            self._ytdlp_path = find_ytdlp()
        if self._ytdlp_path is None:
            raise ToolNotFoundError("yt-dlp")
        return self._ytdlp_path

    # =========================================================================
    # Collection expansion
    # =========================================================================

    def expand(self, collection_ref: str) -> List[str]:
        logger.info(f"[yt-dlp] Fetching playlist: {collection_ref}")
        try:
            completed = subprocess.run(
                [self.ytdlp_path, "--flat-playlist", "-J", collection_ref],
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.metadata_timeout,
            )
        except (OSError, subprocess.TimeoutExpired, ToolNotFoundError) as e:
            logger.error(f"[yt-dlp] Failed to fetch playlist {collection_ref}: {e}")
            return []

        if completed.returncode != 0:
            logger.error(
                f"[yt-dlp] Failed to fetch playlist {collection_ref} "
                f"(exit code {completed.returncode}): {_tail(completed.stderr)}"
            )
            return []

        try:
            data = json.loads(completed.stdout)
        except json.JSONDecodeError as e:
            logger.error(f"[yt-dlp] Failed to parse playlist JSON for {collection_ref}: {e}")
            logger.debug(f"[yt-dlp] Raw output (first 200 chars): {completed.stdout[:200]}")
            return []

        entries = data.get("entries") if isinstance(data, dict) else None
        if not isinstance(entries, list):
            logger.warning(f"[yt-dlp] Playlist data doesn't contain entries array: {collection_ref}")
            return []

        item_ids = [
            WATCH_URL_TEMPLATE.format(id=entry["id"])
            for entry in entries
            if isinstance(entry, dict) and entry.get("id")
        ]
        logger.info(f"[yt-dlp] Found {len(item_ids)} items in playlist {collection_ref}")
        return item_ids

    # =========================================================================
    # Metadata
    # =========================================================================

    def build_fetch_command(self, item_id: str) -> List[str]:
        """Build yt-dlp metadata lookup arguments."""
        return [self.ytdlp_path, "-j", "--no-playlist", item_id]

    def start_fetch(self, item_id: str) -> subprocess.Popen:
        cmd = self.build_fetch_command(item_id)
        logger.debug(f"[yt-dlp] Executing: {' '.join(cmd)}")
        return self._spawn(cmd)

    def parse_metadata(self, item_id: str, output: List[str]) -> ItemMetadata:
        stage = "fetching"
        # Warnings share the stream; the metadata document is the JSON line
        document = next((line for line in reversed(output) if line.startswith("{")), None)
        if document is None:
            raise StageError(stage, "Metadata lookup printed no JSON", output_tail="\n".join(output[-5:]))

        try:
            data = json.loads(document)
        except json.JSONDecodeError as e:
            raise StageError(stage, f"Unparseable metadata JSON: {e}") from e

        title = data.get("title") if isinstance(data, dict) else None
        if not title or not isinstance(title, str):
            raise StageError(stage, "Metadata has no title")

        duration = data.get("duration")
        return ItemMetadata(
            title=title,
            normalized_name=sanitize_filename(title, item_id),
            duration=float(duration) if isinstance(duration, (int, float)) else None,
        )

    # =========================================================================
    # Acquisition
    # =========================================================================

    def build_acquire_command(self, item_id: str, dest_path: Path) -> List[str]:
        """Build yt-dlp download arguments."""
        output_template = str(dest_path).replace("%", "%%")
        return [
            self.ytdlp_path,
            "--newline",
            "--no-playlist",
            "--no-part",
            "--force-overwrites",
            "-f", self.acquire_format,
            "--merge-output-format", "mp4",
            "-o", output_template,
            item_id,
        ]

    def acquire(self, item_id: str, dest_path: Path) -> subprocess.Popen:
        cmd = self.build_acquire_command(item_id, dest_path)
        logger.info(f"[yt-dlp] Executing: {' '.join(cmd)}")
        process = self._spawn(cmd)
        logger.info(f"[yt-dlp] Started PID {process.pid} for {item_id}")
        return process

    def parse_progress(self, line: str, duration: Optional[float] = None) -> Optional[ProgressUpdate]:
        return parse_ytdlp_progress(line)
