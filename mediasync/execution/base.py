"""
Collaborator abstraction layer.

The orchestration core talks to the remote catalog and the encoder only
through these interfaces. Concrete tool-backed versions live in ytdlp.py
and ffmpeg.py; tests supply fakes.

Design rules:
- Collaborators are stateless; all context is passed per call
- Fetch, acquire and transform each spawn exactly ONE process and return
  it unwaited; the pipeline owns waiting, registration and cleanup
- Metadata output is handed back to the fetcher for parsing, which raises
  StageError on unusable data
- Spawned processes merge stderr into stdout, line buffered UTF-8 text;
  undecodable bytes are replaced, never raised
"""

import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .progress import ProgressUpdate


@dataclass(frozen=True)
class ItemMetadata:
    """Result of a successful metadata lookup."""

    title: str
    normalized_name: str
    duration: Optional[float] = None


class CollectionExpander(ABC):
    """Expands a collection reference (playlist URL) into item ids."""

    @abstractmethod
    def expand(self, collection_ref: str) -> List[str]:
        """
        List the item ids of one collection.

        Never raises: a failed expansion returns an empty list so other
        collections still expand.

        Args:
            collection_ref: Collection reference (e.g. playlist URL)

        Returns:
            Item ids in catalog order, empty on error
        """
        pass


class ExternalTool(ABC):
    """
    A collaborator that works by spawning one external process.

    Subclasses may parse the process output for progress; the core logs
    every line at DEBUG either way.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable tool name for logs."""
        pass

    def parse_progress(self, line: str, duration: Optional[float] = None) -> Optional[ProgressUpdate]:
        """
        Extract progress from one output line.

        Args:
            line: Single line of merged stdout/stderr
            duration: Item duration in seconds, when known

        Returns:
            ProgressUpdate if the line carried progress, None otherwise
        """
        return None

    def _spawn(self, cmd: List[str]) -> subprocess.Popen:
        """Start the tool with merged, line-buffered text output."""
        return subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            text=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
        )


class MetadataFetcher(ExternalTool):
    """Looks up the title (and optional duration) of one item."""

    # Seconds before a lookup process is terminated; None waits indefinitely
    metadata_timeout: Optional[float] = None

    @abstractmethod
    def start_fetch(self, item_id: str) -> subprocess.Popen:
        """
        Spawn the metadata lookup process.

        Raises:
            OSError: If the process cannot be spawned
        """
        pass

    @abstractmethod
    def parse_metadata(self, item_id: str, output: List[str]) -> ItemMetadata:
        """
        Turn the output of a successful lookup into metadata.

        Args:
            item_id: Item that was looked up
            output: Non-empty output lines, in order

        Raises:
            StageError: If the output carries no usable title
        """
        pass


class PayloadAcquirer(ExternalTool):
    """Downloads the remote payload of one item to a local path."""

    @abstractmethod
    def acquire(self, item_id: str, dest_path: Path) -> subprocess.Popen:
        """
        Spawn the download process.

        Exit status 0 means dest_path holds the complete payload.

        Raises:
            OSError: If the process cannot be spawned
        """
        pass


class Transformer(ExternalTool):
    """Re-encodes a local payload into the target encoding."""

    @abstractmethod
    def transform(self, src_path: Path, dest_path: Path) -> subprocess.Popen:
        """
        Spawn the encode process.

        Exit status 0 means dest_path holds the encoded artifact.

        Raises:
            OSError: If the process cannot be spawned
        """
        pass
