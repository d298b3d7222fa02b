"""
Output naming and path layout.

Published artifacts:
    <download_dir>/<normalized title>.mp4

Stage-private temporaries (never the published path):
    <download_dir>/.partial/<key>.acquire.mp4
    <download_dir>/.partial/<key>.transform.mp4

where <key> is a short hash of the item id, so two items never share a
temporary even when their titles normalize to the same name.

Rules:
- Filesystem-hostile characters become hyphens, runs of hyphens collapse
- One leading and one trailing hyphen are removed; whitespace is kept
- Names are cut at 100 characters as they stand
- A blank result (or "." and "..") falls back to "item-<key>"
"""

import hashlib
import re
from pathlib import Path
from typing import Optional, Union

from ..jobs.models import Item


OUTPUT_EXTENSION = ".mp4"
PARTIAL_DIR_NAME = ".partial"
MAX_NAME_LENGTH = 100

_INVALID_CHARS = re.compile(r'[\\/:"*?<>|]+')
_HYPHEN_RUNS = re.compile(r'--+')


def item_key(item_id: str) -> str:
    """Stable short key for an item id."""
    return hashlib.sha1(item_id.encode("utf-8")).hexdigest()[:16]


def sanitize_filename(title: str, fallback_id: Optional[str] = None) -> str:
    """
    Normalize a title into a safe filename stem.

    Args:
        title: Raw title from the catalog
        fallback_id: Item id used to build a name when nothing survives

    Returns:
        Filename without extension

    Example:
        >>> sanitize_filename('AC/DC: "Live" <2024>')
        'AC-DC- -Live- -2024'
    """
    name = _INVALID_CHARS.sub("-", title)
    name = _HYPHEN_RUNS.sub("-", name)
    if name.startswith("-"):
        name = name[1:]
    if name.endswith("-"):
        name = name[:-1]
    name = name[:MAX_NAME_LENGTH]

    if not name.strip() or name in (".", ".."):
        key = item_key(fallback_id) if fallback_id else "unnamed"
        return f"item-{key}"
    return name


class OutputLayout:
    """Resolves every path the pipeline touches for a download directory."""

    def __init__(self, download_dir: Union[str, Path]):
        self.download_dir = Path(download_dir)

    @property
    def partial_dir(self) -> Path:
        return self.download_dir / PARTIAL_DIR_NAME

    def ensure_directories(self) -> None:
        """Create the download and temporary directories."""
        self.partial_dir.mkdir(parents=True, exist_ok=True)

    def published_path(self, normalized_name: str) -> Path:
        """Final location for an item's artifact."""
        return self.download_dir / f"{normalized_name}{OUTPUT_EXTENSION}"

    def acquire_temp(self, item_id: str) -> Path:
        return self.partial_dir / f"{item_key(item_id)}.acquire{OUTPUT_EXTENSION}"

    def transform_temp(self, item_id: str) -> Path:
        return self.partial_dir / f"{item_key(item_id)}.transform{OUTPUT_EXTENSION}"

    def artifact_path(self, item: Item) -> Optional[Path]:
        """
        Where a completed item's artifact should be.

        Prefers the recorded output path; otherwise derives it from the
        normalized name or title. None when nothing identifies it.
        """
        if item.output_path:
            return Path(item.output_path)
        if item.normalized_name:
            return self.published_path(item.normalized_name)
        if item.title:
            return self.published_path(sanitize_filename(item.title, item.id))
        return None
