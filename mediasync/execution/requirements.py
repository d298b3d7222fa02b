"""
External tool requirements check.

Verifies yt-dlp and ffmpeg are installed before a run starts and reports
their versions. Install hints are surfaced verbatim to the operator.
"""

import logging
import subprocess
from dataclasses import dataclass
from typing import Callable, List, Optional

from .ffmpeg import find_ffmpeg
from .ytdlp import find_ytdlp

logger = logging.getLogger(__name__)


INSTALL_HINTS = {
    "yt-dlp": "https://github.com/yt-dlp/yt-dlp#installation",
    "ffmpeg": "https://ffmpeg.org/download.html",
}


@dataclass
class ToolStatus:
    """Availability of one external tool."""

    name: str
    available: bool
    path: Optional[str] = None
    version: Optional[str] = None
    error: Optional[str] = None

    @property
    def install_hint(self) -> str:
        return INSTALL_HINTS.get(self.name, "")


def _check_tool(name: str, finder: Callable[[], Optional[str]], version_args: List[str]) -> ToolStatus:
    path = finder()
    if path is None:
        return ToolStatus(name=name, available=False, error="not found on PATH")

    try:
        completed = subprocess.run(
            [path, *version_args],
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            timeout=15,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        return ToolStatus(name=name, available=False, path=path, error=str(e))

    if completed.returncode != 0:
        return ToolStatus(
            name=name,
            available=False,
            path=path,
            error=f"version check exited with code {completed.returncode}",
        )

    first_line = (completed.stdout or "").strip().splitlines()
    return ToolStatus(
        name=name,
        available=True,
        path=path,
        version=first_line[0] if first_line else None,
    )


def check_requirements() -> List[ToolStatus]:
    """
    Check every required tool.

    Returns:
        One ToolStatus per tool, in a fixed order (yt-dlp, ffmpeg)
    """
    statuses = [
        _check_tool("yt-dlp", find_ytdlp, ["--version"]),
        _check_tool("ffmpeg", find_ffmpeg, ["-version"]),
    ]
    for status in statuses:
        if status.available:
            logger.info(f"[Requirements] {status.name} is installed ({status.version})")
        else:
            logger.error(
                f"[Requirements] {status.name} check failed: {status.error}. "
                f"Install: {status.install_hint}"
            )
    return statuses
