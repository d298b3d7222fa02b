"""
FFmpeg transformer.

Re-encodes an acquired payload into the configured target format.

Design rules:
- One subprocess per item
- Full command string logged for audit
- Non-zero exit code = FAILED (decided by the pipeline)
- Output goes to the path given by the pipeline, never the published path
- Progress parsed from time= against the item duration
"""

import logging
import os
import shutil
import subprocess
from pathlib import Path
from typing import List, Optional

from ..settings import VideoFormat
from .base import Transformer
from .errors import ToolNotFoundError
from .progress import ProgressUpdate, parse_ffmpeg_progress

logger = logging.getLogger(__name__)


# Common install locations checked when ffmpeg is not on PATH
COMMON_FFMPEG_PATHS = [
    "/usr/local/bin/ffmpeg",
    "/usr/bin/ffmpeg",
    "/opt/homebrew/bin/ffmpeg",
]


def find_ffmpeg() -> Optional[str]:
    """Find the ffmpeg binary path, or None."""
    ffmpeg_path = shutil.which("ffmpeg")
    if ffmpeg_path:
        return ffmpeg_path

    for path in COMMON_FFMPEG_PATHS:
        if os.path.isfile(path) and os.access(path, os.X_OK):
            return path

    return None


class FFmpegTransformer(Transformer):
    """
    FFmpeg-based transform collaborator.

    Uses subprocess.Popen; waiting and cancellation belong to the pipeline.
    """

    def __init__(self, video_format: Optional[VideoFormat] = None, ffmpeg_path: Optional[str] = None):
        self.video_format = video_format or VideoFormat()
        self._ffmpeg_path = ffmpeg_path

    @property
    def name(self) -> str:
        return "FFmpeg"

    @property
    def ffmpeg_path(self) -> str:
        if self._ffmpeg_path is None:
            self._ffmpeg_path = find_ffmpeg()
        if self._ffmpeg_path is None:
            raise ToolNotFoundError("ffmpeg")
        return self._ffmpeg_path

    def build_command(self, src_path: Path, dest_path: Path) -> List[str]:
        """Build FFmpeg command line arguments."""
        fmt = self.video_format
        return [
            self.ffmpeg_path,
            "-hide_banner",
            "-nostdin",
            "-y",  # the destination is a stage-private temporary
            "-i", str(src_path),
            "-c:v", fmt.codec,
            "-profile:v", fmt.profile,
            "-level", fmt.level,
            "-maxrate", fmt.max_rate,
            "-bufsize", fmt.buf_size,
            "-vf", f"scale={fmt.resolution}",
            "-c:a", fmt.audio_codec,
            "-b:a", fmt.audio_bitrate,
            "-movflags", "+faststart",
            str(dest_path),
        ]

    def transform(self, src_path: Path, dest_path: Path) -> subprocess.Popen:
        cmd = self.build_command(src_path, dest_path)
        logger.info(f"[FFmpeg] Executing: {' '.join(cmd)}")
        process = self._spawn(cmd)
        logger.info(f"[FFmpeg] Started PID {process.pid}")
        return process

    def parse_progress(self, line: str, duration: Optional[float] = None) -> Optional[ProgressUpdate]:
        return parse_ffmpeg_progress(line, duration)
