"""
Progress parsing for external tool output.

yt-dlp (with --newline) prints one line per update:
    [download]  42.3% of  120.50MiB at  2.10MiB/s ETA 00:31

FFmpeg prints to stderr (carriage-return separated):
    frame=   24 fps= 12 q=28.0 size=       0kB time=00:00:01.00 bitrate=   0.0kbits/s

We parse:
- yt-dlp: percentage and ETA directly
- FFmpeg: time=HH:MM:SS.ss against the item duration → percentage,
  speed= for ETA
"""

import re
from dataclasses import dataclass
from typing import Optional


# [download]  42.3% of ~ 120.50MiB at 2.10MiB/s ETA 00:31
YTDLP_PERCENT_PATTERN = re.compile(r'^\[download\]\s+(\d+(?:\.\d+)?)%')

# ETA 00:31 or ETA 1:02:03
YTDLP_ETA_PATTERN = re.compile(r'ETA\s+((?:\d+:)?\d+:\d{2})')

# Matches: time=00:00:01.00 or time=00:01:23.45
FFMPEG_TIME_PATTERN = re.compile(r'time=(\d{2}):(\d{2}):(\d{2})\.(\d{2})')

# Matches: speed=1.5x
FFMPEG_SPEED_PATTERN = re.compile(r'speed=\s*([\d.]+)x')


@dataclass(frozen=True)
class ProgressUpdate:
    """Progress of one running stage."""

    percent: float
    eta_seconds: Optional[float] = None


def _clock_to_seconds(value: str) -> float:
    seconds = 0.0
    for part in value.split(":"):
        seconds = seconds * 60 + int(part)
    return seconds


def parse_ytdlp_progress(line: str) -> Optional[ProgressUpdate]:
    """
    Parse a single yt-dlp download progress line.

    Args:
        line: Single line from yt-dlp output

    Returns:
        ProgressUpdate if the line is a progress line, None otherwise
    """
    match = YTDLP_PERCENT_PATTERN.search(line.strip())
    if not match:
        return None

    percent = min(100.0, float(match.group(1)))
    eta_match = YTDLP_ETA_PATTERN.search(line)
    eta = _clock_to_seconds(eta_match.group(1)) if eta_match else None
    return ProgressUpdate(percent=percent, eta_seconds=eta)


def parse_ffmpeg_progress(line: str, duration: Optional[float]) -> Optional[ProgressUpdate]:
    """
    Parse a single FFmpeg stats line.

    Without a known duration no percentage can be computed, so None is
    returned.

    Args:
        line: Single line of FFmpeg stderr output
        duration: Total input duration in seconds

    Returns:
        ProgressUpdate if the line contained a usable time=, None otherwise
    """
    if not duration or duration <= 0:
        return None

    time_match = FFMPEG_TIME_PATTERN.search(line)
    if not time_match:
        return None

    hours = int(time_match.group(1))
    minutes = int(time_match.group(2))
    seconds = int(time_match.group(3))
    centiseconds = int(time_match.group(4))
    current_time = hours * 3600 + minutes * 60 + seconds + centiseconds / 100.0

    percent = min(100.0, (current_time / duration) * 100.0)

    eta = None
    speed_match = FFMPEG_SPEED_PATTERN.search(line)
    if speed_match:
        speed = float(speed_match.group(1))
        if speed > 0:
            eta = max(0.0, (duration - current_time) / speed)

    return ProgressUpdate(percent=percent, eta_seconds=eta)
