"""
Execution layer: collaborators, process ownership, pipeline and scheduler.
"""

from .active import ActiveItem, ActiveItems
from .base import (
    CollectionExpander,
    ExternalTool,
    ItemMetadata,
    MetadataFetcher,
    PayloadAcquirer,
    Transformer,
)
from .errors import ExecutionError, RunCancelledError, StageError, ToolNotFoundError
from .ffmpeg import FFmpegTransformer
from .naming import OutputLayout, item_key, sanitize_filename
from .pipeline import ItemPipeline
from .processes import ProcessHandle, ProcessRegistry
from .progress import ProgressUpdate, parse_ffmpeg_progress, parse_ytdlp_progress
from .reconciler import Reconciler
from .requirements import ToolStatus, check_requirements
from .scheduler import Scheduler, dedupe_ids
from .ytdlp import YtDlpCatalog

__all__ = [
    # Errors
    "ExecutionError",
    "RunCancelledError",
    "StageError",
    "ToolNotFoundError",
    # Collaborators
    "CollectionExpander",
    "ExternalTool",
    "ItemMetadata",
    "MetadataFetcher",
    "PayloadAcquirer",
    "Transformer",
    "YtDlpCatalog",
    "FFmpegTransformer",
    "ToolStatus",
    "check_requirements",
    # Paths
    "OutputLayout",
    "item_key",
    "sanitize_filename",
    # Progress
    "ProgressUpdate",
    "parse_ffmpeg_progress",
    "parse_ytdlp_progress",
    # Orchestration
    "ActiveItem",
    "ActiveItems",
    "ItemPipeline",
    "ProcessHandle",
    "ProcessRegistry",
    "Reconciler",
    "Scheduler",
    "dedupe_ids",
]
