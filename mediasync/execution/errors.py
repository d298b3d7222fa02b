"""
Execution-specific errors.

Stage errors are non-fatal to the run.
They indicate one attempt of one item failed; the scheduler continues
with other items.
"""

from typing import Optional

from ..jobs.errors import SyncError


class ExecutionError(SyncError):
    """
    Base exception for execution failures.
    
    All execution errors inherit from this.
    """
    
    pass


class StageError(ExecutionError):
    """
    One pipeline stage failed.
    
    Raised when:
    - Metadata lookup fails or returns unusable data
    - An external process cannot be spawned
    - An external process exits non-zero
    - Finalizing cannot publish the artifact
    """
    
    def __init__(
        self,
        stage: str,
        message: str,
        exit_code: Optional[int] = None,
        output_tail: Optional[str] = None,
    ):
        self.stage = stage
        self.exit_code = exit_code
        self.output_tail = output_tail
        detail = message
        if exit_code is not None:
            detail += f" (exit code: {exit_code})"
        super().__init__(f"[{stage}] {detail}")


class ToolNotFoundError(ExecutionError):
    """Raised when a required external tool is not on PATH."""
    
    def __init__(self, tool: str):
        self.tool = tool
        super().__init__(f"Required tool not found: {tool}")


class RunCancelledError(ExecutionError):
    """
    Raised inside a pipeline when shutdown was requested.
    
    Not a failure: the item keeps its last-persisted state.
    """
    
    pass
