"""Core models, workflow state and orchestration."""

from .task import Comment, Complexity, FileAction, FileChange, ImplementationPlan, PlannedFile, Task, Usage
from .workflow_state import StateSnapshot, WorkflowState, reconstruct_state

__all__ = [
    "Comment",
    "Complexity",
    "FileAction",
    "FileChange",
    "ImplementationPlan",
    "PlannedFile",
    "Task",
    "Usage",
    "StateSnapshot",
    "WorkflowState",
    "reconstruct_state",
]
