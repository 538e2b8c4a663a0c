"""Repository tools executed under a safety policy."""

from .policy import SafetyPolicy, is_blocked_command, is_protected_path
from .edit_matcher import EditOutcome, MatchStrategy, apply_edit
from .tool_executor import ToolExecutor, ToolResult

__all__ = [
    "SafetyPolicy",
    "is_blocked_command",
    "is_protected_path",
    "EditOutcome",
    "MatchStrategy",
    "apply_edit",
    "ToolExecutor",
    "ToolResult",
]
