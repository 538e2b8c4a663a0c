"""Shared utility functions for pr-pilot."""

from .error_handling import log_and_ignore
from .subprocess_utils import SubprocessError, redact, run_command, run_git_command
from .validators import validate_branch_name, validate_owner_repo

__all__ = [
    "log_and_ignore",
    "SubprocessError",
    "redact",
    "run_command",
    "run_git_command",
    "validate_branch_name",
    "validate_owner_repo",
]
