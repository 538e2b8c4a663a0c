"""Tool declarations offered to the backends.

Declarations are kept vendor-neutral here; each backend adapter renders them
into its provider's function-calling shape.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List

READ_FILE = "read_file"
WRITE_FILE = "write_file"
EDIT_FILE = "edit_file"
RUN_BASH = "run_bash"
GLOB_FILES = "glob_files"
GREP_SEARCH = "grep_search"
TASK_COMPLETE = "task_complete"

MUTATING_TOOLS = frozenset({WRITE_FILE, EDIT_FILE, RUN_BASH})


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    properties: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    required: tuple = ()

    def json_schema(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": dict(self.properties),
            "required": list(self.required),
        }


def _string(description: str) -> Dict[str, str]:
    return {"type": "string", "description": description}


TOOL_SPECS: Dict[str, ToolSpec] = {
    READ_FILE: ToolSpec(
        READ_FILE,
        "Read the contents of a file in the repository",
        {"file_path": _string("Path relative to the repository root")},
        ("file_path",),
    ),
    WRITE_FILE: ToolSpec(
        WRITE_FILE,
        "Create or overwrite a file with the given content",
        {
            "file_path": _string("Path relative to the repository root"),
            "content": _string("Complete file content"),
        },
        ("file_path", "content"),
    ),
    EDIT_FILE: ToolSpec(
        EDIT_FILE,
        "Edit a file by replacing old_string with new_string. "
        "old_string must identify a unique region of the current file.",
        {
            "file_path": _string("Path relative to the repository root"),
            "old_string": _string("Existing text to replace"),
            "new_string": _string("Replacement text"),
        },
        ("file_path", "old_string", "new_string"),
    ),
    RUN_BASH: ToolSpec(
        RUN_BASH,
        "Run a shell command in the repository root (60s timeout)",
        {"command": _string("The command to run")},
        ("command",),
    ),
    GLOB_FILES: ToolSpec(
        GLOB_FILES,
        "Find files matching a glob pattern such as src/**/*.ts",
        {"pattern": _string("Glob pattern relative to the repository root")},
        ("pattern",),
    ),
    GREP_SEARCH: ToolSpec(
        GREP_SEARCH,
        "Search file contents for a regular expression",
        {
            "pattern": _string("Regular expression to search for"),
            "file_pattern": _string("Optional glob restricting which files are searched"),
        },
        ("pattern",),
    ),
    TASK_COMPLETE: ToolSpec(
        TASK_COMPLETE,
        "Signal that the implementation is complete",
        {
            "commit_message": _string("Git commit message"),
            "pr_title": _string("Pull request title"),
            "pr_description": _string("Pull request description"),
        },
        ("commit_message", "pr_title", "pr_description"),
    ),
}

PLANNING_TOOLS = [READ_FILE, GLOB_FILES, GREP_SEARCH]
EXECUTION_TOOLS = [READ_FILE, WRITE_FILE, EDIT_FILE, RUN_BASH, GLOB_FILES, GREP_SEARCH, TASK_COMPLETE]


def tools_for_phase(phase: str) -> List[ToolSpec]:
    names = PLANNING_TOOLS if phase == "planning" else EXECUTION_TOOLS
    return [TOOL_SPECS[name] for name in names]


def to_function_tools(specs: List[ToolSpec]) -> List[Dict[str, Any]]:
    """Render declarations in the ``{"type": "function", ...}`` shape."""
    return [
        {
            "type": "function",
            "function": {
                "name": spec.name,
                "description": spec.description,
                "parameters": spec.json_schema(),
            },
        }
        for spec in specs
    ]
