"""Executes sandboxed repository tools.

Every failure, including policy rejections and unexpected exceptions, comes
back as a ``ToolResult`` with ``success=False`` so the exploration loop can
show it to the model and let it correct itself.
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..core.task import FileChange
from ..utils.subprocess_utils import SubprocessError, run_command
from . import tool_registry as tools
from .edit_matcher import apply_edit
from .policy import SafetyPolicy, is_path_inside, normalize_path, sanitize_command

logger = logging.getLogger(__name__)

IGNORED_DIRS = frozenset({"node_modules", ".git", "dist", "build", ".next", "__pycache__", ".venv"})

DEFAULT_BASH_TIMEOUT = 60
DEFAULT_MAX_OUTPUT = 8000
DEFAULT_MAX_GLOB_RESULTS = 100
DEFAULT_MAX_GREP_RESULTS = 50
DEFAULT_MAX_READ_SIZE = 100000


@dataclass
class ToolResult:
    """Outcome of one tool call."""
    success: bool
    output: str = ""
    error: Optional[str] = None
    file_change: Optional[FileChange] = None
    strategy: Optional[str] = None
    completion: Optional[Dict[str, Any]] = None

    def as_message(self, limit: int = DEFAULT_MAX_OUTPUT) -> str:
        """Text fed back to the model."""
        text = self.output if self.success else (self.error or "Error: tool failed")
        return truncate_output(text, limit)


def truncate_output(text: str, limit: int = DEFAULT_MAX_OUTPUT) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + f"\n\n[... output truncated, {len(text) - limit} more characters]"


class ToolExecutor:
    """Runs one tool call at a time against a checked-out repository."""

    def __init__(
        self,
        repo_path: Path,
        policy: Optional[SafetyPolicy] = None,
        *,
        bash_timeout: int = DEFAULT_BASH_TIMEOUT,
        max_output: int = DEFAULT_MAX_OUTPUT,
        max_glob_results: int = DEFAULT_MAX_GLOB_RESULTS,
        max_grep_results: int = DEFAULT_MAX_GREP_RESULTS,
        max_read_size: int = DEFAULT_MAX_READ_SIZE,
    ):
        self.repo_path = Path(repo_path)
        self.policy = policy or SafetyPolicy()
        self.bash_timeout = bash_timeout
        self.max_output = max_output
        self.max_glob_results = max_glob_results
        self.max_grep_results = max_grep_results
        self.max_read_size = max_read_size

    def execute(self, name: str, args: Optional[Dict[str, Any]]) -> ToolResult:
        args = args or {}
        handlers = {
            tools.READ_FILE: self._read_file,
            tools.WRITE_FILE: self._write_file,
            tools.EDIT_FILE: self._edit_file,
            tools.RUN_BASH: self._run_bash,
            tools.GLOB_FILES: self._glob_files,
            tools.GREP_SEARCH: self._grep_search,
            tools.TASK_COMPLETE: self._task_complete,
        }
        handler = handlers.get(name)
        if handler is None:
            return ToolResult(False, error=f"Error: Unknown tool: {name}")
        try:
            return handler(args)
        except Exception as e:
            logger.warning(f"Tool {name} raised: {e}")
            return ToolResult(False, error=f"Error: {e}")

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def _resolve(self, file_path: str) -> Optional[Path]:
        """Target inside the repository, or None when the path (or a symlink on it) escapes."""
        if not is_path_inside(file_path):
            return None
        root = self.repo_path.resolve()
        target = (root / normalize_path(file_path)).resolve()
        if not target.is_relative_to(root):
            return None
        return target

    @staticmethod
    def _escape_error(file_path: str) -> ToolResult:
        return ToolResult(False, error=f"Error: Path escapes the repository: {file_path}")

    # ------------------------------------------------------------------
    # File tools
    # ------------------------------------------------------------------

    def _read_file(self, args: Dict[str, Any]) -> ToolResult:
        file_path = str(args.get("file_path") or "")
        if not normalize_path(file_path):
            return ToolResult(False, error="Error: file_path is required")
        target = self._resolve(file_path)
        if target is None:
            return self._escape_error(file_path)
        if not target.is_file():
            return ToolResult(False, error=f"Error: File not found: {file_path}")
        content = target.read_text(encoding="utf-8", errors="replace")
        if len(content) > self.max_read_size:
            content = content[:self.max_read_size] + "\n\n[... file truncated]"
        return ToolResult(True, output=content)

    def _write_file(self, args: Dict[str, Any]) -> ToolResult:
        file_path = str(args.get("file_path") or "")
        content = args.get("content")
        if content is None:
            return ToolResult(False, error="Error: content is required")
        content = str(content)

        rejection = self.policy.check_path(file_path) or self.policy.check_content(file_path, content)
        if rejection:
            return ToolResult(False, error=rejection)

        target = self._resolve(file_path)
        if target is None:
            return self._escape_error(file_path)
        action = "modify" if target.exists() else "create"
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")

        path = normalize_path(file_path)
        verb = "created" if action == "create" else "updated"
        return ToolResult(
            True,
            output=f"File {verb}: {path}",
            file_change=FileChange(path=path, content=content, action=action),
        )

    def _edit_file(self, args: Dict[str, Any]) -> ToolResult:
        file_path = str(args.get("file_path") or "")
        rejection = self.policy.check_path(file_path)
        if rejection:
            return ToolResult(False, error=rejection)

        target = self._resolve(file_path)
        if target is None:
            return self._escape_error(file_path)
        if not target.is_file():
            return ToolResult(False, error=f"Error: File not found: {file_path}")

        current = target.read_text(encoding="utf-8")
        outcome = apply_edit(current, str(args.get("old_string") or ""), str(args.get("new_string") or ""))
        if not outcome.success:
            return ToolResult(False, error=outcome.error)

        rejection = self.policy.check_content(file_path, outcome.content)
        if rejection:
            return ToolResult(False, error=rejection)

        target.write_text(outcome.content, encoding="utf-8")
        path = normalize_path(file_path)
        strategy = outcome.strategy.value
        note = "" if strategy == "exact" else f" (matched using {strategy} strategy)"
        return ToolResult(
            True,
            output=f"File edited: {path}{note}",
            file_change=FileChange(path=path, content=outcome.content, action="modify"),
            strategy=strategy,
        )

    # ------------------------------------------------------------------
    # Shell
    # ------------------------------------------------------------------

    def _run_bash(self, args: Dict[str, Any]) -> ToolResult:
        command = sanitize_command(str(args.get("command") or ""))
        rejection = self.policy.check_command(command)
        if rejection:
            return ToolResult(False, error=rejection)

        try:
            result = run_command(
                command,
                cwd=self.repo_path,
                check=False,
                timeout=self.bash_timeout,
                shell=True,
            )
        except SubprocessError:
            return ToolResult(False, error=f"Error: Command timed out after {self.bash_timeout}s")

        output = (result.stdout or "") + (result.stderr or "")
        output = truncate_output(output.strip() or "(no output)", self.max_output)
        if result.returncode != 0:
            return ToolResult(False, error=f"Error (exit code {result.returncode}):\n{output}")
        return ToolResult(True, output=output)

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def _iter_files(self, pattern: str) -> List[str]:
        root = self.repo_path.resolve()
        matches = []
        for path in self.repo_path.glob(pattern):
            if not path.is_file():
                continue
            resolved = path.resolve()
            if not resolved.is_relative_to(root):
                continue
            rel = resolved.relative_to(root)
            if any(part in IGNORED_DIRS for part in rel.parts):
                continue
            matches.append(rel.as_posix())
        return sorted(set(matches))

    def _glob_files(self, args: Dict[str, Any]) -> ToolResult:
        pattern = str(args.get("pattern") or "").strip()
        if not pattern:
            return ToolResult(False, error="Error: pattern is required")
        files = self._iter_files(pattern)
        if not files:
            return ToolResult(True, output="(no matches)")
        shown = files[:self.max_glob_results]
        output = "\n".join(shown)
        if len(files) > len(shown):
            output += f"\n\n(Showing {len(shown)} of {len(files)} matches)"
        return ToolResult(True, output=output)

    def _grep_search(self, args: Dict[str, Any]) -> ToolResult:
        pattern = str(args.get("pattern") or "")
        if not pattern:
            return ToolResult(False, error="Error: pattern is required")
        try:
            regex = re.compile(pattern)
        except re.error:
            regex = re.compile(re.escape(pattern))

        file_pattern = str(args.get("file_pattern") or "**/*")
        hits = []
        total = 0
        for rel in self._iter_files(file_pattern):
            try:
                text = (self.repo_path / rel).read_text(encoding="utf-8")
            except (UnicodeDecodeError, OSError):
                continue
            for number, line in enumerate(text.splitlines(), 1):
                if regex.search(line):
                    total += 1
                    if len(hits) < self.max_grep_results:
                        hits.append(f"{rel}:{number}:{line.strip()[:200]}")

        if not hits:
            return ToolResult(True, output="(no matches)")
        output = "\n".join(hits)
        if total > len(hits):
            output += f"\n\n(Showing {len(hits)} of {total} matches)"
        return ToolResult(True, output=output)

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def _task_complete(self, args: Dict[str, Any]) -> ToolResult:
        return ToolResult(True, output="Task marked complete", completion=dict(args))
