"""Safety policy shared by the tool sandbox and the plan validator.

Both components call ``is_protected_path`` with the same pattern list, so a
path refused by one is refused by the other.
"""

import posixpath
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import List, Optional, Sequence

DEFAULT_PROTECTED_PATHS = [
    ".env",
    ".env.local",
    ".env.production",
    ".env.*.local",
    "*.pem",
    "*.key",
    "**/credentials.json",
    "**/secrets.*",
    ".git/**",
]

DEFAULT_BLOCKED_BASH_PATTERNS = [
    "rm -rf /",
    "rm -rf ~",
    "rm -rf *",
    "sudo",
    "> /dev/",
    "mkfs",
    "dd if=",
    ":(){:|:&};:",
    "chmod -R 777 /",
    "wget -O - | sh",
    "curl | sh",
]

DEFAULT_MAX_CONTENT_SIZE = 60000

# Typographic quotes models paste into shell commands.
_QUOTE_TRANSLATION = str.maketrans({
    "‘": "'",
    "’": "'",
    "“": '"',
    "”": '"',
    "´": "'",
})


def normalize_path(path: str) -> str:
    """Repository-relative POSIX form: no backslashes, no ``./``, no leading ``/``."""
    text = (path or "").replace("\\", "/").strip()
    if not text:
        return ""
    normalized = posixpath.normpath(text)
    if normalized == ".":
        return ""
    return normalized.lstrip("/")


@lru_cache(maxsize=256)
def _glob_to_regex(pattern: str) -> re.Pattern:
    out = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("**", i):
            out.append(".*")
            i += 2
        elif pattern[i] == "*":
            out.append("[^/]*")
            i += 1
        elif pattern[i] == "?":
            out.append("[^/]")
            i += 1
        else:
            out.append(re.escape(pattern[i]))
            i += 1
    return re.compile("^" + "".join(out) + "$")


def _is_glob(pattern: str) -> bool:
    return "*" in pattern or "?" in pattern


def matches_protected_pattern(path: str, pattern: str) -> bool:
    normalized = normalize_path(path)
    if _is_glob(pattern):
        pattern = pattern.replace("\\", "/")
        while pattern.startswith("./"):
            pattern = pattern[2:]
        pattern = pattern.lstrip("/")
    else:
        pattern = normalize_path(pattern)
    if not normalized or not pattern:
        return False

    if _is_glob(pattern):
        regex = _glob_to_regex(pattern)
        if regex.match(normalized):
            return True
        # Slash-free patterns like "*.pem" apply at any depth.
        if "/" not in pattern:
            return bool(regex.match(posixpath.basename(normalized)))
        return False

    return normalized == pattern or normalized.endswith("/" + pattern)


def is_protected_path(path: str, patterns: Sequence[str]) -> bool:
    return any(matches_protected_pattern(path, p) for p in patterns or ())


def is_path_inside(path: str) -> bool:
    """Reject ``../`` escapes out of the repository."""
    normalized = posixpath.normpath((path or "").replace("\\", "/"))
    return not (normalized == ".." or normalized.startswith("../"))


def sanitize_command(command: str) -> str:
    """Replace smart quotes with ASCII quotes."""
    return (command or "").translate(_QUOTE_TRANSLATION)


def check_quote_balance(command: str) -> Optional[str]:
    """Return an error message when the command has an unterminated quote."""
    in_single = False
    in_double = False
    escaped = False
    for ch in command:
        if escaped:
            escaped = False
            continue
        if ch == "\\" and not in_single:
            escaped = True
            continue
        if ch == "'" and not in_double:
            in_single = not in_single
        elif ch == '"' and not in_single:
            in_double = not in_double
    if in_single:
        return "Unmatched single quote in command"
    if in_double:
        return "Unmatched double quote in command"
    return None


def is_blocked_command(
    command: str,
    blocked_patterns: Sequence[str],
    allowed_commands: Sequence[str] = (),
) -> bool:
    """Substring check against the blocklist; the allow-list wins."""
    lowered = (command or "").strip().lower()
    for allowed in allowed_commands or ():
        if lowered == allowed.lower() or lowered.startswith(allowed.lower() + " "):
            return False
    return any(p.lower() in lowered for p in blocked_patterns or ())


@dataclass
class SafetyPolicy:
    """Everything the sandbox checks before a mutating call."""

    protected_paths: List[str] = field(default_factory=lambda: list(DEFAULT_PROTECTED_PATHS))
    blocked_patterns: List[str] = field(default_factory=lambda: list(DEFAULT_BLOCKED_BASH_PATTERNS))
    allowed_commands: List[str] = field(default_factory=list)
    enforce_protected_paths: bool = True
    max_content_size: int = DEFAULT_MAX_CONTENT_SIZE

    def check_path(self, path: str) -> Optional[str]:
        """Return a rejection message for a write/edit target, or None."""
        if not normalize_path(path):
            return "Error: file_path is required"
        if not is_path_inside(path):
            return f"Error: Path escapes the repository: {path}"
        if self.enforce_protected_paths and is_protected_path(path, self.protected_paths):
            return f"Error: Cannot modify protected path: {path}"
        return None

    def check_content(self, path: str, content: str) -> Optional[str]:
        size = len(content.encode("utf-8"))
        if size > self.max_content_size:
            return (
                f"Error: Content for {path} is {size} bytes, over the "
                f"{self.max_content_size} byte limit. Split the change into smaller edits."
            )
        return None

    def check_command(self, command: str) -> Optional[str]:
        if not command or not command.strip():
            return "Error: command is required"
        if is_blocked_command(command, self.blocked_patterns, self.allowed_commands):
            return "Error: Command blocked by safety policy"
        unbalanced = check_quote_balance(command)
        if unbalanced:
            return f"Error: {unbalanced}. Fix the quoting and try again."
        return None
