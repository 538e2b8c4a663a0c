"""Extract structured data from free-form model output.

Models wrap JSON in prose, fences and half-finished markdown. Extraction
tries, in order: a direct parse of the whole text, fenced code blocks,
balanced-brace scanning for an object carrying the required key, the slice
between the first and last brace, and finally markdown file sections. The
first strategy yielding a usable object wins.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Union

from ..core.task import Complexity, FileChange

logger = logging.getLogger(__name__)

RETRY_WITH_FORMAT_ENFORCEMENT = "RETRY_WITH_FORMAT_ENFORCEMENT"

FORMAT_ENFORCEMENT_PROMPT = (
    "Your previous response could not be parsed. Respond with ONLY a JSON object "
    'containing a non-empty "files" array, inside a ```json code block.'
)

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*\n?([\s\S]*?)```")
_FILE_HEADER_RE = re.compile(
    r"#{2,4}\s*(?:File:\s*)?`([^`]+)`\s*\n+```[\w+-]*\s*\n([\s\S]*?)```"
)
_FILE_COMMENT_RE = re.compile(r"```[\w+-]*\s*\n(?://|#)\s*(?:file(?:path)?:\s*)?(\S+\.\w+)\s*\n([\s\S]*?)```")
_FILE_PATH_RE = re.compile(r"`?((?:[\w.-]+/)*[\w.-]+\.[A-Za-z][A-Za-z0-9]{0,5})`?")
_BULLET_RE = re.compile(r"^\s*(?:[•*-]|\d+\.)\s+(.+)$", re.MULTILINE)


class ResponseFormatError(ValueError):
    """No structured content could be extracted; re-prompt with format rules."""

    def __init__(self, message: str = RETRY_WITH_FORMAT_ENFORCEMENT):
        super().__init__(message)


@dataclass
class ExtractedJson:
    data: Dict[str, Any]
    strategy: str


@dataclass
class GeneratedCode:
    files: List[FileChange] = field(default_factory=list)
    commit_message: str = ""
    pr_title: str = ""
    pr_description: str = ""
    strategy: str = ""


# ---------------------------------------------------------------------------
# JSON extraction
# ---------------------------------------------------------------------------

def _loads_object(text: str) -> Optional[Dict[str, Any]]:
    try:
        value = json.loads(text)
    except (ValueError, TypeError):
        return None
    return value if isinstance(value, dict) else None


def _iter_balanced_objects(text: str) -> Iterator[str]:
    """Yield every top-level ``{...}`` span, tracking string and escape state."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        end = None
        for i in range(start, len(text)):
            ch = text[i]
            if escaped:
                escaped = False
                continue
            if ch == "\\" and in_string:
                escaped = True
                continue
            if ch == '"':
                in_string = not in_string
                continue
            if in_string:
                continue
            if ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    end = i
                    break
        if end is None:
            return
        yield text[start:end + 1]
        start = text.find("{", end + 1)


def extract_balanced_json(text: str, required_key: str = "files") -> Optional[str]:
    """First balanced object that parses and contains ``required_key``."""
    for candidate in _iter_balanced_objects(text or ""):
        if f'"{required_key}"' not in candidate:
            continue
        data = _loads_object(candidate)
        if data is not None and required_key in data:
            return candidate
    return None


def extract_json_object(text: str, required_key: Optional[str] = "files") -> Optional[ExtractedJson]:
    """Run the JSON strategies in order; markdown is handled by the callers."""
    text = text or ""

    def usable(data: Optional[Dict[str, Any]]) -> bool:
        return data is not None and (required_key is None or required_key in data)

    data = _loads_object(text.strip())
    if usable(data):
        return ExtractedJson(data, "direct")

    for block in _FENCE_RE.findall(text):
        data = _loads_object(block.strip())
        if usable(data):
            return ExtractedJson(data, "fenced")

    candidate = extract_balanced_json(text, required_key) if required_key else None
    if candidate is None and required_key is None:
        candidate = next(_iter_balanced_objects(text), None)
    if candidate is not None:
        data = _loads_object(candidate)
        if usable(data):
            return ExtractedJson(data, "balanced")

    first, last = text.find("{"), text.rfind("}")
    if first != -1 and last > first:
        data = _loads_object(text[first:last + 1])
        if usable(data):
            return ExtractedJson(data, "slice")

    return None


# ---------------------------------------------------------------------------
# Markdown fallback
# ---------------------------------------------------------------------------

def extract_code_from_markdown(text: str) -> List[FileChange]:
    """File sections written as markdown headers or path comments over fences.

    Raises:
        ResponseFormatError: when no file section is found
    """
    files = [
        FileChange(path=path.strip(), content=body.rstrip() + "\n", action="modify")
        for path, body in _FILE_HEADER_RE.findall(text or "")
    ]
    if not files:
        files = [
            FileChange(path=path.strip(), content=body.rstrip() + "\n", action="create")
            for path, body in _FILE_COMMENT_RE.findall(text or "")
        ]
    if not files:
        raise ResponseFormatError()
    return files


def _plan_from_markdown(text: str) -> Optional[Dict[str, Any]]:
    paths = []
    for match in re.finditer(r"#{2,4}\s*(?:File:\s*)?`([^`]+)`", text or ""):
        if match.group(1) not in paths:
            paths.append(match.group(1))
    if not paths:
        return None
    summary = next((line.strip("# ").strip() for line in text.splitlines() if line.strip()), "")
    return {
        "summary": summary,
        "approach": summary,
        "files": [{"path": p} for p in paths],
        "estimatedComplexity": assess_complexity(text).value,
        "considerations": extract_considerations(text),
    }


# ---------------------------------------------------------------------------
# Public parsers
# ---------------------------------------------------------------------------

def parse_plan_response(text: str) -> ExtractedJson:
    """Structured plan dict from model text.

    Raises:
        ResponseFormatError: when every strategy fails
    """
    extracted = extract_json_object(text, "files")
    if extracted is not None:
        logger.debug(f"Plan extracted with {extracted.strategy} strategy")
        return extracted

    data = _plan_from_markdown(text)
    if data is not None:
        logger.info("Plan recovered from markdown headers")
        return ExtractedJson(data, "markdown")

    logger.warning(f"No plan structure found in response ({len(text or '')} chars)")
    raise ResponseFormatError()


def parse_generated_code(text: str) -> GeneratedCode:
    """File changes plus commit/PR metadata from an implementation response.

    Raises:
        ResponseFormatError: when every strategy fails
    """
    extracted = extract_json_object(text, "files")
    if extracted is not None and isinstance(extracted.data.get("files"), list):
        data = extracted.data
        files = [
            FileChange(
                path=str(f.get("path", "")),
                content=str(f.get("content", "")),
                action=f.get("action") if f.get("action") in ("create", "modify", "delete") else "modify",
            )
            for f in data["files"]
            if isinstance(f, dict) and f.get("path")
        ]
        completion = parse_completion_result(data) or {}
        return GeneratedCode(
            files=files,
            commit_message=completion.get("commit_message", ""),
            pr_title=completion.get("pr_title", ""),
            pr_description=completion.get("pr_description", ""),
            strategy=extracted.strategy,
        )

    files = extract_code_from_markdown(text)
    return GeneratedCode(
        files=files,
        commit_message="Implement feature as requested",
        pr_title="Implement requested change",
        pr_description="Automated implementation by pr-pilot",
        strategy="markdown",
    )


def parse_completion_result(result: Union[str, Dict[str, Any], None]) -> Optional[Dict[str, str]]:
    """Normalize ``task_complete`` arguments given in camelCase or snake_case."""
    if isinstance(result, str):
        result = _loads_object(result)
    if not isinstance(result, dict):
        return None

    def pick(*keys: str) -> str:
        for key in keys:
            value = result.get(key)
            if value:
                return str(value)
        return ""

    return {
        "commit_message": pick("commit_message", "commitMessage"),
        "pr_title": pick("pr_title", "prTitle"),
        "pr_description": pick("pr_description", "prDescription"),
    }


def assess_complexity(text: str) -> Complexity:
    """Rough size estimate for responses that did not state one."""
    words = len((text or "").split())
    files = len(set(_FILE_PATH_RE.findall(text or "")))
    if words < 200 and files <= 2:
        return Complexity.SIMPLE
    if words < 500 and files <= 5:
        return Complexity.MEDIUM
    return Complexity.COMPLEX


def extract_considerations(text: str, max_count: int = 5) -> List[str]:
    """Bullet and numbered list items, in order."""
    return [m.strip() for m in _BULLET_RE.findall(text or "")][:max_count]


def extract_file_paths(text: str) -> List[str]:
    """Backticked or slash-containing path tokens, de-duplicated in order."""
    seen: List[str] = []
    for match in _FILE_PATH_RE.finditer(text or ""):
        path = match.group(1)
        backticked = match.group(0).startswith("`")
        if (backticked or "/" in path) and not path.startswith(("http", "//")) and path not in seen:
            seen.append(path)
    return seen
