"""Locate a model-authored ``old_string`` inside a file.

Models reproduce file text imperfectly: trailing spaces disappear, CRLF turns
into LF, blank-line runs shrink. Matching is attempted in three tiers and the
first hit wins:

1. exact substring
2. line-wise after normalizing line endings, trailing whitespace and blank runs
3. anchors: the first and last lines of the target located independently
   within a bounded window, everything between them taken as the match
"""

import difflib
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

# Anchor lines shorter than this are too generic to trust.
MIN_FIRST_ANCHOR = 15
MIN_LAST_ANCHOR = 10
ANCHOR_WINDOW_SLACK = 5


class MatchStrategy(str, Enum):
    EXACT = "exact"
    NORMALIZED = "normalized"
    ANCHOR = "anchor"


@dataclass
class EditMatch:
    start: int
    end: int
    strategy: MatchStrategy


@dataclass
class EditOutcome:
    success: bool
    content: str = ""
    strategy: Optional[MatchStrategy] = None
    error: Optional[str] = None


def _split_lines(content: str) -> Tuple[List[str], List[int]]:
    """Lines without terminators, plus the offset each one starts at."""
    lines, starts = [], []
    offset = 0
    for raw in content.splitlines(keepends=True):
        starts.append(offset)
        lines.append(raw.rstrip("\r\n"))
        offset += len(raw)
    return lines, starts


def _normalize_target(target: str) -> List[str]:
    lines = [line.rstrip() for line in target.replace("\r\n", "\n").split("\n")]
    collapsed: List[str] = []
    for line in lines:
        if line == "" and collapsed and collapsed[-1] == "":
            continue
        collapsed.append(line)
    while collapsed and collapsed[0] == "":
        collapsed.pop(0)
    while collapsed and collapsed[-1] == "":
        collapsed.pop()
    return collapsed


def _region_end(content: str, lines: List[str], starts: List[int], last: int, keep_newline: bool) -> int:
    end = starts[last] + len(lines[last])
    if keep_newline:
        if content.startswith("\r\n", end):
            end += 2
        elif content.startswith("\n", end):
            end += 1
    return end


def _match_normalized(content: str, target: str) -> Optional[EditMatch]:
    wanted = _normalize_target(target)
    if not wanted:
        return None
    lines, starts = _split_lines(content)
    keep_newline = target.endswith("\n")

    for i in range(len(lines)):
        if lines[i].rstrip() != wanted[0]:
            continue
        j, k = i, 0
        while k < len(wanted) and j < len(lines):
            expected = wanted[k]
            actual = lines[j].rstrip()
            if expected == "":
                if actual != "":
                    break
                while j < len(lines) and lines[j].strip() == "":
                    j += 1
                k += 1
                continue
            if actual != expected:
                break
            j += 1
            k += 1
        if k == len(wanted):
            end = _region_end(content, lines, starts, j - 1, keep_newline)
            return EditMatch(starts[i], end, MatchStrategy.NORMALIZED)
    return None


def _match_anchor(content: str, target: str) -> Optional[EditMatch]:
    wanted = _normalize_target(target)
    non_blank = [line.strip() for line in wanted if line.strip()]
    if len(non_blank) < 2:
        return None
    first, last = non_blank[0], non_blank[-1]
    if len(first) <= MIN_FIRST_ANCHOR or len(last) <= MIN_LAST_ANCHOR:
        return None

    lines, starts = _split_lines(content)
    keep_newline = target.endswith("\n")
    for i, line in enumerate(lines):
        if line.strip() != first:
            continue
        window_end = min(i + len(wanted) + ANCHOR_WINDOW_SLACK, len(lines))
        for j in range(i + 1, window_end):
            if lines[j].strip() == last:
                end = _region_end(content, lines, starts, j, keep_newline)
                return EditMatch(starts[i], end, MatchStrategy.ANCHOR)
    return None


def find_match(content: str, target: str) -> Optional[EditMatch]:
    """Locate ``target`` in ``content`` using the first tier that succeeds."""
    if not target:
        return None
    index = content.find(target)
    if index >= 0:
        return EditMatch(index, index + len(target), MatchStrategy.EXACT)
    return _match_normalized(content, target) or _match_anchor(content, target)


def similar_line_hint(content: str, target: str) -> Optional[str]:
    """Point a retrying model at the line that most resembles its target."""
    probe = next((line.strip() for line in target.splitlines() if line.strip()), "")
    if not probe:
        return None
    best_ratio, best_line = 0.0, None
    for number, line in enumerate(content.splitlines(), 1):
        stripped = line.strip()
        if not stripped:
            continue
        ratio = difflib.SequenceMatcher(None, probe, stripped).ratio()
        if ratio > best_ratio:
            best_ratio, best_line = ratio, (number, stripped)
    if best_line is None or best_ratio < 0.6:
        return None
    number, text = best_line
    return f"Hint: Line {number} contains similar text: {text[:120]}"


def apply_edit(content: str, old_string: str, new_string: str) -> EditOutcome:
    """Replace the first match of ``old_string`` with ``new_string``."""
    if not old_string:
        return EditOutcome(False, error="Error: old_string must not be empty")

    match = find_match(content, old_string)
    if match is None:
        message = "Error: Could not find the specified string in file"
        hint = similar_line_hint(content, old_string)
        if hint:
            message += f"\n{hint}"
        return EditOutcome(False, error=message)

    updated = content[:match.start] + new_string + content[match.end:]
    if updated == content:
        return EditOutcome(False, error="Error: Edit would result in no changes")
    return EditOutcome(True, content=updated, strategy=match.strategy)
