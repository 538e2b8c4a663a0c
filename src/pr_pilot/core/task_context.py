"""Derived per-task context: earlier attempts, feedback, system understanding.

Rebuilt from the comment log on every poll, never cached between runs.
"""

import re
from dataclasses import dataclass, field
from typing import Collection, List, Optional

from . import markers
from .task import Task
from .workflow_state import is_feedback_comment

UNDERSTANDING_DIVIDER = "---\n## System Understanding"

PR_URL_RE = re.compile(r"https://github\.com/[^\s)\]]+/pull/(\d+)")
_SUMMARY_RE = re.compile(r"\*\*Summary:\*\*\s*(.+?)(?:\n|$)")
_TITLE_RE = re.compile(r"\*\*Title:\*\*\s*(.+?)(?:\n|$)")
_BACKTICK_PATH_RE = re.compile(r"`([^`\s]+\.[A-Za-z0-9]+)`")

# (substring, issue) pairs checked against all feedback, lowercased.
_ISSUE_HINTS = [
    (("broken", "not working", "doesn't work", "error"),
     "Previous implementation broke something - need to fix or revert"),
    (("wrong", "incorrect"),
     "Previous approach was incorrect - need different solution"),
    (("only", "don't change", "do not change"),
     "User wants minimal/targeted changes - avoid touching unrelated code"),
    (("swift", "ios app"),
     "Focus changes on iOS/Swift code"),
    (("test",),
     "Make sure tests cover and pass for the change"),
]


@dataclass
class PreviousAttempt:
    plan_summary: Optional[str] = None
    files: List[str] = field(default_factory=list)
    pr_url: Optional[str] = None
    pr_title: Optional[str] = None
    outcome: Optional[str] = None  # completed | failed

    def is_empty(self) -> bool:
        return not (self.plan_summary or self.pr_url or self.files)


@dataclass
class TaskContext:
    has_been_processed_before: bool = False
    previous_attempts: List[PreviousAttempt] = field(default_factory=list)
    user_feedback: List[str] = field(default_factory=list)
    system_understanding: str = ""

    @property
    def latest_pr_url(self) -> Optional[str]:
        for attempt in reversed(self.previous_attempts):
            if attempt.pr_url:
                return attempt.pr_url
        return None


def find_latest_pr_url(task: Task) -> Optional[str]:
    """Most recent pull request link mentioned anywhere in the comments."""
    for comment in reversed(task.sorted_comments()):
        match = PR_URL_RE.search(comment.content or "")
        if match:
            return match.group(0)
    return None


def extract_pr_number(url: Optional[str]) -> Optional[int]:
    if not url:
        return None
    match = PR_URL_RE.search(url)
    return int(match.group(1)) if match else None


def extract_task_context(task: Task, agent_ids: Collection[str] = ()) -> TaskContext:
    """Replay comments into attempts and the feedback since the last completion."""
    context = TaskContext()
    comments = task.sorted_comments()
    current = PreviousAttempt()
    last_completion = -1

    for i, comment in enumerate(comments):
        content = comment.content or ""

        if markers.is_start_marker(content):
            context.has_been_processed_before = True
            if not current.is_empty():
                context.previous_attempts.append(current)
            current = PreviousAttempt()

        if "**Implementation Plan**" in content or "**Summary:**" in content:
            match = _SUMMARY_RE.search(content)
            if match:
                current.plan_summary = match.group(1).strip()

        if "**Files modified:**" in content or "Files to modify:" in content:
            found = _BACKTICK_PATH_RE.findall(content)
            if found:
                current.files = found

        pr_match = PR_URL_RE.search(content)
        if pr_match:
            current.pr_url = pr_match.group(0)
            title = _TITLE_RE.search(content)
            if title:
                current.pr_title = title.group(1).strip()

        if markers.is_completion_marker(content):
            context.has_been_processed_before = True
            last_completion = i
            failed = markers.is_failure_marker(content)
            if failed or pr_match or "Implementation Complete" in content:
                current.outcome = "failed" if failed else "completed"
                if not current.is_empty() or failed:
                    context.previous_attempts.append(current)
                current = PreviousAttempt()

    if not current.is_empty():
        context.previous_attempts.append(current)

    if last_completion >= 0:
        context.user_feedback = [
            c.content for c in comments[last_completion + 1:]
            if is_feedback_comment(c, agent_ids)
        ]

    context.system_understanding = build_system_understanding(task, context)
    return context


def build_system_understanding(task: Task, context: TaskContext) -> str:
    """Markdown summary of what the worker believes the task is about."""
    description = strip_understanding(task.description)
    lines = ["## System Understanding", "", f"**Original Request:** {task.title}"]

    if description:
        suffix = "..." if len(description) > 500 else ""
        lines += ["", f"**Original Description:** {description[:500]}{suffix}"]

    if context.previous_attempts:
        lines += ["", f"### Previous Attempts ({len(context.previous_attempts)})"]
        for n, attempt in enumerate(context.previous_attempts, 1):
            lines += ["", f"**Attempt {n}:**"]
            if attempt.plan_summary:
                lines.append(f"- Plan: {attempt.plan_summary}")
            if attempt.files:
                more = "..." if len(attempt.files) > 5 else ""
                lines.append(f"- Files modified: {', '.join(attempt.files[:5])}{more}")
            if attempt.pr_url:
                lines.append(f"- PR: {attempt.pr_url}")
            if attempt.outcome:
                lines.append(f"- Outcome: {attempt.outcome}")

    if context.user_feedback:
        lines += ["", "### User Feedback (Most Recent)"]
        for feedback in context.user_feedback[-3:]:
            suffix = "..." if len(feedback) > 200 else ""
            lines += ["", f'> "{feedback[:200]}{suffix}"']

        lines += ["", "### Key Issues to Address"]
        combined = " ".join(f.lower() for f in context.user_feedback)
        issues = []
        if "web" in combined and "ios" in combined:
            issues.append("Need to separate web and iOS changes - user may want changes in only one platform")
        for needles, issue in _ISSUE_HINTS:
            if any(n in combined for n in needles):
                issues.append(issue)
        if not issues:
            issues.append("Review user feedback carefully to understand specific concerns")
        lines += [f"- {issue}" for issue in issues]

    return "\n".join(lines)


def strip_understanding(description: Optional[str]) -> str:
    """Description without any previously written understanding block."""
    text = description or ""
    index = text.find(UNDERSTANDING_DIVIDER)
    if index >= 0:
        text = text[:index]
    return text.strip()


def merge_understanding(description: Optional[str], understanding: str) -> str:
    """Replace (or append) the understanding block below the divider."""
    base = strip_understanding(description)
    block = f"---\n{understanding.strip()}"
    return f"{base}\n\n{block}" if base else block
