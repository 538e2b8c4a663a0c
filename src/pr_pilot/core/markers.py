"""Recognizers for the marker text the worker leaves in task comments.

The comment log is the only durable workflow state, so these patterns are a
contract: changing a marker here or in ``comments`` is a breaking change for
tasks already in flight. Bump ``MARKER_VERSION`` and note the migration in
the changelog when doing so.
"""

import re
from typing import Iterable, List, Pattern

MARKER_VERSION = 2

# ---------------------------------------------------------------------------
# Phase markers
# ---------------------------------------------------------------------------

START_PATTERNS: List[Pattern] = [
    re.compile(r"^(?:\S+ )?\*\*[^*\n]+ Starting\*\*", re.IGNORECASE),
    re.compile(r"\*\*Starting work\*\*", re.IGNORECASE),
]

COMPLETION_PATTERNS: List[Pattern] = [
    re.compile(r"Pull Request Created"),
    re.compile(r"PR Updated!"),
    re.compile(r"github\.com/[^/\s]+/[^/\s]+/pull/\d+"),
    re.compile(r"Implementation Complete"),
    re.compile(r"Implementation complete but PR creation failed"),
    re.compile(r"Implementation Failed"),
    re.compile(r"Planning Failed"),
    re.compile(r"Worker Error"),
    re.compile(r"No Changes Made"),
    re.compile(r"AI Assistant Response"),
    re.compile(r"Ship It Deployment Started"),
    re.compile(r"Ship It Deployment Failed"),
    re.compile(r"Deployment Complete"),
]

# Markers written by the ship-it flow. They close a deployment rather than a
# planning/implementation run.
DEPLOYMENT_PATTERNS: List[Pattern] = [
    re.compile(r"Ship It Deployment Started"),
    re.compile(r"Ship It Deployment Failed"),
    re.compile(r"Deployment Complete"),
]

FAILURE_PATTERNS: List[Pattern] = [
    re.compile(r"Workflow Failed"),
    re.compile(r"❌ \*\*Error\*\*"),
    re.compile(r"Planning produced no files"),
    re.compile(r"Planning Failed"),
    re.compile(r"Implementation Failed"),
    re.compile(r"Worker Error"),
]

# Pending and resolved escalations.
APPROVAL_REQUEST_PATTERNS: List[Pattern] = [
    re.compile(r"^\S+ \*\*Task Complexity Limit Reached\*\*"),
    re.compile(r"^\S+ \*\*Permission Request\*\*"),
]

APPROVAL_RESOLUTION_PATTERNS: List[Pattern] = [
    re.compile(r"^\S+ Budget increase approved"),
    re.compile(r"^\S+ Budget increase denied"),
    re.compile(r"^\S+ Timeout - no response"),
    re.compile(r"^\S+ Approved - continuing"),
    re.compile(r"^\S+ Denied - skipping"),
]

# ---------------------------------------------------------------------------
# Comment provenance
# ---------------------------------------------------------------------------

SYSTEM_COMMENT_PATTERNS: List[Pattern] = [
    re.compile(r"^.+ (reassigned|assigned|changed priority|marked this|moved to|removed from)", re.IGNORECASE),
    re.compile(r"^.+ (created|deleted|updated) (this task|a subtask)", re.IGNORECASE),
    re.compile(r"<!-- SYSTEM_GENERATED_COMMENT -->"),
]

WORKER_COMMENT_PATTERNS: List[Pattern] = [
    re.compile(r"^(?:\S+ )?\*\*[^*\n]+ Starting\*\*", re.IGNORECASE),
    re.compile(r"^(?:\S+ )?\*\*Phase \d+:", re.IGNORECASE),
    re.compile(r"^(?:\S+ )?\*\*Implementation Plan\*\*", re.IGNORECASE),
    re.compile(r"^(?:\S+ )?\*\*Implementation Complete\*\*", re.IGNORECASE),
    re.compile(r"^(?:\S+ )?\*\*Implementation Failed\*\*", re.IGNORECASE),
    re.compile(r"^(?:\S+ )?\*\*Planning Failed\*\*", re.IGNORECASE),
    re.compile(r"^(?:\S+ )?\*\*Implementation complete but PR creation failed\*\*", re.IGNORECASE),
    re.compile(r"^(?:\S+ )?\*\*Pull Request Created!?\*\*", re.IGNORECASE),
    re.compile(r"^(?:\S+ )?\*\*PR Updated!?\*\*", re.IGNORECASE),
    re.compile(r"^(?:\S+ )?\*\*Preview URL Not Available\*\*", re.IGNORECASE),
    re.compile(r"^(?:\S+ )?\*\*Staging Site Ready!?\*\*", re.IGNORECASE),
    re.compile(r"^(?:\S+ )?\*\*CI Checks", re.IGNORECASE),
    re.compile(r"^(?:\S+ )?\*\*Worker Error\*\*", re.IGNORECASE),
    re.compile(r"^(?:\S+ )?\*\*Error\*\*", re.IGNORECASE),
    re.compile(r"^(?:\S+ )?\*\*No Changes Made\*\*", re.IGNORECASE),
    re.compile(r"^(?:\S+ )?\*\*Ship It Deployment", re.IGNORECASE),
    re.compile(r"^(?:\S+ )?\*\*Deployment Summary\*\*", re.IGNORECASE),
    re.compile(r"^(?:\S+ )?\*\*Deployment Complete!?\*\*", re.IGNORECASE),
    re.compile(r"^(?:\S+ )?\*\*Ship It Deployment Failed\*\*", re.IGNORECASE),
    re.compile(r"^(?:\S+ )?\*\*Permission Request\*\*", re.IGNORECASE),
    re.compile(r"^(?:\S+ )?\*\*Task Complexity Limit", re.IGNORECASE),
    re.compile(r"^\S+ Approved - continuing", re.IGNORECASE),
    re.compile(r"^\S+ Denied - skipping", re.IGNORECASE),
    re.compile(r"^\S+ Timeout - no response", re.IGNORECASE),
    re.compile(r"^\S+ Budget increase approved", re.IGNORECASE),
    re.compile(r"^\S+ Budget increase denied", re.IGNORECASE),
    re.compile(r"^(?:\S+ )?\*\*Retrying", re.IGNORECASE),
    re.compile(r"^(?:\S+ )?\*\*Auto-Recovery Triggered\*\*", re.IGNORECASE),
    re.compile(r"^(?:\S+ )?\*\*Recovery Failed\*\*", re.IGNORECASE),
    re.compile(r"^(?:\S+ )?\*\*AI Assistant Response\*\*", re.IGNORECASE),
    re.compile(r"^(?:\S+ )?\*\*Starting work\*\*", re.IGNORECASE),
]

# ---------------------------------------------------------------------------
# Human vocabulary
# ---------------------------------------------------------------------------

APPROVAL_KEYWORDS = [
    "approve", "approved", "yes", "y", "lgtm", "looks good", "merge",
    "ship it", "ship", "thanks", "thank you", "great", "perfect", "good",
    "ok", "okay", "done", "nice",
]

# Longest first so "thank you" wins over "thanks"-style prefixes.
_APPROVAL_PHRASES = sorted(APPROVAL_KEYWORDS, key=len, reverse=True)

_SHIP_NEGATIONS = re.compile(r"\b(don'?t|do not|not yet|wait|hold off|hold on|never)\b")


def _matches_any(content: str, patterns: Iterable[Pattern]) -> bool:
    return any(p.search(content) for p in patterns)


def normalize_reply(content: str) -> str:
    """Lowercase, drop punctuation/emoji and collapse whitespace."""
    text = (content or "").lower()
    text = re.sub(r"[^\w\s']", " ", text)
    return " ".join(text.split())


def is_start_marker(content: str) -> bool:
    return _matches_any(content.strip(), START_PATTERNS)


def is_completion_marker(content: str) -> bool:
    return _matches_any(content, COMPLETION_PATTERNS)


def is_deployment_marker(content: str) -> bool:
    return _matches_any(content, DEPLOYMENT_PATTERNS)


def is_failure_marker(content: str) -> bool:
    return _matches_any(content, FAILURE_PATTERNS)


def is_approval_request(content: str) -> bool:
    return _matches_any(content.strip(), APPROVAL_REQUEST_PATTERNS)


def is_approval_resolution(content: str) -> bool:
    return _matches_any(content.strip(), APPROVAL_RESOLUTION_PATTERNS)


def is_system_comment(content: str) -> bool:
    return _matches_any(content.strip(), SYSTEM_COMMENT_PATTERNS)


def is_worker_comment(content: str) -> bool:
    return _matches_any(content.strip(), WORKER_COMMENT_PATTERNS)


def is_approval_comment(content: str) -> bool:
    """True when the comment consists solely of approval phrases.

    ``"lgtm"``, ``"Thanks!"`` and ``"ok, great"`` qualify; ``"ok but the
    button is still broken"`` does not.
    """
    remaining = normalize_reply(content)
    if not remaining:
        return False
    while remaining:
        for phrase in _APPROVAL_PHRASES:
            if remaining == phrase or remaining.startswith(phrase + " "):
                remaining = remaining[len(phrase):].strip()
                break
        else:
            return False
    return True


def is_ship_it_comment(content: str) -> bool:
    normalized = normalize_reply(content)
    if _SHIP_NEGATIONS.search(normalized):
        return False
    return (
        "ship it" in normalized
        or normalized == "ship"
        or "merge and ship" in normalized
    )
