"""Workflow state reconstruction from a task's comment log.

There is no workflow table. Every poll replays the comments and classifies
the task from the marker text the worker left behind. ``reconstruct_state``
is a pure function of ``(comments, now)`` and must stay that way so a
restarted worker reaches the same decision as the one that crashed.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Collection, List, Optional, Set

from . import markers
from .task import Comment, Task, utcnow

logger = logging.getLogger(__name__)

DEFAULT_STALENESS = timedelta(minutes=15)

# Recovery ignores comments that merely restate an earlier retry.
_RECOVERY_SKIP = ("**Starting work**", "Retrying with your feedback")


class WorkflowState(str, Enum):
    """Phase of a task as inferred from its comments."""
    UNCLAIMED = "unclaimed"
    ACTIVE = "active"
    AWAITING_APPROVAL = "awaiting_approval"
    RETRY_REQUESTED = "retry_requested"
    COMPLETED_NO_FEEDBACK = "completed_no_feedback"
    COMPLETED_WITH_FEEDBACK = "completed_with_feedback"
    SHIP_REQUESTED = "ship_requested"
    STUCK = "stuck"


# States the orchestrator will run planning/execution for.
PROCESSABLE_STATES = frozenset({
    WorkflowState.UNCLAIMED,
    WorkflowState.RETRY_REQUESTED,
    WorkflowState.COMPLETED_WITH_FEEDBACK,
    WorkflowState.STUCK,
})


@dataclass
class StateSnapshot:
    """Classification plus the evidence it was derived from."""
    state: WorkflowState
    reason: str
    last_start_index: Optional[int] = None
    last_completion_index: Optional[int] = None
    feedback: List[str] = field(default_factory=list)

    @property
    def should_process(self) -> bool:
        return self.state in PROCESSABLE_STATES


def is_human_comment(comment: Comment, agent_ids: Collection[str] = ()) -> bool:
    """True for comments a person typed, as opposed to the worker or the store."""
    if not comment.has_author or comment.author_is_agent:
        return False
    if comment.author_id in agent_ids:
        return False
    content = comment.content or ""
    if markers.is_system_comment(content) or markers.is_worker_comment(content):
        return False
    return True


def is_feedback_comment(comment: Comment, agent_ids: Collection[str] = ()) -> bool:
    """Human comment that asks for more work (not just "thanks" or "lgtm")."""
    return is_human_comment(comment, agent_ids) and not markers.is_approval_comment(comment.content)


def _last_index(comments: List[Comment], predicate) -> Optional[int]:
    for i in range(len(comments) - 1, -1, -1):
        if predicate(comments[i].content or ""):
            return i
    return None


def has_ship_request(comments: List[Comment], agent_ids: Collection[str] = ()) -> bool:
    """Whether a human asked to ship the latest result and nothing shipped it yet.

    The anchor is the last completion marker that is not itself part of a
    deployment. Any deployment marker after the anchor means the request was
    already handled (or failed and was reported).
    """
    anchor = _last_index(
        comments,
        lambda c: markers.is_completion_marker(c) and not markers.is_deployment_marker(c),
    )
    if anchor is None:
        return False

    for comment in comments[anchor + 1:]:
        if markers.is_deployment_marker(comment.content or ""):
            return False

    return any(
        is_human_comment(comment, agent_ids) and markers.is_ship_it_comment(comment.content)
        for comment in comments[anchor + 1:]
    )


def _pending_approval(comments: List[Comment], start: int) -> bool:
    request = None
    for i in range(start + 1, len(comments)):
        content = comments[i].content or ""
        if markers.is_approval_request(content):
            request = i
        elif request is not None and markers.is_approval_resolution(content):
            request = None
    return request is not None


def _escalation_replies(comments: List[Comment], start: int) -> Set[int]:
    """Indices of comments posted while an escalation was open."""
    inside: Set[int] = set()
    open_request = False
    for i in range(start + 1, len(comments)):
        content = comments[i].content or ""
        if markers.is_approval_request(content):
            open_request = True
        elif markers.is_approval_resolution(content):
            open_request = False
        elif open_request:
            inside.add(i)
    return inside


def reconstruct_state(
    task: Task,
    *,
    now: Optional[datetime] = None,
    staleness: timedelta = DEFAULT_STALENESS,
    agent_ids: Collection[str] = (),
) -> StateSnapshot:
    """Classify a task by replaying its comments oldest first."""
    comments = task.sorted_comments()
    now = now or utcnow()

    if has_ship_request(comments, agent_ids):
        return StateSnapshot(WorkflowState.SHIP_REQUESTED, "ship it requested after completion")

    last_start = _last_index(comments, markers.is_start_marker)
    last_completion = _last_index(comments, markers.is_completion_marker)

    if last_start is None and last_completion is None:
        return StateSnapshot(WorkflowState.UNCLAIMED, "no worker markers")

    if last_start is not None and (last_completion is None or last_start > last_completion):
        # Answers to an escalation are not requests for more work.
        answered = _escalation_replies(comments, last_start)
        feedback = [
            c.content for i, c in enumerate(comments[last_start + 1:], last_start + 1)
            if i not in answered and is_feedback_comment(c, agent_ids)
        ]
        age = now - comments[last_start].created_at
        if age >= staleness:
            return StateSnapshot(
                WorkflowState.STUCK,
                f"start marker is {int(age.total_seconds() // 60)} min old with no completion",
                last_start, last_completion, feedback,
            )
        if _pending_approval(comments, last_start):
            return StateSnapshot(
                WorkflowState.AWAITING_APPROVAL, "escalation awaiting a reply",
                last_start, last_completion,
            )
        if feedback:
            return StateSnapshot(
                WorkflowState.RETRY_REQUESTED, "human replied while the run was active",
                last_start, last_completion, feedback,
            )
        return StateSnapshot(
            WorkflowState.ACTIVE, "run in progress", last_start, last_completion,
        )

    feedback = [
        c.content for c in comments[last_completion + 1:]
        if is_feedback_comment(c, agent_ids)
    ]
    if feedback:
        return StateSnapshot(
            WorkflowState.COMPLETED_WITH_FEEDBACK, "feedback after completion",
            last_start, last_completion, feedback,
        )
    return StateSnapshot(
        WorkflowState.COMPLETED_NO_FEEDBACK, "completed, nothing new from a human",
        last_start, last_completion,
    )


def find_recovery_feedback(task: Task, agent_ids: Collection[str] = ()) -> Optional[str]:
    """Feedback posted after the most recent failure marker, if any.

    Used by the periodic recovery sweep to re-drive failed runs the regular
    poll missed.
    """
    comments = task.sorted_comments()
    last_failure = _last_index(comments, markers.is_failure_marker)
    if last_failure is None:
        return None

    replies = []
    for comment in comments[last_failure + 1:]:
        content = comment.content or ""
        if markers.is_start_marker(content) or markers.is_completion_marker(content):
            # A later run already picked this up.
            return None
        if any(skip in content for skip in _RECOVERY_SKIP):
            continue
        if is_feedback_comment(comment, agent_ids):
            replies.append(content.strip())

    return "\n\n".join(replies) if replies else None
