"""Human-in-the-loop escalation over the task's comment stream.

Each escalation runs ``requested -> approved | denied | timed-out``. A timeout
resolves to a denial. The first reply from a non-agent author that matches
the approval or denial vocabulary settles it, and a resolution comment is
posted so state reconstruction sees the request as closed.
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Collection, Optional

from ..core import comments
from ..core.markers import normalize_reply
from ..core.task import Comment, utcnow

logger = logging.getLogger(__name__)

APPROVE_WORDS = frozenset({"continue", "approve", "approved", "yes", "y"})
DENY_WORDS = frozenset({"stop", "deny", "denied", "no", "n", "cancel"})


class ApprovalDecision(str, Enum):
    APPROVED = "approved"
    DENIED = "denied"
    TIMED_OUT = "timed_out"


def parse_reply(content: str) -> Optional[bool]:
    """True for approval, False for denial, None when the reply is neither."""
    words = normalize_reply(content).split()
    if not words:
        return None
    if words[0] in APPROVE_WORDS:
        return True
    if words[0] in DENY_WORDS:
        return False
    return None


class ApprovalProtocol:
    """Posts approval requests for one task and waits for a human answer."""

    def __init__(
        self,
        store,
        task_id: str,
        agent_id: Optional[str] = None,
        agent_ids: Collection[str] = (),
        timeout: int = 300,
        poll_interval: int = 5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.task_id = task_id
        self.agent_id = agent_id
        self.agent_ids = set(agent_ids)
        if agent_id:
            self.agent_ids.add(agent_id)
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._sleep = sleep

    def _post(self, content: str) -> Optional[Comment]:
        return self.store.add_comment(self.task_id, content, self.agent_id)

    def _is_candidate(self, comment: Comment, since: datetime) -> bool:
        if comment.created_at < since or not comment.has_author:
            return False
        if comment.author_is_agent or comment.author_id in self.agent_ids:
            return False
        return True

    async def await_decision(self, since: datetime) -> ApprovalDecision:
        """Poll comments newer than ``since`` until a decision or the deadline."""
        waited = 0
        while True:
            try:
                replies = self.store.get_comments(self.task_id)
            except Exception as e:
                logger.warning(f"⚠️ Approval poll failed for {self.task_id}: {e}")
                replies = []
            for comment in sorted(replies, key=lambda c: c.created_at):
                if not self._is_candidate(comment, since):
                    continue
                verdict = parse_reply(comment.content)
                if verdict is not None:
                    return ApprovalDecision.APPROVED if verdict else ApprovalDecision.DENIED
            if waited >= self.timeout:
                return ApprovalDecision.TIMED_OUT
            await self._sleep(self.poll_interval)
            waited += self.poll_interval

    async def request_budget_increase(
        self,
        phase: str,
        current_budget: float,
        proposed_budget: float,
        current_turns: int,
        proposed_turns: int,
    ) -> bool:
        logger.info(f"⚠️ Requesting budget increase for {phase} on {self.task_id}")
        since = self._request_time(self._post(comments.budget_request(
            phase, current_budget, proposed_budget, current_turns, proposed_turns, self.timeout,
        )))
        decision = await self.await_decision(since)
        if decision == ApprovalDecision.APPROVED:
            self._post(comments.budget_approved())
        elif decision == ApprovalDecision.DENIED:
            self._post(comments.budget_denied())
        else:
            self._post(comments.budget_timeout())
        logger.info(f"Budget escalation for {self.task_id}: {decision.value}")
        return decision == ApprovalDecision.APPROVED

    async def request_tool_permission(self, tool_name: str, summary: str) -> bool:
        logger.info(f"🔐 Requesting permission for {tool_name} on {self.task_id}")
        since = self._request_time(self._post(
            comments.permission_request(tool_name, summary, self.timeout)
        ))
        decision = await self.await_decision(since)
        if decision == ApprovalDecision.APPROVED:
            self._post(comments.permission_approved())
        elif decision == ApprovalDecision.DENIED:
            self._post(comments.permission_denied())
        else:
            self._post(comments.permission_timeout())
        return decision == ApprovalDecision.APPROVED

    @staticmethod
    def _request_time(posted: Optional[Comment]) -> datetime:
        if posted is not None:
            return posted.created_at
        return utcnow()
