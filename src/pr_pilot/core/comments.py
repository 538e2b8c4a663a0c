"""Comment templates posted by the worker.

Each template leaves marker text recognized by ``core.markers``. The two
modules change together; see ``MARKER_VERSION``.
"""

from typing import Iterable, List, Optional

from .task import FileChange, ImplementationPlan

SYSTEM_MARKER = "<!-- SYSTEM_GENERATED_COMMENT -->"


def _cost_line(cost_usd: Optional[float]) -> str:
    return f"\n\n💰 Cost: ${cost_usd:.4f}" if cost_usd else ""


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

def starting(
    agent_name: str,
    title: str,
    repository: str,
    feedback: Optional[List[str]] = None,
) -> str:
    text = (
        f"🤖 **{agent_name} Starting**\n\n"
        f"**Task:** {title}\n"
        f"**Repository:** {repository}"
    )
    if feedback:
        quoted = "\n".join(f"> {f[:200]}" for f in feedback[-3:])
        text += f"\n\n**Continuing from your feedback:**\n{quoted}"
    return text


def planning_phase() -> str:
    return "📋 **Phase 1: Planning**\n\nExploring the codebase and drafting an implementation plan..."


def plan_ready(plan: ImplementationPlan, cost_usd: Optional[float] = None) -> str:
    files = "\n".join(
        f"- `{f.path}`: {f.purpose}" for f in plan.files
    ) or "- (none)"
    text = (
        "📝 **Implementation Plan**\n\n"
        f"**Summary:** {plan.summary}\n\n"
        f"**Approach:** {plan.approach}\n\n"
        f"**Files to modify:**\n{files}\n\n"
        f"**Complexity:** {plan.complexity}"
    )
    if plan.considerations:
        items = "\n".join(f"- {c}" for c in plan.considerations)
        text += f"\n\n**Considerations:**\n{items}"
    return text + _cost_line(cost_usd)


def implementation_phase() -> str:
    return "⚙️ **Phase 2: Implementation**\n\nApplying the plan..."


def retrying_phase(phase: str) -> str:
    return f"🔄 **Retrying {phase.title()}** with increased limits..."


def implementation_complete(changes: Iterable[FileChange], cost_usd: Optional[float] = None) -> str:
    files = "\n".join(f"- `{c.path}` ({c.action})" for c in changes)
    return f"✅ **Implementation Complete**\n\n**Files modified:**\n{files}" + _cost_line(cost_usd)


def pr_created(pr_url: str, pr_title: str, branch: str) -> str:
    return (
        "🎉 **Pull Request Created!**\n\n"
        f"🔗 **[{pr_url}]({pr_url})**\n\n"
        f"**Title:** {pr_title}\n"
        f"**Branch:** `{branch}`\n\n"
        "Review the changes, reply with feedback to iterate, or reply **ship it** to merge and deploy."
    )


def pr_updated(pr_url: str, branch: str) -> str:
    return (
        "🔄 **PR Updated!**\n\n"
        f"🔗 **[{pr_url}]({pr_url})**\n\n"
        f"New commits pushed to `{branch}` based on your feedback."
    )


def preview_ready(preview_url: str) -> str:
    return f"🚀 **Staging Site Ready!**\n\n🔗 {preview_url}"


def preview_unavailable(reason: str) -> str:
    return f"⚠️ **Preview URL Not Available**\n\n{reason}"


def ci_summary(status: str, lines: List[str]) -> str:
    body = "\n".join(f"- {line}" for line in lines) or "- No checks reported"
    return f"🧪 **CI Checks {status}**\n\n{body}"


def no_changes() -> str:
    return (
        "⚠️ **No Changes Made**\n\n"
        "The implementation finished without modifying any files. "
        "Add detail to the task and reply here to retry."
    )


def pr_creation_failed(error: str) -> str:
    return f"⚠️ **Implementation complete but PR creation failed**\n\n```\n{error}\n```"


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------

def missing_api_key(agent_name: str) -> str:
    return (
        f"❌ **Error**: No API key configured for {agent_name}.\n\n"
        "Add the provider key to the worker environment and reassign the task."
    )


def planning_failed(message: str) -> str:
    return f"❌ **Planning Failed**\n\n{message}"


def implementation_failed(message: str) -> str:
    return f"❌ **Implementation Failed**\n\n{message}"


def worker_error(message: str) -> str:
    return f"❌ **Worker Error**\n\n```\n{message}\n```"


# ---------------------------------------------------------------------------
# Escalation
# ---------------------------------------------------------------------------

def budget_request(
    phase: str,
    current_budget: float,
    proposed_budget: float,
    current_turns: int,
    proposed_turns: int,
    timeout_seconds: int,
) -> str:
    return (
        "⚠️ **Task Complexity Limit Reached**\n\n"
        f"The {phase} phase ran out of room before finishing.\n\n"
        f"| | Current | Proposed |\n|---|---|---|\n"
        f"| Budget | ${current_budget:.2f} | ${proposed_budget:.2f} |\n"
        f"| Turns | {current_turns} | {proposed_turns} |\n\n"
        "Reply **continue** to retry with the higher limits or **stop** to end here. "
        f"No reply within {timeout_seconds // 60} minutes counts as stop."
    )


def budget_approved() -> str:
    return "✅ Budget increase approved - retrying with higher limits"


def budget_denied() -> str:
    return "❌ Budget increase denied - stopping execution"


def budget_timeout() -> str:
    return "⏰ Timeout - no response received for budget increase"


def permission_request(tool_name: str, summary: str, timeout_seconds: int) -> str:
    return (
        "🔐 **Permission Request**\n\n"
        f"The agent wants to run `{tool_name}`:\n\n```\n{summary}\n```\n\n"
        f"Reply **approve** or **deny**. No reply within {timeout_seconds // 60} minutes counts as deny."
    )


def permission_approved() -> str:
    return "✅ Approved - continuing"


def permission_denied() -> str:
    return "❌ Denied - skipping"


def permission_timeout() -> str:
    return "⏰ Timeout - no response, skipping"


# ---------------------------------------------------------------------------
# Ship it
# ---------------------------------------------------------------------------

def ship_no_pr() -> str:
    return (
        "❌ **Ship It Deployment Failed**\n\n"
        "Could not find PR number in task comments. Cannot deploy."
    )


def ship_started(pr_number: int) -> str:
    return f"🚀 **Ship It Deployment Started**\n\nMerging PR #{pr_number}..."


def deployment_summary(lines: List[str]) -> str:
    return "📦 **Deployment Summary**\n\n" + "\n".join(lines)


def web_deployed(url: str) -> str:
    return f"✅ **Web:** Deployed to production: {url}"


def web_not_configured() -> str:
    return "⚠️ **Web:** No Vercel token configured - manual deployment required"


def ios_build(testflight_link: Optional[str]) -> str:
    if testflight_link:
        return f"📱 **iOS:** TestFlight build will be available at {testflight_link}"
    return "📱 **iOS:** iOS changes merged - submit a TestFlight build manually"


def deployment_complete(pr_number: int, details: List[str]) -> str:
    text = f"🎉 **Deployment Complete!**\n\n✅ PR #{pr_number} merged and deployed"
    if details:
        text += "\n\n" + "\n".join(details)
    return text


def ship_failed(error: str) -> str:
    return f"❌ **Ship It Deployment Failed**\n\n```\n{error}\n```\n\nThe task has been reassigned to you."


# ---------------------------------------------------------------------------
# Recovery and assistant mode
# ---------------------------------------------------------------------------

def recovery_triggered(feedback: str) -> str:
    return (
        "🔄 **Auto-Recovery Triggered**\n\n"
        "Retrying with your feedback:\n\n"
        f"> {feedback[:300]}"
    )


def recovery_failed(error: str) -> str:
    return f"❌ **Recovery Failed**\n\n{error}"


def assistant_response(answer: str) -> str:
    return f"💬 **AI Assistant Response**\n\n{answer}"
