"""Every template the worker posts must be recognized by the marker patterns."""

import pytest

from pr_pilot.core import comments, markers
from pr_pilot.core.task import FileChange, ImplementationPlan, PlannedFile


def _plan() -> ImplementationPlan:
    return ImplementationPlan(
        summary="Fix the typo in the README",
        approach="Edit the heading",
        files=[PlannedFile(path="README.md", purpose="Typo")],
    )


COMPLETION_TEMPLATES = [
    comments.implementation_complete([FileChange(path="README.md", content="x")]),
    comments.pr_created("https://github.com/acme/web/pull/7", "fix: typo", "pr-pilot/1-fix"),
    comments.pr_updated("https://github.com/acme/web/pull/7", "pr-pilot/1-fix"),
    comments.no_changes(),
    comments.pr_creation_failed("push rejected"),
    comments.planning_failed("Max iterations reached"),
    comments.implementation_failed("Budget exceeded"),
    comments.worker_error("boom"),
    comments.assistant_response("Here is the answer"),
    comments.ship_no_pr(),
    comments.ship_started(7),
    comments.ship_failed("merge conflict"),
    comments.deployment_complete(7, []),
]

WORKER_TEMPLATES = COMPLETION_TEMPLATES + [
    comments.starting("Claude Agent", "Fix typo", "acme/web"),
    comments.planning_phase(),
    comments.plan_ready(_plan(), 0.12),
    comments.implementation_phase(),
    comments.retrying_phase("execution"),
    comments.preview_ready("https://fix.preview.dev"),
    comments.preview_unavailable("Deployment timed out"),
    comments.ci_summary("Passed", ["✅ build"]),
    comments.missing_api_key("Claude Agent"),
    comments.deployment_summary(["✅ PR #7 merged to main"]),
    comments.budget_request("execution", 10, 20, 150, 300, 300),
    comments.budget_approved(),
    comments.budget_denied(),
    comments.budget_timeout(),
    comments.permission_request("run_bash", "npm test", 300),
    comments.permission_approved(),
    comments.permission_denied(),
    comments.permission_timeout(),
    comments.recovery_triggered("Try the v2 endpoint"),
    comments.recovery_failed("still broken"),
]


class TestTemplatePairing:
    @pytest.mark.parametrize("text", COMPLETION_TEMPLATES)
    def test_completion_templates_are_completion_markers(self, text):
        assert markers.is_completion_marker(text)

    @pytest.mark.parametrize("text", WORKER_TEMPLATES)
    def test_worker_templates_are_worker_comments(self, text):
        assert markers.is_worker_comment(text)

    def test_starting_is_start_marker(self):
        text = comments.starting("OpenAI Agent", "Add dark mode", "acme/web", ["Use CSS vars"])
        assert markers.is_start_marker(text)
        assert not markers.is_completion_marker(text)

    def test_plan_ready_is_not_completion(self):
        assert not markers.is_completion_marker(comments.plan_ready(_plan()))

    @pytest.mark.parametrize("text", [
        comments.planning_failed("x"),
        comments.implementation_failed("x"),
        comments.worker_error("x"),
        comments.missing_api_key("Claude Agent"),
    ])
    def test_failure_templates(self, text):
        assert markers.is_failure_marker(text)

    def test_success_is_not_failure(self):
        assert not markers.is_failure_marker(
            comments.pr_created("https://github.com/acme/web/pull/7", "fix", "b")
        )

    @pytest.mark.parametrize("text", [
        comments.ship_started(3),
        comments.ship_failed("x"),
        comments.ship_no_pr(),
        comments.deployment_complete(3, ["✅ **Web:** Deployed to production: https://x.dev"]),
    ])
    def test_deployment_templates(self, text):
        assert markers.is_deployment_marker(text)

    def test_pr_created_is_not_deployment(self):
        assert not markers.is_deployment_marker(
            comments.pr_created("https://github.com/acme/web/pull/7", "fix", "b")
        )


class TestApprovalMarkers:
    @pytest.mark.parametrize("text", [
        comments.budget_request("planning", 3, 6, 75, 150, 300),
        comments.permission_request("write_file", "README.md", 300),
    ])
    def test_requests(self, text):
        assert markers.is_approval_request(text)
        assert not markers.is_approval_resolution(text)

    @pytest.mark.parametrize("text", [
        comments.budget_approved(),
        comments.budget_denied(),
        comments.budget_timeout(),
        comments.permission_approved(),
        comments.permission_denied(),
        comments.permission_timeout(),
    ])
    def test_resolutions(self, text):
        assert markers.is_approval_resolution(text)
        assert not markers.is_approval_request(text)


class TestHumanVocabulary:
    @pytest.mark.parametrize("text", ["lgtm", "Thanks!", "ok, great", "Looks good 👍", "ship it"])
    def test_approval_comments(self, text):
        assert markers.is_approval_comment(text)

    @pytest.mark.parametrize("text", [
        "ok but the button is still broken",
        "Please also update the footer",
        "",
    ])
    def test_not_approval(self, text):
        assert not markers.is_approval_comment(text)

    @pytest.mark.parametrize("text", ["ship it", "Ship it! 🚀", "SHIP", "ok, merge and ship"])
    def test_ship_it(self, text):
        assert markers.is_ship_it_comment(text)

    @pytest.mark.parametrize("text", [
        "don't ship it yet",
        "do not ship it",
        "wait, ship it after the fix",
        "shipping notes look fine",
        "lgtm",
    ])
    def test_not_ship_it(self, text):
        assert not markers.is_ship_it_comment(text)

    def test_system_comments(self):
        assert markers.is_system_comment("Alice reassigned this task to Claude Agent")
        assert markers.is_system_comment("Bob created this task")
        assert markers.is_system_comment("anything <!-- SYSTEM_GENERATED_COMMENT -->")
        assert not markers.is_system_comment("The header is misaligned")
