"""Tests for the bounded tool-use loop and the litellm-backed adapters."""

import json
from pathlib import Path
from types import SimpleNamespace

import pytest

from pr_pilot.core.config import RepoConfig, SafetySettings
from pr_pilot.core.prompt_builder import (
    EMPTY_PLAN_NUDGE,
    MIN_FILES_RETRY_PROMPT,
    REQUEST_COMPLETION_NUDGE,
    USE_TOOLS_NUDGE,
)
from pr_pilot.core.task import ImplementationPlan, PlannedFile
from pr_pilot.llm.base import MAX_BUDGET_ERROR, MAX_TURNS_ERROR, BackendConfig, PhaseLimits
from pr_pilot.llm.claude_backend import ClaudeBackend
from pr_pilot.llm.exploration import PERMISSION_DENIED, ExplorationLoop, Pricing, parse_tool_calls
from pr_pilot.llm.openai_backend import OpenAIBackend
from pr_pilot.safeguards.retry_handler import RetryHandler
from pr_pilot.sandbox.policy import SafetyPolicy
from pr_pilot.sandbox.tool_executor import ToolExecutor
from pr_pilot.sandbox.tool_registry import tools_for_phase
from pr_pilot.validation.plan_validator import PlanRules


def _call(name, args, call_id="call_1"):
    return SimpleNamespace(id=call_id, function=SimpleNamespace(name=name, arguments=json.dumps(args)))


def _response(content="", tool_calls=None, prompt_tokens=100, completion_tokens=50):
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(
        choices=[SimpleNamespace(message=message)],
        usage=SimpleNamespace(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
    )


def _plan_text(*paths):
    body = {"summary": "Fix the typo", "approach": "Edit", "files": [{"path": p} for p in paths]}
    return f"Here is my plan:\n```json\n{json.dumps(body)}\n```"


class FakeCompletion:
    """Replays scripted responses and records every request."""

    def __init__(self, *responses, on_call=None):
        self.responses = list(responses)
        self.requests = []
        self.on_call = on_call

    async def __call__(self, **kwargs):
        self.requests.append({**kwargs, "messages": list(kwargs["messages"])})
        if self.on_call:
            self.on_call()
        if not self.responses:
            raise AssertionError("unexpected extra completion call")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


async def _no_sleep(seconds):
    return None


@pytest.fixture
def repo(tmp_path):
    (tmp_path / "README.md").write_text("# Helo world\n")
    (tmp_path / "docs").mkdir()
    (tmp_path / "docs" / "guide.md").write_text("Helo again\n")
    return tmp_path


def _loop(repo: Path, completion, phase="planning", limits=None, **kwargs) -> ExplorationLoop:
    kwargs.setdefault("pricing", Pricing(0.003, 0.015))
    return ExplorationLoop(
        model="anthropic/claude-test",
        executor=ToolExecutor(repo, SafetyPolicy()),
        tools=tools_for_phase(phase),
        limits=limits or PhaseLimits(10, 5.0, 600),
        safety=SafetySettings(),
        retry=RetryHandler(sleep=_no_sleep),
        completion=completion,
        **kwargs,
    )


class TestParseToolCalls:
    def test_string_and_dict_arguments(self):
        message = SimpleNamespace(tool_calls=[
            _call("read_file", {"file_path": "a.md"}),
            SimpleNamespace(id=None, function=SimpleNamespace(name="glob_files", arguments={"pattern": "*"})),
        ])
        calls = parse_tool_calls(message)
        assert calls[0].arguments == {"file_path": "a.md"}
        assert calls[1].id == "call_1"
        assert json.loads(calls[1].raw_arguments) == {"pattern": "*"}

    def test_bad_json_arguments_become_empty(self):
        message = SimpleNamespace(tool_calls=[
            SimpleNamespace(id="x", function=SimpleNamespace(name="read_file", arguments="{oops")),
        ])
        assert parse_tool_calls(message)[0].arguments == {}


class TestPlanning:
    @pytest.mark.asyncio
    async def test_explore_then_plan(self, repo):
        completion = FakeCompletion(
            _response(tool_calls=[_call("glob_files", {"pattern": "**/*.md"})]),
            _response(_plan_text("README.md", "docs/guide.md")),
        )
        result = await _loop(repo, completion).run_planning("system", "user", PlanRules())

        assert result.success
        assert [f.path for f in result.plan.files] == ["README.md", "docs/guide.md"]
        assert result.iterations == 2
        assert result.usage.input_tokens == 200
        tool_message = completion.requests[1]["messages"][-1]
        assert tool_message["role"] == "tool"
        assert "docs/guide.md" in tool_message["content"]

    @pytest.mark.asyncio
    async def test_prose_without_tools_gets_nudged(self, repo):
        completion = FakeCompletion(
            _response("I will look at the README."),
            _response(tool_calls=[_call("read_file", {"file_path": "README.md"})]),
            _response(_plan_text("README.md")),
        )
        result = await _loop(repo, completion).run_planning("system", "user", PlanRules())

        assert result.success
        assert completion.requests[1]["messages"][-1] == {"role": "user", "content": USE_TOOLS_NUDGE}

    @pytest.mark.asyncio
    async def test_below_minimum_retried_once(self, repo):
        completion = FakeCompletion(
            _response(tool_calls=[_call("glob_files", {"pattern": "**/*.md"})]),
            _response(_plan_text("README.md")),
            _response(_plan_text("README.md", "docs/guide.md")),
        )
        result = await _loop(repo, completion).run_planning("system", "user", PlanRules(min_files=2))

        assert result.success
        assert completion.requests[2]["messages"][-1]["content"] == MIN_FILES_RETRY_PROMPT.format(min_files=2)

    @pytest.mark.asyncio
    async def test_empty_plan_nudged_when_rejected(self, repo):
        completion = FakeCompletion(
            _response(tool_calls=[_call("glob_files", {"pattern": "**/*.md"})]),
            _response(_plan_text()),
            _response(_plan_text("README.md")),
        )
        result = await _loop(repo, completion).run_planning("system", "user", PlanRules())

        assert result.success
        assert completion.requests[2]["messages"][-1] == {"role": "user", "content": EMPTY_PLAN_NUDGE}

    @pytest.mark.asyncio
    async def test_empty_plan_accepted_when_allowed(self, repo):
        completion = FakeCompletion(
            _response(tool_calls=[_call("glob_files", {"pattern": "**/*.md"})]),
            _response(_plan_text()),
        )
        rules = PlanRules(reject_empty=False, min_files=0)
        result = await _loop(repo, completion).run_planning("system", "user", rules)

        assert result.success
        assert result.plan.files == []
        assert len(completion.requests) == 2

    @pytest.mark.asyncio
    async def test_oversized_plan_truncated(self, repo):
        completion = FakeCompletion(
            _response(tool_calls=[_call("glob_files", {"pattern": "**/*"})]),
            _response(_plan_text("a.md", "b.md", "c.md")),
        )
        result = await _loop(repo, completion).run_planning("system", "user", PlanRules(max_files=2))

        assert result.success
        assert [f.path for f in result.plan.files] == ["a.md", "b.md"]
        assert result.warnings

    @pytest.mark.asyncio
    async def test_iteration_ceiling_is_exhausted(self, repo):
        completion = FakeCompletion(*[
            _response(tool_calls=[_call("glob_files", {"pattern": "**/*.md"}, f"c{i}")]) for i in range(3)
        ])
        loop = _loop(repo, completion, limits=PhaseLimits(3, 5.0, 600))
        result = await loop.run_planning("system", "user", PlanRules())

        assert not result.success
        assert result.exhausted
        assert result.error.startswith(MAX_TURNS_ERROR)

    @pytest.mark.asyncio
    async def test_budget_ceiling_is_exhausted(self, repo):
        completion = FakeCompletion(*[
            _response(tool_calls=[_call("glob_files", {"pattern": "*"}, f"c{i}")], prompt_tokens=1500)
            for i in range(2)
        ])
        loop = _loop(repo, completion, limits=PhaseLimits(10, 2.0, 600), pricing=Pricing(1.0, 0.0))
        result = await loop.run_planning("system", "user", PlanRules())

        assert result.exhausted
        assert result.error.startswith(MAX_BUDGET_ERROR)
        assert result.usage.cost_usd == pytest.approx(3.0)

    @pytest.mark.asyncio
    async def test_mutating_tool_unavailable_in_planning(self, repo):
        completion = FakeCompletion(
            _response(tool_calls=[_call("write_file", {"file_path": "x.md", "content": "x"})]),
            _response(_plan_text("README.md")),
        )
        await _loop(repo, completion).run_planning("system", "user", PlanRules())

        assert not (repo / "x.md").exists()
        assert "not available" in completion.requests[1]["messages"][-1]["content"]

    @pytest.mark.asyncio
    async def test_provider_error_fails_phase(self, repo):
        completion = FakeCompletion(ValueError("invalid x-api-key"))
        result = await _loop(repo, completion).run_planning("system", "user", PlanRules())

        assert not result.success
        assert not result.exhausted
        assert result.error == "invalid x-api-key"


class TestExecution:
    @pytest.mark.asyncio
    async def test_edit_then_complete(self, repo):
        completion = FakeCompletion(
            _response(tool_calls=[_call("edit_file", {
                "file_path": "README.md", "old_string": "Helo", "new_string": "Hello",
            })]),
            _response(tool_calls=[_call("task_complete", {
                "commit_message": "fix: correct README typo", "pr_title": "Fix typo",
            })]),
        )
        result = await _loop(repo, completion, phase="execution").run_execution("system", "user", "Fix typo")

        assert result.success
        assert [f.path for f in result.files] == ["README.md"]
        assert result.commit_message == "fix: correct README typo"
        assert (repo / "README.md").read_text() == "# Hello world\n"

    @pytest.mark.asyncio
    async def test_nudged_to_complete(self, repo):
        completion = FakeCompletion(
            _response("All done."),
            _response(tool_calls=[_call("task_complete", {})]),
        )
        result = await _loop(repo, completion, phase="execution").run_execution("system", "user", "Fix typo")

        assert result.success
        assert result.commit_message == "feat: Fix typo"
        assert completion.requests[1]["messages"][-1]["content"] == REQUEST_COMPLETION_NUDGE

    @pytest.mark.asyncio
    async def test_permission_hook_denial(self, repo):
        asked = []

        async def deny(tool, args):
            asked.append(tool)
            return False

        completion = FakeCompletion(
            _response(tool_calls=[_call("write_file", {"file_path": "new.md", "content": "x"})]),
            _response(tool_calls=[_call("task_complete", {})]),
        )
        loop = _loop(repo, completion, phase="execution", permission_hook=deny)
        result = await loop.run_execution("system", "user", "Add file")

        assert asked == ["write_file"]
        assert not (repo / "new.md").exists()
        assert result.files == []
        assert completion.requests[1]["messages"][-1]["content"] == PERMISSION_DENIED

    @pytest.mark.asyncio
    async def test_timeout_with_files_is_partial_success(self, repo):
        now = [0.0]

        def advance():
            now[0] += 100

        completion = FakeCompletion(
            _response(tool_calls=[_call("write_file", {"file_path": "notes.md", "content": "n"})]),
            _response(tool_calls=[_call("read_file", {"file_path": "notes.md"})]),
            on_call=advance,
        )
        loop = _loop(repo, completion, phase="execution", limits=PhaseLimits(10, 5.0, 150), clock=lambda: now[0])
        result = await loop.run_execution("system", "user", "Notes")

        assert result.success
        assert "timed out" in result.error
        assert [f.path for f in result.files] == ["notes.md"]

    @pytest.mark.asyncio
    async def test_ceiling_without_files_is_exhausted(self, repo):
        completion = FakeCompletion(_response(tool_calls=[_call("read_file", {"file_path": "README.md"})]))
        loop = _loop(repo, completion, phase="execution", limits=PhaseLimits(1, 5.0, 600))
        result = await loop.run_execution("system", "user", "Fix typo")

        assert not result.success
        assert result.exhausted


class TestToolCallingBackend:
    def _config(self, repo, api_key="sk-test"):
        return BackendConfig(
            backend="claude",
            model="claude-sonnet-4-20250514",
            api_key=api_key,
            repo_path=repo,
            repo_config=RepoConfig(),
            planning=PhaseLimits(5, 3.0, 600),
            execution=PhaseLimits(5, 10.0, 900),
        )

    @pytest.mark.asyncio
    async def test_plan_routes_through_litellm_prefix(self, repo):
        completion = FakeCompletion(
            _response(tool_calls=[_call("glob_files", {"pattern": "**/*.md"})]),
            _response(_plan_text("README.md")),
        )
        backend = ClaudeBackend(completion=completion, sleep=_no_sleep)
        result = await backend.plan("Fix typo", "README typo", self._config(repo))

        assert result.success
        assert completion.requests[0]["model"] == "anthropic/claude-sonnet-4-20250514"
        assert completion.requests[0]["api_key"] == "sk-test"
        names = {t["function"]["name"] for t in completion.requests[0]["tools"]}
        assert "write_file" not in names

    @pytest.mark.asyncio
    async def test_openai_disables_parallel_calls(self, repo):
        plan = ImplementationPlan(summary="s", files=[PlannedFile(path="README.md")])
        completion = FakeCompletion(_response(tool_calls=[_call("task_complete", {})]))
        backend = OpenAIBackend(completion=completion, sleep=_no_sleep)
        await backend.execute(plan, "Fix typo", "", self._config(repo))

        assert completion.requests[0]["parallel_tool_calls"] is False
        assert completion.requests[0]["model"] == "openai/claude-sonnet-4-20250514"

    @pytest.mark.asyncio
    async def test_missing_key(self, repo):
        backend = ClaudeBackend(completion=FakeCompletion(), sleep=_no_sleep)
        result = await backend.plan("Fix typo", "", self._config(repo, api_key=None))
        assert not result.success
        assert "No API key" in result.error

    @pytest.mark.asyncio
    async def test_answer(self, repo):
        completion = FakeCompletion(_response("  Deploys run on merge.  "))
        backend = ClaudeBackend(completion=completion, sleep=_no_sleep)
        answer = await backend.answer("How do deploys work?", "", self._config(repo))

        assert answer == "Deploys run on merge."
        assert "tools" not in completion.requests[0]
