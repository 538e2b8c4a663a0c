"""End-to-end orchestrator tests against an in-memory task store."""

import threading
from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from pr_pilot.core.config import AgentIdentity, WorkerConfig
from pr_pilot.core.orchestrator import FEEDBACK_HEADING, Orchestrator
from pr_pilot.core.pr_driver import PRDriver, RepoWorkspace
from pr_pilot.core.task import Comment, FileChange, ImplementationPlan, PlannedFile, Task, Usage, utcnow
from pr_pilot.integrations.github import CheckSummary, CIStatus
from pr_pilot.llm.base import MAX_TURNS_ERROR, BackendAdapter, ExecutionResult, PlanningResult
from pr_pilot.llm.router import BackendRouter

PR_URL = "https://github.com/acme/web/pull/7"
USERS = {"u-claude": "claude@pr-pilot.dev", "u-alice": "alice@acme.dev", "u-bob": "bob@acme.dev"}


def _make_task(**overrides) -> Task:
    defaults = dict(
        id="t1",
        title="Fix typo",
        description="The README says 'Helo world'.",
        assignee_id="u-claude",
        assignee_email="claude@pr-pilot.dev",
        creator_id="u-alice",
        repository="acme/web",
    )
    defaults.update(overrides)
    return Task(**defaults)


class InMemoryStore:
    """Task store double; comments get strictly increasing timestamps."""

    def __init__(self, *tasks):
        self.tasks = {t.id: t for t in tasks}
        self.comments = {t.id: list(t.comments) for t in tasks}
        self._base = utcnow() - timedelta(hours=1)
        self._tick = 0

    def _stamp(self):
        self._tick += 1
        return self._base + timedelta(seconds=self._tick)

    def list_tasks(self, list_id=None, include_completed=False):
        return [
            t.model_copy(update={"comments": list(self.comments[t.id])})
            for t in self.tasks.values()
            if include_completed or not t.completed
        ]

    def get_comments(self, task_id):
        return list(self.comments[task_id])

    def add_comment(self, task_id, content, agent_id=None):
        comment = Comment(content=content, created_at=self._stamp(), author_id=agent_id, author_is_agent=bool(agent_id))
        self.comments[task_id].append(comment)
        return comment

    def reply(self, task_id, content, author="u-alice"):
        self.comments[task_id].append(Comment(content=content, created_at=self._stamp(), author_id=author))

    def _update(self, task_id, **fields):
        self.tasks[task_id] = self.tasks[task_id].model_copy(update=fields)

    def reassign(self, task_id, user_id):
        self._update(task_id, assignee_id=user_id, assignee_email=USERS[user_id])

    def update_description(self, task_id, description):
        self._update(task_id, description=description)

    def set_working_branch(self, task_id, branch):
        self._update(task_id, working_branch=branch)

    def update_task(self, task_id, **updates):
        self._update(task_id, **updates)

    def find_agent_id(self, email):
        return next((uid for uid, e in USERS.items() if e == email.lower()), None)

    def contents(self, task_id="t1"):
        return [c.content for c in self.comments[task_id]]


class FakeWorkspace(RepoWorkspace):
    """Real file writes, no git."""

    def __init__(self, repos_dir):
        super().__init__(repos_dir)
        self.commits = []
        self.checked_out = []

    def sync(self, owner_repo, base_branch):
        path = self.path_for(owner_repo)
        path.mkdir(parents=True, exist_ok=True)
        return path

    def create_branch(self, path, branch):
        self.checked_out.append(branch)

    def checkout_remote_branch(self, path, branch):
        self.checked_out.append(branch)

    def commit_and_push(self, path, branch, message, identity):
        self.commits.append((branch, message))
        return True

    def head_sha(self, path):
        return f"sha{len(self.commits)}"


class FakeGitHub:
    default_branch = "main"

    def __init__(self):
        self.pulls = {}
        self.merged = []

    def create_pull_request(self, title, body, head_branch, base_branch=None):
        pr = SimpleNamespace(number=7, html_url=PR_URL, title=title, state="open",
                             head=SimpleNamespace(ref=head_branch))
        self.pulls[7] = pr
        return pr

    def get_pull(self, number):
        return self.pulls[number]

    def get_open_pull(self, number):
        pr = self.pulls.get(number)
        return pr if pr is not None and pr.state == "open" else None

    def check_runs(self, sha):
        return CheckSummary(CIStatus.PASSED, ["✅ ci: success"])

    def merge(self, number, commit_title=None):
        self.merged.append(number)
        self.pulls[number].state = "closed"
        return "merge-sha"

    def changed_files(self, number):
        return ["README.md", "docs/guide.md"]


def _plan_ok():
    plan = ImplementationPlan(
        summary="Correct the README greeting",
        approach="Edit the heading and the matching docs line",
        files=[PlannedFile(path="README.md"), PlannedFile(path="docs/guide.md")],
    )
    return PlanningResult(True, plan=plan, usage=Usage(input_tokens=1200, output_tokens=300, cost_usd=0.02))


def _execution_ok():
    return ExecutionResult(
        True,
        files=[
            FileChange(path="README.md", content="# Hello world\n", action="modify"),
            FileChange(path="docs/guide.md", content="Say hello world.\n", action="modify"),
        ],
        commit_message="fix: correct README greeting",
        pr_title="Fix typo in README",
        usage=Usage(input_tokens=3000, output_tokens=800, cost_usd=0.05),
    )


class ScriptedAdapter(BackendAdapter):
    """Returns queued results in order; the last one repeats."""

    name = "scripted"

    def __init__(self, plans=None, executions=None, answer="Use a CSS grid."):
        self.plans = list(plans or [_plan_ok()])
        self.executions = list(executions or [_execution_ok()])
        self._answer = answer
        self.plan_configs = []
        self.descriptions = []

    @staticmethod
    def _next(queue):
        return queue.pop(0) if len(queue) > 1 else queue[0]

    async def plan(self, title, description, config):
        self.plan_configs.append(config)
        self.descriptions.append(description)
        result = self._next(self.plans)
        if isinstance(result, Exception):
            raise result
        return result

    async def execute(self, plan, title, description, config):
        return self._next(self.executions)

    async def answer(self, title, description, config):
        return self._answer


class HumanReplies:
    """Async sleep that posts one queued human reply per call."""

    def __init__(self, store, *replies):
        self.store = store
        self.replies = list(replies)
        self.calls = 0

    async def __call__(self, seconds):
        self.calls += 1
        if self.replies:
            self.store.reply("t1", self.replies.pop(0))


async def _no_sleep(seconds):
    return None


@pytest.fixture
def build(clean_env, tmp_path):
    def _build(store, adapter=None, sleep=_no_sleep, **overrides):
        settings = dict(
            anthropic_api_key="sk-ant",
            github_token="gh",
            workspace=tmp_path,
            repos_dir=tmp_path / "repos",
            agents=[AgentIdentity(email="claude@pr-pilot.dev", name="Claude Agent", backend="claude",
                                  agent_id="u-claude")],
        )
        settings.update(overrides)
        cfg = WorkerConfig(**settings)
        adapter = adapter or ScriptedAdapter()
        github = FakeGitHub()
        workspace = FakeWorkspace(cfg.repos_dir)
        driver = PRDriver(cfg, store, workspace=workspace, github_factory=lambda name: github,
                          vercel_factory=lambda: None, sleep=lambda s: None)
        orchestrator = Orchestrator(cfg, store, router=BackendRouter(cfg, adapters={"claude": adapter}),
                                    driver=driver, sleep=sleep)
        return SimpleNamespace(orchestrator=orchestrator, adapter=adapter, github=github, workspace=workspace)
    return _build


class TestFixTypoToShipIt:
    @pytest.mark.asyncio
    async def test_full_lifecycle(self, build, tmp_path):
        store = InMemoryStore(_make_task())
        env = build(store)

        assert await env.orchestrator.poll_once() == ["t1"]

        contents = store.contents()
        assert contents[0].startswith("🤖 **Claude Agent Starting**")
        assert any(c.startswith("📝 **Implementation Plan**") for c in contents)
        assert any(c.startswith("🎉 **Pull Request Created!**") for c in contents)
        assert contents[-1].startswith("🧪 **CI Checks Passed**")
        assert store.tasks["t1"].assignee_id == "u-alice"
        assert store.tasks["t1"].working_branch.startswith("pr-pilot/")
        assert (tmp_path / "repos" / "acme" / "web" / "README.md").read_text() == "# Hello world\n"
        assert env.adapter.descriptions == ["The README says 'Helo world'."]

        # Back with the human; nothing to do.
        assert await env.orchestrator.poll_once() == []

        store.reassign("t1", "u-claude")
        store.reply("t1", "Ship it! 🚀")
        assert await env.orchestrator.poll_once() == ["t1"]

        assert env.github.merged == [7]
        task = store.tasks["t1"]
        assert task.completed
        assert task.assignee_id == "u-alice"
        last = store.contents()[-1]
        assert last.startswith("🎉 **Deployment Complete!**")
        assert "No Vercel token configured" in last

        assert await env.orchestrator.poll_once() == []

    @pytest.mark.asyncio
    async def test_feedback_updates_the_same_pr(self, build):
        store = InMemoryStore(_make_task())
        env = build(store)
        await env.orchestrator.poll_once()
        first_branch = env.workspace.commits[0][0]

        store.reassign("t1", "u-claude")
        store.reply("t1", "Please also capitalise the heading")
        assert await env.orchestrator.poll_once() == ["t1"]

        assert env.workspace.checked_out[-1] == first_branch
        branch, message = env.workspace.commits[-1]
        assert branch == first_branch
        assert "Based on feedback: Please also capitalise the heading" in message
        contents = store.contents()
        assert "**Continuing from your feedback:**" in [c for c in contents if "Starting" in c][-1]
        assert any(c.startswith("🔄 **PR Updated!**") for c in contents)
        assert "## System Understanding" in store.tasks["t1"].description

    @pytest.mark.asyncio
    async def test_git_and_ci_work_runs_off_the_event_loop(self, build):
        store = InMemoryStore(_make_task())
        env = build(store)
        threads = {}
        driver = env.orchestrator.driver
        for name in ("prepare", "deliver"):
            original = getattr(driver, name)

            def recorder(*args, _name=name, _original=original, **kwargs):
                threads[_name] = threading.current_thread()
                return _original(*args, **kwargs)

            setattr(driver, name, recorder)

        await env.orchestrator.poll_once()

        assert set(threads) == {"prepare", "deliver"}
        assert threading.main_thread() not in threads.values()


class TestEscalation:
    @pytest.mark.asyncio
    async def test_approved_retry_runs_once_with_raised_limits(self, build):
        store = InMemoryStore(_make_task())
        exhausted = PlanningResult(False, error=f"{MAX_TURNS_ERROR}: reached 30 turns", exhausted=True)
        adapter = ScriptedAdapter(plans=[exhausted, _plan_ok()])
        env = build(store, adapter, sleep=HumanReplies(store, "continue"))

        await env.orchestrator.poll_once()

        assert [c.planning.max_iterations for c in adapter.plan_configs] == [30, 150]
        assert adapter.plan_configs[1].planning.max_budget_usd == 6.0
        contents = store.contents()
        assert any("Task Complexity Limit Reached" in c for c in contents)
        assert any(c.startswith("✅ Budget increase approved") for c in contents)
        assert any(c.startswith("🔄 **Retrying Planning**") for c in contents)
        assert any(c.startswith("🎉 **Pull Request Created!**") for c in contents)

    @pytest.mark.asyncio
    async def test_denied_escalation_fails_the_phase(self, build):
        store = InMemoryStore(_make_task())
        exhausted = PlanningResult(False, error=f"{MAX_TURNS_ERROR}: reached 30 turns", exhausted=True)
        adapter = ScriptedAdapter(plans=[exhausted])
        env = build(store, adapter, sleep=HumanReplies(store, "stop"))

        await env.orchestrator.poll_once()

        assert len(adapter.plan_configs) == 1
        last = store.contents()[-1]
        assert last.startswith("❌ **Planning Failed**")
        assert "Task is too complex for the current limits" in last
        assert store.tasks["t1"].assignee_id == "u-alice"


class TestFailures:
    @pytest.mark.asyncio
    async def test_missing_credentials(self, build):
        store = InMemoryStore(_make_task())
        env = build(store, anthropic_api_key=None)
        await env.orchestrator.poll_once()

        assert store.contents() == [
            "❌ **Error**: No API key configured for Claude Agent.\n\n"
            "Add the provider key to the worker environment and reassign the task."
        ]
        assert store.tasks["t1"].assignee_id == "u-alice"
        assert env.adapter.plan_configs == []

    @pytest.mark.asyncio
    async def test_self_hosted_without_gateway_is_handed_back(self, build):
        store = InMemoryStore(_make_task(assignee_id="u-oc", assignee_email="nightly.oc@pr-pilot.dev"))
        env = build(store)

        assert await env.orchestrator.poll_once() == ["t1"]

        assert store.contents() == [
            "❌ **Error**: No API key configured for nightly.oc.\n\n"
            "Add the provider key to the worker environment and reassign the task."
        ]
        assert store.tasks["t1"].assignee_id == "u-alice"

    @pytest.mark.asyncio
    async def test_unroutable_task_is_untouched(self, build):
        task = _make_task(assignee_id="u-bob", assignee_email="bob@acme.dev")
        store = InMemoryStore(task)
        env = build(store)
        await env.orchestrator.process_task(task)
        assert store.contents() == []

    @pytest.mark.asyncio
    async def test_worker_error_reassigns(self, build):
        store = InMemoryStore(_make_task())
        env = build(store, ScriptedAdapter(plans=[RuntimeError("boom")]))
        await env.orchestrator.poll_once()

        last = store.contents()[-1]
        assert last.startswith("❌ **Worker Error**")
        assert "boom" in last
        assert store.tasks["t1"].assignee_id == "u-alice"
        assert env.orchestrator.currently_processing == set()

    @pytest.mark.asyncio
    async def test_protected_path_blocks_pr(self, build):
        store = InMemoryStore(_make_task())
        sneaky = ExecutionResult(True, files=[FileChange(path=".env", content="KEY=1\n", action="modify")])
        env = build(store, ScriptedAdapter(executions=[sneaky]))
        await env.orchestrator.poll_once()

        last = store.contents()[-1]
        assert last.startswith("❌ **Implementation Failed**")
        assert "Modified protected path: .env" in last
        assert env.workspace.commits == []

    @pytest.mark.asyncio
    async def test_no_changes(self, build):
        store = InMemoryStore(_make_task())
        env = build(store, ScriptedAdapter(executions=[ExecutionResult(True)]))
        await env.orchestrator.poll_once()
        assert store.contents()[-1].startswith("⚠️ **No Changes Made**")

    @pytest.mark.asyncio
    async def test_task_in_flight_is_not_reentered(self, build):
        task = _make_task()
        store = InMemoryStore(task)
        env = build(store)
        env.orchestrator._processing.add("t1")

        await env.orchestrator.handle_task(task)
        assert await env.orchestrator.poll_once() == []
        assert store.contents() == []


class TestAssistantMode:
    @pytest.mark.asyncio
    async def test_answer_written_to_description_and_comment(self, build):
        store = InMemoryStore(_make_task(repository=None, title="How should I lay out the pricing page?"))
        env = build(store)
        await env.orchestrator.poll_once()

        assert store.contents() == ["💬 **AI Assistant Response**\n\nUse a CSS grid."]
        assert store.tasks["t1"].description.endswith("## AI Assistant Response\n\nUse a CSS grid.")
        assert store.tasks["t1"].assignee_id == "u-alice"


def _failed_run_store():
    store = InMemoryStore(_make_task())
    store.add_comment("t1", "🤖 **Claude Agent Starting**\n\n**Task:** Fix typo", "u-claude")
    store.add_comment("t1", "❌ **Planning Failed**\n\nCould not generate implementation plan", "u-claude")
    store.reply("t1", "Try looking in docs/ instead")
    return store


class TestRecovery:
    @pytest.mark.asyncio
    async def test_sweep_redrives_with_feedback(self, build):
        store = _failed_run_store()
        env = build(store)
        env.orchestrator.process_task = AsyncMock()

        assert await env.orchestrator.recovery_sweep() == ["t1"]

        enhanced = env.orchestrator.process_task.await_args.args[0]
        assert f"{FEEDBACK_HEADING}\n\nTry looking in docs/ instead" in enhanced.description
        assert store.contents()[-1].startswith("🔄 **Auto-Recovery Triggered**")

    @pytest.mark.asyncio
    async def test_sweep_skips_tasks_handled_this_cycle(self, build):
        store = _failed_run_store()
        env = build(store, recovery_every=1)
        env.orchestrator.process_task = AsyncMock()

        assert await env.orchestrator.poll_once() == ["t1"]
        assert env.orchestrator.process_task.await_count == 1


class TestLoop:
    @pytest.mark.asyncio
    async def test_run_until_stopped(self, build):
        store = InMemoryStore()
        env = None

        async def stop_after_first_poll(seconds):
            env.orchestrator.stop()

        env = build(store, sleep=stop_after_first_poll)
        await env.orchestrator.run()
        assert env.orchestrator._polls == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_does_not_stop_the_loop(self, build):
        store = InMemoryStore()
        env = None
        sleeps = []

        async def stop_after_second_poll(seconds):
            sleeps.append(seconds)
            if len(sleeps) == 2:
                env.orchestrator.stop()

        env = build(store, sleep=stop_after_second_poll)
        env.orchestrator.poll_once = AsyncMock(side_effect=[RuntimeError("boom"), []])
        await env.orchestrator.run()

        assert env.orchestrator.poll_once.await_count == 2

    def test_resolve_agent_ids(self, build):
        store = InMemoryStore()
        env = build(store, agents=[AgentIdentity(email="claude@pr-pilot.dev", name="Claude Agent", backend="claude")])
        env.orchestrator.resolve_agent_ids()
        assert "u-claude" in env.orchestrator.agent_ids
