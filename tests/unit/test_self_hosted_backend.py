"""Tests for the self-hosted gateway adapter."""

import json
import threading

import httpx
import pytest

from pr_pilot.core.config import RepoConfig
from pr_pilot.core.task import ImplementationPlan, PlannedFile
from pr_pilot.llm.base import MAX_TURNS_ERROR, BackendConfig, PhaseLimits
from pr_pilot.llm.self_hosted_backend import (
    GatewayClient,
    GatewayError,
    SelfHostedBackend,
    capture_git_changes,
)
from pr_pilot.utils.subprocess_utils import run_git_command


async def _no_sleep(seconds):
    return None


class FakeGateway:
    """Stands in for GatewayClient with a scripted status sequence."""

    def __init__(self, statuses, messages, on_finish=None):
        self.statuses = list(statuses)
        self.messages = messages
        self.on_finish = on_finish
        self.sent = []
        self.stopped = []

    def send(self, prompt, model, max_turns, working_directory):
        self.sent.append({"prompt": prompt, "model": model, "max_turns": max_turns,
                          "thread": threading.current_thread()})
        return "sess-1"

    def status(self, session_id):
        status = self.statuses.pop(0) if self.statuses else "running"
        if status == "completed" and self.on_finish:
            self.on_finish()
        return status

    def history(self, session_id):
        return self.messages

    def stop(self, session_id):
        self.stopped.append(session_id)


def _config(repo, planning=PhaseLimits(20, 3.0, 600), execution=PhaseLimits(40, 10.0, 900)):
    return BackendConfig(
        backend="self_hosted",
        model="default",
        api_key="gw-token",
        repo_path=repo,
        repo_config=RepoConfig(),
        planning=planning,
        execution=execution,
    )


@pytest.fixture
def git_repo(tmp_path):
    run_git_command(["init", "-q"], cwd=tmp_path)
    return tmp_path


class TestGatewayClient:
    def test_json_rpc_call(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            seen.append((request.url.path, request.headers.get("authorization"), body))
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": {"sessionId": "s-9"}})

        client = GatewayClient("https://gw.local/", "tok", transport=httpx.MockTransport(handler))
        assert client.send("do it", "default", 30, "/repo") == "s-9"

        path, auth, body = seen[0]
        assert path == "/rpc"
        assert auth == "Bearer tok"
        assert body["method"] == "sessions_send"
        assert body["params"]["maxTurns"] == 30

    def test_rpc_error_raises(self):
        def handler(request):
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": {"message": "no capacity"}})

        client = GatewayClient("https://gw.local", transport=httpx.MockTransport(handler))
        with pytest.raises(GatewayError, match="no capacity"):
            client.call("sessions_send")

    def test_http_error_raises(self):
        client = GatewayClient("https://gw.local", transport=httpx.MockTransport(lambda r: httpx.Response(502)))
        with pytest.raises(GatewayError):
            client.call("ping")
        assert client.ping() is False

    def test_status_lookup(self):
        def handler(request):
            return httpx.Response(200, json={"result": [{"id": "a", "status": "running"}, {"id": "b", "status": "completed"}]})

        client = GatewayClient("https://gw.local", transport=httpx.MockTransport(handler))
        assert client.status("b") == "completed"
        assert client.status("zzz") is None


class TestPlanning:
    @pytest.mark.asyncio
    async def test_plan_from_session_output(self, tmp_path):
        plan_json = json.dumps({"summary": "Fix typo", "files": [{"path": "README.md"}]})
        gateway = FakeGateway(
            ["running", "completed"],
            [{"role": "user", "content": "prompt"}, {"role": "assistant", "content": f"```json\n{plan_json}\n```"}],
        )
        backend = SelfHostedBackend("https://gw.local", client=gateway, sleep=_no_sleep)
        result = await backend.plan("Fix typo", "", _config(tmp_path))

        assert result.success
        assert result.plan.files[0].path == "README.md"
        assert gateway.sent[0]["max_turns"] == 20
        assert gateway.sent[0]["thread"] is not threading.main_thread()

    @pytest.mark.asyncio
    async def test_paths_recovered_from_prose(self, tmp_path):
        gateway = FakeGateway(["completed"], [
            {"role": "assistant", "content": "I will update `src/app.ts` and `src/header.ts`."},
        ])
        backend = SelfHostedBackend("https://gw.local", client=gateway, sleep=_no_sleep)
        result = await backend.plan("Fix header", "", _config(tmp_path))

        assert result.success
        assert [f.path for f in result.plan.files] == ["src/app.ts", "src/header.ts"]

    @pytest.mark.asyncio
    async def test_prose_plan_gets_complexity_and_considerations(self, tmp_path):
        gateway = FakeGateway(["completed"], [
            {"role": "assistant", "content": "Update `src/app.ts`.\n- Keep the header sticky\n- Check mobile layout"},
        ])
        backend = SelfHostedBackend("https://gw.local", client=gateway, sleep=_no_sleep)
        result = await backend.plan("Fix header", "", _config(tmp_path))

        assert result.plan.complexity == "simple"
        assert result.plan.considerations == ["Keep the header sticky", "Check mobile layout"]

    @pytest.mark.asyncio
    async def test_timeout_without_plan_is_exhausted(self, tmp_path):
        gateway = FakeGateway([], [])
        backend = SelfHostedBackend("https://gw.local", poll_interval=300, client=gateway, sleep=_no_sleep)
        result = await backend.plan("Fix typo", "", _config(tmp_path))

        assert not result.success
        assert result.exhausted
        assert result.error.startswith(MAX_TURNS_ERROR)
        assert gateway.stopped == ["sess-1"]

    @pytest.mark.asyncio
    async def test_failed_session(self, tmp_path):
        gateway = FakeGateway(["failed"], [{"role": "assistant", "content": "crashed"}])
        backend = SelfHostedBackend("https://gw.local", client=gateway, sleep=_no_sleep)
        result = await backend.plan("Fix typo", "", _config(tmp_path))
        assert result.error == "Session failed"


class TestExecution:
    @pytest.mark.asyncio
    async def test_changes_read_from_git(self, git_repo):
        def edit():
            (git_repo / "README.md").write_text("# Hello\n")

        gateway = FakeGateway(
            ["running", "completed"],
            [{"role": "assistant", "content": "Updated the README.\nCommit message: fix: README typo"}],
            on_finish=edit,
        )
        backend = SelfHostedBackend("https://gw.local", client=gateway, sleep=_no_sleep)
        plan = ImplementationPlan(summary="s", files=[PlannedFile(path="README.md")])
        result = await backend.execute(plan, "Fix typo", "", _config(git_repo))

        assert result.success
        assert [(f.path, f.action) for f in result.files] == [("README.md", "create")]
        assert result.commit_message == "fix: README typo"

    @pytest.mark.asyncio
    async def test_files_taken_from_output_when_checkout_untouched(self, git_repo):
        output = (
            "I could not write to disk, here is the change:\n\n"
            "### `README.md`\n```markdown\n# Hello\n```\n"
        )
        gateway = FakeGateway(["completed"], [{"role": "assistant", "content": output}])
        backend = SelfHostedBackend("https://gw.local", client=gateway, sleep=_no_sleep)
        plan = ImplementationPlan(summary="s", files=[PlannedFile(path="README.md")])
        result = await backend.execute(plan, "Fix typo", "", _config(git_repo))

        assert result.success
        assert [(f.path, f.content) for f in result.files] == [("README.md", "# Hello\n")]
        assert result.commit_message == "feat: Fix typo"

    @pytest.mark.asyncio
    async def test_timeout_without_changes_is_exhausted(self, git_repo):
        gateway = FakeGateway([], [])
        backend = SelfHostedBackend("https://gw.local", poll_interval=1000, client=gateway, sleep=_no_sleep)
        plan = ImplementationPlan(summary="s", files=[PlannedFile(path="README.md")])
        result = await backend.execute(plan, "Fix typo", "", _config(git_repo))

        assert not result.success
        assert result.exhausted


def test_capture_git_changes_nested_untracked(git_repo):
    (git_repo / "src" / "lib").mkdir(parents=True)
    (git_repo / "src" / "lib" / "util.py").write_text("X = 1\n")
    changes = capture_git_changes(git_repo)
    assert [(c.path, c.action, c.content) for c in changes] == [("src/lib/util.py", "create", "X = 1\n")]
