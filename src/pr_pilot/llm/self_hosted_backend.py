"""Adapter for self-hosted worker sessions behind a JSON-RPC gateway.

Instead of driving request/response turns, the adapter opens a session on
the gateway, polls its status until it finishes, then reads the session
history. Execution changes are taken from the checkout with git.
"""

import asyncio
import itertools
import logging
import re
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from ..core.prompt_builder import PromptBuilder, PromptContext
from ..core.task import FileChange, ImplementationPlan, Usage
from ..utils.subprocess_utils import run_git_command
from ..validation.plan_validator import PlanRules, validate_plan
from ..validation.response_parser import (
    ResponseFormatError,
    assess_complexity,
    extract_considerations,
    extract_file_paths,
    parse_generated_code,
    parse_plan_response,
)
from .base import MAX_TURNS_ERROR, BackendAdapter, BackendConfig, ExecutionResult, PlanningResult

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 2.0
PLANNING_TIMEOUT = 10 * 60
EXECUTION_TIMEOUT = 30 * 60

_COMMIT_LINE_RE = re.compile(r"^(?:commit message|commit):\s*(.+)$", re.IGNORECASE | re.MULTILINE)


class GatewayError(Exception):
    """The gateway rejected a call or returned an RPC error."""


class GatewayClient:
    """JSON-RPC over HTTP to the session gateway."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._http = httpx.Client(base_url=base_url.rstrip("/"), headers=headers, timeout=timeout, transport=transport)
        self._ids = itertools.count(1)

    def close(self) -> None:
        self._http.close()

    def call(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params or {}}
        try:
            response = self._http.post("/rpc", json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise GatewayError(f"{method} failed: {e}") from e
        body = response.json()
        if body.get("error"):
            error = body["error"]
            raise GatewayError(error.get("message", str(error)) if isinstance(error, dict) else str(error))
        return body.get("result")

    def ping(self) -> bool:
        try:
            return bool((self.call("ping") or {}).get("pong"))
        except GatewayError:
            return False

    def send(self, prompt: str, model: str, max_turns: int, working_directory: str) -> str:
        result = self.call("sessions_send", {
            "prompt": prompt,
            "model": model,
            "maxTurns": max_turns,
            "workingDirectory": working_directory,
        })
        return result["sessionId"]

    def status(self, session_id: str) -> Optional[str]:
        for session in self.call("sessions_list") or []:
            if session.get("id") == session_id:
                return session.get("status")
        return None

    def history(self, session_id: str) -> List[Dict[str, Any]]:
        return (self.call("sessions_history", {"sessionId": session_id}) or {}).get("messages", [])

    def stop(self, session_id: str) -> None:
        self.call("sessions_stop", {"sessionId": session_id})


def capture_git_changes(repo_path: Path) -> List[FileChange]:
    """Working-tree changes as file changes, deletions included."""
    status = run_git_command(["status", "--porcelain", "--untracked-files=all"], cwd=repo_path)
    changes = []
    for line in status.stdout.splitlines():
        if len(line) < 4:
            continue
        code, path = line[:2], line[3:].strip()
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        path = path.strip('"')
        if "D" in code:
            changes.append(FileChange(path=path, content="", action="delete"))
            continue
        target = Path(repo_path) / path
        if not target.is_file():
            continue
        action = "create" if code.strip() in ("??", "A") else "modify"
        changes.append(FileChange(path=path, content=target.read_text(encoding="utf-8", errors="replace"), action=action))
    return changes


class SelfHostedBackend(BackendAdapter):
    """Delegates a whole phase to a remote worker session."""

    name = "self_hosted"

    def __init__(
        self,
        gateway_url: str,
        token: Optional[str] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        client: Optional[GatewayClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client or GatewayClient(gateway_url, token)
        self.poll_interval = poll_interval
        self._sleep = sleep

    async def _run_session(self, prompt: str, config: BackendConfig, max_turns: int, timeout: float) -> Dict[str, Any]:
        """Send, poll to a terminal status, then collect assistant text."""
        # GatewayClient is synchronous httpx; run its calls off the event loop
        session_id = await asyncio.to_thread(
            self.client.send, prompt, config.model, max_turns, str(config.repo_path),
        )
        logger.info(f"🦞 Session {session_id} started on gateway")
        waited = 0.0
        status = None
        while waited < timeout:
            await self._sleep(self.poll_interval)
            waited += self.poll_interval
            try:
                status = await asyncio.to_thread(self.client.status, session_id)
            except GatewayError as e:
                logger.warning(f"⚠️ Session status poll failed: {e}")
                continue
            if status in ("completed", "failed"):
                break
        else:
            logger.warning(f"⚠️ Session {session_id} timed out after {timeout:.0f}s")
            try:
                await asyncio.to_thread(self.client.stop, session_id)
            except GatewayError as e:
                logger.warning(f"⚠️ Could not stop session {session_id}: {e}")
            status = "timeout"

        try:
            messages = await asyncio.to_thread(self.client.history, session_id)
        except GatewayError as e:
            logger.warning(f"⚠️ Session history unavailable: {e}")
            messages = []
        text = "\n\n".join(
            m.get("content", "") for m in messages if m.get("role") == "assistant" and m.get("content")
        )
        return {"session_id": session_id, "status": status, "text": text}

    def _prompts(self, title: str, description: str, config: BackendConfig) -> PromptBuilder:
        return PromptBuilder(PromptContext(
            config=config.repo_config,
            task_title=title,
            task_description=description or "",
            task_context=config.task_context,
        ))

    async def plan(self, title: str, description: str, config: BackendConfig) -> PlanningResult:
        prompts = self._prompts(title, description, config)
        prompt = f"{prompts.build_planning_prompt()}\n\n{prompts.planning_user_message()}"
        try:
            session = await self._run_session(
                prompt, config, config.planning.max_iterations,
                min(config.planning.timeout_seconds, PLANNING_TIMEOUT),
            )
        except GatewayError as e:
            return PlanningResult(False, error=f"Gateway error: {e}")

        text = session["text"]
        if session["status"] == "failed":
            return PlanningResult(False, raw_response=text, error="Session failed")
        try:
            plan = ImplementationPlan.model_validate(parse_plan_response(text).data)
        except (ResponseFormatError, ValueError):
            paths = extract_file_paths(text)
            if not paths:
                exhausted = session["status"] == "timeout"
                error = f"{MAX_TURNS_ERROR}: session timed out without a plan" if exhausted \
                    else "No plan found in session output"
                return PlanningResult(False, raw_response=text, error=error, exhausted=exhausted)
            summary = next((line.strip() for line in text.splitlines() if line.strip()), title)
            plan = ImplementationPlan(
                summary=summary[:200],
                approach=summary[:200],
                files=[{"path": p} for p in paths],
                complexity=assess_complexity(text),
                considerations=extract_considerations(text),
            )

        validation = validate_plan(plan, PlanRules.from_config(config.repo_config))
        if not validation.valid:
            return PlanningResult(False, plan=validation.plan, raw_response=text,
                                  error="; ".join(validation.errors), warnings=validation.warnings)
        return PlanningResult(True, plan=validation.plan, raw_response=text,
                              usage=Usage(), warnings=validation.warnings)

    async def execute(
        self,
        plan: ImplementationPlan,
        title: str,
        description: str,
        config: BackendConfig,
    ) -> ExecutionResult:
        prompts = self._prompts(title, description, config)
        prompt = (
            f"{prompts.build_execution_prompt(plan)}\n\n{prompts.execution_user_message(plan)}\n\n"
            "Edit the files in place. Do not commit or push. End with a line 'Commit message: ...'."
        )
        try:
            session = await self._run_session(
                prompt, config, config.execution.max_iterations,
                min(config.execution.timeout_seconds, EXECUTION_TIMEOUT),
            )
        except GatewayError as e:
            return ExecutionResult(False, error=f"Gateway error: {e}")

        files = capture_git_changes(config.repo_path)
        match = _COMMIT_LINE_RE.search(session["text"])
        commit_message = match.group(1).strip() if match else f"feat: {title}"
        pr_title = commit_message if match else title
        if not files and session["status"] == "completed":
            # Some workers reply with file contents instead of editing the checkout
            try:
                generated = parse_generated_code(session["text"])
            except ResponseFormatError:
                generated = None
            if generated is not None and generated.files:
                logger.info(f"📄 Took {len(generated.files)} file(s) from session output ({generated.strategy})")
                files = generated.files
                if generated.strategy != "markdown":
                    commit_message = generated.commit_message or commit_message
                    pr_title = generated.pr_title or pr_title
        if session["status"] == "failed" and not files:
            return ExecutionResult(False, error="Session failed")
        if not files and session["status"] == "timeout":
            return ExecutionResult(False, error=f"{MAX_TURNS_ERROR}: session timed out", exhausted=True)
        return ExecutionResult(
            True,
            files=files,
            commit_message=commit_message,
            pr_title=pr_title,
            pr_description=session["text"][-2000:],
        )

    async def answer(self, title: str, description: str, config: BackendConfig) -> str:
        prompt = self._prompts(title, description, config).build_assistant_prompt()
        session = await self._run_session(prompt, config, 10, PLANNING_TIMEOUT)
        return session["text"].strip()
