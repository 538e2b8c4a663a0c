"""Orchestrator loop: poll, reconstruct state, plan, implement, open PR, ship.

A single worker process polls the task store. For every task assigned to a
known agent identity it replays the comment log to decide whether to act,
then runs the phases strictly in order: planning, execution, PR. A task that
is already being processed by this process is never re-entered.
"""

import asyncio
import dataclasses
import logging
import time
from datetime import timedelta
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Set, Union

from ..integrations.task_store.client import TaskStoreClient, TaskStoreError
from ..llm.base import BackendConfig, ExecutionResult, PlanningResult
from ..llm.router import BackendRouter, Route
from ..safeguards.escalation import ApprovalProtocol
from ..utils.error_handling import log_and_ignore
from ..utils.rich_logging import ContextLogger
from ..validation.plan_validator import PlanRules, validate_execution_result
from . import comments
from .config import RepoConfig, WorkerConfig, load_repo_config
from .pr_driver import PRDriver
from .task import Task
from .task_context import (
    TaskContext,
    build_system_understanding,
    extract_task_context,
    merge_understanding,
    strip_understanding,
)
from .workflow_state import StateSnapshot, WorkflowState, find_recovery_feedback, reconstruct_state

logger = logging.getLogger(__name__)

ASSISTANT_HEADING = "## AI Assistant Response"
FEEDBACK_HEADING = "## User Feedback (after previous failure)"

PhaseResult = Union[PlanningResult, ExecutionResult]


class Orchestrator:
    """Ties the state reconstructor, router, escalation and PR driver together."""

    def __init__(
        self,
        cfg: WorkerConfig,
        store: TaskStoreClient,
        router: Optional[BackendRouter] = None,
        driver: Optional[PRDriver] = None,
        log: Optional[ContextLogger] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.cfg = cfg
        self.store = store
        self.router = router or BackendRouter(cfg)
        self.driver = driver or PRDriver(cfg, store)
        self.log = log or ContextLogger(logger, cfg.worker_id)
        self._sleep = sleep
        self._processing: Set[str] = set()
        self._agent_ids: Set[str] = set(self.router.agent_ids)
        self._polls = 0
        self._running = False

    @property
    def currently_processing(self) -> Set[str]:
        return set(self._processing)

    @property
    def agent_ids(self) -> Set[str]:
        return set(self._agent_ids)

    @property
    def staleness(self) -> timedelta:
        return timedelta(minutes=self.cfg.staleness_minutes)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def resolve_agent_ids(self) -> None:
        """Look up the task-store user id of every registered identity."""
        for identity in self.cfg.agents:
            if identity.agent_id:
                continue
            try:
                identity.agent_id = self.store.find_agent_id(identity.email)
            except TaskStoreError as e:
                log_and_ignore(e, f"Could not resolve agent id for {identity.email}", logger_instance=logger)
                continue
            if identity.agent_id:
                self._agent_ids.add(identity.agent_id)

    async def run(self) -> None:
        """Main polling loop."""
        self._running = True
        self.log.info(f"🚀 Starting {self.cfg.worker_id} (poll every {self.cfg.poll_interval}s)")
        self.resolve_agent_ids()
        while self._running:
            try:
                await self.poll_once()
            except TaskStoreError as e:
                self.log.error(f"Poll failed: {e}")
            except Exception:
                # One bad cycle must not take the worker down
                self.log.exception("❌ Unexpected error during poll cycle")
            await self._sleep(self.cfg.poll_interval)

    def stop(self) -> None:
        self.log.info(f"Stopping {self.cfg.worker_id}")
        self._running = False

    def _agent_tasks(self, include_completed: bool = False) -> List[Task]:
        tasks = self.store.list_tasks(self.cfg.list_id, include_completed=include_completed)
        mine = []
        for task in tasks:
            identity = self.router.identity_for(task.assignee_email)
            if identity is None:
                continue
            if task.assignee_id:
                # The assignee is the agent's own user record.
                self._agent_ids.add(task.assignee_id)
                if identity.agent_id is None:
                    identity.agent_id = task.assignee_id
            if not task.comments:
                task.comments = self.store.get_comments(task.id)
            mine.append(task)
        return mine

    async def poll_once(self) -> List[str]:
        """One cycle: classify every agent task and handle the eligible ones."""
        tasks = [t for t in self._agent_tasks() if not t.completed]
        handled: List[str] = []
        self.log.debug(f"🔍 {len(tasks)} task(s) assigned to agents")

        for task in tasks:
            if task.id in self._processing:
                self.log.debug(f"Task {task.id} is already being processed")
                continue
            snapshot = reconstruct_state(task, staleness=self.staleness, agent_ids=self._agent_ids)
            self.log.debug(f"Task {task.id}: {snapshot.state.value} ({snapshot.reason})")
            if snapshot.state == WorkflowState.SHIP_REQUESTED or snapshot.should_process:
                await self.handle_task(task, snapshot)
                handled.append(task.id)

        self._polls += 1
        if self.cfg.recovery_every and self._polls % self.cfg.recovery_every == 0:
            handled.extend(await self.recovery_sweep(skip=set(handled)))
        return handled

    async def handle_task(self, task: Task, snapshot: Optional[StateSnapshot] = None) -> None:
        """Dispatch a task under the re-entrancy guard."""
        if task.id in self._processing:
            self.log.warning(f"Task {task.id} is already being processed, skipping")
            return
        snapshot = snapshot or reconstruct_state(task, staleness=self.staleness, agent_ids=self._agent_ids)
        self._processing.add(task.id)
        try:
            if snapshot.state == WorkflowState.SHIP_REQUESTED:
                await self.ship(task)
            elif snapshot.should_process:
                await self.process_task(task)
            else:
                self.log.info(f"Task {task.id} needs no action ({snapshot.state.value})")
        finally:
            self._processing.discard(task.id)
            self.log.clear_context()

    async def recovery_sweep(self, skip: Optional[Set[str]] = None) -> List[str]:
        """Re-drive failed runs that received human feedback the poll did not act on."""
        skip = skip or set()
        recovered = []
        self.log.info("🔧 Checking for failed runs with pending feedback...")
        for task in self._agent_tasks(include_completed=True):
            if task.id in skip or task.id in self._processing:
                continue
            feedback = find_recovery_feedback(task, self._agent_ids)
            if not feedback:
                continue
            route = self.router.route(task)
            agent_id = route.identity.agent_id if route else None
            self.log.info(f"🔄 Recovering task {task.id} with new feedback")
            self._post(task.id, comments.recovery_triggered(feedback), agent_id)
            enhanced = task.model_copy(update={
                "description": f"{task.description}\n\n{FEEDBACK_HEADING}\n\n{feedback}".strip(),
            })
            self._processing.add(task.id)
            try:
                await self.process_task(enhanced)
                recovered.append(task.id)
            except Exception as e:
                self.log.error(f"❌ Recovery failed for {task.id}: {e}")
                self._post(task.id, comments.recovery_failed(str(e)), agent_id)
            finally:
                self._processing.discard(task.id)
                self.log.clear_context()
        return recovered

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _post(self, task_id: str, content: str, agent_id: Optional[str]) -> None:
        try:
            self.store.add_comment(task_id, content, agent_id)
        except TaskStoreError as e:
            log_and_ignore(e, f"Could not post comment on {task_id}", logger_instance=logger)

    def _reassign_to_creator(self, task: Task) -> None:
        if not task.creator_id:
            self.log.warning(f"⚠️ Task {task.id} has no creator to hand back to")
            return
        try:
            self.store.reassign(task.id, task.creator_id)
            self.log.info("🔄 Task reassigned to creator for review")
        except TaskStoreError as e:
            log_and_ignore(e, f"Could not reassign {task.id}", logger_instance=logger)

    def _update_description(self, task: Task, description: str) -> None:
        try:
            self.store.update_description(task.id, description)
        except TaskStoreError as e:
            log_and_ignore(e, "Could not update task description", logger_instance=logger)

    def _protocol(self, task: Task, agent_id: Optional[str]) -> ApprovalProtocol:
        return ApprovalProtocol(
            self.store,
            task.id,
            agent_id=agent_id,
            agent_ids=self._agent_ids,
            timeout=self.cfg.approval_timeout,
            poll_interval=self.cfg.approval_poll_interval,
            sleep=self._sleep,
        )

    def _permission_hook(self, task: Task, agent_id: Optional[str]):
        if self.cfg.auto_approve:
            return None
        protocol = self._protocol(task, agent_id)

        async def hook(tool_name: str, arguments: dict) -> bool:
            summary = arguments.get("command") or arguments.get("path") or str(arguments)
            return await protocol.request_tool_permission(tool_name, str(summary)[:500])

        return hook

    async def _with_escalation(
        self,
        task: Task,
        agent_id: Optional[str],
        phase: str,
        config: BackendConfig,
        repo_config: RepoConfig,
        run: Callable[[BackendConfig], Awaitable[PhaseResult]],
    ) -> PhaseResult:
        """Run a phase; on exhaustion ask for higher limits and retry exactly once."""
        result = await run(config)
        if result.success or not result.exhausted:
            return result

        self.log.phase_change("escalating")
        self.log.progress(f"Waiting for approval to raise {phase} limits")
        if phase == "planning":
            current = config.planning
            raised = self.router.planning_limits(repo_config, escalated=True)
        else:
            current = config.execution
            raised = self.router.execution_limits(repo_config, escalated=True)

        approved = await self._protocol(task, agent_id).request_budget_increase(
            phase, current.max_budget_usd, raised.max_budget_usd,
            current.max_iterations, raised.max_iterations,
        )
        if not approved:
            return result

        self._post(task.id, comments.retrying_phase(phase), agent_id)
        self.log.phase_change("planning" if phase == "planning" else "implementing")
        escalated = dataclasses.replace(config, **{phase: raised})
        return await run(escalated)

    @staticmethod
    def _failure_message(result: PhaseResult, default: str) -> str:
        error = result.error or default
        if result.exhausted:
            return (
                f"{error}\n\nTask is too complex for the current limits. "
                "Reply with more detail or break the task into smaller pieces to retry."
            )
        return error

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process_task(self, task: Task) -> None:
        """Planning, execution and PR for one task. Failures end in a comment and reassignment."""
        route = self.router.route(task)
        if route is None:
            self.log.warning(f"No backend for assignee {task.assignee_email}")
            return
        agent_id = route.identity.agent_id
        started = time.monotonic()
        self.log.task_started(task.id, task.title)

        if not route.has_credentials:
            self._post(task.id, comments.missing_api_key(route.identity.name), agent_id)
            self._reassign_to_creator(task)
            self.log.task_failed(f"no API key for {route.identity.backend}")
            return

        if not task.repository:
            await self.assist(task, route)
            return

        try:
            cost = await self._run_phases(task, route)
        except Exception as e:
            # Anything escaping a phase must not leave the task on the agent.
            self.log.exception(f"Worker error on {task.id}")
            self._post(task.id, comments.worker_error(str(e)), agent_id)
            self._reassign_to_creator(task)
            self.log.task_failed(str(e))
            return
        if cost is not None:
            self.log.task_completed(time.monotonic() - started, cost)

    async def _run_phases(self, task: Task, route: Route) -> Optional[float]:
        agent_id = route.identity.agent_id
        adapter = route.adapter
        context = extract_task_context(task, self._agent_ids)
        self._post(
            task.id,
            comments.starting(route.identity.name, task.title, task.repository, context.user_feedback),
            agent_id,
        )
        if context.has_been_processed_before:
            self._update_description(
                task, merge_understanding(task.description, build_system_understanding(task, context)),
            )

        self.log.phase_change("claiming")
        working = await asyncio.to_thread(self.driver.prepare, task, context)
        repo_config = load_repo_config(working.path)
        config = self.router.build_config(
            route, working.path, repo_config,
            task_context=context,
            permission_hook=self._permission_hook(task, agent_id),
        )
        description = strip_understanding(task.description)

        # Planning
        self.log.phase_change("planning")
        self._post(task.id, comments.planning_phase(), agent_id)
        planning = await self._with_escalation(
            task, agent_id, "planning", config, repo_config,
            lambda c: adapter.plan(task.title, description, c),
        )
        if not planning.success or planning.plan is None:
            self._post(task.id, comments.planning_failed(
                self._failure_message(planning, "Could not generate implementation plan")
            ), agent_id)
            self._reassign_to_creator(task)
            self.log.task_failed(planning.error or "planning failed")
            return None
        plan = planning.plan
        for warning in planning.warnings:
            self.log.warning(f"⚠️ {warning}")
        self.log.token_usage(planning.usage.input_tokens, planning.usage.output_tokens, planning.usage.cost_usd)
        self._post(task.id, comments.plan_ready(plan, planning.usage.cost_usd), agent_id)

        # Execution
        self.log.phase_change("implementing")
        self._post(task.id, comments.implementation_phase(), agent_id)
        execution = await self._with_escalation(
            task, agent_id, "execution", config, repo_config,
            lambda c: adapter.execute(plan, task.title, description, c),
        )
        if not execution.success:
            self._post(task.id, comments.implementation_failed(
                self._failure_message(execution, "Unknown error")
            ), agent_id)
            self._reassign_to_creator(task)
            self.log.task_failed(execution.error or "execution failed")
            return None
        self.log.token_usage(execution.usage.input_tokens, execution.usage.output_tokens, execution.usage.cost_usd)

        if not execution.files:
            self._post(task.id, comments.no_changes(), agent_id)
            self._reassign_to_creator(task)
            return planning.usage.cost_usd + execution.usage.cost_usd

        check = validate_execution_result(execution.files, plan, PlanRules.from_config(repo_config))
        for warning in check.warnings:
            self.log.warning(f"⚠️ {warning}")
        if not check.valid:
            self._post(task.id, comments.implementation_failed("; ".join(check.errors)), agent_id)
            self._reassign_to_creator(task)
            self.log.task_failed("; ".join(check.errors))
            return None

        total_cost = planning.usage.cost_usd + execution.usage.cost_usd
        self._post(task.id, comments.implementation_complete(execution.files, execution.usage.cost_usd), agent_id)

        # PR
        self.log.phase_change("creating_pr")
        # Git pushes and the CI wait block; keep them off the event loop
        pr = await asyncio.to_thread(
            self.driver.deliver,
            task, working, execution, route.identity, repo_config, feedback=context.user_feedback,
        )
        if not pr.success:
            if pr.no_changes:
                self._post(task.id, comments.no_changes(), agent_id)
            else:
                self._post(task.id, comments.pr_creation_failed(pr.error or "unknown error"), agent_id)
        self._reassign_to_creator(task)
        return total_cost

    # ------------------------------------------------------------------
    # Assistant mode and ship it
    # ------------------------------------------------------------------

    async def assist(self, task: Task, route: Route) -> None:
        """Tasks on lists without a repository get a plain answer instead of a PR."""
        agent_id = route.identity.agent_id
        self.log.phase_change("assisting")
        config = self.router.build_config(
            route, Path(self.cfg.workspace), RepoConfig(),
            task_context=extract_task_context(task, self._agent_ids),
        )
        try:
            answer = await route.adapter.answer(task.title, strip_understanding(task.description), config)
        except Exception as e:
            self.log.exception(f"Assistant mode failed on {task.id}")
            self._post(task.id, comments.worker_error(str(e)), agent_id)
            self._reassign_to_creator(task)
            return

        base = strip_understanding(task.description).split(ASSISTANT_HEADING)[0].rstrip()
        self._update_description(task, f"{base}\n\n{ASSISTANT_HEADING}\n\n{answer}".strip())
        self._post(task.id, comments.assistant_response(answer), agent_id)
        self._reassign_to_creator(task)
        self.log.info("💬 Assistant response posted")

    async def ship(self, task: Task) -> None:
        route = self.router.route(task)
        agent_id = route.identity.agent_id if route else None
        self.log.set_task_context(task_id=task.id)
        self.log.phase_change("shipping")
        repo_config = RepoConfig()
        if task.repository:
            try:
                repo_config = load_repo_config(self.driver.workspace.path_for(task.repository))
            except ValueError as e:
                log_and_ignore(e, "Invalid repository name", logger_instance=logger)
        result = await asyncio.to_thread(self.driver.ship, task, repo_config, agent_id)
        if result.success:
            self.log.info(f"🎉 Shipped PR #{result.pr_number}")
        else:
            self.log.warning(f"⚠️ Ship it did not complete: {result.error}")


def context_summary(context: TaskContext) -> List[str]:
    """One line per earlier attempt, for the ``state`` command."""
    lines = []
    for i, attempt in enumerate(context.previous_attempts, 1):
        parts = [f"#{i}", attempt.outcome or "in progress"]
        if attempt.plan_summary:
            parts.append(attempt.plan_summary[:80])
        if attempt.pr_url:
            parts.append(attempt.pr_url)
        lines.append(" | ".join(parts))
    return lines
