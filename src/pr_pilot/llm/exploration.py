"""Bounded tool-use loop shared by the request/response backends.

Each iteration sends the transcript to the model through litellm. Tool calls
are executed in order and their results appended before anything else in the
response is trusted. A response without tool calls is checked for terminal
output (a JSON plan, or ``task_complete`` during execution); when there is
none the model is nudged and the loop continues. The loop ends on a terminal
result, an unrecoverable provider error, the wall-clock deadline or the
iteration ceiling, whichever comes first.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import litellm

from ..core.config import SafetySettings
from ..core.prompt_builder import (
    EMPTY_PLAN_NUDGE,
    MIN_FILES_RETRY_PROMPT,
    REQUEST_COMPLETION_NUDGE,
    REQUEST_PLAN_NUDGE,
    USE_TOOLS_NUDGE,
    PromptBuilder,
    PromptContext,
)
from ..core.task import FileChange, ImplementationPlan, Usage
from ..safeguards.retry_handler import RetryHandler, is_rate_limit_error
from ..sandbox.tool_executor import ToolExecutor, ToolResult
from ..sandbox.tool_registry import MUTATING_TOOLS, ToolSpec, to_function_tools, tools_for_phase
from ..validation.plan_validator import PlanRules, check_budget, validate_plan
from ..validation.response_parser import (
    FORMAT_ENFORCEMENT_PROMPT,
    ResponseFormatError,
    parse_completion_result,
    parse_plan_response,
)
from .base import (
    MAX_BUDGET_ERROR,
    MAX_TURNS_ERROR,
    BackendAdapter,
    BackendConfig,
    ExecutionResult,
    PermissionHook,
    PhaseLimits,
    PlanningResult,
)

logger = logging.getLogger(__name__)

PERMISSION_DENIED = "Error: Permission denied by user - skipping this operation"


@dataclass
class Pricing:
    """USD per 1k tokens."""
    input_per_1k: float
    output_per_1k: float

    def cost(self, input_tokens: int, output_tokens: int) -> float:
        return input_tokens / 1000 * self.input_per_1k + output_tokens / 1000 * self.output_per_1k


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: Dict[str, Any]
    raw_arguments: str


@dataclass
class LoopState:
    """Accumulator carried across iterations."""
    messages: List[Dict[str, Any]]
    usage: Usage = field(default_factory=Usage)
    pending_tool_results: List[Dict[str, Any]] = field(default_factory=list)
    files: Dict[str, FileChange] = field(default_factory=dict)
    iteration: int = 0
    tool_calls_made: int = 0
    last_text: str = ""

    def nudge(self, text: str) -> None:
        self.messages.append({"role": "user", "content": text})

    def flush_tool_results(self) -> None:
        self.messages.extend(self.pending_tool_results)
        self.pending_tool_results = []


@dataclass
class _Stop:
    error: str
    exhausted: bool = False


def parse_tool_calls(message: Any) -> List[ToolCall]:
    calls = []
    for index, call in enumerate(getattr(message, "tool_calls", None) or []):
        function = call.function
        raw = function.arguments
        if isinstance(raw, dict):
            args, raw = raw, json.dumps(raw)
        else:
            try:
                args = json.loads(raw or "{}")
            except ValueError:
                logger.warning(f"Unparseable arguments for {function.name}: {str(raw)[:200]}")
                args = {}
            if not isinstance(args, dict):
                args = {}
        calls.append(ToolCall(
            id=getattr(call, "id", None) or f"call_{index}",
            name=function.name,
            arguments=args,
            raw_arguments=raw or "{}",
        ))
    return calls


class ExplorationLoop:
    """One phase's conversation with the model."""

    def __init__(
        self,
        *,
        model: str,
        executor: ToolExecutor,
        tools: List[ToolSpec],
        limits: PhaseLimits,
        safety: SafetySettings,
        pricing: Pricing,
        api_key: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 8192,
        retry: Optional[RetryHandler] = None,
        api_timeout: float = 120.0,
        context_truncation: int = 8000,
        permission_hook: Optional[PermissionHook] = None,
        completion_kwargs: Optional[Dict[str, Any]] = None,
        completion: Optional[Callable[..., Awaitable[Any]]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.model = model
        self.executor = executor
        self.tools = tools
        self.tool_names = {t.name for t in tools}
        self.limits = limits
        self.safety = safety.model_copy(update={"max_budget_per_task": limits.max_budget_usd})
        self.pricing = pricing
        self.api_key = api_key
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.retry = retry or RetryHandler()
        self.api_timeout = api_timeout
        self.context_truncation = context_truncation
        self.permission_hook = permission_hook
        self.completion_kwargs = completion_kwargs or {}
        self._completion = completion or litellm.acompletion
        self._clock = clock

    # ------------------------------------------------------------------
    # Model and tools
    # ------------------------------------------------------------------

    async def _call_model(self, state: LoopState) -> Any:
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": state.messages,
            "tools": to_function_tools(self.tools),
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        kwargs.update(self.completion_kwargs)
        if self.api_key:
            kwargs["api_key"] = self.api_key

        async def attempt():
            return await asyncio.wait_for(self._completion(**kwargs), timeout=self.api_timeout)

        return await self.retry.run(attempt, label=f"{self.model} completion")

    def _account(self, state: LoopState, response: Any) -> float:
        usage = getattr(response, "usage", None)
        input_tokens = int(getattr(usage, "prompt_tokens", 0) or 0)
        output_tokens = int(getattr(usage, "completion_tokens", 0) or 0)
        cost = self.pricing.cost(input_tokens, output_tokens)
        state.usage.add(input_tokens, output_tokens, cost)
        return cost

    async def _run_tool(self, state: LoopState, call: ToolCall) -> ToolResult:
        state.tool_calls_made += 1
        if call.name not in self.tool_names:
            result = ToolResult(False, error=f"Error: Tool {call.name} is not available in this phase")
        elif call.name in MUTATING_TOOLS and self.permission_hook is not None and not await self.permission_hook(
            call.name, call.arguments
        ):
            result = ToolResult(False, error=PERMISSION_DENIED)
        else:
            result = self.executor.execute(call.name, call.arguments)
        if result.file_change is not None:
            state.files[result.file_change.path] = result.file_change
        logger.debug(f"Tool {call.name} -> {'ok' if result.success else result.error}")
        state.pending_tool_results.append({
            "role": "tool",
            "tool_call_id": call.id,
            "content": result.as_message(self.context_truncation),
        })
        return result

    def _start(self, system_prompt: str, user_message: str) -> LoopState:
        return LoopState(messages=[
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_message},
        ])

    def _bounds(self, state: LoopState, deadline: float, phase: str) -> Optional[_Stop]:
        if self._clock() >= deadline:
            minutes = self.limits.timeout_seconds / 60
            return _Stop(f"{phase} timed out after {minutes:g} minutes")
        if state.iteration >= self.limits.max_iterations:
            return _Stop(
                f"{MAX_TURNS_ERROR}: Max iterations reached ({self.limits.max_iterations})",
                exhausted=True,
            )
        return None

    def _describe_error(self, error: Exception) -> str:
        if isinstance(error, asyncio.TimeoutError):
            return f"API call timed out after {self.api_timeout:g}s"
        if is_rate_limit_error(error):
            return f"Rate limit exceeded after {self.retry.max_retries} retries: {error}"
        return str(error) or type(error).__name__

    async def _step(self, state: LoopState):
        """One model round-trip; returns (message, tool_calls, budget_check)."""
        response = await self._call_model(state)
        state.iteration += 1
        call_cost = self._account(state, response)
        message = response.choices[0].message
        calls = parse_tool_calls(message)
        text = getattr(message, "content", None) or ""
        entry: Dict[str, Any] = {"role": "assistant", "content": text}
        if calls:
            entry["tool_calls"] = [
                {"id": c.id, "type": "function", "function": {"name": c.name, "arguments": c.raw_arguments}}
                for c in calls
            ]
        state.messages.append(entry)
        state.last_text = text
        budget = check_budget(state.usage.cost_usd, call_cost, self.safety)
        return text, calls, budget

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def run_planning(self, system_prompt: str, user_message: str, rules: PlanRules) -> PlanningResult:
        state = self._start(system_prompt, user_message)
        deadline = self._clock() + self.limits.timeout_seconds
        format_retry_used = False
        min_retry_used = False

        def result(success: bool, **kwargs) -> PlanningResult:
            return PlanningResult(
                success, usage=state.usage, iterations=state.iteration,
                raw_response=state.last_text, **kwargs,
            )

        while True:
            stop = self._bounds(state, deadline, "Planning")
            if stop:
                logger.warning(f"⚠️ Planning stopped: {stop.error}")
                return result(False, error=stop.error, exhausted=stop.exhausted)
            try:
                text, calls, budget = await self._step(state)
            except Exception as e:
                logger.error(f"❌ Planning call failed: {e}")
                return result(False, error=self._describe_error(e))

            if calls:
                for call in calls:
                    await self._run_tool(state, call)
                state.flush_tool_results()
                if budget.exceeded:
                    return result(False, error=f"{MAX_BUDGET_ERROR}: {budget.message}", exhausted=True)
                continue

            try:
                extracted = parse_plan_response(text)
                plan = ImplementationPlan.model_validate(extracted.data)
            except (ResponseFormatError, ValueError):
                plan = None

            if plan is not None:
                validation = validate_plan(plan, rules)
                if validation.valid:
                    logger.info(f"✅ Plan ready: {len(validation.plan.files)} files after {state.iteration} iterations")
                    return result(True, plan=validation.plan, warnings=validation.warnings)
                if plan.files:
                    below_min = any("minimum is" in e for e in validation.errors)
                    if below_min and not min_retry_used:
                        min_retry_used = True
                        state.nudge(MIN_FILES_RETRY_PROMPT.format(min_files=rules.min_files))
                        continue
                    return result(False, plan=validation.plan, error="; ".join(validation.errors),
                                  warnings=validation.warnings)

            if budget.exceeded:
                return result(False, error=f"{MAX_BUDGET_ERROR}: {budget.message}", exhausted=True)

            if plan is not None:
                state.nudge(EMPTY_PLAN_NUDGE)
            elif state.tool_calls_made == 0:
                state.nudge(USE_TOOLS_NUDGE)
            elif not format_retry_used:
                format_retry_used = True
                state.nudge(f"{REQUEST_PLAN_NUDGE}\n\n{FORMAT_ENFORCEMENT_PROMPT}")
            else:
                return result(False, error="Could not parse an implementation plan from the model response")

    async def run_execution(self, system_prompt: str, user_message: str, title: str) -> ExecutionResult:
        state = self._start(system_prompt, user_message)
        deadline = self._clock() + self.limits.timeout_seconds
        fallback_commit = f"feat: {title}"

        def result(success: bool, **kwargs) -> ExecutionResult:
            kwargs.setdefault("commit_message", fallback_commit)
            kwargs.setdefault("pr_title", title)
            return ExecutionResult(
                success, files=list(state.files.values()), usage=state.usage,
                iterations=state.iteration, **kwargs,
            )

        while True:
            stop = self._bounds(state, deadline, "Execution")
            if stop:
                logger.warning(f"⚠️ Execution stopped: {stop.error}")
                if state.files:
                    # Partial work is still worth a PR.
                    return result(True, error=stop.error)
                return result(False, error=stop.error, exhausted=stop.exhausted)
            try:
                text, calls, budget = await self._step(state)
            except Exception as e:
                logger.error(f"❌ Execution call failed: {e}")
                return result(False, error=self._describe_error(e))

            if calls:
                completion = None
                for call in calls:
                    outcome = await self._run_tool(state, call)
                    if outcome.completion is not None:
                        completion = outcome.completion
                state.flush_tool_results()
                if completion is not None:
                    meta = parse_completion_result(completion) or {}
                    logger.info(f"✅ task_complete after {state.iteration} iterations, {len(state.files)} files")
                    return result(
                        True,
                        commit_message=meta.get("commit_message") or fallback_commit,
                        pr_title=meta.get("pr_title") or title,
                        pr_description=meta.get("pr_description", ""),
                    )
                if budget.exceeded:
                    return result(False, error=f"{MAX_BUDGET_ERROR}: {budget.message}", exhausted=True)
                continue

            if budget.exceeded:
                return result(False, error=f"{MAX_BUDGET_ERROR}: {budget.message}", exhausted=True)
            state.nudge(REQUEST_COMPLETION_NUDGE)


class ToolCallingBackend(BackendAdapter):
    """Adapter for providers reached through litellm function calling.

    Subclasses pick the provider prefix, pricing and any extra request
    arguments; everything else is shared.
    """

    name = "tool-calling"
    model_prefix = ""
    pricing = Pricing(0.003, 0.015)
    completion_kwargs: Dict[str, Any] = {}

    def __init__(
        self,
        completion: Optional[Callable[..., Awaitable[Any]]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._completion = completion or litellm.acompletion
        self._sleep = sleep

    def litellm_model(self, model: str) -> str:
        if not self.model_prefix or model.startswith(self.model_prefix + "/"):
            return model
        return f"{self.model_prefix}/{model}"

    def _loop(self, config: BackendConfig, phase: str) -> ExplorationLoop:
        repo_cfg = config.repo_config
        params = repo_cfg.agent.model_parameters.planning if phase == "planning" \
            else repo_cfg.agent.model_parameters.execution
        executor = ToolExecutor(
            config.repo_path,
            repo_cfg.safety_policy(),
            max_output=repo_cfg.validation.context_truncation_length,
            max_glob_results=repo_cfg.validation.max_glob_results,
            max_read_size=repo_cfg.validation.max_direct_load_size,
        )
        return ExplorationLoop(
            model=self.litellm_model(config.model),
            executor=executor,
            tools=tools_for_phase(phase),
            limits=config.planning if phase == "planning" else config.execution,
            safety=repo_cfg.safety,
            pricing=self.pricing,
            api_key=config.api_key,
            temperature=params.temperature,
            max_tokens=params.max_tokens,
            retry=RetryHandler.from_settings(repo_cfg.retry, sleep=self._sleep),
            api_timeout=repo_cfg.retry.api_timeout_ms / 1000,
            context_truncation=repo_cfg.validation.context_truncation_length,
            permission_hook=config.permission_hook if phase == "execution" else None,
            completion_kwargs=dict(self.completion_kwargs),
            completion=self._completion,
        )

    def _prompts(self, title: str, description: str, config: BackendConfig) -> PromptBuilder:
        return PromptBuilder(PromptContext(
            config=config.repo_config,
            task_title=title,
            task_description=description or "",
            task_context=config.task_context,
        ))

    def _missing_key(self) -> str:
        return f"No API key configured for {self.name}"

    async def plan(self, title: str, description: str, config: BackendConfig) -> PlanningResult:
        if not config.api_key:
            return PlanningResult(False, error=self._missing_key())
        prompts = self._prompts(title, description, config)
        logger.info(f"📝 {self.name} planning with {config.model} (max {config.planning.max_iterations} iterations)")
        return await self._loop(config, "planning").run_planning(
            prompts.build_planning_prompt(),
            prompts.planning_user_message(),
            PlanRules.from_config(config.repo_config),
        )

    async def execute(
        self,
        plan: ImplementationPlan,
        title: str,
        description: str,
        config: BackendConfig,
    ) -> ExecutionResult:
        if not config.api_key:
            return ExecutionResult(False, error=self._missing_key())
        prompts = self._prompts(title, description, config)
        logger.info(f"⚙️ {self.name} implementing {len(plan.files)} planned files with {config.model}")
        return await self._loop(config, "execution").run_execution(
            prompts.build_execution_prompt(plan),
            prompts.execution_user_message(plan),
            title,
        )

    async def answer(self, title: str, description: str, config: BackendConfig) -> str:
        if not config.api_key:
            raise ValueError(self._missing_key())
        prompts = self._prompts(title, description, config)
        retry = RetryHandler.from_settings(config.repo_config.retry, sleep=self._sleep)
        kwargs: Dict[str, Any] = {
            "model": self.litellm_model(config.model),
            "messages": [{"role": "user", "content": prompts.build_assistant_prompt()}],
            "max_tokens": 2048,
            "api_key": config.api_key,
        }
        kwargs.update(self.completion_kwargs)
        response = await retry.run(lambda: self._completion(**kwargs), label=f"{self.name} answer")
        return (response.choices[0].message.content or "").strip()
