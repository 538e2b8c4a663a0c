"""Map a task's assignee identity to a backend adapter and its limits."""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from ..core.config import DEFAULT_MODELS, AgentIdentity, RepoConfig, WorkerConfig
from ..core.task import Task
from ..core.task_context import TaskContext
from .base import BackendAdapter, BackendConfig, PermissionHook, PhaseLimits
from .claude_backend import ClaudeBackend
from .gemini_backend import GeminiBackend
from .openai_backend import OpenAIBackend
from .self_hosted_backend import SelfHostedBackend

logger = logging.getLogger(__name__)


@dataclass
class Route:
    identity: AgentIdentity
    adapter: Optional[BackendAdapter]
    model: str
    api_key: Optional[str]

    @property
    def has_credentials(self) -> bool:
        if self.adapter is None:
            return False
        return bool(self.api_key) or self.identity.backend == "self_hosted"


class BackendRouter:
    """Registry lookup with a suffix-pattern fallback for self-hosted workers."""

    def __init__(self, cfg: WorkerConfig, adapters: Optional[Dict[str, BackendAdapter]] = None):
        self.cfg = cfg
        self._adapters: Dict[str, BackendAdapter] = dict(adapters or {})
        self._registry = {a.email.lower(): a for a in cfg.agents}
        self._self_hosted = re.compile(cfg.self_hosted_pattern, re.IGNORECASE)

    def identity_for(self, email: Optional[str]) -> Optional[AgentIdentity]:
        if not email:
            return None
        key = email.lower()
        identity = self._registry.get(key)
        if identity is not None:
            return identity
        if self._self_hosted.match(key):
            return AgentIdentity(email=key, name=key.split("@", 1)[0], backend="self_hosted")
        return None

    def is_agent(self, email: Optional[str]) -> bool:
        return self.identity_for(email) is not None

    @property
    def agent_ids(self) -> set:
        """Task-store user ids of registered identities resolved at startup."""
        return {a.agent_id for a in self.cfg.agents if a.agent_id}

    def adapter(self, backend: str) -> BackendAdapter:
        if backend not in self._adapters:
            if backend == "claude":
                self._adapters[backend] = ClaudeBackend()
            elif backend == "openai":
                self._adapters[backend] = OpenAIBackend()
            elif backend == "gemini":
                self._adapters[backend] = GeminiBackend()
            elif backend == "self_hosted":
                if not self.cfg.gateway_url:
                    raise ValueError("Self-hosted backend requires PR_PILOT_GATEWAY_URL")
                self._adapters[backend] = SelfHostedBackend(self.cfg.gateway_url, self.cfg.gateway_token)
            else:
                raise ValueError(f"Unknown backend: {backend}")
        return self._adapters[backend]

    def route(self, task: Task) -> Optional[Route]:
        identity = self.identity_for(task.assignee_email)
        if identity is None:
            return None
        model = identity.model or DEFAULT_MODELS[identity.backend]
        try:
            adapter = self.adapter(identity.backend)
        except ValueError as e:
            # Reported to the task as missing credentials
            logger.warning(f"⚠️ {identity.email}: {e}")
            adapter = None
        return Route(
            identity=identity,
            adapter=adapter,
            model=model,
            api_key=self.cfg.api_key_for(identity.backend),
        )

    # ------------------------------------------------------------------
    # Limits
    # ------------------------------------------------------------------

    def planning_limits(self, repo: RepoConfig, escalated: bool = False) -> PhaseLimits:
        cfg = self.cfg
        if escalated:
            turns, budget = cfg.planning_turns_high, cfg.planning_budget_high
        else:
            turns = min(cfg.planning_turns, repo.agent.max_planning_iterations)
            budget = min(cfg.planning_budget, repo.safety.max_budget_per_task)
        return PhaseLimits(turns, budget, repo.agent.planning_timeout_minutes * 60)

    def execution_limits(self, repo: RepoConfig, escalated: bool = False) -> PhaseLimits:
        cfg = self.cfg
        if escalated:
            turns, budget = cfg.execution_turns_high, cfg.execution_budget_high
        else:
            turns = min(cfg.execution_turns, repo.agent.max_execution_iterations)
            budget = min(cfg.max_budget_usd, repo.safety.max_budget_per_task)
        return PhaseLimits(turns, budget, repo.agent.execution_timeout_minutes * 60)

    def build_config(
        self,
        route: Route,
        repo_path: Path,
        repo_config: RepoConfig,
        *,
        escalated_planning: bool = False,
        escalated_execution: bool = False,
        task_context: Optional[TaskContext] = None,
        permission_hook: Optional[PermissionHook] = None,
    ) -> BackendConfig:
        return BackendConfig(
            backend=route.identity.backend,
            model=route.model,
            api_key=route.api_key,
            repo_path=Path(repo_path),
            repo_config=repo_config,
            planning=self.planning_limits(repo_config, escalated_planning),
            execution=self.execution_limits(repo_config, escalated_execution),
            task_context=task_context,
            permission_hook=permission_hook,
        )
