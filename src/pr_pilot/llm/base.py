"""Backend adapter interface shared by every AI provider."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..core.config import RepoConfig
from ..core.task import FileChange, ImplementationPlan, Usage
from ..core.task_context import TaskContext

# Marker carried in the error text of a phase that ran out of turns.
MAX_TURNS_ERROR = "error_max_turns"
MAX_BUDGET_ERROR = "error_max_budget"

PermissionHook = Callable[[str, Dict[str, Any]], Awaitable[bool]]


@dataclass
class PhaseLimits:
    """Ceilings for one planning or execution attempt."""
    max_iterations: int
    max_budget_usd: float
    timeout_seconds: float


@dataclass
class BackendConfig:
    """Everything an adapter needs for one task, resolved by the router."""
    backend: str
    model: str
    api_key: Optional[str]
    repo_path: Path
    repo_config: RepoConfig = field(default_factory=RepoConfig)
    planning: PhaseLimits = field(default_factory=lambda: PhaseLimits(30, 3.0, 600))
    execution: PhaseLimits = field(default_factory=lambda: PhaseLimits(50, 10.0, 900))
    task_context: Optional[TaskContext] = None
    permission_hook: Optional[PermissionHook] = None


@dataclass
class PlanningResult:
    success: bool
    plan: Optional[ImplementationPlan] = None
    raw_response: str = ""
    usage: Usage = field(default_factory=Usage)
    error: Optional[str] = None
    exhausted: bool = False
    iterations: int = 0
    warnings: List[str] = field(default_factory=list)


@dataclass
class ExecutionResult:
    success: bool
    files: List[FileChange] = field(default_factory=list)
    commit_message: str = ""
    pr_title: str = ""
    pr_description: str = ""
    usage: Usage = field(default_factory=Usage)
    error: Optional[str] = None
    exhausted: bool = False
    iterations: int = 0


class BackendAdapter(ABC):
    """Uniform explore-plan-implement surface over one AI provider."""

    name: str = "backend"

    @abstractmethod
    async def plan(self, title: str, description: str, config: BackendConfig) -> PlanningResult:
        """Explore the repository read-only and propose a plan."""
        pass

    @abstractmethod
    async def execute(
        self,
        plan: ImplementationPlan,
        title: str,
        description: str,
        config: BackendConfig,
    ) -> ExecutionResult:
        """Apply ``plan`` to the checkout and report the changed files."""
        pass

    async def answer(self, title: str, description: str, config: BackendConfig) -> str:
        """Plain-text reply for tasks without a repository."""
        raise NotImplementedError(f"{self.name} does not support assistant mode")
