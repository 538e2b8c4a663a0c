"""AI backend adapters and routing."""

from .base import BackendAdapter, BackendConfig, ExecutionResult, PhaseLimits, PlanningResult
from .router import BackendRouter, Route

__all__ = [
    "BackendAdapter",
    "BackendConfig",
    "ExecutionResult",
    "PhaseLimits",
    "PlanningResult",
    "BackendRouter",
    "Route",
]
