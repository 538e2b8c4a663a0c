"""Validate plans and execution results against repository rules.

Protected-path checks go through ``sandbox.policy.is_protected_path`` with
the same pattern list the tool sandbox uses.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from ..core.config import RepoConfig, SafetySettings
from ..core.task import FileChange, ImplementationPlan, PlannedFile
from ..sandbox.policy import DEFAULT_PROTECTED_PATHS, is_protected_path, normalize_path

logger = logging.getLogger(__name__)


@dataclass
class PlanRules:
    max_files: int = 5
    min_files: int = 1
    reject_empty: bool = True
    protected_paths: List[str] = field(default_factory=lambda: list(DEFAULT_PROTECTED_PATHS))
    enforce_protected_paths: bool = True
    max_modification_size: int = 60000

    @classmethod
    def from_config(cls, cfg: RepoConfig) -> "PlanRules":
        return cls(
            max_files=cfg.validation.max_files_per_plan,
            min_files=cfg.validation.min_files_per_plan,
            reject_empty=cfg.validation.reject_empty_plans,
            protected_paths=list(cfg.protected_paths),
            enforce_protected_paths=cfg.safety.enforce_protected_paths,
            max_modification_size=cfg.validation.max_modification_size,
        )


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    plan: Optional[ImplementationPlan] = None


def dedupe_plan_files(files: Sequence[PlannedFile]) -> List[PlannedFile]:
    """Merge entries naming the same path, keeping first-seen order."""
    merged: Dict[str, PlannedFile] = {}
    for entry in files:
        key = normalize_path(entry.path)
        existing = merged.get(key)
        if existing is None:
            merged[key] = entry.model_copy()
            continue
        if entry.purpose and entry.purpose not in existing.purpose:
            existing.purpose = f"{existing.purpose} + {entry.purpose}"
        if entry.changes and entry.changes not in existing.changes:
            existing.changes = f"{existing.changes}\n\n---\n\n{entry.changes}"
    return list(merged.values())


def validate_plan(plan: Optional[ImplementationPlan], rules: Optional[PlanRules] = None) -> ValidationResult:
    """Check a parsed plan.

    A plan over ``max_files`` is truncated to exactly ``max_files`` entries in
    original order and still passes; one under ``min_files`` fails.
    """
    rules = rules or PlanRules()
    if plan is None:
        return ValidationResult(False, errors=["No plan provided"])

    errors: List[str] = []
    warnings: List[str] = []
    if not plan.summary.strip():
        errors.append("Plan missing summary")

    files = dedupe_plan_files(plan.files)
    if len(files) < len(plan.files):
        warnings.append(f"Merged {len(plan.files) - len(files)} duplicate file entries")

    if not files:
        if rules.reject_empty:
            errors.append("Plan has no files to modify")
    elif len(files) < rules.min_files:
        errors.append(f"Plan has {len(files)} files, minimum is {rules.min_files}")

    if len(files) > rules.max_files:
        warnings.append(
            f"Plan has {len(files)} files, truncated to the first {rules.max_files}"
        )
        logger.warning(f"⚠️ Truncating plan from {len(files)} to {rules.max_files} files")
        files = files[:rules.max_files]

    for entry in files:
        if not entry.path.strip():
            errors.append("Plan contains file entry without path")
        elif rules.enforce_protected_paths and is_protected_path(entry.path, rules.protected_paths):
            errors.append(f"Plan modifies protected path: {entry.path}")

    validated = plan.model_copy(update={"files": files})
    return ValidationResult(not errors, errors=errors, warnings=warnings, plan=validated)


def validate_execution_result(
    changes: Sequence[FileChange],
    plan: Optional[ImplementationPlan],
    rules: Optional[PlanRules] = None,
) -> ValidationResult:
    """Hard-fail on protected paths and oversize files; report plan drift as warnings."""
    rules = rules or PlanRules()
    errors: List[str] = []
    warnings: List[str] = []

    if not changes:
        warnings.append("No files were modified during execution")

    planned = {normalize_path(f.path) for f in (plan.files if plan else [])}
    modified = set()
    for change in changes:
        path = normalize_path(change.path)
        modified.add(path)
        if rules.enforce_protected_paths and is_protected_path(path, rules.protected_paths):
            errors.append(f"Modified protected path: {change.path}")
        size = len(change.content.encode("utf-8"))
        if size > rules.max_modification_size:
            errors.append(f"File {change.path} exceeds max size ({size} bytes)")
        if plan is not None and path not in planned:
            warnings.append(f"Modified file not in plan: {change.path}")

    if plan is not None:
        for entry in plan.files:
            if normalize_path(entry.path) not in modified:
                warnings.append(f"Planned file not modified: {entry.path}")

    return ValidationResult(not errors, errors=errors, warnings=warnings, plan=plan)


@dataclass
class BudgetCheck:
    exceeded: bool
    message: Optional[str] = None


def check_budget(spent: float, call_cost: float, safety: SafetySettings) -> BudgetCheck:
    """Per-call and per-task cost ceilings."""
    if call_cost > safety.max_cost_per_call:
        return BudgetCheck(
            True, f"Single call cost exceeded: ${call_cost:.2f} > ${safety.max_cost_per_call:.2f}"
        )
    if spent > safety.max_budget_per_task:
        return BudgetCheck(True, f"Budget exceeded: ${spent:.2f} > ${safety.max_budget_per_task:.2f}")
    return BudgetCheck(False)
