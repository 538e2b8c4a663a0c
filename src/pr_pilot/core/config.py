"""Configuration loading and validation.

Two layers:

* ``WorkerConfig``: process-wide settings from the environment and an
  optional ``pr-pilot.yaml``.
* ``RepoConfig``: per-repository overrides read from ``.prpilot.json`` at the
  checkout root and deep-merged over built-in defaults.
"""

import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..sandbox import policy
from ..sandbox.policy import DEFAULT_BLOCKED_BASH_PATTERNS, DEFAULT_PROTECTED_PATHS

logger = logging.getLogger(__name__)

WORKER_CONFIG_PATH = Path("pr-pilot.yaml")
REPO_CONFIG_FILENAME = ".prpilot.json"
REPO_CONFIG_VERSION = "2.0"

BackendName = Literal["claude", "openai", "gemini", "self_hosted"]


class ConfigError(Exception):
    """Fatal configuration problem detected at startup."""

    def __init__(self, problems: List[str]):
        self.problems = problems
        super().__init__("; ".join(problems))


# ---------------------------------------------------------------------------
# Worker settings
# ---------------------------------------------------------------------------

class AgentIdentity(BaseModel):
    """Registry entry mapping an assignee identity to a backend."""
    email: str
    name: str
    backend: BackendName
    model: Optional[str] = None
    capabilities: List[str] = Field(default_factory=lambda: ["planning", "execution"])
    agent_id: Optional[str] = None  # task-store user id, filled at startup


DEFAULT_MODELS: Dict[str, str] = {
    "claude": "claude-sonnet-4-20250514",
    "openai": "gpt-4o",
    "gemini": "gemini-2.0-flash",
    "self_hosted": "default",
}

DEFAULT_AGENTS = [
    AgentIdentity(email="claude@pr-pilot.dev", name="Claude Agent", backend="claude"),
    AgentIdentity(email="openai@pr-pilot.dev", name="OpenAI Agent", backend="openai"),
    AgentIdentity(email="gemini@pr-pilot.dev", name="Gemini Agent", backend="gemini"),
    AgentIdentity(email="openclaw@pr-pilot.dev", name="OpenClaw Worker", backend="self_hosted"),
]


def _env(*names: str) -> AliasChoices:
    return AliasChoices(*names)


class WorkerConfig(BaseSettings):
    """Worker process settings."""

    model_config = SettingsConfigDict(
        env_prefix="PR_PILOT_",
        extra="ignore",
        populate_by_name=True,
    )

    worker_id: str = "pr-pilot"
    workspace: Path = Path(".")
    repos_dir: Path = Path("repos")
    log_level: str = "INFO"

    # Task store
    task_store_url: str = "https://app.pr-pilot.dev"
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    list_id: Optional[str] = None

    # Credentials, with the ecosystem's plain env names as fallbacks
    github_token: Optional[str] = Field(
        None, validation_alias=_env("github_token", "PR_PILOT_GITHUB_TOKEN", "GITHUB_TOKEN"),
    )
    anthropic_api_key: Optional[str] = Field(
        None, validation_alias=_env("anthropic_api_key", "PR_PILOT_ANTHROPIC_API_KEY", "ANTHROPIC_API_KEY"),
    )
    openai_api_key: Optional[str] = Field(
        None, validation_alias=_env("openai_api_key", "PR_PILOT_OPENAI_API_KEY", "OPENAI_API_KEY"),
    )
    gemini_api_key: Optional[str] = Field(
        None, validation_alias=_env("gemini_api_key", "PR_PILOT_GEMINI_API_KEY", "GEMINI_API_KEY"),
    )

    # Loop
    poll_interval: int = 30
    max_budget_usd: float = 10.0
    staleness_minutes: int = 15
    recovery_every: int = 5

    # Escalation
    auto_approve: bool = True
    approval_timeout: int = 300
    approval_poll_interval: int = 5
    planning_turns: int = 75
    planning_turns_high: int = 150
    execution_turns: int = 150
    execution_turns_high: int = 300
    planning_budget: float = 3.0
    planning_budget_high: float = 6.0
    execution_budget_high: float = 20.0

    # CI / preview
    ci_poll_interval: int = 30
    ci_poll_max_wait: int = 600
    vercel_token: Optional[str] = Field(
        None,
        validation_alias=_env("vercel_token", "PR_PILOT_VERCEL_TOKEN", "VERCEL_TOKEN", "VERCEL_API_TOKEN"),
    )
    vercel_project: Optional[str] = None
    vercel_team_id: Optional[str] = None
    vercel_alias_domain: Optional[str] = None
    testflight_link: Optional[str] = Field(
        None,
        validation_alias=_env("testflight_link", "PR_PILOT_TESTFLIGHT_LINK", "TESTFLIGHT_PUBLIC_LINK"),
    )

    # Self-hosted gateway
    gateway_url: Optional[str] = None
    gateway_token: Optional[str] = None

    agents: List[AgentIdentity] = Field(default_factory=lambda: [a.model_copy() for a in DEFAULT_AGENTS])
    self_hosted_pattern: str = r"^[a-z0-9._-]+\.oc@pr-pilot\.dev$"

    @field_validator("task_store_url", "gateway_url")
    @classmethod
    def validate_url(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.startswith(("http://", "https://")):
            raise ValueError(f"URL must start with http:// or https://, got '{v}'")
        return v.rstrip("/") if v else v

    @field_validator("self_hosted_pattern")
    @classmethod
    def validate_pattern(cls, v: str) -> str:
        re.compile(v)
        return v

    def api_key_for(self, backend: str) -> Optional[str]:
        return {
            "claude": self.anthropic_api_key,
            "openai": self.openai_api_key,
            "gemini": self.gemini_api_key,
            "self_hosted": self.gateway_token,
        }.get(backend)

    @property
    def agent_emails(self) -> List[str]:
        return [a.email.lower() for a in self.agents]


# Module-level mtime-based config cache: path -> (parsed_config, file_mtime)
_config_cache: Dict[str, tuple] = {}


def _get_cached_or_load(resolved_path: Path, loader):
    """Return cached config if file mtime unchanged, else reload."""
    key = str(resolved_path)
    try:
        current_mtime = resolved_path.stat().st_mtime
    except FileNotFoundError:
        _config_cache.pop(key, None)
        return None

    cached = _config_cache.get(key)
    if cached is not None:
        cached_result, cached_mtime = cached
        if cached_mtime == current_mtime:
            return cached_result

    result = loader(resolved_path)
    _config_cache[key] = (result, current_mtime)
    return result


def clear_config_cache() -> None:
    """Clear the module-level config cache. Useful for tests."""
    _config_cache.clear()


def _expand_env_vars(data: Any, _path: str = "") -> Any:
    """Recursively expand ``${VAR}`` references in config data."""
    if isinstance(data, dict):
        return {k: _expand_env_vars(v, f"{_path}.{k}" if _path else k) for k, v in data.items()}
    elif isinstance(data, list):
        return [_expand_env_vars(item, f"{_path}[{i}]") for i, item in enumerate(data)]
    elif isinstance(data, str) and data.startswith("${") and data.endswith("}"):
        env_var = data[2:-1]
        value = os.environ.get(env_var)
        if value is None:
            logger.warning(
                f"Environment variable '{env_var}' not set (referenced at config path: {_path or 'root'}). "
                f"The literal string '{data}' will be used."
            )
            return data
        return value
    return data


def _load_worker_config_from_file(config_path: Path) -> WorkerConfig:
    with open(config_path) as f:
        data = yaml.safe_load(f) or {}
    return WorkerConfig(**_expand_env_vars(data))


def load_worker_config(config_path: Path = WORKER_CONFIG_PATH) -> WorkerConfig:
    """Load worker settings; the YAML file is optional.

    Uses mtime-based caching, so an unchanged file is parsed once.
    """
    if not config_path.exists():
        logger.debug(f"No {config_path} found, using environment only")
        return WorkerConfig()
    result = _get_cached_or_load(config_path.resolve(), _load_worker_config_from_file)
    return result if result is not None else WorkerConfig()


def validate_worker_config(cfg: WorkerConfig) -> List[str]:
    """Problems that make the worker unable to start. Empty means OK."""
    problems = []
    if not cfg.client_id or not cfg.client_secret:
        problems.append("Task store OAuth credentials missing (PR_PILOT_CLIENT_ID / PR_PILOT_CLIENT_SECRET)")
    if not cfg.github_token:
        problems.append("GITHUB_TOKEN is not set")
    if not cfg.agents:
        problems.append("No agent identities configured")

    backends = {a.backend for a in cfg.agents}
    if not any(cfg.api_key_for(b) for b in backends if b != "self_hosted") and not cfg.gateway_url:
        problems.append("No AI provider API key configured (ANTHROPIC_API_KEY, OPENAI_API_KEY or GEMINI_API_KEY)")
    if "self_hosted" in backends and cfg.gateway_token and not cfg.gateway_url:
        problems.append("Self-hosted gateway token set without PR_PILOT_GATEWAY_URL")

    for name in ("poll_interval", "approval_timeout", "approval_poll_interval", "staleness_minutes", "recovery_every"):
        if getattr(cfg, name) <= 0:
            problems.append(f"{name} must be positive")
    if cfg.planning_turns_high < cfg.planning_turns:
        problems.append("planning_turns_high must be >= planning_turns")
    if cfg.execution_turns_high < cfg.execution_turns:
        problems.append("execution_turns_high must be >= execution_turns")
    if cfg.planning_budget_high < cfg.planning_budget:
        problems.append("planning_budget_high must be >= planning_budget")
    if cfg.execution_budget_high < cfg.max_budget_usd:
        problems.append("execution_budget_high must be >= max_budget_usd")
    return problems


# ---------------------------------------------------------------------------
# Repository config
# ---------------------------------------------------------------------------

class _RepoModel(BaseModel):
    """Accepts camelCase keys from the JSON file and snake_case from code."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class ProjectStructure(_RepoModel):
    name: str = ""
    description: Optional[str] = None
    root_path: str = "."
    file_patterns: List[str] = Field(default_factory=list)
    key_directories: List[str] = Field(default_factory=list)
    conventions: List[str] = Field(default_factory=list)


class PlatformDetection(_RepoModel):
    name: str
    keywords: List[str] = Field(default_factory=list)
    file_patterns: List[str] = Field(default_factory=list)
    hints: List[str] = Field(default_factory=list)


class ModelParameters(_RepoModel):
    temperature: float = 0.7
    max_tokens: int = 8192
    top_p: float = 1.0


class PhaseModelParameters(_RepoModel):
    planning: ModelParameters = Field(default_factory=ModelParameters)
    execution: ModelParameters = Field(default_factory=lambda: ModelParameters(temperature=0.2))


class AgentSettings(_RepoModel):
    planning_timeout_minutes: float = 10
    execution_timeout_minutes: float = 15
    max_planning_iterations: int = 30
    max_execution_iterations: int = 50
    additional_context: str = ""
    model_parameters: PhaseModelParameters = Field(default_factory=PhaseModelParameters)


class PromptTemplate(_RepoModel):
    template: str
    variables: Dict[str, str] = Field(default_factory=dict)


DEFAULT_PLANNING_RULES = [
    "DO NOT modify any files - this is READ-ONLY exploration",
    "Maximum {{maxFilesPerPlan}} files in the plan",
    "Be SURGICAL: only list files that MUST change",
    "Include specific file paths you discovered",
    "Consider existing patterns in the codebase",
]

DEFAULT_EXECUTION_RULES = [
    "Follow the implementation plan exactly",
    "Write complete, working code - no placeholders or TODOs",
    "Make minimal changes - do not refactor unrelated code",
    "Read files before editing to understand context",
    "Do NOT commit changes - just make file edits",
]


class PromptSettings(_RepoModel):
    # None means the built-in template from prompt_builder
    planning_system_prompt: Optional[PromptTemplate] = None
    execution_system_prompt: Optional[PromptTemplate] = None
    planning_rules: List[str] = Field(default_factory=lambda: list(DEFAULT_PLANNING_RULES))
    execution_rules: List[str] = Field(default_factory=lambda: list(DEFAULT_EXECUTION_RULES))
    workflow_instructions: str = ""


class ToolSettings(_RepoModel):
    blocked_commands: List[str] = Field(default_factory=lambda: list(DEFAULT_BLOCKED_BASH_PATTERNS))
    allowed_commands: List[str] = Field(default_factory=list)


class ValidationSettings(_RepoModel):
    max_files_per_plan: int = 5
    min_files_per_plan: int = 1
    reject_empty_plans: bool = True
    max_modification_size: int = 60000
    max_direct_load_size: int = 100000
    context_truncation_length: int = 8000
    max_glob_results: int = 100


class SafetySettings(_RepoModel):
    blocked_bash_patterns: List[str] = Field(default_factory=lambda: list(DEFAULT_BLOCKED_BASH_PATTERNS))
    enforce_protected_paths: bool = True
    max_budget_per_task: float = 10.0
    max_cost_per_call: float = 2.0


class RetrySettings(_RepoModel):
    max_retries: int = 3
    initial_backoff_ms: int = 2000
    max_backoff_ms: int = 30000
    backoff_multiplier: float = 2
    api_timeout_ms: int = 120000


class WebPreviewSettings(_RepoModel):
    enabled: bool = True
    provider: str = "vercel"
    url_template: Optional[str] = None


class IOSPreviewSettings(_RepoModel):
    enabled: bool = True
    testflight_link: Optional[str] = None


class PreviewSettings(_RepoModel):
    enabled: bool = True
    polling_interval_ms: int = 10000
    max_wait_ms: int = 360000
    web: WebPreviewSettings = Field(default_factory=WebPreviewSettings)
    ios: IOSPreviewSettings = Field(default_factory=IOSPreviewSettings)


class RepoConfig(_RepoModel):
    """Resolved repository configuration with every default applied."""
    version: str = REPO_CONFIG_VERSION
    project_name: Optional[str] = None
    description: Optional[str] = None
    structure: Dict[str, ProjectStructure] = Field(default_factory=dict)
    platforms: List[PlatformDetection] = Field(default_factory=list)
    protected_paths: List[str] = Field(default_factory=lambda: list(DEFAULT_PROTECTED_PATHS))
    custom_instructions: str = ""
    agent: AgentSettings = Field(default_factory=AgentSettings)
    prompts: PromptSettings = Field(default_factory=PromptSettings)
    tools: ToolSettings = Field(default_factory=ToolSettings)
    validation: ValidationSettings = Field(default_factory=ValidationSettings)
    safety: SafetySettings = Field(default_factory=SafetySettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    preview: PreviewSettings = Field(default_factory=PreviewSettings)

    @property
    def blocked_commands(self) -> List[str]:
        return list(dict.fromkeys(self.safety.blocked_bash_patterns + self.tools.blocked_commands))

    def safety_policy(self) -> policy.SafetyPolicy:
        return policy.SafetyPolicy(
            protected_paths=list(self.protected_paths),
            blocked_patterns=self.blocked_commands,
            allowed_commands=list(self.tools.allowed_commands),
            enforce_protected_paths=self.safety.enforce_protected_paths,
            max_content_size=self.validation.max_modification_size,
        )


def _deep_merge(target: Dict[str, Any], source: Dict[str, Any]) -> Dict[str, Any]:
    """Merge ``source`` over ``target``; nested dicts merge, lists replace."""
    result = dict(target)
    for key, value in source.items():
        if value is None:
            continue
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _migrate_v1(data: Dict[str, Any]) -> Dict[str, Any]:
    """v1 documents share the v2 shape; only the version stamp changes."""
    if data.get("version") and data["version"] != REPO_CONFIG_VERSION:
        logger.info(f"Migrating {REPO_CONFIG_FILENAME} from version {data['version']} to {REPO_CONFIG_VERSION}")
        data = dict(data, version=REPO_CONFIG_VERSION)
    return data


def _load_repo_config_from_file(config_path: Path) -> RepoConfig:
    try:
        user = json.loads(config_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.info(f"ℹ️ Invalid {REPO_CONFIG_FILENAME} ({e}), using defaults")
        return RepoConfig()
    if not isinstance(user, dict):
        logger.info(f"ℹ️ {REPO_CONFIG_FILENAME} is not an object, using defaults")
        return RepoConfig()

    defaults = RepoConfig().model_dump(by_alias=True)
    merged = _deep_merge(defaults, _migrate_v1(user))
    return RepoConfig.model_validate(merged)


def load_repo_config(repo_path: Path) -> RepoConfig:
    """Resolved configuration for a checkout; absence is not an error."""
    config_path = Path(repo_path) / REPO_CONFIG_FILENAME
    if not config_path.exists():
        logger.info(f"ℹ️ No {REPO_CONFIG_FILENAME} found, using defaults")
        return RepoConfig()
    result = _get_cached_or_load(config_path.resolve(), _load_repo_config_from_file)
    return result if result is not None else RepoConfig()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def detect_platform(cfg: RepoConfig, title: str, description: str) -> Optional[PlatformDetection]:
    """First platform whose keyword appears in the task text."""
    text = f"{title} {description or ''}".lower()
    for platform in cfg.platforms:
        if any(kw.lower() in text for kw in platform.keywords):
            return platform
    for key, structure in cfg.structure.items():
        if key.lower() in text:
            return PlatformDetection(
                name=structure.name or key,
                keywords=[key.lower()],
                file_patterns=list(structure.file_patterns),
                hints=list(structure.conventions),
            )
    return None


def generate_structure_prompt(cfg: RepoConfig) -> str:
    if not cfg.structure:
        return ""
    lines = ["## Project Structure\n"]
    for key, structure in cfg.structure.items():
        lines.append(f"### {structure.name or key}")
        if structure.description:
            lines.append(structure.description)
        lines.append(f"- Root: `{structure.root_path}`")
        if structure.file_patterns:
            lines.append("- Patterns: " + ", ".join(f"`{p}`" for p in structure.file_patterns))
        if structure.key_directories:
            lines.append("- Key directories: " + ", ".join(structure.key_directories))
        if structure.conventions:
            lines.append("- Conventions:")
            lines.extend(f"  - {c}" for c in structure.conventions)
        lines.append("")
    return "\n".join(lines)


def generate_platform_hints(platform: Optional[PlatformDetection]) -> str:
    if platform is None:
        return ""
    lines = [f"## Platform: {platform.name}\n"]
    if platform.file_patterns:
        lines.append("File patterns to explore: " + ", ".join(f"`{p}`" for p in platform.file_patterns))
    if platform.hints:
        lines.append("\n**Platform-specific guidance:**")
        lines.extend(f"- {h}" for h in platform.hints)
    return "\n".join(lines)


def get_initial_glob_pattern(cfg: RepoConfig, platform: Optional[PlatformDetection]) -> str:
    if platform is not None and platform.file_patterns:
        return platform.file_patterns[0]
    for structure in cfg.structure.values():
        if structure.file_patterns:
            return structure.file_patterns[0]
    return "**/*.ts"


def is_protected_path(path: str, cfg: RepoConfig) -> bool:
    return policy.is_protected_path(path, cfg.protected_paths)


def is_blocked_command(command: str, cfg: RepoConfig) -> bool:
    return policy.is_blocked_command(command, cfg.blocked_commands, cfg.tools.allowed_commands)
