"""Prompt construction for the planning and execution phases.

Templates use ``{{name}}`` placeholders; unknown placeholders are dropped and
runs of blank lines collapsed after substitution.
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, Optional

from .config import (
    PlatformDetection,
    PromptTemplate,
    RepoConfig,
    detect_platform,
    generate_platform_hints,
    generate_structure_prompt,
    get_initial_glob_pattern,
)
from .task import ImplementationPlan
from .task_context import TaskContext

logger = logging.getLogger(__name__)

_PLACEHOLDER_RE = re.compile(r"\{\{[^}]+\}\}")
_BLANK_RUN_RE = re.compile(r"\n{3,}")

DEFAULT_PLANNING_TEMPLATE = """You are analyzing a codebase to create an implementation plan for a coding task.

{{structurePrompt}}
{{platformHints}}
{{customInstructions}}

## Your Task
Create an implementation plan for: "{{taskTitle}}"
{{taskDescription}}
{{previousContext}}

## How to Work
You have access to function calling tools. You MUST use these tools to explore the codebase:
- glob_files(pattern): Find files by pattern (e.g., "**/*.ts", "**/*.py")
- grep_search(pattern, file_pattern): Search for text in files
- read_file(file_path): Read a specific file's contents

CRITICAL: You must use ACTUAL FUNCTION CALLS, not text descriptions.

## Workflow
1. FIRST: Call glob_files or grep_search to explore the codebase (REQUIRED)
2. THEN: Call read_file on relevant files you find
3. FINALLY: After exploring, output your plan as JSON

## Planning Rules
{{planningRules}}

{{workflowInstructions}}

## Output Format
After exploring, respond with a JSON block:
```json
{
  "summary": "Brief summary of what needs to be done",
  "approach": "High-level approach to implementing the changes",
  "files": [
    {"path": "path/to/file.ts", "purpose": "Why this file changes", "changes": "Specific changes"}
  ],
  "estimatedComplexity": "simple|medium|complex",
  "considerations": ["Important consideration"]
}
```"""

DEFAULT_EXECUTION_TEMPLATE = """You are implementing a coding task from an approved plan.

{{structurePrompt}}
{{platformHints}}
{{customInstructions}}

## Task
Implement: "{{taskTitle}}"
{{taskDescription}}

## Approved Plan
{{planSummary}}

### Files to Modify
{{planFiles}}

## Execution Rules
{{executionRules}}

{{workflowInstructions}}

## Tools Available
- read_file: Read file contents before editing
- write_file: Create new files
- edit_file: Modify existing files (use old_string/new_string)
- run_bash: Run shell commands (limited)
- task_complete: Signal completion with commit message and PR details

## Workflow
1. Read each file in the plan before modifying
2. Make minimal, surgical changes
3. Call task_complete when done

## Output
When complete, call task_complete with:
- commit_message: Descriptive commit message
- pr_title: PR title starting with feat:/fix:/etc.
- pr_description: What was changed and why"""

ASSISTANT_TEMPLATE = """You are a helpful assistant answering a task in a shared to-do list.
Answer the request directly and concisely in markdown.

Task: {{taskTitle}}
{{taskDescription}}"""

# Corrective nudges sent when the model stalls.
USE_TOOLS_NUDGE = (
    "You must use the tools to explore the codebase. Please call glob_files with an "
    "appropriate pattern to find relevant files. Do not describe what you will do - "
    "actually invoke the function."
)
EMPTY_PLAN_NUDGE = (
    "Your plan has no files. You MUST use glob_files and read_file first to explore the "
    "codebase, then provide a plan with specific files to modify."
)
REQUEST_PLAN_NUDGE = "Please provide the implementation plan as a JSON block with at least one file."
REQUEST_COMPLETION_NUDGE = "Please call task_complete to finalize."
MIN_FILES_RETRY_PROMPT = (
    "Your plan lists fewer files than required (minimum {min_files}). Explore further and "
    "return a JSON plan naming every file that must change."
)


def substitute_variables(template: str, variables: Dict[str, Optional[str]]) -> str:
    result = template
    for key, value in variables.items():
        result = result.replace("{{" + key + "}}", value or "")
    result = _PLACEHOLDER_RE.sub("", result)
    return _BLANK_RUN_RE.sub("\n\n", result).strip()


def build_from_template(template: PromptTemplate, variables: Dict[str, Optional[str]]) -> str:
    merged: Dict[str, Optional[str]] = dict(template.variables)
    merged.update(variables)
    return substitute_variables(template.template, merged)


@dataclass
class PromptContext:
    """Per-task inputs shared by both phase prompts."""
    config: RepoConfig
    task_title: str
    task_description: str = ""
    task_context: Optional[TaskContext] = None
    platform: Optional[PlatformDetection] = None

    def __post_init__(self):
        if self.platform is None:
            self.platform = detect_platform(self.config, self.task_title, self.task_description)
            if self.platform:
                logger.debug(f"Detected platform: {self.platform.name}")


class PromptBuilder:
    """Builds system prompts and opening user messages from repository config."""

    def __init__(self, ctx: PromptContext):
        self.ctx = ctx
        self.config = ctx.config

    def _common_variables(self) -> Dict[str, Optional[str]]:
        description = self.ctx.task_description.strip()
        return {
            "structurePrompt": generate_structure_prompt(self.config),
            "platformHints": generate_platform_hints(self.ctx.platform),
            "customInstructions": self.config.custom_instructions or None,
            "taskTitle": self.ctx.task_title,
            "taskDescription": f"\nDetails: {description}" if description else "",
            "workflowInstructions": self.config.prompts.workflow_instructions or None,
        }

    @property
    def initial_glob_pattern(self) -> str:
        return get_initial_glob_pattern(self.config, self.ctx.platform)

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def build_planning_prompt(self) -> str:
        max_files = str(self.config.validation.max_files_per_plan)
        rules = "\n".join(
            f"- {substitute_variables(rule, {'maxFilesPerPlan': max_files})}"
            for rule in self.config.prompts.planning_rules
        )
        variables = self._common_variables()
        variables["planningRules"] = rules
        variables["previousContext"] = self._previous_context_section()

        template = self.config.prompts.planning_system_prompt or PromptTemplate(template=DEFAULT_PLANNING_TEMPLATE)
        return build_from_template(template, variables)

    def _previous_context_section(self) -> str:
        tc = self.ctx.task_context
        if tc is None or not tc.has_been_processed_before:
            return ""

        lines = [
            "\n## Previous Attempts",
            "",
            "This task has been attempted before. Consider the previous feedback:",
            "",
        ]
        for i, attempt in enumerate(tc.previous_attempts, 1):
            lines.append(f"### Attempt {i}")
            if attempt.plan_summary:
                lines.append(f"- Plan: {attempt.plan_summary}")
            if attempt.files:
                lines.append(f"- Files: {', '.join(attempt.files[:5])}")
            if attempt.pr_url:
                lines.append(f"- PR: {attempt.pr_url}")
            if attempt.outcome:
                lines.append(f"- Outcome: {attempt.outcome}")
            lines.append("")
        if tc.user_feedback:
            lines.append("### User Feedback")
            lines.extend(f"- {fb}" for fb in tc.user_feedback)
            lines.append("")
        if tc.system_understanding:
            lines.append(tc.system_understanding)
            lines.append("")
        return "\n".join(lines)

    def planning_user_message(self) -> str:
        pattern = self.initial_glob_pattern
        target = f"relevant {self.ctx.platform.name} files" if self.ctx.platform else "relevant files"
        return (
            f'Start by calling glob_files with pattern "{pattern}" to find {target}, '
            f"then create an implementation plan for: {self.ctx.task_title}"
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def build_execution_prompt(self, plan: ImplementationPlan) -> str:
        variables = self._common_variables()
        variables["executionRules"] = "\n".join(f"- {r}" for r in self.config.prompts.execution_rules)
        variables["planSummary"] = f"**Summary:** {plan.summary}\n**Approach:** {plan.approach}"
        variables["planFiles"] = "\n".join(
            f"- `{f.path}`: {f.purpose}\n  Changes: {f.changes}" for f in plan.files
        )
        template = self.config.prompts.execution_system_prompt or PromptTemplate(template=DEFAULT_EXECUTION_TEMPLATE)
        return build_from_template(template, variables)

    def execution_user_message(self, plan: ImplementationPlan) -> str:
        files = ", ".join(f.path for f in plan.files)
        return (
            f"Implement the approved plan for: {self.ctx.task_title}\n\n"
            f"Files to modify: {files}\n\n"
            "Start by reading each file, then make the necessary changes."
        )

    def build_assistant_prompt(self) -> str:
        return build_from_template(PromptTemplate(template=ASSISTANT_TEMPLATE), self._common_variables())
