"""Task, comment, plan and file-change models.

Tasks and comments are owned by the external task store; the worker only
reads them and appends comments. Plans and file changes are produced by
the backends and never persisted except as comment text.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Comment(BaseModel):
    """A single immutable comment on a task."""

    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = None
    content: str = ""
    created_at: datetime = Field(alias="createdAt")
    author_id: Optional[str] = None
    author_email: Optional[str] = None
    author_name: Optional[str] = None
    author_is_agent: bool = False

    @model_validator(mode="before")
    @classmethod
    def flatten_author(cls, data: Any) -> Any:
        """Accept the store's nested ``author`` object."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for camel, snake in (("authorId", "author_id"), ("authorEmail", "author_email"), ("authorName", "author_name")):
            if camel in data:
                data.setdefault(snake, data.pop(camel))
        author = data.get("author")
        if isinstance(author, dict):
            data.setdefault("author_id", author.get("id"))
            data.setdefault("author_email", author.get("email"))
            data.setdefault("author_name", author.get("name"))
            data.setdefault("author_is_agent", bool(author.get("isAIAgent", False)))
        return data

    @field_validator("created_at")
    @classmethod
    def ensure_timezone(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v

    @property
    def has_author(self) -> bool:
        """Comments without an author are system-generated."""
        return bool(self.author_id)


class Task(BaseModel):
    """Externally owned task as returned by the task store."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str
    description: str = ""
    assignee_id: Optional[str] = None
    assignee_email: Optional[str] = None
    assignee_name: Optional[str] = None
    creator_id: Optional[str] = None
    list_id: Optional[str] = None
    repository: Optional[str] = None  # owner/repo, None = assistant-only list
    working_branch: Optional[str] = None
    completed: bool = False
    comments: List[Comment] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def flatten_store_shape(cls, data: Any) -> Any:
        """Accept the store's nested ``assignee``/``creator``/``lists`` objects."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if data.get("description") is None:
            data["description"] = ""
        assignee = data.get("assignee")
        if isinstance(assignee, dict):
            data.setdefault("assignee_id", assignee.get("id"))
            data.setdefault("assignee_email", assignee.get("email"))
            data.setdefault("assignee_name", assignee.get("name"))
        if "assigneeId" in data:
            data.setdefault("assignee_id", data["assigneeId"])
        creator = data.get("creator")
        if isinstance(creator, dict):
            data.setdefault("creator_id", creator.get("id"))
        if "creatorId" in data:
            data.setdefault("creator_id", data["creatorId"])
        lists = data.get("lists")
        if isinstance(lists, list) and lists:
            data.setdefault("list_id", lists[0].get("id"))
            for entry in lists:
                repo = entry.get("githubRepositoryId")
                if repo:
                    data.setdefault("repository", repo)
                    break
        if "workingBranch" in data:
            data.setdefault("working_branch", data["workingBranch"])
        return data

    def sorted_comments(self) -> List[Comment]:
        """Comments ordered oldest first."""
        return sorted(self.comments, key=lambda c: c.created_at)


class Complexity(str, Enum):
    SIMPLE = "simple"
    MEDIUM = "medium"
    COMPLEX = "complex"


class PlannedFile(BaseModel):
    """One file entry in an implementation plan."""

    path: str = ""
    purpose: str = "Implementation"
    changes: str = "See plan"


class ImplementationPlan(BaseModel):
    """Structured output of the planning phase."""

    model_config = ConfigDict(use_enum_values=True, populate_by_name=True)

    summary: str = ""
    approach: str = ""
    files: List[PlannedFile] = Field(default_factory=list)
    complexity: Complexity = Field(default="medium", alias="estimatedComplexity")
    considerations: List[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def coerce_model_output(cls, data: Any) -> Any:
        """Tolerate the shapes models actually emit.

        Accepts snake_case ``estimated_complexity``, unknown complexity values,
        bare string file entries and a ``risks`` list standing in for
        considerations.
        """
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "estimated_complexity" in data and "estimatedComplexity" not in data:
            data["estimatedComplexity"] = data.pop("estimated_complexity")
        if "complexity" in data and "estimatedComplexity" not in data:
            data["estimatedComplexity"] = data.pop("complexity")
        level = data.get("estimatedComplexity")
        if level is not None and level not in {c.value for c in Complexity}:
            data["estimatedComplexity"] = Complexity.MEDIUM.value
        if not data.get("considerations") and isinstance(data.get("risks"), list):
            data["considerations"] = data["risks"]
        if isinstance(data.get("considerations"), list):
            data["considerations"] = [str(c) for c in data["considerations"]]
        files = data.get("files")
        if isinstance(files, list):
            coerced = []
            for entry in files:
                if isinstance(entry, str):
                    coerced.append({"path": entry})
                elif isinstance(entry, dict):
                    entry = {k: v for k, v in entry.items() if v is not None}
                    if "file" in entry and "path" not in entry:
                        entry["path"] = entry.pop("file")
                    coerced.append(entry)
            data["files"] = coerced
        for key in ("summary", "approach"):
            if data.get(key) is None:
                data[key] = ""
        return data


class FileAction(str, Enum):
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"


class FileChange(BaseModel):
    """A file mutation accumulated during execution."""

    model_config = ConfigDict(use_enum_values=True)

    path: str
    content: str = ""
    action: FileAction = "modify"


class Usage(BaseModel):
    """Token and cost accounting for one phase."""

    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0

    def add(self, input_tokens: int, output_tokens: int, cost_usd: float) -> None:
        self.input_tokens += input_tokens
        self.output_tokens += output_tokens
        self.cost_usd += cost_usd


def utcnow() -> datetime:
    return datetime.now(UTC)
