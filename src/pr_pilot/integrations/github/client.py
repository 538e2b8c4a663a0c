"""GitHub client for PR management and check-run polling."""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from github import Auth, Github, GithubException
from github.PullRequest import PullRequest
from github.Repository import Repository

logger = logging.getLogger(__name__)


class CIStatus(str, Enum):
    PENDING = "pending"
    PASSED = "passed"
    FAILED = "failed"
    NONE = "none"


@dataclass
class CheckSummary:
    status: CIStatus
    lines: List[str] = field(default_factory=list)

    @property
    def completed(self) -> bool:
        return self.status != CIStatus.PENDING


_FAILING_CONCLUSIONS = {"failure", "timed_out", "cancelled", "action_required"}


def summarize_check_runs(runs) -> CheckSummary:
    """Fold check runs into one status plus a line per run."""
    lines = []
    pending = failed = False
    for run in runs:
        if run.status != "completed":
            pending = True
            lines.append(f"⏳ {run.name}: {run.status}")
        elif run.conclusion in _FAILING_CONCLUSIONS:
            failed = True
            lines.append(f"❌ {run.name}: {run.conclusion}")
        else:
            lines.append(f"✅ {run.name}: {run.conclusion}")
    if not lines:
        return CheckSummary(CIStatus.NONE)
    if pending:
        return CheckSummary(CIStatus.PENDING, lines)
    return CheckSummary(CIStatus.FAILED if failed else CIStatus.PASSED, lines)


class GitHubClient:
    """GitHub API client for one ``owner/repo``."""

    def __init__(self, token: str, full_name: str, gh: Optional[Github] = None):
        self.full_name = full_name
        self.owner = full_name.split("/", 1)[0]
        self.gh = gh or Github(auth=Auth.Token(token))
        self._repo: Optional[Repository] = None

    @property
    def repo(self) -> Repository:
        if self._repo is None:
            self._repo = self.gh.get_repo(self.full_name)
        return self._repo

    @property
    def default_branch(self) -> str:
        return self.repo.default_branch or "main"

    def create_pull_request(
        self,
        title: str,
        body: str,
        head_branch: str,
        base_branch: Optional[str] = None,
    ) -> PullRequest:
        """Create a pull request."""
        return self.repo.create_pull(
            title=title,
            body=body,
            head=head_branch,
            base=base_branch or self.default_branch,
        )

    def get_pull(self, number: int) -> PullRequest:
        return self.repo.get_pull(number)

    def get_open_pull(self, number: int) -> Optional[PullRequest]:
        """The PR if it exists and is still open."""
        try:
            pr = self.repo.get_pull(number)
        except GithubException as e:
            logger.warning(f"⚠️ Could not load PR #{number}: {e}")
            return None
        return pr if pr.state == "open" else None

    def get_pr_by_branch(self, branch_name: str) -> Optional[PullRequest]:
        """Get PR for a given branch."""
        pulls = self.repo.get_pulls(state="open", head=f"{self.owner}:{branch_name}")
        for pr in pulls:
            return pr
        return None

    def merge(self, number: int, commit_title: Optional[str] = None) -> str:
        """Merge the PR and return the merge commit sha."""
        pr = self.repo.get_pull(number)
        if pr.merged:
            return pr.merge_commit_sha
        result = pr.merge(commit_title=commit_title or pr.title, merge_method="merge")
        if not result.merged:
            raise RuntimeError(f"PR #{number} was not merged: {result.message}")
        return result.sha

    def changed_files(self, number: int) -> List[str]:
        return [f.filename for f in self.repo.get_pull(number).get_files()]

    def check_runs(self, sha: str) -> CheckSummary:
        commit = self.repo.get_commit(sha)
        return summarize_check_runs(commit.get_check_runs())

    def add_pr_comment(self, number: int, comment: str) -> None:
        """Add a comment to a PR."""
        self.repo.get_pull(number).create_issue_comment(comment)
