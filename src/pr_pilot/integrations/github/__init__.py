from .client import CheckSummary, CIStatus, GitHubClient, summarize_check_runs

__all__ = ["CheckSummary", "CIStatus", "GitHubClient", "summarize_check_runs"]
