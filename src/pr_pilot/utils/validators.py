"""Validation utilities for repository and branch names."""

import re


def validate_branch_name(branch_name: str) -> str:
    """
    Validate a git branch name before it reaches a git command line.

    Raises:
        ValueError: If branch name is invalid
    """
    if not branch_name:
        raise ValueError("Branch name cannot be empty")

    # Strict whitelist
    if not re.match(r'^[a-zA-Z0-9/._-]+$', branch_name):
        raise ValueError(f"Invalid branch name: {branch_name}")

    if branch_name.startswith(('/', '-')) or branch_name.endswith('/'):
        raise ValueError("Branch name cannot start with / or - or end with /")

    if '..' in branch_name or '@{' in branch_name:
        raise ValueError("Branch name contains invalid sequence")

    if len(branch_name) > 255:
        raise ValueError("Branch name too long")

    return branch_name


def validate_owner_repo(owner_repo: str) -> str:
    """
    Validate repository name format (owner/repo).

    Raises:
        ValueError: If repository name format is invalid
    """
    if not owner_repo:
        raise ValueError("Repository name cannot be empty")

    if not re.match(r'^[a-zA-Z0-9_.-]+/[a-zA-Z0-9_.-]+$', owner_repo):
        raise ValueError(
            f"Invalid repository format: {owner_repo}. Expected \"owner/repo\"."
        )

    if '..' in owner_repo:
        raise ValueError(f"Invalid repository name: {owner_repo}")

    return owner_repo
