"""Shared fixtures for unit tests."""

import pytest

from pr_pilot.core.config import clear_config_cache


@pytest.fixture(autouse=True)
def _fresh_config_cache():
    """Config files are cached by mtime; tests write new ones constantly."""
    clear_config_cache()
    yield
    clear_config_cache()


@pytest.fixture
def clean_env(monkeypatch):
    """Remove provider credentials the developer's shell may export."""
    for name in (
        "GITHUB_TOKEN", "PR_PILOT_GITHUB_TOKEN",
        "ANTHROPIC_API_KEY", "PR_PILOT_ANTHROPIC_API_KEY",
        "OPENAI_API_KEY", "PR_PILOT_OPENAI_API_KEY",
        "GEMINI_API_KEY", "PR_PILOT_GEMINI_API_KEY",
        "VERCEL_TOKEN", "VERCEL_API_TOKEN", "PR_PILOT_VERCEL_TOKEN",
        "TESTFLIGHT_PUBLIC_LINK", "PR_PILOT_TESTFLIGHT_LINK",
        "PR_PILOT_CLIENT_ID", "PR_PILOT_CLIENT_SECRET",
        "PR_PILOT_GATEWAY_URL", "PR_PILOT_GATEWAY_TOKEN",
        "PR_PILOT_AUTO_APPROVE",
    ):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch
