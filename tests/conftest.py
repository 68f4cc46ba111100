"""Pytest configuration and fixtures."""

import os

import pytest

from app.core.config import Settings

os.environ.setdefault("OPENAI_API_KEY", "test-openai-key")
os.environ.setdefault("AI_CORE_ENV", "test")


@pytest.fixture(scope="session", autouse=True)
def setup_test_env():
    """Set up test environment variables."""
    os.environ["OPENAI_API_KEY"] = "test-openai-key"
    os.environ["AI_CORE_ENV"] = "test"
    os.environ.pop("SUPABASE_URL", None)
    os.environ.pop("SUPABASE_SERVICE_ROLE_KEY", None)


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from any local .env; web search only through injected fakes."""
    return Settings(
        _env_file=None,
        OPENAI_API_KEY="test-openai-key",
        AI_CORE_ENV="test",
        SUPABASE_URL=None,
        SUPABASE_SERVICE_ROLE_KEY=None,
        WEBSEARCH_ENABLED=False,
        DISABLE_QUOTA_ENFORCEMENT=False,
        QUOTA_SOFT_FAIL=False,
        USAGE_SOFT_FAIL=False,
    )
