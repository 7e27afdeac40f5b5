"""Pytest configuration and fixtures."""

import os
from collections.abc import Callable, Iterator

import pytest

from career_guide_api.config import Settings

# Set test environment variables before importing app modules
os.environ.setdefault("OPENROUTER_API_KEY", "")
os.environ.setdefault("ENVIRONMENT", "development")
# Increase rate limit for testing
os.environ.setdefault("RATE_LIMIT_PER_MINUTE", "1000")
# Serve canned LLM responses in tests
os.environ.setdefault("MOCK_OPENROUTER", "true")


@pytest.fixture(autouse=True)
def reset_caches() -> Iterator[None]:
    """Reset cached settings and global singletons before each test."""
    from career_guide_api.catalog import reset_catalog
    from career_guide_api.config import get_settings
    from career_guide_api.conversation_store import reset_conversation_store
    from career_guide_api.openrouter_client import reset_openrouter_client
    from career_guide_api.orchestrator import reset_orchestrator
    from career_guide_api.user_profile import reset_user_profile_sink

    def _reset() -> None:
        get_settings.cache_clear()
        reset_conversation_store()
        reset_catalog()
        reset_openrouter_client()
        reset_orchestrator()
        reset_user_profile_sink()

    _reset()

    # Reset rate limiter storage
    try:
        from career_guide_api.main import limiter

        if hasattr(limiter, "_storage") and limiter._storage:
            limiter._storage.reset()
    except (ImportError, AttributeError):
        pass

    yield
    _reset()


@pytest.fixture
def mock_settings(monkeypatch: pytest.MonkeyPatch) -> Callable[..., Settings]:
    """Fixture to set test settings."""

    def _mock_settings(**kwargs: str) -> Settings:
        for key, value in kwargs.items():
            monkeypatch.setenv(key.upper(), str(value))
        from career_guide_api.config import get_settings

        get_settings.cache_clear()
        return get_settings()

    return _mock_settings
