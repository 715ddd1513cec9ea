"""Pytest configuration and fixtures."""

import os

import pytest

from levi_agent.core.config import Settings, get_settings


@pytest.fixture(scope="session", autouse=True)
def setup_test_env():
    """Set up test environment variables."""
    os.environ["SUPABASE_URL"] = "https://test.supabase.co"
    os.environ["SUPABASE_SERVICE_ROLE_KEY"] = "test-key"
    os.environ["OPENROUTER_API_KEY"] = "test-openrouter-key"
    os.environ["LEVI_ENV"] = "test"
    get_settings.cache_clear()


@pytest.fixture
def make_settings():
    """Build Settings with explicit overrides (these win over the environment)."""

    def _make(**overrides) -> Settings:
        values = {
            "SUPABASE_URL": "https://test.supabase.co",
            "SUPABASE_SERVICE_ROLE_KEY": "test-key",
            "OPENROUTER_API_KEY": "test-openrouter-key",
            "LEVI_ENV": "test",
        }
        values.update(overrides)
        return Settings(**values)

    return _make


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
