"""Shared test fixtures for chatsync.

Provides common fixtures used across the unit tests.
"""

from __future__ import annotations

import pytest

from src.chat.cache import ConversationCache
from src.settings import Settings

# =============================================================================
# SETTINGS
# =============================================================================


@pytest.fixture
def test_settings() -> Settings:
    """Provide test settings with safe defaults."""
    return Settings(
        _env_file=None,  # Don't load .env in tests
        environment="testing",
        chat_api_url="http://chat.test",
        reconcile_poll_delays_seconds=[0.25, 0.5, 1.0],
        reconcile_fetch_retry_delay_seconds=2.0,
    )


@pytest.fixture
def mock_settings(test_settings: Settings, monkeypatch: pytest.MonkeyPatch) -> Settings:
    """Mock get_settings() to return test settings."""
    from src import settings

    monkeypatch.setattr(settings, "get_settings", lambda: test_settings)
    return test_settings


# =============================================================================
# TIME
# =============================================================================


class RecordingSleep:
    """Awaitable sleep stand-in that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def fake_sleep() -> RecordingSleep:
    """Sleep replacement so backoff schedules run instantly."""
    return RecordingSleep()


# =============================================================================
# CACHE
# =============================================================================


@pytest.fixture
def cache() -> ConversationCache:
    """Empty conversation cache."""
    return ConversationCache()


# =============================================================================
# MARKERS
# =============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "slow: Slow tests")
