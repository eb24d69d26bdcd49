"""Unit-test conftest: settings isolation.

Provides an ``autouse`` fixture that clears the cached ``get_settings()``
instance around every unit test, so environment variables set by one
test never leak into another through the ``lru_cache``.
"""

from __future__ import annotations

import pytest

from src.settings import get_settings


@pytest.fixture(autouse=True)
def _isolate_settings():
    """Start and end every unit test with an empty settings cache."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
