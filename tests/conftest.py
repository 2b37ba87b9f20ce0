"""Root-level pytest configuration for all tests."""

from __future__ import annotations

import pytest

from fleetcore.config import get_settings, get_workflow_settings


@pytest.fixture(autouse=True)
def clear_settings_cache():
    """Drop cached settings so environment changes in one test do not leak."""
    get_settings.cache_clear()
    get_workflow_settings.cache_clear()
    yield
    get_settings.cache_clear()
    get_workflow_settings.cache_clear()
