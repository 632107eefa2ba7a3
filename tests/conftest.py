"""Pytest configuration and shared fixtures."""

import logging
import os
import sys
from pathlib import Path

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))


@pytest.fixture(autouse=True)
def reset_rollout_env(monkeypatch):
    """Keep host environment variables out of settings-driven tests."""
    for key in list(os.environ):
        if key.startswith("ROLLOUT_") or key == "AUTO_ROLLBACK_PRODUCTION":
            monkeypatch.delenv(key, raising=False)

    from src.settings import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def restore_root_logger():
    """configure_logging() replaces root handlers; put them back after each test."""
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield
    root.handlers = handlers
    root.setLevel(level)
