"""
Global pytest configuration for DotMac Subscriptions tests.
"""

import os
import sys

import pytest

# Keep tests away from any developer .env / database file
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE__URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("OBSERVABILITY__LOG_FORMAT", "text")
os.environ.setdefault("CELERY__BROKER_URL", "memory://")
os.environ.setdefault("CELERY__RESULT_BACKEND", "cache+memory://")

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from dotmac.subscriptions.settings import reset_settings  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_global_settings():
    """Every test starts from a freshly loaded settings singleton."""
    reset_settings()
    yield
    reset_settings()
