"""
Pytest configuration and shared fixtures.

This file is automatically loaded by pytest and provides:
- Shared fixtures available to all test modules
- Test environment setup
"""

import os
import sys
from pathlib import Path

import pytest

# Add parent directory to Python path so tests can import project modules
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Keep the service log out of the user's home during test collection,
# because proxy_service builds its app at import time.
os.environ.setdefault("LOG_LEVEL", "DEBUG")
os.environ.setdefault("LOG_PATH", "/tmp/claude_proxy_test.log")
os.environ.setdefault("LOG_COLOR", "false")


@pytest.fixture(scope="session")
def project_root_path():
    """Get project root path."""
    return project_root


@pytest.fixture
def make_config(tmp_path):
    """Build an AppConfig from an env-style dict; audit records land in tmp_path."""
    from config import AppConfig

    def _make(env=None, settings=None):
        base = {"AUDIT_LOG_DIR": str(tmp_path / "audit")}
        base.update(env or {})
        return AppConfig.from_sources(base, settings)

    return _make
