"""Shared test fixtures for the Resource API agent test suite."""

from __future__ import annotations

import os
import tempfile

import httpx
import pytest


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py won't fail on module load.
    """
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
    os.environ.setdefault("RESOURCE_API_TOKEN", "test-resource-token-456")
    os.environ.setdefault("RESOURCE_API_BASE_URL", "http://resource-api.test")
    # Keep the server lifespan from writing memory into the working tree
    os.environ.setdefault("MEMORY_STORE_PATH", tempfile.mkdtemp(prefix="agent-memory-"))


@pytest.fixture
def make_response():
    """Factory fixture for building httpx responses in MockTransport handlers."""

    def _make(status_code: int = 200, json_data=None, text: str | None = None, headers=None):
        if json_data is not None:
            return httpx.Response(status_code, json=json_data, headers=headers)
        return httpx.Response(status_code, text=text or "", headers=headers)

    return _make
