"""Pytest configuration and shared fixtures."""

import sys
from pathlib import Path

import pytest

# src/ holds the provisioner package, tests/ holds azure_mock
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent))

from azure_mock import InMemoryProvider  # noqa: E402


@pytest.fixture
def provider() -> InMemoryProvider:
    """In-memory provider with the Test/* kinds and no injected failures."""
    return InMemoryProvider()
