"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for provider_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from provider_mock import FakeCloud  # noqa: E402


@pytest.fixture
def fake_cloud() -> FakeCloud:
    """Empty fake cloud; tests register the providers they need."""
    return FakeCloud()
