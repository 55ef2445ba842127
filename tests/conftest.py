"""Pytest configuration and shared fixtures."""

import pytest

from fakes import FakeDatabase


@pytest.fixture
def fake_db() -> FakeDatabase:
    """Fake database answering every request with ``null``."""
    return FakeDatabase()
