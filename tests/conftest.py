"""Pytest configuration for gateway_sdk tests.

Run tests with: pytest tests/
"""

import sys
from pathlib import Path

import pytest

# Make the fakes module importable regardless of the import mode
tests_dir = Path(__file__).parent
if str(tests_dir) not in sys.path:
    sys.path.insert(0, str(tests_dir))

from fakes import FakeTransportFactory  # noqa: E402


@pytest.fixture(autouse=True)
def no_trace_file(monkeypatch):
    """Keep tests from appending to the shared trace file."""
    monkeypatch.setenv("GATEWAY_TRACE_LOG", "")


@pytest.fixture
def transport_factory():
    return FakeTransportFactory()
