"""
Pytest configuration for the ELF2K emulator test suite.

    python -m pytest                # everything
    python -m pytest -m "not slow"  # skip the long simulated-time runs

The test modules are plain unittest.TestCase classes; the fixtures here
are for the few pytest-style helpers that want them.
"""

import pytest

from console import BufferConsole
from system import Emulator


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers",
        "slow: tests that simulate seconds of machine time")


@pytest.fixture
def buffer_console():
    return BufferConsole()


@pytest.fixture
def emulator(buffer_console):
    """A stock ELF2K wired to an in-memory console, closed afterwards."""
    emu = Emulator(buffer_console)
    yield emu
    emu.close()
