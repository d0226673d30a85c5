"""
Pytest configuration and shared fixtures for the OpStatus tests.

This file contains:
- Isolated status directories and configuration per test
- A controllable clock for registry and client timestamps
- Test hooks and markers
"""

import asyncio
import logging
import shutil
import sys
import tempfile
from pathlib import Path

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from opstatus.core.config import StatusSyncConfig  # noqa: E402
from opstatus.core.registry import OperationRegistry  # noqa: E402


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture(scope="session")
def project_root_path():
    """Return the project root directory path."""
    return project_root


@pytest.fixture(scope="function")
def status_dir():
    """
    Short-lived status directory.

    Kept directly under /tmp: Unix socket paths are limited to ~104 bytes
    and pytest's tmp_path is usually too deep.
    """
    path = Path(tempfile.mkdtemp(prefix="ops", dir="/tmp"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture(scope="function")
def config(status_dir):
    """Config rooted at ``status_dir`` with the sweeper off and a fast poll."""
    return StatusSyncConfig.for_directory(
        status_dir,
        poll_interval=0.1,
        sweep_interval=0.0,
        stale_after=3600.0,
        http_enabled=False,
    )


@pytest.fixture(scope="function")
def clock():
    return FakeClock()


@pytest.fixture(scope="function")
def registry(config):
    """Started registry using the real clock."""
    registry = OperationRegistry(config)
    registry.start()
    yield registry
    registry.stop()


@pytest.fixture(autouse=True)
def restore_opstatus_logging():
    """Undo handlers installed by the command line entry point."""
    logger = logging.getLogger("opstatus")
    handlers, level, propagate = list(logger.handlers), logger.level, logger.propagate
    yield
    logger.handlers[:] = handlers
    logger.setLevel(level)
    logger.propagate = propagate


@pytest.fixture(scope="function")
def wait_until():
    """Async helper: poll ``predicate`` until true or fail after ``timeout`` seconds."""

    async def _wait_until(predicate, timeout: float = 3.0, interval: float = 0.02):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError(f"Condition not met within {timeout}s")
            await asyncio.sleep(interval)

    return _wait_until


def pytest_configure(config):
    """Configure pytest with custom settings."""
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )
    config.addinivalue_line(
        "markers", "posix: mark test as requiring Unix domain sockets"
    )


def pytest_collection_modifyitems(config, items):
    """Skip socket-based tests where Unix datagram sockets are unavailable."""
    if sys.platform != "win32":
        return
    skip_posix = pytest.mark.skip(reason="Unix domain datagram sockets not available")
    for item in items:
        if "posix" in item.keywords:
            item.add_marker(skip_posix)


def pytest_report_header(config):
    """Add custom header to pytest report."""
    return [
        "OpStatus Test Suite",
        f"Project Root: {project_root}",
    ]
