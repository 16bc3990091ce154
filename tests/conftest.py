"""
Pytest Configuration and Shared Fixtures

Provides the scripted MCP server, fast bridge configs and polling helpers
for all tests.
"""

import asyncio
import sys
import time
import pytest
from pathlib import Path

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from mcp_bridge.config.bridge_config import BridgeConfig


FAKE_SERVER_PATH = Path(__file__).parent / "fixtures" / "fake_mcp_server.py"


@pytest.fixture
def fake_server_path():
    """Path to the scripted MCP server used as the child process."""
    return FAKE_SERVER_PATH


@pytest.fixture
def temp_log_dir(tmp_path):
    """
    Create temporary log directory for testing.

    Returns:
        Path to temporary log directory
    """
    log_dir = tmp_path / "logs"
    log_dir.mkdir()
    return log_dir


@pytest.fixture
def make_config(temp_log_dir):
    """
    Factory for BridgeConfig instances pointed at the fake MCP server.

    Delays and timeouts are shortened so lifecycle tests run in well
    under a second each.

    Usage:
        config = make_config("--init-error", max_restart_attempts=2)
    """
    def _make(*server_flags, **overrides):
        settings = dict(
            host="127.0.0.1",
            port=0,
            child_command=[sys.executable, str(FAKE_SERVER_PATH), *server_flags],
            request_timeout_seconds=5.0,
            initialize_timeout_seconds=5.0,
            shutdown_grace_seconds=2.0,
            boot_delay_seconds=0.05,
            restart_backoff_seconds=0.2,
            log_dir=str(temp_log_dir),
        )
        settings.update(overrides)
        return BridgeConfig(**settings)

    return _make


@pytest.fixture
def bridge_config(make_config):
    """BridgeConfig for a well-behaved fake MCP server."""
    return make_config()


@pytest.fixture
def wait_until():
    """
    Async polling helper.

    Usage:
        assert await wait_until(lambda: bridge.is_initialized, timeout=5)
    """
    async def _wait(predicate, timeout: float = 5.0, interval: float = 0.02) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            await asyncio.sleep(interval)
        return predicate()

    return _wait


@pytest.fixture(autouse=True)
def reset_logging():
    """
    Reset logging configuration between tests.

    Prevents log handler conflicts between tests.
    """
    import logging

    # Remove all handlers
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    yield

    # Clean up after test
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
