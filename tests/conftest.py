"""Pytest hooks and fixtures."""

import pytest
from loguru import logger

from peerbind.channel import LoopbackChannel
from peerbind.config import IpcSettings, configure, reset_settings
from peerbind.context import IpcContext, reset_default_context


def pytest_configure(config):
    """Register custom markers (also in pyproject.toml)."""
    config.addinivalue_line("markers", "slow: timing-sensitive discovery tests")


@pytest.fixture(autouse=True)
def _fresh_settings():
    """Fast discovery timing for every test; restored afterwards."""
    configure(IpcSettings(binding_timeout_ms=1000, retry_interval_ms=20))
    yield
    reset_default_context()
    reset_settings()


@pytest.fixture
def channels():
    host_side, peer_side = LoopbackChannel.pair("host", "peer")
    yield host_side, peer_side
    host_side.close()


@pytest.fixture
def host():
    ctx = IpcContext()
    yield ctx
    ctx.close()


@pytest.fixture
def peer():
    ctx = IpcContext()
    yield ctx
    ctx.close()


@pytest.fixture
def log_messages():
    """Messages logged through loguru while the test runs."""
    messages: list[str] = []
    sink_id = logger.add(lambda message: messages.append(str(message)), level="DEBUG")
    yield messages
    logger.remove(sink_id)
