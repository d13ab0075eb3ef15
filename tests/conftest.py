"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for fake_cloud imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from convergence.config import EngineConfig, ProviderContext  # noqa: E402
from fake_cloud import MAINTENANCE_DEFAULTS, ChannelHandler, FakeTransport  # noqa: E402


@pytest.fixture
def fast_config() -> EngineConfig:
    """Engine config polling every 10ms without backoff or jitter."""
    return EngineConfig(
        create_timeout_seconds=5,
        update_timeout_seconds=5,
        delete_timeout_seconds=5,
        poll_interval_seconds=0.01,
        max_poll_interval_seconds=0.01,
        backoff_factor=1.0,
        jitter=0.0,
        not_found_checks=5,
    )


@pytest.fixture
def context() -> ProviderContext:
    return ProviderContext(subscription_id="sub-1", default_tags={"owner": "platform"})


@pytest.fixture
def handler() -> ChannelHandler:
    return ChannelHandler()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport(server_defaults=MAINTENANCE_DEFAULTS)
