"""
Shared pytest fixtures for integration tests.

This module provides a RabbitMQ broker using testcontainers for automatic
container management.

If Docker is not available, tests are automatically skipped.
"""

from __future__ import annotations

import importlib.util
import subprocess
from collections.abc import Generator
from typing import Any
from uuid import uuid4

import pytest

from rabbitkit.config import BrokerConfig

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers for integration tests."""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests (may require docker)"
    )
    config.addinivalue_line("markers", "rabbitmq: marks tests that require RabbitMQ")


# ============================================================================
# Testcontainers Detection
# ============================================================================

TESTCONTAINERS_AVAILABLE = importlib.util.find_spec("testcontainers") is not None


def is_docker_available() -> bool:
    """Check if Docker is available for running containers."""
    try:
        result = subprocess.run(
            ["docker", "info"],
            capture_output=True,
            timeout=5,
        )
        return result.returncode == 0
    except (subprocess.TimeoutExpired, OSError):
        return False


DOCKER_AVAILABLE = is_docker_available()


# ============================================================================
# Skip Conditions
# ============================================================================

skip_if_no_rabbitmq_infra = pytest.mark.skipif(
    not (TESTCONTAINERS_AVAILABLE and DOCKER_AVAILABLE),
    reason="RabbitMQ test infrastructure not available (requires testcontainers and docker)",
)


# ============================================================================
# RabbitMQ Fixtures
# ============================================================================


@pytest.fixture(scope="session")
def rabbitmq_container() -> Generator[Any, None, None]:
    """
    Provide RabbitMQ container for integration tests.

    Uses testcontainers to automatically start and stop a RabbitMQ container.
    Container is shared across all tests in the session for efficiency.
    """
    if not TESTCONTAINERS_AVAILABLE or not DOCKER_AVAILABLE:
        pytest.skip("RabbitMQ testcontainer not available")

    from testcontainers.core.container import DockerContainer
    from testcontainers.core.waiting_utils import wait_for_logs

    # Management plugin included for debugging failed runs
    container = DockerContainer("rabbitmq:3-management")
    container.with_exposed_ports(5672, 15672)
    container.with_env("RABBITMQ_DEFAULT_USER", "guest")
    container.with_env("RABBITMQ_DEFAULT_PASS", "guest")
    container.start()

    wait_for_logs(container, "started TCP listener on", timeout=60)

    yield container

    container.stop()


@pytest.fixture(scope="session")
def rabbitmq_broker(rabbitmq_container: Any) -> BrokerConfig:
    """Broker settings pointing at the container."""
    return BrokerConfig(
        host=rabbitmq_container.get_container_host_ip(),
        port=int(rabbitmq_container.get_exposed_port(5672)),
        connection_name="rabbitkit-integration",
    )


@pytest.fixture
def unique_name() -> str:
    """A queue/exchange name prefix unique to the test."""
    return f"it-{uuid4().hex[:8]}"
