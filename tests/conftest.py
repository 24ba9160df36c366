"""
Shared pytest fixtures for the rabbitkit library tests.

This module provides:
- An in-memory broker (fake_broker) and a patched aio-pika connect that
  hands out connections to it (fake_connect)
- Broker configuration for tests (broker_config)
- A controllable clock for health timestamps (clock)

All fixtures are function scoped so every test gets a fresh broker.
"""

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock

import pytest

import rabbitkit.connection as connection_module
from rabbitkit.config import BrokerConfig
from tests.fixtures import FakeBroker, FakeClock, FakeConnection


# =============================================================================
# Broker Fixtures
# =============================================================================


@pytest.fixture
def fake_broker() -> FakeBroker:
    """Provide an empty in-memory broker."""
    return FakeBroker()


@pytest.fixture
def fake_connect(monkeypatch: pytest.MonkeyPatch, fake_broker: FakeBroker) -> AsyncMock:
    """
    Patch aio_pika.connect_robust to connect to the in-memory broker.

    Returns:
        The AsyncMock standing in for connect_robust, for call assertions.
    """

    def _connect(url: str, **kwargs: Any) -> FakeConnection:
        connection = FakeConnection(fake_broker)
        fake_broker.connections.append(connection)
        return connection

    connect = AsyncMock(side_effect=_connect)
    monkeypatch.setattr(connection_module.aio_pika, "connect_robust", connect)
    return connect


@pytest.fixture
def broker_config() -> BrokerConfig:
    """Provide broker settings for a local test broker."""
    return BrokerConfig(host="localhost", connection_name="rabbitkit-tests")


# =============================================================================
# Time Fixtures
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    """Provide a manually advanced UTC clock."""
    return FakeClock()
