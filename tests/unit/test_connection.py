"""Unit tests for ConnectionManager."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from rabbitkit.config import BrokerConfig
from rabbitkit.connection import ConnectionManager
from rabbitkit.exceptions import BrokerConnectionError
from tests.fixtures import FakeBroker, FakeConnection


class TestConnectionManager:
    """Tests for lazy connection and per-call channels."""

    def test_defaults_to_local_broker(self) -> None:
        manager = ConnectionManager()

        assert manager.broker == BrokerConfig()
        assert manager.is_connected is False

    async def test_connects_lazily(
        self, fake_connect: AsyncMock, broker_config: BrokerConfig
    ) -> None:
        manager = ConnectionManager(broker_config)
        fake_connect.assert_not_called()

        channel = await manager.acquire_channel()

        assert channel.is_closed is False
        assert manager.is_connected is True
        fake_connect.assert_awaited_once()
        args, kwargs = fake_connect.call_args
        assert args == (broker_config.url,)
        assert kwargs["heartbeat"] == 60
        assert kwargs["client_properties"] == {"connection_name": "rabbitkit-tests"}

    async def test_connection_name_optional(self, fake_connect: AsyncMock) -> None:
        await ConnectionManager(BrokerConfig()).acquire_channel()

        assert "client_properties" not in fake_connect.call_args.kwargs

    async def test_reuses_connection_with_fresh_channels(
        self, fake_connect: AsyncMock, fake_broker: FakeBroker, broker_config: BrokerConfig
    ) -> None:
        manager = ConnectionManager(broker_config)

        first = await manager.acquire_channel()
        second = await manager.acquire_channel()

        assert first is not second
        assert fake_connect.await_count == 1
        assert len(fake_broker.connections[0].channels) == 2

    async def test_concurrent_callers_share_one_connection(
        self, fake_connect: AsyncMock, broker_config: BrokerConfig
    ) -> None:
        manager = ConnectionManager(broker_config)

        await asyncio.gather(*(manager.acquire_channel() for _ in range(5)))

        assert fake_connect.await_count == 1

    async def test_reconnects_when_connection_closed(
        self, fake_connect: AsyncMock, fake_broker: FakeBroker, broker_config: BrokerConfig
    ) -> None:
        manager = ConnectionManager(broker_config)
        await manager.acquire_channel()
        fake_broker.connections[0].is_closed = True

        await manager.acquire_channel()

        assert fake_connect.await_count == 2
        assert len(fake_broker.connections) == 2

    async def test_close_is_idempotent(
        self, fake_connect: AsyncMock, fake_broker: FakeBroker, broker_config: BrokerConfig
    ) -> None:
        manager = ConnectionManager(broker_config)
        await manager.acquire_channel()

        await manager.close()
        await manager.close()

        assert fake_broker.connections[0].is_closed is True
        assert manager.is_connected is False

    async def test_close_without_connection(self) -> None:
        await ConnectionManager().close()

    async def test_context_manager_closes(
        self, fake_connect: AsyncMock, fake_broker: FakeBroker, broker_config: BrokerConfig
    ) -> None:
        async with ConnectionManager(broker_config) as manager:
            await manager.acquire_channel()

        assert fake_broker.connections[0].is_closed is True

    async def test_connect_failure_raises_broker_connection_error(self) -> None:
        """The error names the broker without leaking credentials."""
        manager = ConnectionManager(
            BrokerConfig(host="rabbit.internal", username="svc", password="s3cret")
        )

        with patch(
            "rabbitkit.connection.aio_pika.connect_robust",
            AsyncMock(side_effect=ConnectionRefusedError("connection refused")),
        ):
            with pytest.raises(BrokerConnectionError, match="connection refused") as exc_info:
                await manager.acquire_channel()

        assert "rabbit.internal" in str(exc_info.value)
        assert "s3cret" not in str(exc_info.value)
        assert manager.is_connected is False

    async def test_channel_failure_raises_broker_connection_error(
        self, fake_broker: FakeBroker, broker_config: BrokerConfig
    ) -> None:
        connection = FakeConnection(fake_broker)
        connection.channel = AsyncMock(side_effect=RuntimeError("channel limit"))  # type: ignore[method-assign]

        with patch(
            "rabbitkit.connection.aio_pika.connect_robust", AsyncMock(return_value=connection)
        ):
            with pytest.raises(BrokerConnectionError, match="could not open channel"):
                await ConnectionManager(broker_config).acquire_channel()

    async def test_unexpected_close_is_logged(
        self,
        fake_connect: AsyncMock,
        fake_broker: FakeBroker,
        broker_config: BrokerConfig,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        manager = ConnectionManager(broker_config)
        await manager.acquire_channel()
        connection = fake_broker.connections[0]

        for callback in connection.close_callbacks:
            callback(connection, ConnectionResetError("heartbeat timeout"))

        assert "closed unexpectedly" in caplog.text
