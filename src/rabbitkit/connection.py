"""Broker connection management using aio-pika.

A ConnectionManager owns at most one live AMQP connection and hands out a
fresh channel per request. The connection is opened lazily and re-opened
whenever the cached one reports closed.

Example:
    >>> from rabbitkit.config import BrokerConfig
    >>> from rabbitkit.connection import ConnectionManager
    >>>
    >>> async with ConnectionManager(BrokerConfig(host="rabbit")) as connections:
    ...     channel = await connections.acquire_channel()
    ...     await channel.declare_queue("emails")
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractRobustConnection

from rabbitkit.config import BrokerConfig
from rabbitkit.exceptions import BrokerConnectionError

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Lazily-opened, shared broker connection with per-call channels.

    Concurrent callers racing to (re)create the connection are serialized
    by an asyncio.Lock; the liveness check is repeated under the lock so only
    one of them connects.

    Connection failures are not retried here. They surface as
    BrokerConnectionError and the caller decides what to do with them.

    Attributes:
        broker: The broker settings used to connect
    """

    def __init__(self, broker: BrokerConfig | None = None) -> None:
        """Initialize the manager without connecting.

        Args:
            broker: Broker settings. Defaults to a local broker with guest
                credentials.
        """
        self.broker = broker or BrokerConfig()
        self._connection: AbstractRobustConnection | None = None
        self._lock = asyncio.Lock()
        self._closing = False

    @property
    def is_connected(self) -> bool:
        """Check if a live connection is cached."""
        return self._connection is not None and not self._connection.is_closed

    async def acquire_channel(self) -> AbstractChannel:
        """Open a new channel, connecting first if needed.

        Returns:
            A freshly opened channel. The caller owns it and must close it.

        Raises:
            BrokerConnectionError: If the connection or channel cannot be opened
        """
        connection = await self._ensure_connection()
        try:
            channel = await connection.channel()
        except Exception as e:
            logger.error(
                f"Failed to open channel: {e}",
                exc_info=True,
                extra={
                    "broker_url": self.broker.safe_url,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            raise BrokerConnectionError(self.broker.safe_url, f"could not open channel: {e}") from e
        return channel

    async def close(self) -> None:
        """Close the cached connection. Safe to call more than once."""
        async with self._lock:
            connection = self._connection
            self._connection = None
            if connection is None or connection.is_closed:
                return

            self._closing = True
            try:
                await connection.close()
            finally:
                self._closing = False

        logger.info(
            "Disconnected from broker",
            extra={"broker_url": self.broker.safe_url},
        )

    async def __aenter__(self) -> ConnectionManager:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        await self.close()

    async def _ensure_connection(self) -> AbstractRobustConnection:
        connection = self._connection
        if connection is not None and not connection.is_closed:
            return connection

        async with self._lock:
            # another caller may have reconnected while we waited
            connection = self._connection
            if connection is not None and not connection.is_closed:
                return connection

            self._connection = await self._connect()
            return self._connection

    async def _connect(self) -> AbstractRobustConnection:
        connect_kwargs: dict[str, Any] = {"heartbeat": self.broker.heartbeat}
        if self.broker.connection_name:
            connect_kwargs["client_properties"] = {
                "connection_name": self.broker.connection_name,
            }

        try:
            connection = await aio_pika.connect_robust(self.broker.url, **connect_kwargs)
        except Exception as e:
            logger.error(
                f"Failed to connect to broker: {e}",
                exc_info=True,
                extra={
                    "broker_url": self.broker.safe_url,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            raise BrokerConnectionError(self.broker.safe_url, str(e)) from e

        # aio-pika's callback type hints don't match the documented signature
        connection.close_callbacks.add(self._on_connection_close)  # type: ignore[arg-type]

        logger.info(
            f"Connected to broker ({'TLS' if self.broker.ssl else 'plaintext'})",
            extra={
                "broker_url": self.broker.safe_url,
                "virtual_host": self.broker.virtual_host,
                "connection_name": self.broker.connection_name,
            },
        )
        return connection

    def _on_connection_close(
        self,
        connection: AbstractRobustConnection | None,
        exception: BaseException | None,
    ) -> None:
        """Log connection closure; unexpected closure is a warning."""
        if self._closing or exception is None or isinstance(exception, asyncio.CancelledError):
            logger.debug(
                "Broker connection closed",
                extra={"broker_url": self.broker.safe_url},
            )
            return

        logger.warning(
            f"Broker connection closed unexpectedly: {exception}",
            extra={
                "broker_url": self.broker.safe_url,
                "error": str(exception),
                "error_type": type(exception).__name__,
            },
        )


__all__ = ["ConnectionManager"]
