"""Message publisher for queues and direct exchanges.

Each publish call opens a fresh channel on a shared connection, declares
the topology it publishes into, sends the message and closes the channel.
There is no internal retry: a failed call raises PublishError and the
caller decides whether to try again.

Example:
    >>> async with Publisher(BrokerConfig(host="rabbit")) as publisher:
    ...     await publisher.publish_to_queue({"email": "a@b.c"}, "registeruser")
    ...     await publisher.publish_to_exchange(
    ...         order,
    ...         "orderplaced",
    ...         [("email", "orderplaced.email"), ("reward", "orderplaced.reward")],
    ...     )
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

from aio_pika import DeliveryMode, Message
from aio_pika.abc import AbstractChannel
from opentelemetry.trace import Status, StatusCode

from rabbitkit.config import BrokerConfig
from rabbitkit.connection import ConnectionManager
from rabbitkit.exceptions import PublishError
from rabbitkit.observability import (
    ATTR_BINDING_COUNT,
    ATTR_MESSAGING_DESTINATION,
    ATTR_MESSAGING_MESSAGE_ID,
    ATTR_MESSAGING_OPERATION,
    ATTR_MESSAGING_SYSTEM,
    MESSAGING_SYSTEM_RABBITMQ,
    SPAN_PUBLISH,
    SpanKindEnum,
    Tracer,
    create_tracer,
    inject_trace_context,
)
from rabbitkit.serialization import CONTENT_TYPE_JSON, encode_body
from rabbitkit.topology import Binding, ExchangeTarget, QueueTarget, TopologyBuilder

logger = logging.getLogger(__name__)


class Publisher:
    """Publishes JSON messages to a queue or to a direct exchange.

    The message is serialized once per call. ``bytes`` and ``str`` messages
    are sent unchanged; anything else is encoded as UTF-8 JSON.

    Attributes:
        published_count: Messages delivered to the broker (one per binding)
    """

    def __init__(
        self,
        broker: BrokerConfig | None = None,
        *,
        connections: ConnectionManager | None = None,
        durable: bool = False,
        persistent: bool = False,
        dead_letter_enabled: bool = True,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """Initialize the publisher without connecting.

        Args:
            broker: Broker to connect to (ignored if ``connections`` is given)
            connections: Pre-built connection manager, owned by the publisher
            durable: Declare exchanges and queues as durable. Must match the
                consumers of the same queues.
            persistent: Publish with persistent delivery mode
            dead_letter_enabled: Declare queues with the dead-letter
                arguments consumers use. Must match the consumers'
                ``enable_dead_letter_queue``.
            tracer: Tracer for per-publish spans
            enable_tracing: Create spans and propagate trace context
        """
        self._connections = connections or ConnectionManager(broker)
        self._builder = TopologyBuilder(durable=durable)
        self._persistent = persistent
        self._dead_letter_enabled = dead_letter_enabled
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self.published_count = 0

    async def publish_to_queue(self, message: Any, queue_name: str) -> str:
        """Publish a message straight to a queue through the default exchange.

        Args:
            message: Message to send (model, dict, str or bytes)
            queue_name: Destination queue, declared if missing

        Returns:
            The message_id assigned to the published message

        Raises:
            ConfigurationError: If queue_name is empty
            PublishError: If connecting, declaring or publishing fails
        """
        return await self._publish(message, QueueTarget(queue_name))

    async def publish_to_exchange(
        self,
        message: Any,
        exchange_name: str,
        bindings: Mapping[str, str] | Iterable[Binding],
    ) -> str:
        """Publish a message to a direct exchange once per binding.

        Every (routing_key, queue_name) pair is declared and bound before
        the message is published on its routing key, in order.

        Args:
            message: Message to send (model, dict, str or bytes)
            exchange_name: Destination exchange, declared if missing
            bindings: Mapping or sequence of (routing_key, queue_name) pairs

        Returns:
            The message_id assigned to the published message

        Raises:
            ConfigurationError: If the exchange name or bindings are invalid
            PublishError: If connecting, declaring or publishing fails
        """
        return await self._publish(message, ExchangeTarget.create(exchange_name, bindings))

    async def close(self) -> None:
        """Close the underlying connection."""
        await self._connections.close()

    async def __aenter__(self) -> Publisher:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        await self.close()

    async def _publish(self, message: Any, target: QueueTarget | ExchangeTarget) -> str:
        destination = (
            target.queue_name if isinstance(target, QueueTarget) else target.exchange_name
        )
        message_id = str(uuid.uuid4())
        start = time.perf_counter()

        with self._tracer.span_with_kind(
            SPAN_PUBLISH,
            kind=SpanKindEnum.PRODUCER,
            attributes={
                ATTR_MESSAGING_SYSTEM: MESSAGING_SYSTEM_RABBITMQ,
                ATTR_MESSAGING_DESTINATION: destination,
                ATTR_MESSAGING_OPERATION: "publish",
                ATTR_MESSAGING_MESSAGE_ID: message_id,
            },
        ) as span:
            channel: AbstractChannel | None = None
            try:
                body = encode_body(message)
                channel = await self._connections.acquire_channel()
                topology = await self._builder.ensure_publish_topology(
                    channel, target, dead_letter_enabled=self._dead_letter_enabled
                )

                headers: dict[str, Any] = {}
                if self._tracer.enabled:
                    inject_trace_context(headers)

                if isinstance(target, QueueTarget):
                    await channel.default_exchange.publish(
                        self._build_message(body, message_id, headers),
                        routing_key=target.queue_name,
                    )
                    self.published_count += 1
                else:
                    assert topology.exchange is not None
                    for routing_key, _queue_name in target.bindings:
                        await topology.exchange.publish(
                            self._build_message(body, message_id, headers),
                            routing_key=routing_key,
                        )
                        self.published_count += 1

            except Exception as e:
                logger.error(
                    f"Failed to publish to {destination}: {e}",
                    exc_info=True,
                    extra={
                        "destination": destination,
                        "message_id": message_id,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )
                if span:
                    span.set_status(Status(StatusCode.ERROR, str(e)))
                raise PublishError(destination, str(e)) from e

            finally:
                if channel is not None and not channel.is_closed:
                    await channel.close()

            if span:
                if isinstance(target, ExchangeTarget):
                    span.set_attribute(ATTR_BINDING_COUNT, len(target.bindings))
                span.set_status(Status(StatusCode.OK))

        logger.debug(
            f"Published message to {destination}",
            extra={
                "destination": destination,
                "message_id": message_id,
                "body_size": len(body),
                "duration_ms": (time.perf_counter() - start) * 1000,
            },
        )
        return message_id

    def _build_message(self, body: bytes, message_id: str, headers: dict[str, Any]) -> Message:
        return Message(
            body=body,
            content_type=CONTENT_TYPE_JSON,
            content_encoding="utf-8",
            delivery_mode=(
                DeliveryMode.PERSISTENT if self._persistent else DeliveryMode.NOT_PERSISTENT
            ),
            message_id=message_id,
            timestamp=datetime.now(UTC),
            headers=dict(headers),
        )


__all__ = ["Publisher"]
