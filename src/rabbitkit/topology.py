"""Exchange, queue and binding declarations.

TopologyBuilder declares everything a consumer or publisher needs before
messages flow. All declarations are idempotent: declaring an existing
entity with the same settings is a no-op on the broker.

Consumer topology, in declaration order:

1. Dead-letter exchange (direct) and dead-letter queue bound on the
   ``.failed`` routing key, when dead-lettering is enabled
2. The subscription exchange (direct), in exchange mode
3. The consumer queue, carrying ``x-dead-letter-exchange`` and
   ``x-dead-letter-routing-key`` arguments when dead-lettering is enabled
4. The queue binding on the routing key, in exchange mode

Publishers declare the same queue arguments as consumers would, since the
broker refuses to re-declare a queue with different arguments.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from aio_pika import ExchangeType
from aio_pika.abc import AbstractChannel, AbstractExchange, AbstractQueue

from rabbitkit.config import DeadLetterConfig, SubscriptionConfig
from rabbitkit.exceptions import ConfigurationError, TopologyError

logger = logging.getLogger(__name__)

Binding = tuple[str, str]
"""A (routing_key, queue_name) pair."""


def normalize_bindings(bindings: Mapping[str, str] | Iterable[Binding]) -> tuple[Binding, ...]:
    """Turn a mapping or sequence of (routing_key, queue_name) pairs into a tuple.

    Iteration order is preserved.

    Raises:
        ConfigurationError: If a pair is malformed or has empty names
    """
    pairs = list(bindings.items()) if isinstance(bindings, Mapping) else list(bindings)
    result: list[Binding] = []
    for pair in pairs:
        try:
            routing_key, queue_name = pair
        except (TypeError, ValueError) as e:
            raise ConfigurationError(
                f"Binding must be a (routing_key, queue_name) pair, got {pair!r}"
            ) from e
        if not routing_key or not queue_name:
            raise ConfigurationError(
                f"Binding routing_key and queue_name must not be empty, got {pair!r}"
            )
        result.append((str(routing_key), str(queue_name)))
    return tuple(result)


@dataclass(frozen=True)
class QueueTarget:
    """Publish straight to a queue through the default exchange."""

    queue_name: str

    def __post_init__(self) -> None:
        if not self.queue_name:
            raise ConfigurationError("queue_name must not be empty.")


@dataclass(frozen=True)
class ExchangeTarget:
    """Publish to a direct exchange, once per (routing_key, queue_name) binding."""

    exchange_name: str
    bindings: tuple[Binding, ...]

    def __post_init__(self) -> None:
        if not self.exchange_name:
            raise ConfigurationError("exchange_name must not be empty.")
        if not self.bindings:
            raise ConfigurationError(
                f"At least one binding is required to publish to exchange {self.exchange_name}."
            )

    @classmethod
    def create(
        cls,
        exchange_name: str,
        bindings: Mapping[str, str] | Iterable[Binding],
    ) -> ExchangeTarget:
        """Build a target from a mapping or sequence of bindings."""
        return cls(exchange_name=exchange_name, bindings=normalize_bindings(bindings))


@dataclass
class ConsumerTopology:
    """Handles to what ensure_consumer_topology declared.

    Attributes:
        queue: The queue to consume from
        exchange: The subscription exchange (exchange mode only)
        dead_letter_exchange: The dead-letter exchange (None when disabled)
        dead_letter_queue: The dead-letter queue (None when disabled)
    """

    queue: AbstractQueue
    exchange: AbstractExchange | None = None
    dead_letter_exchange: AbstractExchange | None = None
    dead_letter_queue: AbstractQueue | None = None


@dataclass
class PublishTopology:
    """Handles to what ensure_publish_topology declared.

    ``exchange`` is None for queue targets (the default exchange is used).
    """

    exchange: AbstractExchange | None
    queues: dict[str, AbstractQueue]


def dead_letter_arguments(dead_letter: DeadLetterConfig) -> dict[str, Any] | None:
    """Queue arguments routing rejected messages to the dead-letter exchange."""
    if not dead_letter.enabled:
        return None
    return {
        "x-dead-letter-exchange": dead_letter.exchange_name,
        "x-dead-letter-routing-key": dead_letter.routing_key,
    }


class TopologyBuilder:
    """Declares exchanges, queues and bindings on a channel.

    Failures raise TopologyError naming the entity being declared.

    Example:
        >>> builder = TopologyBuilder()
        >>> topology = await builder.ensure_consumer_topology(
        ...     channel, config.subscription, config.dead_letter
        ... )
        >>> topology.dead_letter_exchange.name
        'orders-exchange.dlx'
    """

    def __init__(self, durable: bool = False) -> None:
        """Initialize the builder.

        Args:
            durable: Declare exchanges and queues as durable. Must match
                between every service declaring the same entities.
        """
        self.durable = durable

    async def ensure_consumer_topology(
        self,
        channel: AbstractChannel,
        subscription: SubscriptionConfig,
        dead_letter: DeadLetterConfig,
    ) -> ConsumerTopology:
        """Declare everything a consumer of ``subscription`` needs.

        Args:
            channel: Open channel to declare on
            subscription: Queue (and exchange) to consume from
            dead_letter: Dead-letter settings for the subscription

        Returns:
            ConsumerTopology with the declared handles

        Raises:
            TopologyError: If a declaration or binding fails
        """
        topology_dlx: AbstractExchange | None = None
        topology_dlq: AbstractQueue | None = None

        if dead_letter.enabled:
            topology_dlx, topology_dlq = await self._declare_dead_letter(channel, dead_letter)

        exchange: AbstractExchange | None = None
        if subscription.is_exchange_mode:
            assert subscription.exchange_name is not None
            exchange = await self._declare_exchange(channel, subscription.exchange_name)

        queue = await self._declare_queue(
            channel, subscription.queue, dead_letter_arguments(dead_letter)
        )

        if exchange is not None:
            await self._bind(queue, exchange, subscription.effective_routing_key)

        logger.info(
            f"Consumer topology ready for queue {subscription.queue}",
            extra={
                "queue_name": subscription.queue,
                "exchange_name": subscription.exchange_name,
                "routing_key": subscription.routing_key,
                "mode": subscription.mode.value,
                "dead_letter_enabled": dead_letter.enabled,
                "durable": self.durable,
            },
        )

        return ConsumerTopology(
            queue=queue,
            exchange=exchange,
            dead_letter_exchange=topology_dlx,
            dead_letter_queue=topology_dlq,
        )

    async def ensure_publish_topology(
        self,
        channel: AbstractChannel,
        target: QueueTarget | ExchangeTarget,
        dead_letter_enabled: bool = True,
    ) -> PublishTopology:
        """Declare the exchange and queues a publish call sends to.

        Queues are declared with the dead-letter arguments a consumer of the
        same subscription would use, so that either side may declare first.

        Args:
            channel: Open channel to declare on
            target: Queue or exchange (with bindings) to publish to
            dead_letter_enabled: Whether consumers of these queues use
                dead-lettering

        Returns:
            PublishTopology with the declared handles

        Raises:
            TopologyError: If a declaration or binding fails
        """
        if isinstance(target, QueueTarget):
            subscription = SubscriptionConfig.for_queue(target.queue_name)
            queue = await self._declare_queue(
                channel,
                target.queue_name,
                dead_letter_arguments(DeadLetterConfig(dead_letter_enabled, subscription)),
            )
            return PublishTopology(exchange=None, queues={target.queue_name: queue})

        exchange = await self._declare_exchange(channel, target.exchange_name)
        queues: dict[str, AbstractQueue] = {}
        for routing_key, queue_name in target.bindings:
            subscription = SubscriptionConfig.for_exchange(
                target.exchange_name, routing_key, queue_name
            )
            queue = await self._declare_queue(
                channel,
                queue_name,
                dead_letter_arguments(DeadLetterConfig(dead_letter_enabled, subscription)),
            )
            await self._bind(queue, exchange, routing_key)
            queues[queue_name] = queue

        return PublishTopology(exchange=exchange, queues=queues)

    async def _declare_dead_letter(
        self,
        channel: AbstractChannel,
        dead_letter: DeadLetterConfig,
    ) -> tuple[AbstractExchange, AbstractQueue]:
        dlx = await self._declare_exchange(channel, dead_letter.exchange_name)
        dlq = await self._declare_queue(channel, dead_letter.queue_name, None)
        await self._bind(dlq, dlx, dead_letter.routing_key)

        logger.info(
            f"Declared dead-letter queue {dead_letter.queue_name}",
            extra={
                "dead_letter_exchange": dead_letter.exchange_name,
                "dead_letter_queue": dead_letter.queue_name,
                "routing_key": dead_letter.routing_key,
            },
        )
        return dlx, dlq

    async def _declare_exchange(self, channel: AbstractChannel, name: str) -> AbstractExchange:
        try:
            exchange = await channel.declare_exchange(
                name=name,
                type=ExchangeType.DIRECT,
                durable=self.durable,
                auto_delete=False,
            )
        except Exception as e:
            self._log_failure(f"exchange {name}", e)
            raise TopologyError(f"exchange {name}", str(e)) from e

        logger.debug(
            f"Declared exchange: {name}",
            extra={"exchange_name": name, "durable": self.durable},
        )
        return exchange

    async def _declare_queue(
        self,
        channel: AbstractChannel,
        name: str,
        arguments: dict[str, Any] | None,
    ) -> AbstractQueue:
        try:
            queue = await channel.declare_queue(
                name=name,
                durable=self.durable,
                exclusive=False,
                auto_delete=False,
                arguments=arguments,
            )
        except Exception as e:
            self._log_failure(f"queue {name}", e)
            raise TopologyError(f"queue {name}", str(e)) from e

        logger.debug(
            f"Declared queue: {name}",
            extra={
                "queue_name": name,
                "durable": self.durable,
                "dead_letter_enabled": arguments is not None,
            },
        )
        return queue

    async def _bind(
        self,
        queue: AbstractQueue,
        exchange: AbstractExchange,
        routing_key: str,
    ) -> None:
        try:
            await queue.bind(exchange=exchange, routing_key=routing_key)
        except Exception as e:
            entity = f"binding {queue.name} -> {exchange.name} ({routing_key})"
            self._log_failure(entity, e)
            raise TopologyError(entity, str(e)) from e

        logger.debug(
            f"Bound queue {queue.name} to exchange {exchange.name} with routing key '{routing_key}'",
            extra={
                "queue_name": queue.name,
                "exchange_name": exchange.name,
                "routing_key": routing_key,
            },
        )

    @staticmethod
    def _log_failure(entity: str, error: Exception) -> None:
        logger.error(
            f"Failed to declare {entity}: {error}",
            exc_info=True,
            extra={
                "entity": entity,
                "error": str(error),
                "error_type": type(error).__name__,
            },
        )


__all__ = [
    "Binding",
    "QueueTarget",
    "ExchangeTarget",
    "ConsumerTopology",
    "PublishTopology",
    "TopologyBuilder",
    "dead_letter_arguments",
    "normalize_bindings",
]
