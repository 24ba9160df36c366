"""Message consumer with retries, dead-lettering and health telemetry.

A Consumer is the composition of a ConsumerConfig and a handler callable.
Use the create_consumer factory to build one: it connects, sets prefetch
and declares topology before returning, so a returned consumer is always
ready to start.

Per delivery:
- the handler runs under the retry policy
- success acknowledges the message and counts a success
- exhaustion counts a failure and routes the message to the dead-letter
  exchange (then acknowledges it), or rejects it without requeue when
  dead-lettering is disabled or the dead-letter publish fails
- a stop during retry backoff requeues the message without counting it

Example:
    >>> async def send_cart_email(body: bytes) -> None:
    ...     cart = json_loads(body)
    ...     await email_service.send_cart(cart)
    >>>
    >>> config = ConsumerConfig(subscription=SubscriptionConfig.for_queue("emailshoppingcart"))
    >>> consumer = await create_consumer(config, send_cart_email, broker=BrokerConfig())
    >>> async with consumer:
    ...     await consumer.run_until_stopped()
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Any

from aio_pika.abc import AbstractChannel, AbstractIncomingMessage
from opentelemetry.trace import Status, StatusCode

from rabbitkit.config import BrokerConfig, ConsumerConfig
from rabbitkit.connection import ConnectionManager
from rabbitkit.dead_letter import AckDecision, DeadLetterRouter
from rabbitkit.exceptions import (
    BrokerConnectionError,
    ConfigurationError,
    ConsumerStateError,
)
from rabbitkit.health import Clock, HealthSnapshot, HealthTracker, utc_now
from rabbitkit.observability import (
    ATTR_ATTEMPTS,
    ATTR_CONSUMER_NAME,
    ATTR_DEAD_LETTERED,
    ATTR_ERROR_TYPE,
    ATTR_MESSAGING_DESTINATION,
    ATTR_MESSAGING_MESSAGE_ID,
    ATTR_MESSAGING_OPERATION,
    ATTR_MESSAGING_ROUTING_KEY,
    ATTR_MESSAGING_SYSTEM,
    MESSAGING_SYSTEM_RABBITMQ,
    SPAN_CONSUME,
    SpanKindEnum,
    Tracer,
    create_tracer,
    extract_trace_context,
)
from rabbitkit.retry import MessageHandler, RetryExecutor, RetryOutcome
from rabbitkit.topology import ConsumerTopology, TopologyBuilder

logger = logging.getLogger(__name__)


class ConsumerState(Enum):
    """Lifecycle of a consumer."""

    INITIALIZING = "initializing"
    TOPOLOGY_SETUP = "topology_setup"
    CONSUMING = "consuming"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"
    """The consume loop died (e.g. the broker closed the channel); stop() releases it."""


class Consumer:
    """Consumes one subscription and dispatches bodies to a handler.

    Messages are processed one at a time: retries and backoff for a
    delivery complete before it is acknowledged and the next one starts.

    Shutdown is cooperative. stop() stops taking deliveries and interrupts
    backoff waits, but a handler invocation that is already running is
    allowed to finish and its ack or reject is applied before the channel
    and connection are closed.

    Build instances with create_consumer().
    """

    def __init__(
        self,
        config: ConsumerConfig,
        handler: MessageHandler,
        *,
        connections: ConnectionManager | None = None,
        topology_builder: TopologyBuilder | None = None,
        tracer: Tracer | None = None,
        clock: Clock = utc_now,
    ) -> None:
        """Initialize the consumer without touching the broker.

        Args:
            config: Consumer configuration
            handler: Sync or async callable receiving each message body
            connections: Connection manager to use. The consumer owns it and
                closes it on stop().
            topology_builder: Builder for exchange/queue declarations
            tracer: Tracer for per-delivery spans
            clock: Time source for health timestamps
        """
        if not isinstance(config, ConsumerConfig):
            raise ConfigurationError(
                f"config must be a ConsumerConfig, got {type(config).__name__}."
            )
        if not callable(handler):
            raise ConfigurationError(f"handler must be callable, got {type(handler).__name__}.")

        self._config = config
        self._handler = handler
        self._connections = connections or ConnectionManager()
        self._builder = topology_builder or TopologyBuilder(durable=config.durable)
        self._tracer = tracer or create_tracer(__name__, config.enable_tracing)

        self._stop_event = asyncio.Event()
        self._retry = RetryExecutor(config.retry_policy, stop_event=self._stop_event)
        self._health = HealthTracker(
            consumer_name=self.name,
            queue_name=config.subscription.queue,
            exchange_name=config.subscription.exchange_name,
            dead_letter_enabled=config.enable_dead_letter_queue,
            max_retry_attempts=config.max_retry_attempts,
            retry_base_delay=config.retry_base_delay,
            clock=clock,
        )

        self._state = ConsumerState.INITIALIZING
        self._channel: AbstractChannel | None = None
        self._topology: ConsumerTopology | None = None
        self._dead_letter: DeadLetterRouter | None = None
        self._consume_task: asyncio.Task[None] | None = None
        self._processing = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._stopped = asyncio.Event()

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def config(self) -> ConsumerConfig:
        return self._config

    @property
    def name(self) -> str:
        """Consumer name used in logs, health and failure envelopes."""
        assert self._config.consumer_name is not None
        return self._config.consumer_name

    @property
    def state(self) -> ConsumerState:
        return self._state

    @property
    def processing(self) -> bool:
        """True while a delivery is being handled."""
        return self._processing

    @property
    def is_ready(self) -> bool:
        """True once topology is declared and the consumer can start."""
        return self._topology is not None and self._state is ConsumerState.TOPOLOGY_SETUP

    @property
    def dead_letter_count(self) -> int:
        """Messages this consumer moved to the dead-letter queue."""
        return self._dead_letter.published_count if self._dead_letter else 0

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def setup(self) -> None:
        """Open a channel, set prefetch and declare topology.

        Called by create_consumer(). On any failure the channel and
        connection are released, the consumer moves to STOPPED and the
        error propagates.

        Raises:
            BrokerConnectionError: If the broker cannot be reached
            TopologyError: If declarations fail
            ConsumerStateError: If called more than once
        """
        if self._state is not ConsumerState.INITIALIZING:
            raise ConsumerStateError(
                f"Consumer {self.name} cannot be set up in state {self._state.value}"
            )

        self._state = ConsumerState.TOPOLOGY_SETUP
        subscription = self._config.subscription

        try:
            self._channel = await self._connections.acquire_channel()
            try:
                await self._channel.set_qos(prefetch_count=self._config.prefetch_count)
            except Exception as e:
                raise BrokerConnectionError(
                    self._connections.broker.safe_url, f"could not set prefetch: {e}"
                ) from e

            self._topology = await self._builder.ensure_consumer_topology(
                self._channel, subscription, self._config.dead_letter
            )
        except Exception as e:
            logger.error(
                f"Failed to start consumer {self.name}: {e}",
                extra={
                    "consumer_name": self.name,
                    "queue_name": subscription.queue,
                    "exchange_name": subscription.exchange_name,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            await self._release()
            self._state = ConsumerState.STOPPED
            self._stopped.set()
            raise

        self._dead_letter = DeadLetterRouter(
            self._config.dead_letter,
            self._topology.dead_letter_exchange,
            persistent=self._config.durable,
        )
        self._evaluate_health()

        logger.info(
            f"Consumer {self.name} ready",
            extra={
                "consumer_name": self.name,
                "queue_name": subscription.queue,
                "exchange_name": subscription.exchange_name,
                "routing_key": subscription.routing_key,
                "prefetch_count": self._config.prefetch_count,
                "dead_letter_enabled": self._config.enable_dead_letter_queue,
                "max_retry_attempts": self._config.max_retry_attempts,
            },
        )

    async def start(self) -> None:
        """Subscribe with manual acknowledgment and consume in a background task.

        Raises:
            ConsumerStateError: If the consumer is not ready (not set up,
                already consuming, or stopped)
        """
        if not self.is_ready:
            raise ConsumerStateError(
                f"Consumer {self.name} cannot start in state {self._state.value}"
            )

        self._state = ConsumerState.CONSUMING
        self._consume_task = asyncio.create_task(
            self._consume_loop(),
            name=f"rabbitkit-consumer-{self.name}",
        )

    async def run_until_stopped(self) -> None:
        """Wait until the consume loop ends.

        Returns after stop() completes the loop. Re-raises the error if the
        loop died on its own (e.g. the channel was closed by the broker).

        Raises:
            ConsumerStateError: If the consumer was never started
        """
        task = self._consume_task
        if task is None:
            raise ConsumerStateError(f"Consumer {self.name} has not been started")

        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled() and self._stop_event.is_set():
                return
            raise

    async def stop(self) -> None:
        """Stop consuming and release channel and connection. Idempotent."""
        if self._state is ConsumerState.STOPPED:
            return
        if self._state is ConsumerState.STOPPING:
            await self._stopped.wait()
            return

        self._state = ConsumerState.STOPPING
        self._stop_event.set()

        logger.info(
            f"Stopping consumer {self.name}",
            extra={
                "consumer_name": self.name,
                "queue_name": self._config.subscription.queue,
                "processing": self._processing,
            },
        )

        try:
            task = self._consume_task
            if task is not None and not task.done():
                # let the in-flight delivery finish and be acked/rejected
                await self._idle.wait()
                task.cancel()
            if task is not None:
                await asyncio.gather(task, return_exceptions=True)
        finally:
            await self._release()
            self._state = ConsumerState.STOPPED
            self._stopped.set()

        snapshot = self._health.snapshot()
        logger.info(
            f"Consumer {self.name} stopped",
            extra={
                "consumer_name": self.name,
                "queue_name": self._config.subscription.queue,
                "success_count": snapshot.success_count,
                "failure_count": snapshot.failure_count,
                "dead_letter_count": self.dead_letter_count,
            },
        )

    async def __aenter__(self) -> Consumer:
        """Start consuming if not already started."""
        if self.is_ready:
            await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        await self.stop()

    # =========================================================================
    # Health
    # =========================================================================

    def get_health_snapshot(self) -> HealthSnapshot:
        """Evaluate health against the live channel and connection."""
        self._evaluate_health()
        return self._health.snapshot()

    def _evaluate_health(self) -> None:
        channel_open = self._channel is not None and not self._channel.is_closed
        self._health.evaluate(
            connection_open=self._connections.is_connected,
            channel_open=channel_open,
        )

    # =========================================================================
    # Consume loop
    # =========================================================================

    async def _consume_loop(self) -> None:
        assert self._topology is not None
        queue_name = self._config.subscription.queue

        logger.info(
            f"Starting consumer loop: {self.name}",
            extra={"consumer_name": self.name, "queue_name": queue_name},
        )

        try:
            async with self._topology.queue.iterator() as queue_iter:
                async for message in queue_iter:
                    if self._stop_event.is_set():
                        # not processed; hand it back for redelivery
                        await message.reject(requeue=True)
                        break

                    self._idle.clear()
                    try:
                        await self._process_message(message)
                    finally:
                        self._idle.set()

        except asyncio.CancelledError:
            logger.info(
                "Consumer loop cancelled",
                extra={"consumer_name": self.name, "queue_name": queue_name},
            )
            if not self._stop_event.is_set():
                raise
        except Exception as e:
            if self._state is ConsumerState.CONSUMING:
                self._state = ConsumerState.FAILED
            logger.error(
                f"Error in consumer loop: {e}",
                exc_info=True,
                extra={
                    "consumer_name": self.name,
                    "queue_name": queue_name,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            raise
        finally:
            logger.info(
                "Consumer loop stopped",
                extra={"consumer_name": self.name, "queue_name": queue_name},
            )

    async def _process_message(self, message: AbstractIncomingMessage) -> None:
        """Run the handler for one delivery and apply the ack decision."""
        body = message.body
        routing_key = message.routing_key or ""
        span = None

        if self._tracer.enabled:
            span = self._tracer.start_span(
                SPAN_CONSUME,
                kind=SpanKindEnum.CONSUMER,
                attributes={
                    ATTR_MESSAGING_SYSTEM: MESSAGING_SYSTEM_RABBITMQ,
                    ATTR_MESSAGING_DESTINATION: self._config.subscription.queue,
                    ATTR_MESSAGING_OPERATION: "process",
                    ATTR_MESSAGING_MESSAGE_ID: message.message_id or "",
                    ATTR_MESSAGING_ROUTING_KEY: routing_key,
                    ATTR_CONSUMER_NAME: self.name,
                },
                context=extract_trace_context(message.headers),
            )

        self._processing = True
        start = time.perf_counter()
        try:
            outcome = await self._retry.run(self._handler, body, routing_key)
            duration_ms = (time.perf_counter() - start) * 1000

            if span:
                span.set_attribute(ATTR_ATTEMPTS, outcome.attempts)

            if outcome.succeeded:
                await message.ack()
                self._health.record_success()
                if span:
                    span.set_status(Status(StatusCode.OK))
                logger.debug(
                    f"Processed message from {self._config.subscription.queue}",
                    extra={
                        "consumer_name": self.name,
                        "message_id": message.message_id,
                        "routing_key": routing_key,
                        "attempt": outcome.attempts,
                        "duration_ms": duration_ms,
                    },
                )
                return

            if outcome.stopped:
                # retries left unused; another consumer gets the message
                await message.reject(requeue=True)
                logger.info(
                    "Stopped during retry backoff, requeued message",
                    extra={
                        "consumer_name": self.name,
                        "message_id": message.message_id,
                        "routing_key": routing_key,
                        "attempt": outcome.attempts,
                    },
                )
                return

            await self._handle_exhausted(message, outcome, span)
        finally:
            self._processing = False
            if span:
                span.end()

    async def _handle_exhausted(
        self,
        message: AbstractIncomingMessage,
        outcome: RetryOutcome,
        span: Any,
    ) -> None:
        assert self._dead_letter is not None
        assert outcome.error is not None

        self._health.record_failure()
        decision = await self._dead_letter.handle_exhausted(
            outcome.body,
            outcome.routing_key,
            outcome.error,
            consumer_name=self.name,
            attempts=outcome.attempts,
        )

        if decision is AckDecision.ACK:
            await message.ack()
        else:
            await message.reject(requeue=False)

        cause = outcome.error.original
        if span:
            span.set_attribute(ATTR_DEAD_LETTERED, decision is AckDecision.ACK)
            span.set_attribute(ATTR_ERROR_TYPE, type(cause).__name__)
            span.set_status(Status(StatusCode.ERROR, str(cause)))
            if isinstance(cause, Exception):
                span.record_exception(cause)

        logger.error(
            f"Message failed after {outcome.attempts} attempts: {cause}",
            extra={
                "consumer_name": self.name,
                "queue_name": self._config.subscription.queue,
                "message_id": message.message_id,
                "routing_key": outcome.routing_key,
                "attempt": outcome.attempts,
                "decision": decision.value,
                "error": str(cause),
                "error_type": type(cause).__name__,
            },
        )

    async def _release(self) -> None:
        channel = self._channel
        self._channel = None
        try:
            if channel is not None and not channel.is_closed:
                await channel.close()
        finally:
            await self._connections.close()


async def create_consumer(
    config: ConsumerConfig,
    handler: MessageHandler,
    *,
    broker: BrokerConfig | None = None,
    connections: ConnectionManager | None = None,
    tracer: Tracer | None = None,
    clock: Clock = utc_now,
) -> Consumer:
    """Build a consumer and declare its topology.

    Args:
        config: Consumer configuration
        handler: Sync or async callable receiving each message body
        broker: Broker to connect to (ignored if ``connections`` is given)
        connections: Pre-built connection manager, owned by the consumer
        tracer: Tracer for per-delivery spans
        clock: Time source for health timestamps

    Returns:
        A consumer ready to start()

    Raises:
        ConfigurationError: If config or handler is invalid
        BrokerConnectionError: If the broker cannot be reached
        TopologyError: If declarations fail
    """
    consumer = Consumer(
        config,
        handler,
        connections=connections or ConnectionManager(broker),
        tracer=tracer,
        clock=clock,
    )
    await consumer.setup()
    return consumer


__all__ = [
    "Consumer",
    "ConsumerState",
    "create_consumer",
]
