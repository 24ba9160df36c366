"""
rabbitkit - message consumption and publishing for AMQP microservices.

Provides consumers with bounded retries, exponential backoff and
dead-lettering, a queue/exchange publisher, and live health telemetry,
built on aio-pika.

Example:
    >>> from rabbitkit import (
    ...     BrokerConfig,
    ...     ConsumerConfig,
    ...     Publisher,
    ...     SubscriptionConfig,
    ...     create_consumer,
    ... )
    >>>
    >>> async def handle(body: bytes) -> None:
    ...     ...
    >>>
    >>> config = ConsumerConfig(
    ...     subscription=SubscriptionConfig.for_exchange("orders-exchange", "order.created", "orders"),
    ...     max_retry_attempts=3,
    ...     retry_base_delay=1.0,
    ... )
    >>> consumer = await create_consumer(config, handle, broker=BrokerConfig())
    >>> async with consumer:
    ...     await consumer.run_until_stopped()
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("rabbitkit")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from rabbitkit.config import (
    BrokerConfig,
    ConsumerConfig,
    DeadLetterConfig,
    SubscriptionConfig,
    SubscriptionMode,
)
from rabbitkit.connection import ConnectionManager
from rabbitkit.consumer import Consumer, ConsumerState, create_consumer
from rabbitkit.dead_letter import AckDecision, DeadLetterRouter, FailureEnvelope
from rabbitkit.exceptions import (
    BrokerConnectionError,
    ConfigurationError,
    ConsumerStateError,
    DeadLetterPublishError,
    HandlerError,
    PublishError,
    RabbitKitError,
    TopologyError,
)
from rabbitkit.health import (
    AggregateHealth,
    HealthSnapshot,
    HealthStatus,
    HealthTracker,
    aggregate_health,
)
from rabbitkit.publisher import Publisher
from rabbitkit.retry import MessageHandler, RetryExecutor, RetryOutcome, RetryPolicy
from rabbitkit.topology import (
    ConsumerTopology,
    ExchangeTarget,
    PublishTopology,
    QueueTarget,
    TopologyBuilder,
)

__all__ = [
    "__version__",
    # Configuration
    "BrokerConfig",
    "ConsumerConfig",
    "DeadLetterConfig",
    "SubscriptionConfig",
    "SubscriptionMode",
    # Connection and topology
    "ConnectionManager",
    "TopologyBuilder",
    "ConsumerTopology",
    "PublishTopology",
    "QueueTarget",
    "ExchangeTarget",
    # Consumer
    "Consumer",
    "ConsumerState",
    "create_consumer",
    "MessageHandler",
    # Retry and dead-lettering
    "RetryPolicy",
    "RetryOutcome",
    "RetryExecutor",
    "AckDecision",
    "DeadLetterRouter",
    "FailureEnvelope",
    # Health
    "HealthStatus",
    "HealthSnapshot",
    "HealthTracker",
    "AggregateHealth",
    "aggregate_health",
    # Publisher
    "Publisher",
    # Exceptions
    "RabbitKitError",
    "ConfigurationError",
    "BrokerConnectionError",
    "TopologyError",
    "HandlerError",
    "DeadLetterPublishError",
    "PublishError",
    "ConsumerStateError",
]
