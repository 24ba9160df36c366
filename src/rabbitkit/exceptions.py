"""Library exceptions for the rabbitkit package."""


class RabbitKitError(Exception):
    """Base exception for rabbitkit library."""

    pass


class ConfigurationError(RabbitKitError, ValueError):
    """Raised when consumer, subscription or broker configuration is invalid."""

    pass


class BrokerConnectionError(RabbitKitError):
    """Raised when a connection to the broker cannot be established."""

    def __init__(self, url: str, message: str) -> None:
        self.url = url
        super().__init__(f"Could not connect to broker at {url}: {message}")


class TopologyError(RabbitKitError):
    """Raised when declaring or binding exchanges and queues fails."""

    def __init__(self, entity: str, message: str) -> None:
        self.entity = entity
        super().__init__(f"Topology declaration failed for {entity}: {message}")


class HandlerError(RabbitKitError):
    """
    Raised when a message handler fails.

    Wraps the exception raised by the business handler together with the
    attempt number it failed on. Handler errors are retryable and never
    propagate past the consumer.

    Attributes:
        original: The exception raised by the handler
        attempt: 1-indexed attempt number that failed
    """

    def __init__(self, original: BaseException, attempt: int) -> None:
        self.original = original
        self.attempt = attempt
        super().__init__(
            f"Handler failed on attempt {attempt}: {type(original).__name__}: {original}"
        )


class DeadLetterPublishError(RabbitKitError):
    """Raised when a failure envelope cannot be published to the dead-letter exchange."""

    def __init__(self, exchange_name: str, routing_key: str, message: str) -> None:
        self.exchange_name = exchange_name
        self.routing_key = routing_key
        super().__init__(
            f"Dead-letter publish to {exchange_name} ({routing_key}) failed: {message}"
        )


class PublishError(RabbitKitError):
    """Raised when a publish call fails."""

    def __init__(self, destination: str, message: str) -> None:
        self.destination = destination
        super().__init__(f"Failed to publish to {destination}: {message}")


class ConsumerStateError(RabbitKitError):
    """Raised when a consumer lifecycle operation is invalid for the current state."""

    pass


__all__ = [
    "RabbitKitError",
    "ConfigurationError",
    "BrokerConnectionError",
    "TopologyError",
    "HandlerError",
    "DeadLetterPublishError",
    "PublishError",
    "ConsumerStateError",
]
