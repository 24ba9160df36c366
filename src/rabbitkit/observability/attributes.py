"""
Standard span attributes for rabbitkit.

This module defines attribute constants used by the consumer and publisher
for consistent span naming. Messaging attributes follow OpenTelemetry
semantic conventions.

Example:
    >>> from rabbitkit.observability.attributes import (
    ...     ATTR_MESSAGING_SYSTEM,
    ...     ATTR_MESSAGING_DESTINATION,
    ... )
    >>>
    >>> span = tracer.start_span(
    ...     SPAN_CONSUME,
    ...     kind=SpanKindEnum.CONSUMER,
    ...     attributes={
    ...         ATTR_MESSAGING_SYSTEM: MESSAGING_SYSTEM_RABBITMQ,
    ...         ATTR_MESSAGING_DESTINATION: "orders",
    ...     },
    ... )
"""

# =============================================================================
# Span Names
# =============================================================================

SPAN_CONSUME = "rabbitkit.consume"
"""Span created per delivered message."""

SPAN_PUBLISH = "rabbitkit.publish"
"""Span created per publish call."""

# =============================================================================
# Messaging Attributes (OpenTelemetry semantic conventions)
# =============================================================================

MESSAGING_SYSTEM_RABBITMQ = "rabbitmq"

ATTR_MESSAGING_SYSTEM = "messaging.system"
"""Messaging system identifier (always 'rabbitmq')."""

ATTR_MESSAGING_DESTINATION = "messaging.destination"
"""Queue or exchange the message is sent to or received from."""

ATTR_MESSAGING_OPERATION = "messaging.operation"
"""Messaging operation: 'publish' or 'process'."""

ATTR_MESSAGING_MESSAGE_ID = "messaging.message_id"
"""Broker message identifier."""

ATTR_MESSAGING_ROUTING_KEY = "messaging.rabbitmq.routing_key"
"""AMQP routing key."""

# =============================================================================
# Consumer Attributes
# =============================================================================

ATTR_CONSUMER_NAME = "rabbitkit.consumer.name"
"""Configured consumer name."""

ATTR_ATTEMPTS = "rabbitkit.attempts"
"""Handler invocations made for a delivery (integer)."""

ATTR_DEAD_LETTERED = "rabbitkit.dead_lettered"
"""True when a delivery was routed to the dead-letter exchange."""

ATTR_ERROR_TYPE = "rabbitkit.error.type"
"""Exception class name of the last handler failure."""

# =============================================================================
# Publisher Attributes
# =============================================================================

ATTR_BINDING_COUNT = "rabbitkit.binding.count"
"""Number of (routing_key, queue) pairs published to (integer)."""


__all__ = [
    "SPAN_CONSUME",
    "SPAN_PUBLISH",
    "MESSAGING_SYSTEM_RABBITMQ",
    "ATTR_MESSAGING_SYSTEM",
    "ATTR_MESSAGING_DESTINATION",
    "ATTR_MESSAGING_OPERATION",
    "ATTR_MESSAGING_MESSAGE_ID",
    "ATTR_MESSAGING_ROUTING_KEY",
    "ATTR_CONSUMER_NAME",
    "ATTR_ATTEMPTS",
    "ATTR_DEAD_LETTERED",
    "ATTR_ERROR_TYPE",
    "ATTR_BINDING_COUNT",
]
