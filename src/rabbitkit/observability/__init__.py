"""
Observability utilities for rabbitkit.

This module provides the composition-based tracer used by consumers and
publishers, trace context propagation through message headers, and the
standard span attribute names.

Example:
    >>> from rabbitkit.observability import create_tracer, SpanKindEnum
    >>>
    >>> class MyPublisher:
    ...     def __init__(self, enable_tracing: bool = True):
    ...         self._tracer = create_tracer(__name__, enable_tracing)
    ...
    ...     async def publish(self, body: bytes) -> None:
    ...         with self._tracer.span_with_kind("publish", kind=SpanKindEnum.PRODUCER):
    ...             ...
"""

from rabbitkit.observability.attributes import (
    ATTR_ATTEMPTS,
    ATTR_BINDING_COUNT,
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
    SPAN_PUBLISH,
)
from rabbitkit.observability.propagation import (
    extract_trace_context,
    inject_trace_context,
)
from rabbitkit.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    RecordedSpan,
    SpanKindEnum,
    Tracer,
    create_tracer,
)

__all__ = [
    # Tracer (composition-based API)
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "RecordedSpan",
    "SpanKindEnum",
    "create_tracer",
    # Propagation
    "inject_trace_context",
    "extract_trace_context",
    # Span names
    "SPAN_CONSUME",
    "SPAN_PUBLISH",
    # Attributes - Messaging
    "MESSAGING_SYSTEM_RABBITMQ",
    "ATTR_MESSAGING_SYSTEM",
    "ATTR_MESSAGING_DESTINATION",
    "ATTR_MESSAGING_OPERATION",
    "ATTR_MESSAGING_MESSAGE_ID",
    "ATTR_MESSAGING_ROUTING_KEY",
    # Attributes - Consumer
    "ATTR_CONSUMER_NAME",
    "ATTR_ATTEMPTS",
    "ATTR_DEAD_LETTERED",
    "ATTR_ERROR_TYPE",
    # Attributes - Publisher
    "ATTR_BINDING_COUNT",
]
