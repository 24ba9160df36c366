"""
W3C trace context propagation through AMQP message headers.

The publisher injects the current trace context into outgoing message
headers and the consumer extracts it to parent its per-delivery span, so
a publish and the resulting consume show up in the same trace.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from opentelemetry.context import Context
from opentelemetry.propagate import extract, inject


def inject_trace_context(headers: dict[str, Any]) -> dict[str, Any]:
    """
    Add the current trace context (traceparent/tracestate) to headers.

    Args:
        headers: Mutable header mapping of the outgoing message

    Returns:
        The same mapping, for chaining
    """
    inject(headers)
    return headers


def extract_trace_context(headers: Mapping[str, Any] | None) -> Context:
    """
    Read a trace context from the headers of a delivered message.

    Header values that are not strings (AMQP tables allow bytes and
    numbers) are decoded or skipped.

    Args:
        headers: Message headers, possibly None

    Returns:
        An OpenTelemetry Context (empty if no trace headers are present)
    """
    carrier: dict[str, str] = {}
    for key, value in (headers or {}).items():
        if isinstance(value, bytes):
            carrier[key] = value.decode("utf-8", errors="replace")
        elif isinstance(value, str):
            carrier[key] = value
    return extract(carrier)


__all__ = [
    "inject_trace_context",
    "extract_trace_context",
]
