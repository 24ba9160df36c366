"""
Shared test fixtures for the rabbitkit library.

This module provides:
- An in-memory broker with aio-pika shaped connection, channel, exchange,
  queue and message fakes
- Recording message handlers that fail on demand
- A manually advanced clock

Usage:
    from tests.fixtures import FakeBroker, RecordingHandler, settle
"""

from tests.fixtures.amqp import (
    Declaration,
    FakeBroker,
    FakeChannel,
    FakeConnection,
    FakeExchange,
    FakeIncomingMessage,
    FakeQueue,
    FakeQueueIterator,
    settle,
)
from tests.fixtures.clock import FakeClock
from tests.fixtures.handlers import (
    BlockingHandler,
    HandlerFailure,
    RecordingHandler,
    SyncRecordingHandler,
)

__all__ = [
    # AMQP fakes
    "Declaration",
    "FakeBroker",
    "FakeChannel",
    "FakeConnection",
    "FakeExchange",
    "FakeIncomingMessage",
    "FakeQueue",
    "FakeQueueIterator",
    "settle",
    # Clock
    "FakeClock",
    # Handlers
    "BlockingHandler",
    "HandlerFailure",
    "RecordingHandler",
    "SyncRecordingHandler",
]
