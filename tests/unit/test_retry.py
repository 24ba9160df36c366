"""Unit tests for the retry policy and executor."""

from __future__ import annotations

import asyncio
import time

import pytest

from rabbitkit.exceptions import HandlerError
from rabbitkit.retry import RetryExecutor, RetryOutcome, RetryPolicy
from tests.fixtures import HandlerFailure, RecordingHandler, SyncRecordingHandler


class TestRetryPolicy:
    """Tests for RetryPolicy validation and delays."""

    def test_default_values(self) -> None:
        policy = RetryPolicy()

        assert policy.max_attempts == 3
        assert policy.base_delay == 5.0
        assert policy.total_attempts == 4

    def test_delays_double(self) -> None:
        """A 100ms base delay waits 100ms, 200ms, 400ms."""
        policy = RetryPolicy(max_attempts=3, base_delay=0.1)

        assert [policy.delay_for(n) for n in (1, 2, 3)] == pytest.approx([0.1, 0.2, 0.4])

    def test_zero_retries(self) -> None:
        assert RetryPolicy(max_attempts=0).total_attempts == 1

    def test_delay_for_rejects_zero(self) -> None:
        with pytest.raises(ValueError, match="retry_attempt"):
            RetryPolicy().delay_for(0)

    def test_negative_values_rejected(self) -> None:
        with pytest.raises(ValueError, match="max_retry_attempts"):
            RetryPolicy(max_attempts=-1)
        with pytest.raises(ValueError, match="retry_base_delay"):
            RetryPolicy(base_delay=-0.5)


class TestRetryOutcome:
    def test_exhausted_is_inverse_of_succeeded(self) -> None:
        assert RetryOutcome(succeeded=True, attempts=1, body=b"").exhausted is False
        assert RetryOutcome(succeeded=False, attempts=3, body=b"").exhausted is True


class TestRetryExecutor:
    """Tests for running handlers under a policy."""

    async def test_success_on_first_attempt(self) -> None:
        handler = RecordingHandler()
        executor = RetryExecutor(RetryPolicy(max_attempts=3, base_delay=0.0))

        outcome = await executor.run(handler, b"payload", routing_key="orders")

        assert outcome.succeeded is True
        assert outcome.attempts == 1
        assert outcome.body == b"payload"
        assert outcome.routing_key == "orders"
        assert outcome.error is None
        assert handler.calls == [b"payload"]

    async def test_success_after_retries(self) -> None:
        handler = RecordingHandler(failures=2)
        executor = RetryExecutor(RetryPolicy(max_attempts=3, base_delay=0.0))

        outcome = await executor.run(handler, b"payload")

        assert outcome.succeeded is True
        assert outcome.attempts == 3
        assert handler.call_count == 3

    async def test_exhausted_after_all_attempts(self) -> None:
        """A handler that always fails runs max_attempts + 1 times."""
        handler = RecordingHandler(failures=-1, message="db down")
        executor = RetryExecutor(RetryPolicy(max_attempts=2, base_delay=0.0))

        outcome = await executor.run(handler, b"payload")

        assert outcome.succeeded is False
        assert outcome.exhausted is True
        assert outcome.stopped is False
        assert outcome.attempts == 3
        assert handler.call_count == 3
        assert isinstance(outcome.error, HandlerError)
        assert isinstance(outcome.error.original, HandlerFailure)
        assert outcome.error.attempt == 3
        assert "db down" in str(outcome.error)

    async def test_zero_retries_runs_once(self) -> None:
        handler = RecordingHandler(failures=-1)
        executor = RetryExecutor(RetryPolicy(max_attempts=0, base_delay=0.0))

        outcome = await executor.run(handler, b"x")

        assert outcome.attempts == 1
        assert handler.call_count == 1

    async def test_sync_handler_supported(self) -> None:
        handler = SyncRecordingHandler(failures=1)
        executor = RetryExecutor(RetryPolicy(max_attempts=1, base_delay=0.0))

        outcome = await executor.run(handler, b"x")

        assert outcome.succeeded is True
        assert handler.call_count == 2

    async def test_backoff_waits_between_attempts(self) -> None:
        """Total elapsed time covers the 10ms + 20ms backoff schedule."""
        handler = RecordingHandler(failures=-1)
        executor = RetryExecutor(RetryPolicy(max_attempts=2, base_delay=0.01))

        start = time.perf_counter()
        await executor.run(handler, b"x")
        elapsed = time.perf_counter() - start

        assert elapsed >= 0.03 * 0.9

    async def test_stop_interrupts_backoff(self) -> None:
        """Setting the stop event ends a long backoff and skips remaining attempts."""
        handler = RecordingHandler(failures=-1)
        executor = RetryExecutor(RetryPolicy(max_attempts=5, base_delay=30.0))

        task = asyncio.create_task(executor.run(handler, b"x"))
        while handler.call_count == 0:
            await asyncio.sleep(0)
        executor.request_stop()
        outcome = await asyncio.wait_for(task, timeout=2.0)

        assert outcome.succeeded is False
        assert outcome.stopped is True
        assert outcome.attempts == 1
        assert handler.call_count == 1

    async def test_stop_already_requested_makes_single_attempt(self) -> None:
        stop = asyncio.Event()
        stop.set()
        handler = RecordingHandler(failures=-1)
        executor = RetryExecutor(RetryPolicy(max_attempts=3, base_delay=0.0), stop_event=stop)

        outcome = await executor.run(handler, b"x")

        assert executor.stop_event is stop
        assert outcome.stopped is True
        assert handler.call_count == 1

    async def test_cancelled_error_propagates(self) -> None:
        """CancelledError from the handler is not treated as a failure."""

        async def handler(body: bytes) -> None:
            raise asyncio.CancelledError

        executor = RetryExecutor(RetryPolicy(max_attempts=3, base_delay=0.0))

        with pytest.raises(asyncio.CancelledError):
            await executor.run(handler, b"x")
