"""
Retry utilities for message handlers.

Runs a handler against a message body up to a bounded number of times,
waiting an exponentially growing delay between attempts.

This module provides:
- RetryPolicy: Attempt budget and backoff schedule
- RetryOutcome: Result of running a handler under a policy
- RetryExecutor: Runs a handler with retries and a cancellable backoff wait
- MessageHandler: Type of the business handler callable
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from rabbitkit.exceptions import HandlerError

logger = logging.getLogger(__name__)

MessageHandler = Callable[[bytes], Awaitable[None] | None]
"""A business handler: receives the raw message body; may be sync or async."""


@dataclass(frozen=True)
class RetryPolicy:
    """
    Attempt budget and backoff schedule.

    The handler is invoked at most ``max_attempts + 1`` times. The delay
    before retry attempt ``n`` (1-indexed) is ``base_delay * 2 ** (n - 1)``,
    so a 100ms base delay waits 100ms, 200ms, 400ms, ...

    Attributes:
        max_attempts: Retries after the first attempt (0 = no retries)
        base_delay: Delay in seconds before the first retry

    Example:
        >>> policy = RetryPolicy(max_attempts=3, base_delay=0.1)
        >>> [policy.delay_for(n) for n in range(1, 4)]
        [0.1, 0.2, 0.4]
    """

    max_attempts: int = 3
    base_delay: float = 5.0

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.max_attempts < 0:
            raise ValueError(
                f"max_retry_attempts must be >= 0, got {self.max_attempts}. Use 0 for no retries."
            )
        if self.base_delay < 0:
            raise ValueError(f"retry_base_delay must be >= 0, got {self.base_delay}.")

    @property
    def total_attempts(self) -> int:
        """Total handler invocations allowed, including the first."""
        return self.max_attempts + 1

    def delay_for(self, retry_attempt: int) -> float:
        """
        Backoff delay before a retry attempt.

        Args:
            retry_attempt: 1-indexed retry number

        Returns:
            Delay in seconds

        Raises:
            ValueError: If retry_attempt < 1
        """
        if retry_attempt < 1:
            raise ValueError(f"retry_attempt must be >= 1, got {retry_attempt}.")
        return float(self.base_delay * (2 ** (retry_attempt - 1)))


@dataclass(frozen=True)
class RetryOutcome:
    """
    Result of running a handler under a RetryPolicy.

    Attributes:
        succeeded: True if some attempt completed without raising
        attempts: Number of handler invocations made
        body: The message body the handler was given
        routing_key: Routing key the message arrived with
        error: Last handler failure (None on success)
        stopped: True if a stop request cut the retries short
    """

    succeeded: bool
    attempts: int
    body: bytes
    routing_key: str = ""
    error: HandlerError | None = None
    stopped: bool = False

    @property
    def exhausted(self) -> bool:
        """True when no attempt succeeded."""
        return not self.succeeded


class RetryExecutor:
    """
    Runs a message handler with bounded retries and exponential backoff.

    Any ``Exception`` raised by the handler counts as a retryable failure.
    ``asyncio.CancelledError`` and other ``BaseException`` subclasses are
    never caught.

    The backoff wait can be interrupted through ``stop_event``: once it is
    set, the current wait ends immediately and no further attempts are
    made. A running handler invocation is never interrupted.

    Example:
        >>> executor = RetryExecutor(RetryPolicy(max_attempts=2, base_delay=0.1))
        >>> outcome = await executor.run(handler, b'{"id": 1}', routing_key="orders")
        >>> outcome.succeeded
        True
    """

    def __init__(
        self,
        policy: RetryPolicy,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        """
        Initialize the executor.

        Args:
            policy: Retry policy to apply
            stop_event: Event that cancels backoff waits when set. A private
                event is created if not provided.
        """
        self._policy = policy
        self._stop_event = stop_event or asyncio.Event()

    @property
    def policy(self) -> RetryPolicy:
        """The retry policy in use."""
        return self._policy

    @property
    def stop_event(self) -> asyncio.Event:
        """Event that interrupts backoff waits."""
        return self._stop_event

    def request_stop(self) -> None:
        """Interrupt any pending backoff wait and prevent further retries."""
        self._stop_event.set()

    async def run(
        self,
        handler: MessageHandler,
        body: bytes,
        routing_key: str = "",
    ) -> RetryOutcome:
        """
        Invoke the handler until it succeeds or the attempt budget runs out.

        Args:
            handler: Sync or async callable receiving the message body
            body: Raw message body
            routing_key: Routing key the message arrived with

        Returns:
            RetryOutcome describing success or exhaustion
        """
        last_error: HandlerError | None = None
        attempts = 0
        stopped = False

        for attempt in range(1, self._policy.total_attempts + 1):
            attempts = attempt
            start = time.perf_counter()
            try:
                result = handler(body)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                last_error = HandlerError(e, attempt)
                duration_ms = (time.perf_counter() - start) * 1000

                if attempt < self._policy.total_attempts:
                    delay = self._policy.delay_for(attempt)
                    logger.warning(
                        f"Handler failed, retrying in {delay:.3f}s",
                        extra={
                            "routing_key": routing_key,
                            "attempt": attempt,
                            "max_retry_attempts": self._policy.max_attempts,
                            "delay_seconds": delay,
                            "duration_ms": duration_ms,
                            "error": str(e),
                            "error_type": type(e).__name__,
                        },
                    )
                    if not await self._wait_backoff(delay):
                        stopped = True
                        logger.info(
                            "Retry backoff interrupted by stop request",
                            extra={"routing_key": routing_key, "attempt": attempt},
                        )
                        break
                else:
                    logger.error(
                        f"All retries exhausted after {attempt} attempts",
                        extra={
                            "routing_key": routing_key,
                            "attempt": attempt,
                            "duration_ms": duration_ms,
                            "error": str(e),
                            "error_type": type(e).__name__,
                        },
                    )
            else:
                if attempt > 1:
                    logger.info(
                        "Handler succeeded after retry",
                        extra={"routing_key": routing_key, "attempt": attempt},
                    )
                return RetryOutcome(
                    succeeded=True,
                    attempts=attempt,
                    body=body,
                    routing_key=routing_key,
                )

        return RetryOutcome(
            succeeded=False,
            attempts=attempts,
            body=body,
            routing_key=routing_key,
            error=last_error,
            stopped=stopped,
        )

    async def _wait_backoff(self, delay: float) -> bool:
        """
        Sleep for the backoff delay unless a stop is requested.

        Returns:
            True if the full delay elapsed, False if stop was requested
        """
        if self._stop_event.is_set():
            return False
        if delay <= 0:
            return True
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except TimeoutError:
            return True
        return False


__all__ = [
    "MessageHandler",
    "RetryPolicy",
    "RetryOutcome",
    "RetryExecutor",
]
