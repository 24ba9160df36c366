"""Dead-letter routing for messages that exhausted their retries.

When every handler attempt for a delivery has failed, the DeadLetterRouter
wraps the original body in a FailureEnvelope and publishes it to the
dead-letter exchange. The envelope records what failed, why, where and
after how many attempts, so the message can be inspected or replayed.

Example:
    >>> router = DeadLetterRouter(config.dead_letter, topology.dead_letter_exchange)
    >>> decision = await router.handle_exhausted(
    ...     body, "order.created", error, consumer_name="orders-1", attempts=4
    ... )
    >>> decision
    <AckDecision.ACK: 'ack'>
"""

from __future__ import annotations

import base64
import logging
import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from aio_pika import DeliveryMode, Message
from aio_pika.abc import AbstractExchange
from pydantic import BaseModel, ConfigDict, Field

from rabbitkit.config import DeadLetterConfig
from rabbitkit.exceptions import DeadLetterPublishError, HandlerError
from rabbitkit.serialization import CONTENT_TYPE_JSON

logger = logging.getLogger(__name__)


class AckDecision(Enum):
    """What the consumer should do with an exhausted delivery."""

    ACK = "ack"
    """The message was moved to the dead-letter queue; remove it from the source."""

    REJECT_WITHOUT_REQUEUE = "reject"
    """Drop the message from the source queue without redelivery."""


class FailureEnvelope(BaseModel):
    """
    Dead-letter record for one permanently failed message.

    Attributes:
        original_body: The original message body as UTF-8 text. Invalid
            bytes are replaced, see original_body_base64 for the exact bytes
        original_body_base64: The original body bytes, base64 encoded
        original_routing_key: Routing key the message arrived with
        failure_reason: Exception class name of the last failure
        failure_detail: Exception message of the last failure
        failed_at: When the message was dead-lettered (UTC)
        retry_attempts_made: Handler invocations made before giving up
        consumer_name: Consumer that gave up on the message
    """

    model_config = ConfigDict(frozen=True)

    original_body: str
    original_body_base64: str = ""
    original_routing_key: str
    failure_reason: str
    failure_detail: str
    failed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    retry_attempts_made: int = Field(ge=0)
    consumer_name: str

    @classmethod
    def from_failure(
        cls,
        body: bytes,
        routing_key: str,
        error: BaseException,
        consumer_name: str,
        attempts: int,
    ) -> FailureEnvelope:
        """
        Build an envelope from an exhausted delivery.

        A HandlerError is unwrapped so the envelope names the business
        exception rather than the wrapper.
        """
        cause = error.original if isinstance(error, HandlerError) else error
        return cls(
            original_body=body.decode("utf-8", errors="replace"),
            original_body_base64=base64.b64encode(body).decode("ascii"),
            original_routing_key=routing_key,
            failure_reason=type(cause).__name__,
            failure_detail=str(cause),
            retry_attempts_made=attempts,
            consumer_name=consumer_name,
        )

    @property
    def raw_body(self) -> bytes:
        """The original body bytes, for replaying the message."""
        if self.original_body_base64:
            return base64.b64decode(self.original_body_base64)
        return self.original_body.encode("utf-8")

    def to_bytes(self) -> bytes:
        """Serialize to the UTF-8 JSON wire form."""
        return self.model_dump_json().encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes | str) -> FailureEnvelope:
        """Parse the JSON wire form."""
        return cls.model_validate_json(data)


class DeadLetterRouter:
    """
    Publishes failure envelopes to the dead-letter exchange.

    Never raises for publish failures: a failed dead-letter publish is
    logged and the caller is told to reject the message instead.

    Attributes:
        published_count: Envelopes successfully published
    """

    def __init__(
        self,
        config: DeadLetterConfig,
        exchange: AbstractExchange | None,
        persistent: bool = False,
    ) -> None:
        """
        Initialize the router.

        Args:
            config: Dead-letter settings of the consumer
            exchange: Declared dead-letter exchange (None when disabled)
            persistent: Publish envelopes with persistent delivery mode
        """
        self._config = config
        self._exchange = exchange
        self._persistent = persistent
        self.published_count = 0

    @property
    def enabled(self) -> bool:
        """True if envelopes will be published."""
        return self._config.enabled and self._exchange is not None

    async def handle_exhausted(
        self,
        body: bytes,
        routing_key: str,
        error: BaseException,
        consumer_name: str,
        attempts: int,
    ) -> AckDecision:
        """
        Route an exhausted delivery.

        Args:
            body: Original message body
            routing_key: Routing key the message arrived with
            error: The last failure
            consumer_name: Name of the consumer giving up
            attempts: Handler invocations made

        Returns:
            ACK if the envelope was published, REJECT_WITHOUT_REQUEUE otherwise
        """
        if not self.enabled:
            logger.warning(
                "Dead-lettering disabled, rejecting message without requeue",
                extra={
                    "routing_key": routing_key,
                    "consumer_name": consumer_name,
                    "attempts": attempts,
                },
            )
            return AckDecision.REJECT_WITHOUT_REQUEUE

        assert self._exchange is not None
        # the DLQ is bound only on the subscription's key
        dead_letter_key = self._config.routing_key
        envelope = FailureEnvelope.from_failure(
            body,
            routing_key or self._config.subscription.effective_routing_key,
            error,
            consumer_name,
            attempts,
        )

        try:
            await self._exchange.publish(
                self._build_message(envelope),
                routing_key=dead_letter_key,
            )
        except Exception as e:
            failure = DeadLetterPublishError(self._config.exchange_name, dead_letter_key, str(e))
            logger.error(
                str(failure),
                exc_info=True,
                extra={
                    "exchange_name": self._config.exchange_name,
                    "routing_key": dead_letter_key,
                    "consumer_name": consumer_name,
                    "error": str(e),
                    "error_type": type(e).__name__,
                    "handler_error_type": envelope.failure_reason,
                },
            )
            return AckDecision.REJECT_WITHOUT_REQUEUE

        self.published_count += 1
        logger.warning(
            f"Sent message to dead-letter queue after {attempts} attempts",
            extra={
                "exchange_name": self._config.exchange_name,
                "dead_letter_queue": self._config.queue_name,
                "routing_key": dead_letter_key,
                "consumer_name": consumer_name,
                "attempts": attempts,
                "error": envelope.failure_detail,
                "error_type": envelope.failure_reason,
            },
        )
        return AckDecision.ACK

    def _build_message(self, envelope: FailureEnvelope) -> Message:
        headers: dict[str, Any] = {
            "x-failure-reason": envelope.failure_reason,
            "x-retry-attempts": envelope.retry_attempts_made,
            "x-consumer-name": envelope.consumer_name,
            "x-original-routing-key": envelope.original_routing_key,
        }
        return Message(
            body=envelope.to_bytes(),
            content_type=CONTENT_TYPE_JSON,
            content_encoding="utf-8",
            delivery_mode=(
                DeliveryMode.PERSISTENT if self._persistent else DeliveryMode.NOT_PERSISTENT
            ),
            message_id=str(uuid.uuid4()),
            timestamp=envelope.failed_at,
            headers=headers,
        )


__all__ = [
    "AckDecision",
    "FailureEnvelope",
    "DeadLetterRouter",
]
