"""
Consumer health tracking.

Provides per-consumer health telemetry and a fleet-wide aggregate:
- HealthStatus: HEALTHY / DEGRADED / UNHEALTHY
- HealthSnapshot: Immutable point-in-time view of one consumer
- HealthTracker: Thread-safe counters and status transitions
- AggregateHealth / aggregate_health: Worst-of view over many consumers

Status rules:
- A closed connection or channel is always UNHEALTHY
- A failure rate above 20% is UNHEALTHY, above 10% DEGRADED
- Otherwise HEALTHY
"""

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

DEGRADED_FAILURE_RATE = 0.10
UNHEALTHY_FAILURE_RATE = 0.20
ACTIVE_PROCESSING_WINDOW = timedelta(minutes=5)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Default clock: current time as an aware UTC datetime."""
    return datetime.now(UTC)


class HealthStatus(Enum):
    """
    Health status levels.

    Indicates the health state of a consumer or of a fleet of consumers.
    """

    HEALTHY = "healthy"
    """All systems operating normally."""

    DEGRADED = "degraded"
    """Elevated failure rate but still operational."""

    UNHEALTHY = "unhealthy"
    """Broker link down or failure rate too high."""


_SEVERITY = {
    HealthStatus.HEALTHY: 0,
    HealthStatus.DEGRADED: 1,
    HealthStatus.UNHEALTHY: 2,
}


def _failure_rate(success_count: int, failure_count: int) -> float:
    total = success_count + failure_count
    return failure_count / total if total else 0.0


def _status_for_rate(rate: float) -> HealthStatus | None:
    if rate > UNHEALTHY_FAILURE_RATE:
        return HealthStatus.UNHEALTHY
    if rate > DEGRADED_FAILURE_RATE:
        return HealthStatus.DEGRADED
    return None


@dataclass(frozen=True)
class HealthSnapshot:
    """
    Point-in-time health of one consumer.

    Snapshots are immutable copies; holding one never blocks the tracker.
    """

    status: HealthStatus
    connection_open: bool
    channel_open: bool
    success_count: int
    failure_count: int
    last_success_at: datetime | None
    last_check_at: datetime
    consumer_name: str = ""
    queue_name: str | None = None
    exchange_name: str | None = None
    dead_letter_enabled: bool = False
    max_retry_attempts: int = 0
    retry_base_delay: float = 0.0

    @property
    def failure_rate(self) -> float:
        """Failures over all processed messages, 0.0 when nothing was processed."""
        return _failure_rate(self.success_count, self.failure_count)

    @property
    def failure_rate_percent(self) -> float:
        """Failure rate as a percentage."""
        return self.failure_rate * 100

    @property
    def is_actively_processing(self) -> bool:
        """True if a message succeeded within five minutes of the last check."""
        if self.last_success_at is None:
            return False
        return self.last_success_at > self.last_check_at - ACTIVE_PROCESSING_WINDOW

    @property
    def summary(self) -> str:
        """Human-readable list of problems, or 'All systems operational'."""
        issues: list[str] = []
        if not self.connection_open:
            issues.append("Connection closed")
        if not self.channel_open:
            issues.append("Channel closed")
        if self.failure_rate > DEGRADED_FAILURE_RATE:
            issues.append(f"High failure rate: {self.failure_rate_percent:.1f}%")
        if not self.is_actively_processing and self.success_count == 0:
            issues.append("No messages processed")
        return ", ".join(issues) if issues else "All systems operational"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "consumer": self.consumer_name,
            "status": self.status.value,
            "connection_open": self.connection_open,
            "channel_open": self.channel_open,
            "queue_name": self.queue_name,
            "exchange_name": self.exchange_name,
            "successful_messages": self.success_count,
            "failed_messages": self.failure_count,
            "failure_rate": f"{self.failure_rate_percent:.2f}%",
            "last_successful_processing": (
                self.last_success_at.isoformat() if self.last_success_at else None
            ),
            "last_health_check": self.last_check_at.isoformat(),
            "is_actively_processing": self.is_actively_processing,
            "dead_letter_enabled": self.dead_letter_enabled,
            "max_retry_attempts": self.max_retry_attempts,
            "retry_base_delay": self.retry_base_delay,
            "summary": self.summary,
        }


class HealthTracker:
    """
    Mutable health counters for one consumer.

    All mutations and reads go through one ``threading.Lock``, so snapshots
    can be taken from any thread (e.g. a web server's health endpoint)
    while the consumer's event loop records outcomes.

    The tracker starts UNHEALTHY with connection and channel unknown
    (closed) until the first ``evaluate()``.

    Example:
        >>> tracker = HealthTracker(consumer_name="orders-1", queue_name="orders")
        >>> tracker.evaluate(connection_open=True, channel_open=True)
        <HealthStatus.HEALTHY: 'healthy'>
        >>> tracker.record_failure()
        >>> tracker.snapshot().status
        <HealthStatus.UNHEALTHY: 'unhealthy'>
    """

    def __init__(
        self,
        consumer_name: str = "",
        queue_name: str | None = None,
        exchange_name: str | None = None,
        dead_letter_enabled: bool = False,
        max_retry_attempts: int = 0,
        retry_base_delay: float = 0.0,
        clock: Clock = utc_now,
    ) -> None:
        self._lock = threading.Lock()
        self._clock = clock

        self._consumer_name = consumer_name
        self._queue_name = queue_name
        self._exchange_name = exchange_name
        self._dead_letter_enabled = dead_letter_enabled
        self._max_retry_attempts = max_retry_attempts
        self._retry_base_delay = retry_base_delay

        self._status = HealthStatus.UNHEALTHY
        self._connection_open = False
        self._channel_open = False
        self._success_count = 0
        self._failure_count = 0
        self._last_success_at: datetime | None = None
        self._last_check_at = clock()

    def record_success(self) -> None:
        """Count a processed message and restore HEALTHY if the link is up."""
        with self._lock:
            self._success_count += 1
            self._last_success_at = self._clock()
            if self._connection_open and self._channel_open:
                self._status = HealthStatus.HEALTHY

    def record_failure(self) -> None:
        """Count an exhausted message and degrade status on high failure rates."""
        with self._lock:
            self._failure_count += 1
            rate = _failure_rate(self._success_count, self._failure_count)
            new_status = _status_for_rate(rate)
            if new_status is not None and new_status is not self._status:
                logger.warning(
                    f"Consumer health changed to {new_status.value}",
                    extra={
                        "consumer_name": self._consumer_name,
                        "queue_name": self._queue_name,
                        "failure_rate": rate,
                        "previous_status": self._status.value,
                    },
                )
                self._status = new_status

    def evaluate(self, connection_open: bool, channel_open: bool) -> HealthStatus:
        """
        Recompute status from the live broker link state and failure rate.

        Args:
            connection_open: Whether the consumer's connection is open
            channel_open: Whether the consumer's channel is open

        Returns:
            The new status
        """
        with self._lock:
            self._connection_open = connection_open
            self._channel_open = channel_open
            self._last_check_at = self._clock()

            if not (connection_open and channel_open):
                self._status = HealthStatus.UNHEALTHY
            else:
                rate = _failure_rate(self._success_count, self._failure_count)
                self._status = _status_for_rate(rate) or HealthStatus.HEALTHY
            return self._status

    def snapshot(self) -> HealthSnapshot:
        """Return an immutable copy of the current state."""
        with self._lock:
            return HealthSnapshot(
                status=self._status,
                connection_open=self._connection_open,
                channel_open=self._channel_open,
                success_count=self._success_count,
                failure_count=self._failure_count,
                last_success_at=self._last_success_at,
                last_check_at=self._last_check_at,
                consumer_name=self._consumer_name,
                queue_name=self._queue_name,
                exchange_name=self._exchange_name,
                dead_letter_enabled=self._dead_letter_enabled,
                max_retry_attempts=self._max_retry_attempts,
                retry_base_delay=self._retry_base_delay,
            )


@dataclass(frozen=True)
class AggregateHealth:
    """
    Worst-of health across a set of consumers.

    Attributes:
        status: UNHEALTHY if any consumer is, else DEGRADED if any is, else HEALTHY
        consumers: The snapshots this was computed from
        timestamp: When the aggregate was computed
    """

    status: HealthStatus
    consumers: tuple[HealthSnapshot, ...] = ()
    timestamp: datetime = field(default_factory=utc_now)

    @property
    def total(self) -> int:
        return len(self.consumers)

    @property
    def healthy_count(self) -> int:
        return self._count(HealthStatus.HEALTHY)

    @property
    def degraded_count(self) -> int:
        return self._count(HealthStatus.DEGRADED)

    @property
    def unhealthy_count(self) -> int:
        return self._count(HealthStatus.UNHEALTHY)

    @property
    def description(self) -> str:
        """'All N consumers are healthy' or the list of consumers with issues."""
        issues = [
            f"{s.consumer_name}: {s.summary}"
            for s in self.consumers
            if s.status is not HealthStatus.HEALTHY
        ]
        if issues:
            return f"Issues detected: {'; '.join(issues)}"
        return f"All {self.total} consumers are healthy"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "status": self.status.value,
            "description": self.description,
            "total_consumers": self.total,
            "healthy_consumers": self.healthy_count,
            "degraded_consumers": self.degraded_count,
            "unhealthy_consumers": self.unhealthy_count,
            "timestamp": self.timestamp.isoformat(),
            "consumers": [s.to_dict() for s in self.consumers],
        }

    def _count(self, status: HealthStatus) -> int:
        return sum(1 for s in self.consumers if s.status is status)


def aggregate_health(snapshots: Iterable[HealthSnapshot]) -> AggregateHealth:
    """
    Combine consumer snapshots into a worst-of status.

    An empty fleet is HEALTHY.
    """
    consumers = tuple(snapshots)
    status = HealthStatus.HEALTHY
    for snapshot in consumers:
        if _SEVERITY[snapshot.status] > _SEVERITY[status]:
            status = snapshot.status
    return AggregateHealth(status=status, consumers=consumers)


__all__ = [
    "HealthStatus",
    "HealthSnapshot",
    "HealthTracker",
    "AggregateHealth",
    "aggregate_health",
    "utc_now",
    "DEGRADED_FAILURE_RATE",
    "UNHEALTHY_FAILURE_RATE",
    "ACTIVE_PROCESSING_WINDOW",
]
