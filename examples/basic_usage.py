"""
Basic Usage Example

This example demonstrates the fundamental flow of a rabbitkit service:
- Configuring consumers for a plain queue and for an exchange binding
- Publishing to a queue and fanning out through a direct exchange
- Retries with exponential backoff and the dead-letter queue
- Reading consumer and fleet health

Requires a RabbitMQ broker on localhost:5672 (guest/guest), e.g.:
    docker run --rm -p 5672:5672 rabbitmq:3-management

Run with: python examples/basic_usage.py
"""

import asyncio
import logging
from decimal import Decimal

from pydantic import BaseModel

from rabbitkit import (
    BrokerConfig,
    ConsumerConfig,
    Publisher,
    SubscriptionConfig,
    aggregate_health,
    create_consumer,
)
from rabbitkit.serialization import json_loads

# =============================================================================
# Step 1: Define Messages
# =============================================================================
# Messages are plain pydantic models on the publishing side. Handlers get
# the raw body and decode it themselves.


class OrderPlaced(BaseModel):
    order_id: int
    email: str
    total: Decimal


# =============================================================================
# Step 2: Define Handlers
# =============================================================================
# A handler receives the body bytes. Raising marks the attempt as failed;
# the consumer retries and finally dead-letters the message.


async def send_confirmation_email(body: bytes) -> None:
    order = json_loads(body)
    print(f"   [email] confirmation for order {order['order_id']} to {order['email']}")


class FlakyRewardService:
    """Fails the first call to show a retry."""

    def __init__(self) -> None:
        self.calls = 0

    async def __call__(self, body: bytes) -> None:
        self.calls += 1
        if self.calls == 1:
            raise ConnectionError("reward service timed out")
        order = json_loads(body)
        print(f"   [reward] points for order {order['order_id']} (attempt {self.calls})")


def reject_everything(body: bytes) -> None:
    raise ValueError("malformed audit record")


async def main():
    logging.basicConfig(level=logging.WARNING)
    broker = BrokerConfig(connection_name="rabbitkit-example")

    print("=" * 60)
    print("rabbitkit Basic Usage Example")
    print("=" * 60)

    # Exchange mode: one direct exchange, one queue per downstream concern
    email = await create_consumer(
        ConsumerConfig(
            subscription=SubscriptionConfig.for_exchange(
                "orderplaced", "orderplaced.email", "email"
            ),
            retry_base_delay=0.1,
        ),
        send_confirmation_email,
        broker=broker,
    )
    reward = await create_consumer(
        ConsumerConfig(
            subscription=SubscriptionConfig.for_exchange(
                "orderplaced", "orderplaced.reward", "reward"
            ),
            retry_base_delay=0.1,
        ),
        FlakyRewardService(),
        broker=broker,
    )

    # Simple queue mode with a handler that always fails
    audit = await create_consumer(
        ConsumerConfig(
            subscription=SubscriptionConfig.for_queue("audit"),
            max_retry_attempts=2,
            retry_base_delay=0.1,
        ),
        reject_everything,
        broker=broker,
    )

    async with email, reward, audit, Publisher(broker) as publisher:
        print("\n1. Fanning out an order to email and reward")
        await publisher.publish_to_exchange(
            OrderPlaced(order_id=1001, email="ana@example.com", total=Decimal("42.50")),
            "orderplaced",
            {"orderplaced.email": "email", "orderplaced.reward": "reward"},
        )

        print("\n2. Publishing an audit record that will be dead-lettered")
        await publisher.publish_to_queue({"event": "login"}, "audit")

        await asyncio.sleep(1.5)

        print("\n3. Consumer health")
        snapshots = [c.get_health_snapshot() for c in (email, reward, audit)]
        for snapshot in snapshots:
            print(
                f"   {snapshot.queue_name}: {snapshot.status.value} "
                f"({snapshot.success_count} ok, {snapshot.failure_count} failed)"
            )
        print(f"   fleet: {aggregate_health(snapshots).description}")
        print(f"   dead-lettered from audit: {audit.dead_letter_count} (see queue audit.dlq)")

    print("\n" + "=" * 60)
    print("Example completed successfully!")
    print("=" * 60)


if __name__ == "__main__":
    asyncio.run(main())
