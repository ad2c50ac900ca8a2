"""Publishing of delivery outcome events.

The order service consumes ``{order_id, outcome}`` JSON payloads from the
delivery topic, a Redis stream read through a consumer group.
"""

import json
import logging
import os
import uuid
from typing import List, Optional, Protocol

import redis

logger = logging.getLogger("delivery")

DELIVERY_TOPIC = os.getenv("DELIVERY_TOPIC", "delivery-topic")
REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")


def encode_event(order_id: uuid.UUID, outcome: str) -> bytes:
    body = {"order_id": str(order_id), "outcome": outcome}
    return json.dumps(body, separators=(",", ":")).encode("utf-8")


class EventPublisher(Protocol):
    def publish(self, topic: str, value: bytes, key: Optional[str] = None) -> None:
        ...


class RedisStreamPublisher(EventPublisher):
    """XADD events onto a capped Redis stream."""

    def __init__(self, client: Optional["redis.Redis"] = None, max_stream_length: int = 10000):
        self.client = client or redis.Redis.from_url(REDIS_URL)
        self.max_stream_length = max_stream_length

    def publish(self, topic: str, value: bytes, key: Optional[str] = None) -> None:
        fields = {"value": value}
        if key:
            fields["key"] = key
        self.client.xadd(topic, fields, maxlen=self.max_stream_length, approximate=True)


class ListPublisher(EventPublisher):
    """Keeps published events in a list; used by tests and local runs."""

    def __init__(self):
        self.sent: List[tuple] = []

    def publish(self, topic: str, value: bytes, key: Optional[str] = None) -> None:
        self.sent.append((topic, value, key))
