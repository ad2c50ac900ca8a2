"""Message channel for delivery completion events.

The delivery worker publishes ``{order_id, outcome}`` payloads on the
delivery topic; the order listener consumes them in a consumer group. The
channel is at-least-once: a message that was polled but not acknowledged
can be delivered again, so consumers must be idempotent.

Two backends are provided:

- ``InMemoryChannel`` for tests and single-process development.
- ``RedisStreamChannel`` backed by Redis Streams (``XADD`` /
  ``XREADGROUP`` / ``XACK``), where each consumer group sees every message
  once and consumers inside a group share the work.
"""

import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol

import redis

from .domain import DeliveryEvent, DeliveryOutcome

logger = logging.getLogger(__name__)

DELIVERY_TOPIC = "delivery-topic"
ORDER_GROUP = "order-group"


@dataclass(frozen=True)
class Message:
    id: str
    topic: str
    value: bytes
    key: Optional[str] = None


def encode_delivery_event(order_id: uuid.UUID, outcome: DeliveryOutcome) -> bytes:
    """Serialize a delivery event to the JSON wire format."""
    body = {"order_id": str(order_id), "outcome": DeliveryOutcome(outcome).value}
    return json.dumps(body, separators=(",", ":")).encode("utf-8")


def publish_delivery_event(channel: "MessageChannel", event: DeliveryEvent,
                           topic: str = DELIVERY_TOPIC) -> str:
    return channel.publish(
        topic, encode_delivery_event(event.order_id, event.outcome), key=str(event.order_id)
    )


class MessageChannel(Protocol):
    """Protocol for the topic/consumer-group channel used by the listener."""

    def publish(self, topic: str, value: bytes, key: Optional[str] = None) -> str:
        """Append a message to ``topic`` and return its id."""
        ...

    def poll(self, topic: str, group: str, consumer: str,
             count: int = 10, block_ms: int = 1000) -> List[Message]:
        """Return up to ``count`` new messages for ``group``, waiting up to ``block_ms``."""
        ...

    def ack(self, topic: str, group: str, message_id: str) -> None:
        ...

    def health_check(self) -> bool:
        ...


@dataclass
class _GroupState:
    cursor: int = 0
    pending: Dict[str, Message] = field(default_factory=dict)
    redeliver: List[Message] = field(default_factory=list)


class InMemoryChannel(MessageChannel):
    """In-memory channel with consumer-group cursors.

    A group created after messages were published starts at the beginning
    of the topic. Polled messages stay pending until acknowledged;
    ``redeliver_pending`` hands them out again, which is how tests exercise
    at-least-once redelivery.
    """

    def __init__(self):
        self._topics: Dict[str, List[Message]] = {}
        self._groups: Dict[tuple, _GroupState] = {}
        self._cond = threading.Condition()
        self._seq = 0

    def publish(self, topic: str, value: bytes, key: Optional[str] = None) -> str:
        with self._cond:
            self._seq += 1
            msg = Message(id=f"{self._seq}-0", topic=topic, value=value, key=key)
            self._topics.setdefault(topic, []).append(msg)
            self._cond.notify_all()
            return msg.id

    def poll(self, topic: str, group: str, consumer: str,
             count: int = 10, block_ms: int = 1000) -> List[Message]:
        deadline = time.monotonic() + block_ms / 1000.0
        with self._cond:
            while True:
                batch = self._take(topic, group, count)
                if batch:
                    return batch
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return []
                self._cond.wait(remaining)

    def _take(self, topic: str, group: str, count: int) -> List[Message]:
        state = self._groups.setdefault((topic, group), _GroupState())
        batch = state.redeliver[:count]
        del state.redeliver[:len(batch)]
        log = self._topics.get(topic, [])
        while len(batch) < count and state.cursor < len(log):
            batch.append(log[state.cursor])
            state.cursor += 1
        for msg in batch:
            state.pending[msg.id] = msg
        return batch

    def ack(self, topic: str, group: str, message_id: str) -> None:
        with self._cond:
            state = self._groups.get((topic, group))
            if state:
                state.pending.pop(message_id, None)

    def redeliver_pending(self, topic: str, group: str) -> int:
        """Re-queue every unacknowledged message of ``group``."""
        with self._cond:
            state = self._groups.setdefault((topic, group), _GroupState())
            msgs = list(state.pending.values())
            state.pending.clear()
            state.redeliver.extend(msgs)
            self._cond.notify_all()
            return len(msgs)

    def messages(self, topic: str) -> List[Message]:
        return list(self._topics.get(topic, []))

    def health_check(self) -> bool:
        return True


class RedisStreamChannel(MessageChannel):
    """Redis Streams channel.

    Streams are capped with an approximate ``MAXLEN``; groups are created
    lazily with ``MKSTREAM`` reading from the start of the stream.

    Entries read but never acknowledged stay in the consumer's pending list.
    Before asking for new entries (``">"``) a consumer first re-reads its
    own backlog (id ``"0"``), both on its first poll and after any Redis
    error, so a crash or an outage between read and ``XACK`` delays an
    event instead of losing it. Consumer names must therefore be stable
    across restarts.
    """

    def __init__(self, client: "redis.Redis", max_stream_length: int = 10000):
        self.client = client
        self.max_stream_length = max_stream_length
        self._known_groups: set = set()
        self._drained: set = set()

    @classmethod
    def from_url(cls, url: str, max_stream_length: int = 10000) -> "RedisStreamChannel":
        return cls(redis.Redis.from_url(url), max_stream_length=max_stream_length)

    def publish(self, topic: str, value: bytes, key: Optional[str] = None) -> str:
        fields = {"value": value}
        if key:
            fields["key"] = key
        msg_id = self.client.xadd(
            topic, fields, maxlen=self.max_stream_length, approximate=True
        )
        return msg_id.decode() if isinstance(msg_id, bytes) else msg_id

    def _ensure_group(self, topic: str, group: str) -> None:
        if (topic, group) in self._known_groups:
            return
        try:
            self.client.xgroup_create(topic, group, id="0", mkstream=True)
            logger.info("created consumer group", extra={"topic": topic, "group": group})
        except redis.exceptions.ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise
        self._known_groups.add((topic, group))

    def poll(self, topic: str, group: str, consumer: str,
             count: int = 10, block_ms: int = 1000) -> List[Message]:
        backlog_key = (topic, group, consumer)
        try:
            self._ensure_group(topic, group)
            if backlog_key not in self._drained:
                pending = self._decode(topic, self.client.xreadgroup(
                    group, consumer, {topic: "0"}, count=count
                ))
                if pending:
                    logger.info("re-reading unacknowledged delivery events",
                                extra={"topic": topic, "group": group, "count": len(pending)})
                    return pending
                self._drained.add(backlog_key)
            return self._decode(topic, self.client.xreadgroup(
                group, consumer, {topic: ">"}, count=count, block=block_ms
            ))
        except redis.exceptions.RedisError:
            self._drained.clear()
            raise

    @staticmethod
    def _decode(topic: str, resp) -> List[Message]:
        out: List[Message] = []
        for _stream, entries in resp or []:
            for msg_id, fields in entries:
                # pending entries trimmed from the stream come back without fields
                fields = fields or {}
                key = fields.get(b"key")
                out.append(
                    Message(
                        id=msg_id.decode() if isinstance(msg_id, bytes) else msg_id,
                        topic=topic,
                        value=fields.get(b"value", b""),
                        key=key.decode() if isinstance(key, bytes) else key,
                    )
                )
        return out

    def ack(self, topic: str, group: str, message_id: str) -> None:
        try:
            self.client.xack(topic, group, message_id)
        except redis.exceptions.RedisError:
            self._drained.clear()
            raise

    def health_check(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.exceptions.RedisError:
            return False
