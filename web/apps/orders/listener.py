"""Delivery completion listener.

Consumes delivery outcome events and applies the terminal status to the
matching order. The channel is at-least-once, so the handler is written to
be idempotent: a terminal order absorbs any further event, and every write
is a compare-and-set on the statuses a completion may legally follow.
Malformed or failing messages are logged and dropped, never retried.
"""

import logging
import threading
from enum import Enum
from typing import Optional

from pydantic import ValidationError

from .domain import (
    COMPLETABLE_STATUSES,
    DeliveryEvent,
    DeliveryOutcome,
    OrderStatus,
    OrderStorePort,
    utcnow,
)
from .messaging import DELIVERY_TOPIC, ORDER_GROUP, MessageChannel
from .schemas import DeliveryEventDTO

logger = logging.getLogger(__name__)


class EventOutcome(str, Enum):
    APPLIED = "APPLIED"
    DUPLICATE = "DUPLICATE"
    UNKNOWN_ORDER = "UNKNOWN_ORDER"
    REJECTED = "REJECTED"
    MALFORMED = "MALFORMED"
    FAILED = "FAILED"


class DeliveryCompletionListener:
    """Applies delivery events to orders held in an ``OrderStorePort``."""

    def __init__(self, orders: OrderStorePort, topic: str = DELIVERY_TOPIC,
                 group: str = ORDER_GROUP, consumer: str = "orders-1"):
        self.orders = orders
        self.topic = topic
        self.group = group
        self.consumer = consumer

    def on_delivery_event(self, event: DeliveryEvent) -> EventOutcome:
        """Apply one delivery event.

        DELIVERED moves the order to DELIVERED and stamps ``delivered_at``;
        FAILED moves it to CANCELED. Orders still at PAYED are accepted too,
        since the event can arrive before the saga's DELIVERING write.
        """
        logger.info("Received delivery event for order: %s", event.order_id)

        order = self.orders.get(event.order_id)
        if order is None:
            logger.warning("Order with ID %s not found; event dropped", event.order_id)
            return EventOutcome.UNKNOWN_ORDER

        if order.status.is_terminal:
            logger.info(
                "order already terminal; event absorbed",
                extra={"order_id": str(order.id), "status": order.status.value},
            )
            return EventOutcome.DUPLICATE

        if order.status not in COMPLETABLE_STATUSES:
            logger.warning(
                "delivery event for an order that was never paid; dropped",
                extra={"order_id": str(order.id), "status": order.status.value},
            )
            return EventOutcome.REJECTED

        if event.outcome == DeliveryOutcome.DELIVERED:
            target, delivered_at = OrderStatus.DELIVERED, utcnow()
        else:
            target, delivered_at = OrderStatus.CANCELED, None

        if self.orders.compare_and_set_status(
            order.id, COMPLETABLE_STATUSES, target, delivered_at=delivered_at
        ):
            logger.info("Order with ID %s is now %s", order.id, target.value)
            return EventOutcome.APPLIED

        # lost a race with another writer; re-read to classify
        current = self.orders.get(order.id)
        if current is not None and current.status.is_terminal:
            return EventOutcome.DUPLICATE
        logger.warning("status write for order %s skipped", order.id)
        return EventOutcome.REJECTED

    def handle_message(self, raw: bytes) -> EventOutcome:
        """Decode and apply a raw payload; never raises."""
        try:
            dto = DeliveryEventDTO.model_validate_json(raw)
        except ValidationError as exc:
            logger.error("Error deserializing the event: %s", exc)
            return EventOutcome.MALFORMED
        try:
            return self.on_delivery_event(dto.to_domain())
        except Exception:
            logger.exception("delivery event processing failed; dropped")
            return EventOutcome.FAILED

    def consume_once(self, channel: MessageChannel, count: int = 10,
                     block_ms: int = 1000) -> int:
        """Poll one batch, handle and acknowledge every message.

        Returns:
            int: Number of messages handled.
        """
        messages = channel.poll(self.topic, self.group, self.consumer,
                                count=count, block_ms=block_ms)
        for msg in messages:
            outcome = self.handle_message(msg.value)
            channel.ack(self.topic, self.group, msg.id)
            logger.debug("delivery message handled",
                         extra={"message_id": msg.id, "outcome": outcome.value})
        return len(messages)

    def run(self, channel: MessageChannel, stop_event: Optional[threading.Event] = None,
            block_ms: int = 1000, error_backoff_secs: float = 1.0) -> None:
        """Consume until ``stop_event`` is set.

        Channel errors (a Redis outage, a dropped connection) are logged and
        the loop waits ``error_backoff_secs`` before polling again; unacked
        messages are read again once the channel is back.
        """
        stop_event = stop_event or threading.Event()
        logger.info("delivery listener started",
                    extra={"topic": self.topic, "group": self.group, "consumer": self.consumer})
        while not stop_event.is_set():
            try:
                self.consume_once(channel, block_ms=block_ms)
            except Exception:
                logger.exception("delivery channel error; retrying",
                                 extra={"topic": self.topic, "group": self.group})
                stop_event.wait(error_backoff_secs)
        logger.info("delivery listener stopped")
