"""Delivery process simulator.

Stands in for the physical delivery. Every accepted delivery becomes a
task in a supervised thread pool keyed by order id. The task waits for
the configured delay, decides the outcome, resolves the delivery row and
publishes exactly one outcome event for the attempt.

Tasks can be cancelled while they wait; a cancelled delivery resolves as
FAILED. ``shutdown`` cancels whatever is still in flight.
"""

import logging
import random
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, Optional

from events import DELIVERY_TOPIC, EventPublisher, encode_event
from repo import DeliveryRepo, DeliveryStatus

logger = logging.getLogger("delivery")


class DeliveryAlreadyInProgress(Exception):
    """A delivery task for this order is still running."""


@dataclass
class _Task:
    delivery_id: uuid.UUID
    future: Future
    cancelled: threading.Event


class DeliverySimulator:
    """Run deliveries in the background and report their outcome.

    Args:
        repo: Repository holding the delivery rows.
        publisher: Where outcome events are published.
        delay_secs: Time a delivery takes.
        failure_rate: Probability in [0, 1] that a delivery fails on its own.
        max_workers: Size of the worker pool.
        topic: Topic the outcome events are published to.
    """

    def __init__(self, repo: DeliveryRepo, publisher: EventPublisher,
                 delay_secs: float = 10.0, failure_rate: float = 0.0,
                 max_workers: int = 8, topic: str = DELIVERY_TOPIC,
                 rng: Optional[random.Random] = None):
        self.repo = repo
        self.publisher = publisher
        self.delay_secs = delay_secs
        self.failure_rate = failure_rate
        self.topic = topic
        self._rng = rng or random.Random()
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="delivery")
        self._tasks: Dict[uuid.UUID, _Task] = {}
        self._lock = threading.Lock()

    def dispatch(self, order_id: uuid.UUID, delivery_id: uuid.UUID) -> Future:
        """Start the delivery task for ``order_id``.

        Raises:
            DeliveryAlreadyInProgress: If a task for the order is still running.
        """
        with self._lock:
            if order_id in self._tasks:
                raise DeliveryAlreadyInProgress(str(order_id))
            cancelled = threading.Event()
            future = self._pool.submit(self._run, order_id, delivery_id, cancelled)
            self._tasks[order_id] = _Task(delivery_id, future, cancelled)
        logger.info("delivery dispatched", extra={"order_id": str(order_id)})
        return future

    def in_flight(self, order_id: uuid.UUID) -> bool:
        with self._lock:
            return order_id in self._tasks

    def cancel(self, order_id: uuid.UUID) -> bool:
        """Cancel a running delivery. Returns False if none is in flight."""
        with self._lock:
            task = self._tasks.get(order_id)
        if task is None:
            return False
        task.cancelled.set()
        logger.info("delivery cancellation requested", extra={"order_id": str(order_id)})
        return True

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            tasks = list(self._tasks.values())
        for task in tasks:
            task.cancelled.set()
        self._pool.shutdown(wait=wait)

    def _run(self, order_id: uuid.UUID, delivery_id: uuid.UUID,
             cancelled: threading.Event) -> DeliveryStatus:
        try:
            # Event.wait returns True when cancelled before the delay elapsed
            if cancelled.wait(self.delay_secs):
                status = DeliveryStatus.FAILED
                logger.error("Delivery failed.", extra={"order_id": str(order_id)})
            elif self._rng.random() < self.failure_rate:
                status = DeliveryStatus.FAILED
                logger.error("Delivery failed.", extra={"order_id": str(order_id)})
            else:
                status = DeliveryStatus.DELIVERED

            try:
                self.repo.complete(delivery_id, status)
            except Exception:
                logger.exception("delivery row could not be resolved",
                                 extra={"order_id": str(order_id), "outcome": status.value})
            self._publish(order_id, status)
            return status
        except Exception:
            logger.exception("delivery task crashed", extra={"order_id": str(order_id)})
            raise
        finally:
            with self._lock:
                self._tasks.pop(order_id, None)

    def _publish(self, order_id: uuid.UUID, status: DeliveryStatus) -> None:
        logger.info("Dispatching delivery event to Order service...")
        try:
            self.publisher.publish(
                self.topic, encode_event(order_id, status.value), key=str(order_id)
            )
        except Exception:
            logger.exception("delivery event could not be published",
                             extra={"order_id": str(order_id), "outcome": status.value})
            return
        logger.info("Delivery event successfully dispatched to Order service.",
                    extra={"order_id": str(order_id), "outcome": status.value})
