"""In-process stub adapters for the orders domain ports.

These stubs implement ``CatalogPort``, ``PaymentsPort``, ``DeliveryPort``
and ``OrderStorePort`` without any network or database calls. They are
intended for unit tests and local development where deterministic
behavior is useful and external services are not required.
"""

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from .domain import (
    CatalogPort,
    DeliveryPort,
    DeliveryRequest,
    Dish,
    Order,
    OrderStatus,
    OrderStorePort,
    PaymentMode,
    PaymentsPort,
    utcnow,
)

DEFAULT_PRICE_CENTS = 1000


class CatalogStub(CatalogPort):
    """Stub implementation of ``CatalogPort``.

    With no ``dishes`` mapping every dish resolves as available at
    ``DEFAULT_PRICE_CENTS``. With a mapping, unknown ids resolve to None.
    """

    def __init__(self, dishes: Optional[Dict[uuid.UUID, Dish]] = None):
        self.dishes = dishes

    def resolve_dish(self, dish_id: uuid.UUID) -> Optional[Dish]:
        if self.dishes is None:
            return Dish(dish_id=dish_id, price_cents=DEFAULT_PRICE_CENTS, available=True)
        return self.dishes.get(dish_id)


class PaymentsStub(PaymentsPort):
    """Stub implementation of ``PaymentsPort``.

    Approves charges with a positive amount and returns a generated UUID
    as the payment id. Non-positive amounts are rejected.
    """

    def __init__(self):
        self.charges: Dict[uuid.UUID, dict] = {}

    def charge(
        self, order_id: uuid.UUID, amount_cents: int, mode: PaymentMode
    ) -> tuple[bool, Optional[uuid.UUID]]:
        """Charge a mock payment.

        Returns:
            tuple[bool, Optional[uuid.UUID]]: ``(True, payment_id)`` when
            ``amount_cents`` > 0, otherwise ``(False, None)``.
        """
        if amount_cents <= 0:
            return (False, None)
        payment_id = uuid.uuid4()
        self.charges[order_id] = {
            "payment_id": str(payment_id),
            "payment_mode": PaymentMode(mode).value,
            "status": "SUCCESSFUL",
            "amount_cents": amount_cents,
            "payed_on": utcnow().isoformat(),
        }
        return (True, payment_id)

    def get_payment_details(self, order_id: uuid.UUID) -> Optional[dict]:
        return self.charges.get(order_id)


class DeliveryStub(DeliveryPort):
    """Stub implementation of ``DeliveryPort``.

    Accepts every request and remembers it. Nothing is actually delivered;
    tests drive completion by feeding events to the listener.
    """

    def __init__(self):
        self.requests: List[DeliveryRequest] = []

    def initiate(self, request: DeliveryRequest) -> bool:
        self.requests.append(request)
        return True

    def get_delivery_details(self, order_id: uuid.UUID) -> Optional[dict]:
        for req in self.requests:
            if req.order_id == order_id:
                return {"order_id": str(order_id), "delivery_status": "IN_PROGRESS"}
        return None


class InMemoryOrderRepository(OrderStorePort):
    """Thread-safe in-memory order store.

    A single lock guards every read-modify-write so status updates behave
    like the conditional UPDATE issued by the Django repository. ``writes``
    counts mutating calls.
    """

    def __init__(self):
        self._orders: Dict[uuid.UUID, Order] = {}
        self._lock = threading.Lock()
        self.writes = 0

    def add(self, order: Order) -> Order:
        stored = replace(order, id=order.id or uuid.uuid4(), items=list(order.items))
        with self._lock:
            self._orders[stored.id] = stored
            self.writes += 1
        return replace(stored)

    def get(self, order_id: uuid.UUID) -> Optional[Order]:
        with self._lock:
            order = self._orders.get(order_id)
            return replace(order) if order else None

    def compare_and_set_status(
        self,
        order_id: uuid.UUID,
        expected: Iterable[OrderStatus],
        new_status: OrderStatus,
        delivered_at: Optional[datetime] = None,
    ) -> bool:
        expected = set(expected)
        with self._lock:
            order = self._orders.get(order_id)
            if order is None or order.status not in expected:
                return False
            order.status = new_status
            if delivered_at is not None:
                order.delivered_at = delivered_at
            self.writes += 1
            return True

    def set_status(
        self,
        order_id: uuid.UUID,
        new_status: OrderStatus,
        delivered_at: Optional[datetime] = None,
    ) -> bool:
        with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                return False
            order.status = new_status
            order.delivered_at = delivered_at
            self.writes += 1
            return True

    def __len__(self) -> int:
        return len(self._orders)
