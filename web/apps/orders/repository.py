"""Repository layer for persisting orders.

This module maps the domain ``Order`` onto the Django ORM. It keeps a thin
interface so the domain layer is not coupled to ORM details, and exposes
the conditional status write the saga and the delivery listener rely on:
a single ``UPDATE ... WHERE id = %s AND status IN (...)`` statement, which
the database applies atomically per row.
"""

import uuid
from datetime import datetime
from typing import Iterable, Optional

from django.db import transaction

from .domain import Order, OrderItem, OrderStatus, OrderStorePort
from .models import OrderItemModel, OrderModel


def to_domain(obj: OrderModel) -> Order:
    """Build a domain ``Order`` from a model row (items included)."""
    return Order(
        id=obj.id,
        restaurant_id=obj.restaurant_id,
        user_id=obj.user_id,
        items=[
            OrderItem(
                dish_id=it.dish_id,
                quantity=it.quantity,
                unit_price_cents=it.unit_price_cents,
            )
            for it in obj.items.all()
        ],
        status=OrderStatus(obj.status),
        total_cents=obj.total_cents,
        created_at=obj.created_at,
        delivered_at=obj.delivered_at,
    )


class OrderRepository(OrderStorePort):
    """Repository that persists Order domain objects using Django ORM."""

    @transaction.atomic
    def add(self, order: Order) -> Order:
        """Persist a new order and its items.

        Args:
            order: Domain ``Order`` to persist. ``id`` may be None.

        Returns:
            Order: The stored order, with the generated ``id``.
        """
        fields = dict(
            restaurant_id=order.restaurant_id,
            user_id=order.user_id,
            status=OrderStatus(order.status).value,
            total_cents=order.total_cents,
            delivered_at=order.delivered_at,
        )
        if order.id is not None:
            fields["id"] = order.id
        if order.created_at is not None:
            fields["created_at"] = order.created_at
        obj = OrderModel.objects.create(**fields)
        OrderItemModel.objects.bulk_create(
            [
                OrderItemModel(
                    order=obj,
                    position=pos,
                    dish_id=it.dish_id,
                    quantity=it.quantity,
                    unit_price_cents=it.unit_price_cents,
                )
                for pos, it in enumerate(order.items)
            ]
        )
        return to_domain(obj)

    def get(self, order_id: uuid.UUID) -> Optional[Order]:
        obj = OrderModel.objects.prefetch_related("items").filter(id=order_id).first()
        return to_domain(obj) if obj else None

    def compare_and_set_status(
        self,
        order_id: uuid.UUID,
        expected: Iterable[OrderStatus],
        new_status: OrderStatus,
        delivered_at: Optional[datetime] = None,
    ) -> bool:
        """Set the status only if the row still has one of ``expected``.

        Returns:
            bool: True when exactly one row was updated.
        """
        updates = {"status": OrderStatus(new_status).value}
        if delivered_at is not None:
            updates["delivered_at"] = delivered_at
        updated = OrderModel.objects.filter(
            id=order_id,
            status__in=[OrderStatus(s).value for s in expected],
        ).update(**updates)
        return updated == 1

    def set_status(
        self,
        order_id: uuid.UUID,
        new_status: OrderStatus,
        delivered_at: Optional[datetime] = None,
    ) -> bool:
        updated = OrderModel.objects.filter(id=order_id).update(
            status=OrderStatus(new_status).value, delivered_at=delivered_at
        )
        return updated == 1
