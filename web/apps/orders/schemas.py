"""Pydantic schemas for orders.

This module exposes the request/validation schemas used by the orders API,
the read DTOs returned by it, and the delivery event payload consumed by
the completion listener.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from .domain import (
    DeliveryEvent,
    DeliveryOutcome,
    OrderStatus,
    OrderView,
    PaymentMode,
    RequestedItem,
)


class OrderItemIn(BaseModel):
    """Input schema for a single order line item.

    Attributes:
        dish_id: Catalog id of the dish.
        quantity: Positive integer indicating units requested.
    """

    dish_id: UUID
    quantity: int = Field(gt=0)


class PlaceOrderDTO(BaseModel):
    """Schema for placing an order.

    ``items`` may be empty here: the domain service owns the EMPTY_ORDER
    rule so the API and the service report it the same way.
    """

    restaurant_id: UUID
    user_id: Optional[UUID] = None
    payment_mode: PaymentMode
    items: list[OrderItemIn]

    def requested_items(self) -> list[RequestedItem]:
        return [RequestedItem(dish_id=i.dish_id, quantity=i.quantity) for i in self.items]


class UpdateStatusDTO(BaseModel):
    status: OrderStatus


class ListQueryDTO(BaseModel):
    """Query parameters of the order list endpoint."""

    model_config = ConfigDict(extra="ignore")

    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=100)


class OrderReadDTO(BaseModel):
    """Row returned by the order list endpoint."""

    id: UUID
    status: OrderStatus
    amount_cents: int
    created_at: datetime
    delivered_at: Optional[datetime] = None


class OrderItemOut(BaseModel):
    dish_id: UUID
    quantity: int
    unit_price_cents: int


class DishOut(BaseModel):
    dish_id: UUID
    name: str = ""
    price_cents: int
    available: bool
    description: Optional[str] = None


class OrderDetailDTO(OrderReadDTO):
    """Denormalized order view; ``payment``/``delivery`` are omitted when unknown."""

    restaurant_id: UUID
    user_id: Optional[UUID] = None
    items: list[OrderItemOut]
    dishes: list[DishOut] = []
    payment: Optional[dict] = None
    delivery: Optional[dict] = None

    @classmethod
    def from_view(cls, view: OrderView) -> "OrderDetailDTO":
        o = view.order
        return cls(
            id=o.id,
            status=o.status,
            amount_cents=o.total_cents,
            created_at=o.created_at,
            delivered_at=o.delivered_at,
            restaurant_id=o.restaurant_id,
            user_id=o.user_id,
            items=[OrderItemOut(dish_id=i.dish_id, quantity=i.quantity,
                                unit_price_cents=i.unit_price_cents) for i in o.items],
            dishes=[DishOut(dish_id=d.dish_id, name=d.name, price_cents=d.price_cents,
                            available=d.available, description=d.description)
                    for d in view.dishes],
            payment=view.payment,
            delivery=view.delivery,
        )


class DeliveryEventDTO(BaseModel):
    """Delivery completion payload.

    Accepts both ``{order_id, outcome}`` and the ``{orderId, status}``
    spelling used by older delivery workers.
    """

    model_config = ConfigDict(extra="ignore")

    order_id: UUID = Field(validation_alias=AliasChoices("order_id", "orderId"))
    outcome: DeliveryOutcome = Field(validation_alias=AliasChoices("outcome", "status"))

    def to_domain(self) -> DeliveryEvent:
        return DeliveryEvent(order_id=self.order_id, outcome=self.outcome)
