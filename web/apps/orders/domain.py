"""Domain models, ports and the order saga service.

This module contains the dataclasses used as DTOs for orders, the order
status state machine, protocol definitions (ports) for the external
services the saga talks to (catalog, payments, delivery, order store) and
the domain service that orchestrates placing an order.

Nothing here imports Django: persistence and HTTP live in adapters.
"""

import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, List, Optional, Protocol

logger = logging.getLogger(__name__)


# ---- Enums ----
class OrderStatus(str, Enum):
    """Enumeration of the possible order statuses.

    The status is the single source of truth for saga progress. DELIVERED
    and CANCELED are terminal.
    """

    PLACED = "PLACED"
    PAYED = "PAYED"
    DELIVERING = "DELIVERING"
    DELIVERED = "DELIVERED"
    CANCELED = "CANCELED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class PaymentMode(str, Enum):
    CASH = "CASH"
    CARD = "CARD"
    PAYPAL = "PAYPAL"


class DeliveryOutcome(str, Enum):
    """Outcome reported by the delivery worker on the completion topic."""

    DELIVERED = "DELIVERED"
    FAILED = "FAILED"


TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELED})

# A completion event may race ahead of the local PAYED -> DELIVERING write,
# so both statuses accept it.
COMPLETABLE_STATUSES = frozenset({OrderStatus.PAYED, OrderStatus.DELIVERING})

_TRANSITIONS = {
    OrderStatus.PLACED: frozenset({OrderStatus.PAYED, OrderStatus.CANCELED}),
    OrderStatus.PAYED: frozenset(
        {OrderStatus.DELIVERING, OrderStatus.DELIVERED, OrderStatus.CANCELED}
    ),
    OrderStatus.DELIVERING: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELED: frozenset(),
}


def can_transition(src: OrderStatus, dst: OrderStatus) -> bool:
    """Return True when ``src -> dst`` is a legal state machine edge."""
    return dst in _TRANSITIONS[OrderStatus(src)]


# ---- Errors ----
class OrderError(Exception):
    """Base class for order domain errors.

    ``code`` is the short machine-readable value returned by the API.
    """

    code = "ORDER_ERROR"


class EmptyOrderError(OrderError):
    code = "EMPTY_ORDER"


class DishNotFoundError(OrderError):
    code = "DISH_NOT_FOUND"

    def __init__(self, dish_id):
        super().__init__(f"Dish with ID {dish_id} not found.")
        self.dish_id = dish_id


class DishUnavailableError(OrderError):
    code = "DISH_UNAVAILABLE"

    def __init__(self, dish_id):
        super().__init__(f"Dish with ID {dish_id} is not available.")
        self.dish_id = dish_id


class CatalogUnavailableError(OrderError):
    """The catalog could not be reached while validating an order."""

    code = "UPSTREAM_UNAVAILABLE"


class OrderNotFoundError(OrderError):
    code = "NOT_FOUND"

    def __init__(self, order_id):
        super().__init__(f"Order with an ID of {order_id} not found")
        self.order_id = order_id


class OrderStateError(OrderError):
    code = "INVALID_STATE"


# ---- Entities / DTOs ----
@dataclass(frozen=True)
class RequestedItem:
    """A line item as requested by the client, before pricing."""

    dish_id: uuid.UUID
    quantity: int


@dataclass(frozen=True)
class OrderItem:
    """A single priced line item in an order.

    Attributes:
        dish_id: Catalog identifier of the dish.
        quantity: Number of units ordered.
        unit_price_cents: Price captured from the catalog when the order
            was placed. Later catalog price changes never touch it.
    """

    dish_id: uuid.UUID
    quantity: int
    unit_price_cents: int

    @property
    def subtotal_cents(self) -> int:
        return self.unit_price_cents * self.quantity


@dataclass
class Order:
    """Container for order data.

    Attributes:
        id: Persistent identifier, or None if not yet saved.
        restaurant_id: Restaurant the order was placed at.
        user_id: Customer placing the order (may be unknown).
        items: Priced line items.
        status: Current OrderStatus.
        total_cents: Sum of the line subtotals, in integer cents.
        created_at: Creation timestamp (UTC).
        delivered_at: Set only when the order reaches DELIVERED.
    """

    id: Optional[uuid.UUID]
    restaurant_id: uuid.UUID
    user_id: Optional[uuid.UUID]
    items: List[OrderItem]
    status: OrderStatus = OrderStatus.PLACED
    total_cents: int = 0
    created_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None


def compute_total_cents(items: Iterable[OrderItem]) -> int:
    return sum(item.subtotal_cents for item in items)


@dataclass(frozen=True)
class Dish:
    """Catalog view of a dish (price in cents)."""

    dish_id: uuid.UUID
    price_cents: int
    available: bool
    name: str = ""
    description: Optional[str] = None


@dataclass(frozen=True)
class DeliveryRequest:
    order_id: uuid.UUID
    restaurant_id: uuid.UUID
    user_id: Optional[uuid.UUID]


@dataclass(frozen=True)
class DeliveryEvent:
    order_id: uuid.UUID
    outcome: DeliveryOutcome


@dataclass
class OrderView:
    """Denormalized read model returned by ``get_order_details``.

    ``payment`` and ``delivery`` are None when the owning service could not
    answer; ``dishes`` only holds the items the catalog resolved.
    """

    order: Order
    dishes: List[Dish] = field(default_factory=list)
    payment: Optional[dict] = None
    delivery: Optional[dict] = None


# ---- Ports (DIP) ----
class CatalogPort(Protocol):
    """Port describing the catalog lookups used by the domain."""

    def resolve_dish(self, dish_id: uuid.UUID) -> Optional[Dish]:
        """Return the dish, or None when the catalog does not know it.

        Raises:
            Exception: Transport or upstream errors propagate.
        """
        raise NotImplementedError()


class PaymentsPort(Protocol):
    """Port describing payment operations used by the domain."""

    def charge(
        self, order_id: uuid.UUID, amount_cents: int, mode: PaymentMode
    ) -> tuple[bool, Optional[uuid.UUID]]:
        """Charge the order amount.

        Returns:
            ``(paid, payment_id)``; ``(False, None)`` on a decline.
        """
        raise NotImplementedError()

    def get_payment_details(self, order_id: uuid.UUID) -> Optional[dict]:
        raise NotImplementedError()


class DeliveryPort(Protocol):
    """Port describing the delivery initiator."""

    def initiate(self, request: DeliveryRequest) -> bool:
        """Ask the delivery service to start delivering the order.

        Returns:
            True when the request was accepted, False when rejected.
        """
        raise NotImplementedError()

    def get_delivery_details(self, order_id: uuid.UUID) -> Optional[dict]:
        raise NotImplementedError()


class OrderStorePort(Protocol):
    """Keyed storage for Order aggregates with per-key conditional writes."""

    def add(self, order: Order) -> Order:
        """Persist a new order and return it with ``id`` assigned."""
        raise NotImplementedError()

    def get(self, order_id: uuid.UUID) -> Optional[Order]:
        raise NotImplementedError()

    def compare_and_set_status(
        self,
        order_id: uuid.UUID,
        expected: Iterable[OrderStatus],
        new_status: OrderStatus,
        delivered_at: Optional[datetime] = None,
    ) -> bool:
        """Atomically set ``new_status`` if the current status is in ``expected``.

        Returns:
            True if the write happened, False if the order is missing or its
            status was not one of ``expected``.
        """
        raise NotImplementedError()

    def set_status(
        self,
        order_id: uuid.UUID,
        new_status: OrderStatus,
        delivered_at: Optional[datetime] = None,
    ) -> bool:
        """Unconditionally set the status and ``delivered_at`` (None clears it).

        Returns False if the order is missing.
        """
        raise NotImplementedError()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---- Domain service ----
class OrderService:
    """Domain service running the order saga.

    The saga validates and prices the items against the catalog, persists
    the order as PLACED, charges the payment and requests delivery. Each
    step moves the stored status forward with a compare-and-set write so a
    concurrent completion event is never overwritten. Delivery completion
    happens later on the listener's side and is not awaited here.
    """

    def __init__(
        self,
        catalog: CatalogPort,
        payments: PaymentsPort,
        delivery: DeliveryPort,
        orders: OrderStorePort,
    ):
        """Initialize the service with required dependencies.

        Args:
            catalog: CatalogPort used to price and validate dishes.
            payments: PaymentsPort used to charge customers.
            delivery: DeliveryPort used to start deliveries.
            orders: OrderStorePort holding the order aggregates.
        """
        self.catalog = catalog
        self.payments = payments
        self.delivery = delivery
        self.orders = orders

    def place_order(
        self,
        restaurant_id: uuid.UUID,
        user_id: Optional[uuid.UUID],
        items: List[RequestedItem],
        payment_mode: PaymentMode = PaymentMode.CARD,
    ) -> uuid.UUID:
        """Run the order saga and return the new order id.

        A declined or failed payment is not an error for the caller: the
        order is stored as CANCELED and its id is returned. A failed
        delivery initiation leaves the order at PAYED for operator
        follow-up (see ``resume_delivery``).

        Args:
            restaurant_id: Restaurant the order is placed at.
            user_id: Customer id, may be None.
            items: Requested dishes and quantities.
            payment_mode: How the customer pays.

        Returns:
            The id of the persisted order.

        Raises:
            EmptyOrderError: If ``items`` is empty.
            DishNotFoundError: If the catalog does not know a dish.
            DishUnavailableError: If a dish exists but is not available.
            CatalogUnavailableError: If the catalog call itself fails.
        """
        logger.info("Processing the order...")

        # 1) Validate and price; nothing is persisted if this fails
        priced = self._validate_and_price(items)

        # 2) Persist as PLACED
        order = self.orders.add(
            Order(
                id=None,
                restaurant_id=restaurant_id,
                user_id=user_id,
                items=priced,
                status=OrderStatus.PLACED,
                total_cents=compute_total_cents(priced),
                created_at=utcnow(),
            )
        )
        logger.info(
            "order placed",
            extra={"order_id": str(order.id), "total_cents": order.total_cents},
        )

        # 3) Charge payment, compensate on failure
        if self._charge(order, payment_mode):
            # 4) Hand over to delivery
            self._initiate_delivery(order)

        return order.id

    def get_order_details(self, order_id: uuid.UUID) -> OrderView:
        """Assemble the order with catalog, payment and delivery details.

        Any collaborator that errors simply leaves its part of the view
        empty.

        Raises:
            OrderNotFoundError: If the order does not exist.
        """
        order = self._require(order_id)

        dishes = []
        for item in order.items:
            dish = self._safe_read("catalog", self.catalog.resolve_dish, item.dish_id)
            if dish is None:
                logger.error("Dish with ID %s not found for the order item.", item.dish_id)
                continue
            dishes.append(dish)

        return OrderView(
            order=order,
            dishes=dishes,
            payment=self._safe_read("payments", self.payments.get_payment_details, order.id),
            delivery=self._safe_read("delivery", self.delivery.get_delivery_details, order.id),
        )

    def update_order_status(self, order_id: uuid.UUID, new_status: OrderStatus) -> Order:
        """Administrative override of the order status.

        The state machine is deliberately not enforced here; transitions
        outside it are logged. ``delivered_at`` follows the new status: it is
        stamped when the order becomes DELIVERED, kept when it already was,
        and cleared otherwise.

        Raises:
            OrderNotFoundError: If the order does not exist.
        """
        new_status = OrderStatus(new_status)
        current = self._require(order_id)
        if current.status != new_status and not can_transition(current.status, new_status):
            logger.warning(
                "administrative override outside the state machine",
                extra={
                    "order_id": str(order_id),
                    "from_status": current.status.value,
                    "to_status": new_status.value,
                },
            )
        if new_status != OrderStatus.DELIVERED:
            delivered_at = None
        elif current.status == OrderStatus.DELIVERED and current.delivered_at:
            delivered_at = current.delivered_at
        else:
            delivered_at = utcnow()
        if not self.orders.set_status(order_id, new_status, delivered_at=delivered_at):
            raise OrderNotFoundError(order_id)
        logger.info("Status update for an order with an ID of %s successful", order_id)
        return replace(current, status=new_status, delivered_at=delivered_at)

    def resume_delivery(self, order_id: uuid.UUID) -> OrderStatus:
        """Retry delivery initiation for an order left at PAYED.

        Returns:
            The order status after the attempt.

        Raises:
            OrderNotFoundError: If the order does not exist.
            OrderStateError: If the order is not waiting for delivery.
        """
        order = self._require(order_id)
        if order.status != OrderStatus.PAYED:
            raise OrderStateError(
                f"Order {order_id} is {order.status.value}; only PAYED orders can resume delivery"
            )
        self._initiate_delivery(order)
        return self._require(order_id).status

    # ---- saga steps ----

    def _validate_and_price(self, items: List[RequestedItem]) -> List[OrderItem]:
        if not items:
            logger.error("Cannot save an order with no items.")
            raise EmptyOrderError("Order must have at least one item.")

        priced = []
        for item in items:
            try:
                dish = self.catalog.resolve_dish(item.dish_id)
            except Exception as exc:
                logger.error("catalog lookup failed for dish %s: %s", item.dish_id, exc)
                raise CatalogUnavailableError(str(exc)) from exc
            if dish is None:
                logger.error("Dish with an ID of %s was not found.", item.dish_id)
                raise DishNotFoundError(item.dish_id)
            if not dish.available:
                logger.error("Dish with an ID of %s is not available.", item.dish_id)
                raise DishUnavailableError(item.dish_id)
            priced.append(
                OrderItem(
                    dish_id=item.dish_id,
                    quantity=item.quantity,
                    unit_price_cents=dish.price_cents,
                )
            )
        return priced

    def _charge(self, order: Order, mode: PaymentMode) -> bool:
        logger.info("Initiating payment process...")
        try:
            paid, payment_id = self.payments.charge(order.id, order.total_cents, mode)
        except Exception as exc:
            logger.error(
                "Error occurred in Payment service while processing payment. Error: %s", exc
            )
            paid, payment_id = False, None

        if not paid:
            self._advance(order.id, OrderStatus.PLACED, OrderStatus.CANCELED)
            return False

        if not self._advance(order.id, OrderStatus.PLACED, OrderStatus.PAYED):
            return False
        logger.info(
            "Payment processed successfully",
            extra={"order_id": str(order.id), "payment_id": str(payment_id) if payment_id else None},
        )
        return True

    def _initiate_delivery(self, order: Order) -> None:
        logger.info("Initiating delivery process...")
        request = DeliveryRequest(
            order_id=order.id, restaurant_id=order.restaurant_id, user_id=order.user_id
        )
        try:
            accepted = self.delivery.initiate(request)
        except Exception as exc:
            logger.error(
                "Failed to initiate delivery for order: %s. Error: %s", order.id, exc
            )
            return
        if not accepted:
            logger.error("Delivery service rejected order %s; left at PAYED", order.id)
            return
        self._advance(order.id, OrderStatus.PAYED, OrderStatus.DELIVERING)

    # ---- helpers ----

    def _advance(self, order_id, expected: OrderStatus, new_status: OrderStatus) -> bool:
        """Compare-and-set one saga step; log and skip when the race is lost."""
        if self.orders.compare_and_set_status(order_id, [expected], new_status):
            return True
        current = self.orders.get(order_id)
        logger.warning(
            "status write skipped",
            extra={
                "order_id": str(order_id),
                "expected": expected.value,
                "wanted": new_status.value,
                "current": current.status.value if current else None,
            },
        )
        return False

    def _require(self, order_id) -> Order:
        order = self.orders.get(order_id)
        if order is None:
            logger.error("Order with ID %s not found", order_id)
            raise OrderNotFoundError(order_id)
        return order

    @staticmethod
    def _safe_read(name: str, fn, *args) -> Any:
        try:
            return fn(*args)
        except Exception as exc:
            logger.warning("%s unavailable while reading order details: %s", name, exc)
            return None
