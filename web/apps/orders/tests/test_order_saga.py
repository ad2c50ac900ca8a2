"""Unit tests for the OrderService saga.

The service runs against the in-memory order store and small stub ports
so each scenario can drive the catalog, payment and delivery outcomes
deterministically.
"""

import uuid

import pytest

from apps.orders.adapters import CatalogStub, DeliveryStub, InMemoryOrderRepository, PaymentsStub
from apps.orders.domain import (
    CatalogUnavailableError,
    Dish,
    DishNotFoundError,
    DishUnavailableError,
    EmptyOrderError,
    OrderNotFoundError,
    OrderService,
    OrderStateError,
    OrderStatus,
    PaymentMode,
    RequestedItem,
)

DISH_A = uuid.UUID("00000000-0000-0000-0000-00000000000a")
DISH_B = uuid.UUID("00000000-0000-0000-0000-00000000000b")
RESTAURANT = uuid.UUID("00000000-0000-0000-0000-0000000000f1")


def _catalog():
    dishes = {
        DISH_A: Dish(DISH_A, price_cents=1000, available=True, name="Pad thai"),
        DISH_B: Dish(DISH_B, price_cents=500, available=True, name="Spring rolls"),
    }
    return CatalogStub(dishes)


class PaymentsDecline:
    """Payments stub that always declines."""
    def charge(self, order_id, amount_cents, mode): return (False, None)
    def get_payment_details(self, order_id): return None


class PaymentsBroken:
    """Payments stub whose charge call blows up."""
    def charge(self, order_id, amount_cents, mode): raise ConnectionError("payments down")
    def get_payment_details(self, order_id): raise ConnectionError("payments down")


class DeliveryRejects(DeliveryStub):
    def initiate(self, request):
        self.requests.append(request)
        return False


class DeliveryBroken(DeliveryStub):
    def initiate(self, request): raise TimeoutError("delivery timed out")
    def get_delivery_details(self, order_id): raise TimeoutError("delivery timed out")


class CatalogBroken:
    def resolve_dish(self, dish_id): raise ConnectionError("catalog down")


def _service(catalog=None, payments=None, delivery=None, orders=None):
    return OrderService(
        catalog=catalog or _catalog(),
        payments=payments or PaymentsStub(),
        delivery=delivery or DeliveryStub(),
        orders=orders if orders is not None else InMemoryOrderRepository(),
    )


def _two_dishes():
    return [RequestedItem(DISH_A, 2), RequestedItem(DISH_B, 1)]


def test_happy_path_prices_charges_and_hands_over_to_delivery():
    """Two dishes at 10.00 x2 and 5.00 x1 total 2500 cents and end DELIVERING."""
    payments, delivery = PaymentsStub(), DeliveryStub()
    svc = _service(payments=payments, delivery=delivery)
    user = uuid.uuid4()

    order_id = svc.place_order(RESTAURANT, user, _two_dishes(), PaymentMode.CARD)

    order = svc.orders.get(order_id)
    assert order.status == OrderStatus.DELIVERING
    assert order.total_cents == 2500
    assert order.created_at is not None and order.created_at.tzinfo is not None
    assert order.delivered_at is None
    assert payments.charges[order_id]["amount_cents"] == 2500
    assert payments.charges[order_id]["payment_mode"] == "CARD"
    assert [r.order_id for r in delivery.requests] == [order_id]
    assert delivery.requests[0].restaurant_id == RESTAURANT
    assert delivery.requests[0].user_id == user


def test_empty_order_is_rejected_without_writes():
    orders = InMemoryOrderRepository()
    svc = _service(orders=orders)
    with pytest.raises(EmptyOrderError) as e:
        svc.place_order(RESTAURANT, None, [], PaymentMode.CASH)
    assert e.value.code == "EMPTY_ORDER"
    assert orders.writes == 0
    assert len(orders) == 0


def test_unknown_dish_raises_and_persists_nothing():
    orders = InMemoryOrderRepository()
    svc = _service(orders=orders)
    missing = uuid.uuid4()
    with pytest.raises(DishNotFoundError) as e:
        svc.place_order(RESTAURANT, None, [RequestedItem(DISH_A, 1), RequestedItem(missing, 1)])
    assert e.value.dish_id == missing
    assert len(orders) == 0


def test_unavailable_dish_raises_and_persists_nothing():
    orders = InMemoryOrderRepository()
    catalog = _catalog()
    catalog.dishes[DISH_B] = Dish(DISH_B, price_cents=500, available=False)
    svc = _service(catalog=catalog, orders=orders)
    with pytest.raises(DishUnavailableError):
        svc.place_order(RESTAURANT, None, _two_dishes())
    assert len(orders) == 0


def test_catalog_outage_maps_to_upstream_unavailable():
    orders = InMemoryOrderRepository()
    svc = _service(catalog=CatalogBroken(), orders=orders)
    with pytest.raises(CatalogUnavailableError) as e:
        svc.place_order(RESTAURANT, None, _two_dishes())
    assert e.value.code == "UPSTREAM_UNAVAILABLE"
    assert len(orders) == 0


@pytest.mark.parametrize("payments", [PaymentsDecline(), PaymentsBroken()])
def test_payment_failure_compensates_to_canceled(payments):
    """A declined or failing charge stores the order as CANCELED and skips delivery."""
    delivery = DeliveryStub()
    svc = _service(payments=payments, delivery=delivery)

    order_id = svc.place_order(RESTAURANT, None, _two_dishes(), PaymentMode.PAYPAL)

    assert svc.orders.get(order_id).status == OrderStatus.CANCELED
    assert delivery.requests == []


@pytest.mark.parametrize("delivery", [DeliveryRejects(), DeliveryBroken()])
def test_delivery_initiation_failure_leaves_order_payed(delivery):
    svc = _service(delivery=delivery)
    order_id = svc.place_order(RESTAURANT, None, _two_dishes())
    assert svc.orders.get(order_id).status == OrderStatus.PAYED


def test_price_is_captured_at_order_time():
    catalog = _catalog()
    svc = _service(catalog=catalog)
    order_id = svc.place_order(RESTAURANT, None, [RequestedItem(DISH_A, 3)])

    catalog.dishes[DISH_A] = Dish(DISH_A, price_cents=9999, available=True)

    order = svc.orders.get(order_id)
    assert order.items[0].unit_price_cents == 1000
    assert order.total_cents == 3000


def test_saga_does_not_overwrite_a_completion_that_raced_ahead():
    """A DELIVERED written between charge and the DELIVERING step is kept."""
    orders = InMemoryOrderRepository()

    class FastDelivery(DeliveryStub):
        def initiate(self, request):
            orders.compare_and_set_status(
                request.order_id, [OrderStatus.PAYED], OrderStatus.DELIVERED
            )
            return True

    svc = _service(delivery=FastDelivery(), orders=orders)
    order_id = svc.place_order(RESTAURANT, None, _two_dishes())
    assert orders.get(order_id).status == OrderStatus.DELIVERED


def test_get_order_details_assembles_all_parts():
    svc = _service()
    order_id = svc.place_order(RESTAURANT, None, _two_dishes())

    view = svc.get_order_details(order_id)

    assert view.order.id == order_id
    assert sorted(d.name for d in view.dishes) == ["Pad thai", "Spring rolls"]
    assert view.payment["status"] == "SUCCESSFUL"
    assert view.delivery["delivery_status"] == "IN_PROGRESS"


def test_get_order_details_is_partial_when_collaborators_fail():
    orders = InMemoryOrderRepository()
    order_id = _service(orders=orders).place_order(RESTAURANT, None, _two_dishes())

    svc = _service(
        catalog=CatalogBroken(), payments=PaymentsBroken(),
        delivery=DeliveryBroken(), orders=orders,
    )
    view = svc.get_order_details(order_id)

    assert view.order.id == order_id
    assert view.dishes == []
    assert view.payment is None
    assert view.delivery is None


def test_get_order_details_unknown_order():
    with pytest.raises(OrderNotFoundError):
        _service().get_order_details(uuid.uuid4())


def test_update_order_status_is_an_unguarded_override(caplog):
    svc = _service(payments=PaymentsDecline())
    order_id = svc.place_order(RESTAURANT, None, _two_dishes())
    assert svc.orders.get(order_id).status == OrderStatus.CANCELED

    with caplog.at_level("WARNING", logger="apps.orders.domain"):
        updated = svc.update_order_status(order_id, OrderStatus.DELIVERING)

    assert updated.status == OrderStatus.DELIVERING
    assert svc.orders.get(order_id).status == OrderStatus.DELIVERING
    assert any("override" in r.getMessage() for r in caplog.records)


def test_update_order_status_unknown_order():
    with pytest.raises(OrderNotFoundError):
        _service().update_order_status(uuid.uuid4(), OrderStatus.CANCELED)


def test_resume_delivery_moves_payed_order_to_delivering():
    orders = InMemoryOrderRepository()
    order_id = _service(delivery=DeliveryRejects(), orders=orders).place_order(
        RESTAURANT, None, _two_dishes()
    )
    assert orders.get(order_id).status == OrderStatus.PAYED

    delivery = DeliveryStub()
    status = _service(delivery=delivery, orders=orders).resume_delivery(order_id)

    assert status == OrderStatus.DELIVERING
    assert [r.order_id for r in delivery.requests] == [order_id]


def test_resume_delivery_still_failing_stays_payed():
    orders = InMemoryOrderRepository()
    svc = _service(delivery=DeliveryBroken(), orders=orders)
    order_id = svc.place_order(RESTAURANT, None, _two_dishes())
    assert svc.resume_delivery(order_id) == OrderStatus.PAYED


def test_resume_delivery_requires_payed_status():
    svc = _service()
    order_id = svc.place_order(RESTAURANT, None, _two_dishes())
    with pytest.raises(OrderStateError) as e:
        svc.resume_delivery(order_id)
    assert e.value.code == "INVALID_STATE"


def test_override_to_delivered_stamps_delivered_at_and_away_clears_it():
    svc = _service()
    order_id = svc.place_order(RESTAURANT, None, _two_dishes())

    delivered = svc.update_order_status(order_id, OrderStatus.DELIVERED)
    stored = svc.orders.get(order_id)
    assert stored.status == OrderStatus.DELIVERED
    assert stored.delivered_at is not None
    assert delivered.delivered_at == stored.delivered_at

    # repeating the override keeps the original timestamp
    svc.update_order_status(order_id, OrderStatus.DELIVERED)
    assert svc.orders.get(order_id).delivered_at == stored.delivered_at

    svc.update_order_status(order_id, OrderStatus.CANCELED)
    assert svc.orders.get(order_id).delivered_at is None
