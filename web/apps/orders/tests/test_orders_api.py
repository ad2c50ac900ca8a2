"""API tests for the orders endpoints.

The autouse fixture in ``web/conftest.py`` wires the in-process stubs, so
the catalog prices every dish at 10.00, payments approve and delivery
accepts. Individual tests swap the service through the provider.
"""

import uuid

import pytest

from apps.orders import providers
from apps.orders.adapters import CatalogStub, DeliveryStub, PaymentsStub
from apps.orders.domain import Dish, OrderService, OrderStatus
from apps.orders.models import OrderModel
from apps.orders.repository import OrderRepository

BASE = "/api/orders/"
PLACE_URL = "/api/orders/place-order/"


def _payload(*dish_ids, payment_mode="CARD"):
    return {
        "restaurant_id": str(uuid.uuid4()),
        "user_id": str(uuid.uuid4()),
        "payment_mode": payment_mode,
        "items": [{"dish_id": str(d), "quantity": 2} for d in dish_ids],
    }


def _use_service(monkeypatch, **ports):
    def build():
        return OrderService(
            catalog=ports.get("catalog") or CatalogStub(),
            payments=ports.get("payments") or PaymentsStub(),
            delivery=ports.get("delivery") or DeliveryStub(),
            orders=OrderRepository(),
        )
    monkeypatch.setattr(providers, "get_order_service", build, raising=True)


@pytest.mark.django_db
def test_place_order_runs_the_saga(client):
    r = client.post(PLACE_URL, data=_payload(uuid.uuid4(), uuid.uuid4()), content_type="application/json")
    assert r.status_code == 201
    body = r.json()
    assert body["status"] == "DELIVERING"

    row = OrderModel.objects.get(id=body["id"])
    assert row.status == "DELIVERING"
    assert row.total_cents == 4000
    assert row.items.count() == 2
    assert r.headers["X-Request-ID"]


@pytest.mark.django_db
def test_place_order_declined_payment_returns_canceled_order(client, monkeypatch):
    class Decline(PaymentsStub):
        def charge(self, order_id, amount_cents, mode): return (False, None)

    _use_service(monkeypatch, payments=Decline())
    r = client.post(PLACE_URL, data=_payload(uuid.uuid4()), content_type="application/json")
    assert r.status_code == 201
    assert r.json()["status"] == "CANCELED"


@pytest.mark.django_db
def test_place_order_empty_items(client):
    r = client.post(PLACE_URL, data=_payload(), content_type="application/json")
    assert r.status_code == 400
    assert r.json()["detail"] == "EMPTY_ORDER"
    assert OrderModel.objects.count() == 0


@pytest.mark.django_db
def test_place_order_unknown_dish(client, monkeypatch):
    _use_service(monkeypatch, catalog=CatalogStub({}))
    r = client.post(PLACE_URL, data=_payload(uuid.uuid4()), content_type="application/json")
    assert r.status_code == 404
    assert r.json()["detail"] == "DISH_NOT_FOUND"
    assert OrderModel.objects.count() == 0


@pytest.mark.django_db
def test_place_order_unavailable_dish(client, monkeypatch):
    dish = uuid.uuid4()
    _use_service(monkeypatch, catalog=CatalogStub({dish: Dish(dish, 800, available=False)}))
    r = client.post(PLACE_URL, data=_payload(dish), content_type="application/json")
    assert r.status_code == 400
    assert r.json()["detail"] == "DISH_UNAVAILABLE"


@pytest.mark.django_db
def test_place_order_catalog_down(client, monkeypatch):
    class Down:
        def resolve_dish(self, dish_id): raise ConnectionError("refused")

    _use_service(monkeypatch, catalog=Down())
    r = client.post(PLACE_URL, data=_payload(uuid.uuid4()), content_type="application/json")
    assert r.status_code == 503
    assert r.json()["detail"] == "UPSTREAM_UNAVAILABLE"


@pytest.mark.django_db
@pytest.mark.parametrize("payload", [
    {"restaurant_id": "nope", "payment_mode": "CARD", "items": []},
    {"restaurant_id": str(uuid.uuid4()), "payment_mode": "BITCOIN", "items": []},
    {"restaurant_id": str(uuid.uuid4()), "payment_mode": "CASH",
     "items": [{"dish_id": str(uuid.uuid4()), "quantity": 0}]},
])
def test_place_order_validation_error(client, payload):
    r = client.post(PLACE_URL, data=payload, content_type="application/json")
    assert r.status_code == 400


@pytest.mark.django_db
def test_order_detail(client):
    dish = uuid.uuid4()
    oid = client.post(PLACE_URL, data=_payload(dish), content_type="application/json").json()["id"]

    r = client.get(f"{BASE}{oid}/")
    assert r.status_code == 200
    body = r.json()
    assert body["id"] == oid
    assert body["status"] == "DELIVERING"
    assert body["amount_cents"] == 2000
    assert body["items"] == [{"dish_id": str(dish), "quantity": 2, "unit_price_cents": 1000}]
    assert [d["dish_id"] for d in body["dishes"]] == [str(dish)]
    assert "delivered_at" not in body


@pytest.mark.django_db
def test_order_detail_not_found(client):
    r = client.get(f"{BASE}{uuid.uuid4()}/")
    assert r.status_code == 404
    assert r.json()["detail"] == "NOT_FOUND"


@pytest.mark.django_db
def test_status_override(client):
    oid = client.post(PLACE_URL, data=_payload(uuid.uuid4()), content_type="application/json").json()["id"]
    r = client.patch(f"{BASE}{oid}/status/", data={"status": "CANCELED"}, content_type="application/json")
    assert r.status_code == 200
    assert r.json() == {"id": oid, "status": "CANCELED"}
    assert OrderModel.objects.get(id=oid).status == "CANCELED"


@pytest.mark.django_db
def test_status_override_rejects_unknown_status(client):
    oid = client.post(PLACE_URL, data=_payload(uuid.uuid4()), content_type="application/json").json()["id"]
    r = client.patch(f"{BASE}{oid}/status/", data={"status": "LOST"}, content_type="application/json")
    assert r.status_code == 400


@pytest.mark.django_db
def test_resume_delivery(client, monkeypatch):
    class Reject(DeliveryStub):
        def initiate(self, request): return False

    _use_service(monkeypatch, delivery=Reject())
    oid = client.post(PLACE_URL, data=_payload(uuid.uuid4()), content_type="application/json").json()["id"]
    assert OrderModel.objects.get(id=oid).status == OrderStatus.PAYED.value

    _use_service(monkeypatch)
    r = client.post(f"{BASE}{oid}/resume-delivery/")
    assert r.status_code == 200
    assert r.json()["status"] == "DELIVERING"

    again = client.post(f"{BASE}{oid}/resume-delivery/")
    assert again.status_code == 409
    assert again.json()["detail"] == "INVALID_STATE"


@pytest.mark.django_db
def test_list_orders_is_paginated(client):
    ids = [
        client.post(PLACE_URL, data=_payload(uuid.uuid4()), content_type="application/json").json()["id"]
        for _ in range(3)
    ]
    r = client.get(f"{BASE}?page_size=2")
    assert r.status_code == 200
    body = r.json()
    assert body["count"] == 3
    assert len(body["results"]) == 2
    assert {row["id"] for row in body["results"]} <= set(ids)
    assert all(row["status"] == "DELIVERING" for row in body["results"])


@pytest.mark.django_db
def test_ping_and_health(client):
    assert client.get(f"{BASE}ping/").json() == {"ok": True}
    r = client.get("/health/")
    assert r.status_code == 200
    assert r.json()["components"]["delivery_channel"]["ok"] is True


@pytest.mark.django_db
def test_oversized_body_is_rejected(client, settings):
    settings.API_MAX_BYTES = 10
    r = client.post(PLACE_URL, data=_payload(uuid.uuid4()), content_type="application/json")
    assert r.status_code == 413


@pytest.mark.django_db
@pytest.mark.parametrize("query", ["page=abc", "page_size=0", "page=0", "page_size=1000"])
def test_list_orders_rejects_bad_paging(client, query):
    r = client.get(f"{BASE}?{query}")
    assert r.status_code == 400
