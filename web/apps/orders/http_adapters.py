"""HTTP adapter clients with retries, circuit breakers, and context headers.

This module implements concrete HTTP clients for the domain ports using
``httpx``. It adds:

- Request correlation: propagates ``X-Request-ID`` from a ContextVar set by
    the gateway middleware.
- Circuit breaker per downstream service (catalog, payments, delivery) to
    avoid hammering unhealthy dependencies, with HALF_OPEN probing after a
    timeout.
- Simple retry policy with exponential backoff for transport errors and 5xx.
- Business status mapping: a 404 dish or a 402 decline is an answer, not a
    failure, and does not count against the breaker.
"""

import logging
import threading
import time
import uuid
from typing import Iterable, Optional

import httpx
from django.conf import settings

from gateway.middleware import REQUEST_ID_CTX

from .domain import CatalogPort, DeliveryPort, DeliveryRequest, Dish, PaymentMode, PaymentsPort

logger = logging.getLogger(__name__)


# ---------------- Circuit Breaker ---------------- #

class CircuitBreaker:
    """Minimal circuit breaker with CLOSED/OPEN/HALF_OPEN states.

    Transitions:
    - CLOSED → OPEN when failures reach ``fail_threshold``.
    - OPEN → HALF_OPEN after ``reset_timeout`` seconds.
    - HALF_OPEN → CLOSED on a successful probe; stays HALF_OPEN while a
      single probe is in flight; transitions back to OPEN on failure.

    This implementation is thread-safe via an internal lock.
    """

    def __init__(self, name: str, fail_threshold: int, reset_timeout: float):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._lock = threading.RLock()
        self._failures = 0
        self._state = "CLOSED"  # CLOSED | OPEN | HALF_OPEN
        self._opened_at = 0.0
        self._half_open_probe_in_flight = False

    @property
    def state(self) -> str:
        """Current breaker state with time-based transition handling."""
        with self._lock:
            if self._state == "OPEN" and (time.monotonic() - self._opened_at) >= self.reset_timeout:
                self._state = "HALF_OPEN"
                self._half_open_probe_in_flight = False
            return self._state

    def before_call(self) -> str:
        """Check and update state before a protected call.

        Raises:
            RuntimeError: If the circuit is OPEN or a HALF_OPEN probe is busy.
        """
        with self._lock:
            st = self.state
            if st == "OPEN":
                raise RuntimeError(f"CIRCUIT_OPEN:{self.name}")
            if st == "HALF_OPEN":
                # allow only one concurrent probe
                if self._half_open_probe_in_flight:
                    raise RuntimeError(f"CIRCUIT_HALF_OPEN_BUSY:{self.name}")
                self._half_open_probe_in_flight = True
            return st

    def on_success(self):
        """Record a successful call and close/reset the breaker."""
        with self._lock:
            self._failures = 0
            self._state = "CLOSED"
            self._half_open_probe_in_flight = False

    def on_failure(self):
        """Record a failed call and open the breaker if threshold exceeded."""
        with self._lock:
            self._failures += 1
            if self._state == "HALF_OPEN" or (
                self._failures >= self.fail_threshold and self._state != "OPEN"
            ):
                if self._state != "OPEN":
                    logger.warning("circuit opened", extra={"service": self.name})
                self._state = "OPEN"
                self._opened_at = time.monotonic()
                self._half_open_probe_in_flight = False

    def on_finish(self):
        """Release any HALF_OPEN probe flag after a call finishes."""
        with self._lock:
            if self._state == "HALF_OPEN":
                self._half_open_probe_in_flight = False


def _breaker(name: str) -> CircuitBreaker:
    return CircuitBreaker(
        name,
        getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
        getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
    )


# Per-service instances
_catalog_cb = _breaker("catalog")
_payments_cb = _breaker("payments")
_delivery_cb = _breaker("delivery")


# ---------------- Helpers ---------------- #

def _request_headers(extra: Optional[dict] = None) -> dict:
    """Build base headers including X-Request-ID and any extras."""
    headers: dict[str, str] = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update(extra)
    return headers


def _retry_policy():
    """Return retry configuration as (max_retries, backoff_base_seconds)."""
    return (
        getattr(settings, "HTTP_RETRY_MAX", 3),
        getattr(settings, "HTTP_RETRY_BACKOFF_BASE", 0.15),
    )


def _should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
    """Retry only on transport exceptions or HTTP 5xx."""
    if exc is not None:
        return True
    if resp is not None and 500 <= resp.status_code < 600:
        return True
    return False


def _send(
    breaker: CircuitBreaker,
    method: str,
    url: str,
    timeout: float,
    json: Optional[dict] = None,
    business_statuses: Iterable[int] = (),
    extra_headers: Optional[dict] = None,
) -> httpx.Response:
    """Send a request through the breaker with retries and backoff.

    2xx responses and ``business_statuses`` are returned to the caller and
    count as breaker successes. Transport errors and 5xx are retried up to
    ``HTTP_RETRY_MAX`` attempts; any other status raises immediately.

    Raises:
        RuntimeError: If the circuit is open.
        httpx.RequestError: For network/transport errors after retries.
        httpx.HTTPStatusError: For non-retriable or exhausted non-2xx responses.
    """
    max_retries, backoff = _retry_policy()
    max_retries = max(1, max_retries)
    business = set(business_statuses)
    tries = 0

    # CIRCUIT: precheck
    state = breaker.before_call()
    headers = _request_headers({"X-Circuit-State": state, "X-Retry-Count": "0", **(extra_headers or {})})

    try:
        with httpx.Client(timeout=timeout) as client:
            while True:
                resp = None
                exc = None
                try:
                    resp = client.request(method, url, json=json, headers=headers)
                    if 200 <= resp.status_code < 300 or resp.status_code in business:
                        breaker.on_success()
                        return resp
                    if not _should_retry(resp, None):
                        # 4xx outside the business set: caller bug, not an outage
                        breaker.on_success()
                        resp.raise_for_status()
                except httpx.RequestError as e:
                    exc = e

                tries += 1
                headers["X-Retry-Count"] = str(tries)

                if tries >= max_retries:
                    breaker.on_failure()
                    logger.error(
                        "downstream call failed",
                        extra={"service": breaker.name, "url": url, "tries": tries},
                    )
                    if exc:
                        raise exc
                    resp.raise_for_status()

                sleep_s = backoff * (2 ** (tries - 1))  # exponential backoff
                cap = getattr(settings, "HTTP_RETRY_MAX_SLEEP", 0.5)
                time.sleep(min(sleep_s, cap))
    finally:
        breaker.on_finish()


def _detail(resp: httpx.Response) -> Optional[str]:
    try:
        body = resp.json()
    except ValueError:
        return None
    return body.get("detail") if isinstance(body, dict) else None


def _as_uuid(value) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(str(value)) if value else None
    except ValueError:
        return None


# ---------------- Catalog Adapter ---------------- #

class HttpCatalogClient(CatalogPort):
    """HTTP client for the restaurant catalog."""

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = base_url or settings.CATALOG_BASE_URL
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS

    def resolve_dish(self, dish_id: uuid.UUID) -> Optional[Dish]:
        """Fetch a dish. 200 → Dish, 404 → None."""
        resp = _send(
            _catalog_cb, "GET", f"{self.base_url}/dishes/{dish_id}",
            self.timeout, business_statuses=(404,),
        )
        if resp.status_code == 404:
            return None
        data = resp.json()
        return Dish(
            dish_id=_as_uuid(data.get("dish_id")) or dish_id,
            price_cents=int(data["price_cents"]),
            available=bool(data.get("available", False)),
            name=data.get("name", ""),
            description=data.get("description"),
        )


# ---------------- Payments Adapter ---------------- #

class HttpPaymentsClient(PaymentsPort):
    """HTTP client for the payments service."""

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = base_url or settings.PAYMENTS_BASE_URL
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS

    def charge(
        self, order_id: uuid.UUID, amount_cents: int, mode: PaymentMode
    ) -> tuple[bool, Optional[uuid.UUID]]:
        """Attempt to charge a payment.

        Business mappings:
        - 200 → ``(paid, payment_id)`` from the body
        - 402 or 409 → ``(False, None)``, not counted as circuit failures

        Every attempt carries the order id as ``Idempotency-Key`` so a retry
        after a lost response cannot charge twice.

        Raises:
            httpx.RequestError: For network/transport errors after retries.
            httpx.HTTPStatusError: For non-retriable non-2xx responses.
        """
        payload = {
            "order_id": str(order_id),
            "amount_cents": amount_cents,
            "payment_mode": PaymentMode(mode).value,
        }
        resp = _send(
            _payments_cb, "POST", f"{self.base_url}/charge",
            self.timeout, json=payload, business_statuses=(402, 409),
            extra_headers={"Idempotency-Key": str(order_id)},
        )
        if resp.status_code in (402, 409):
            return False, None
        data = resp.json()
        return bool(data.get("paid", True)), _as_uuid(data.get("payment_id"))

    def get_payment_details(self, order_id: uuid.UUID) -> Optional[dict]:
        resp = _send(
            _payments_cb, "GET", f"{self.base_url}/orders/{order_id}",
            self.timeout, business_statuses=(404,),
        )
        return None if resp.status_code == 404 else resp.json()


# ---------------- Delivery Adapter ---------------- #

class HttpDeliveryClient(DeliveryPort):
    """HTTP client for the delivery service.

    Transport errors and 5xx are retried with backoff before the saga gives
    up and leaves the order at PAYED.
    """

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = base_url or settings.DELIVERY_BASE_URL
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS

    def initiate(self, request: DeliveryRequest) -> bool:
        """Request a delivery. 2xx → True, 422 or any other 409 → False.

        A 409 ``DELIVERY_IN_PROGRESS`` means an earlier attempt whose response
        was lost already started the delivery, so it counts as accepted.
        """
        payload = {
            "order_id": str(request.order_id),
            "restaurant_id": str(request.restaurant_id),
            "user_id": str(request.user_id) if request.user_id else None,
        }
        resp = _send(
            _delivery_cb, "POST", f"{self.base_url}/initiate",
            self.timeout, json=payload, business_statuses=(409, 422),
        )
        if resp.status_code == 409:
            return _detail(resp) == "DELIVERY_IN_PROGRESS"
        return 200 <= resp.status_code < 300

    def get_delivery_details(self, order_id: uuid.UUID) -> Optional[dict]:
        resp = _send(
            _delivery_cb, "GET", f"{self.base_url}/order/{order_id}",
            self.timeout, business_statuses=(404,),
        )
        return None if resp.status_code == 404 else resp.json()
