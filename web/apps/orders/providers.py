"""Service provider helpers for wiring the saga with its ports.

``get_order_service`` returns an ``OrderService`` backed by the HTTP
adapter clients when ``settings.USE_HTTP_ADAPTERS`` is truthy, and by the
in-process stubs otherwise. The order store is always the Django
repository. ``get_event_channel`` and ``get_delivery_listener`` build the
completion path from settings.
"""

import socket

from django.conf import settings

from .adapters import CatalogStub, DeliveryStub, PaymentsStub
from .domain import OrderService
from .http_adapters import HttpCatalogClient, HttpDeliveryClient, HttpPaymentsClient
from .listener import DeliveryCompletionListener
from .messaging import InMemoryChannel, MessageChannel, RedisStreamChannel
from .repository import OrderRepository

_memory_channel = None


def get_order_service() -> OrderService:
    """Return a configured OrderService instance."""
    if getattr(settings, "USE_HTTP_ADAPTERS", True):
        return OrderService(
            catalog=HttpCatalogClient(),
            payments=HttpPaymentsClient(),
            delivery=HttpDeliveryClient(),
            orders=OrderRepository(),
        )

    # Stubs (tests or local development without downstream services)
    return OrderService(
        catalog=CatalogStub(),
        payments=PaymentsStub(),
        delivery=DeliveryStub(),
        orders=OrderRepository(),
    )


def get_event_channel() -> MessageChannel:
    """Return the delivery event channel selected by ``DELIVERY_EVENTS_BACKEND``.

    The in-memory channel is a process-wide singleton so publishers and the
    listener running in the same process share it.
    """
    global _memory_channel
    backend = getattr(settings, "DELIVERY_EVENTS_BACKEND", "memory")
    if backend == "redis":
        return RedisStreamChannel.from_url(
            settings.REDIS_URL,
            max_stream_length=getattr(settings, "DELIVERY_EVENTS_MAXLEN", 10000),
        )
    if _memory_channel is None:
        _memory_channel = InMemoryChannel()
    return _memory_channel


def get_delivery_listener(consumer: str | None = None) -> DeliveryCompletionListener:
    """Build the listener; the consumer name defaults to the host name so a
    restarted process picks up its own unacknowledged entries."""
    return DeliveryCompletionListener(
        orders=OrderRepository(),
        topic=getattr(settings, "DELIVERY_EVENTS_TOPIC", "delivery-topic"),
        group=getattr(settings, "DELIVERY_EVENTS_GROUP", "order-group"),
        consumer=consumer or getattr(settings, "DELIVERY_EVENTS_CONSUMER", None) or socket.gethostname(),
    )
