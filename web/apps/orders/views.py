"""HTTP views for the orders app.

This module contains the DRF API views of the order service. Views are
kept intentionally small: they validate requests (via Pydantic), delegate
to the domain service, and map domain errors to HTTP responses with a
``{"detail": CODE}`` body.

The views obtain a configured ``OrderService`` from
``providers.get_order_service()``, which returns HTTP adapter-backed ports
or in-process stubs depending on runtime settings. Tests swap the
implementation by monkeypatching the provider.
"""
import logging

from django.core.paginator import Paginator
from pydantic import ValidationError
from rest_framework import status
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from . import providers
from .domain import (
    CatalogUnavailableError,
    DishNotFoundError,
    DishUnavailableError,
    EmptyOrderError,
    OrderError,
    OrderNotFoundError,
    OrderStateError,
)
from .models import OrderModel
from .schemas import ListQueryDTO, OrderDetailDTO, OrderReadDTO, PlaceOrderDTO, UpdateStatusDTO

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    EmptyOrderError: status.HTTP_400_BAD_REQUEST,
    DishUnavailableError: status.HTTP_400_BAD_REQUEST,
    DishNotFoundError: status.HTTP_404_NOT_FOUND,
    OrderNotFoundError: status.HTTP_404_NOT_FOUND,
    OrderStateError: status.HTTP_409_CONFLICT,
    CatalogUnavailableError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def error_response(exc: OrderError) -> Response:
    code = ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST)
    return Response({"detail": exc.code, "message": str(exc)}, status=code)


class OrdersPingView(APIView):
    """Simple health-check endpoint for the orders module."""

    def get(self, request):
        return Response({"ok": True})


class OrdersCollectionView(APIView):
    """Paginated list of stored orders, newest first."""

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_list"

    def get(self, request):
        try:
            query = ListQueryDTO.model_validate(request.GET.dict())
        except ValidationError as e:
            return Response({"detail": str(e)}, status=status.HTTP_400_BAD_REQUEST)
        page_size = query.page_size

        qs = OrderModel.objects.order_by("-created_at")
        p = Paginator(qs, page_size)
        page_obj = p.get_page(query.page)

        results = [
            OrderReadDTO(
                id=o.id,
                status=o.status,
                amount_cents=o.total_cents,
                created_at=o.created_at,
                delivered_at=o.delivered_at,
            ).model_dump(mode="json", exclude_none=True)
            for o in page_obj.object_list
        ]

        return Response(
            {
                "count": p.count,
                "page": page_obj.number,
                "page_size": page_size,
                "results": results,
            },
            status=200,
        )


class PlaceOrderView(APIView):
    """Place an order by running the order saga.

    A declined payment still yields 201: the order exists and its status
    is CANCELED. The response carries the status observed right after the
    saga returned.
    """

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_create"

    def post(self, request):
        """Create a new order.

        Returns:
            Response: One of the following responses.
            - 201 with {id, status} when the order was stored.
            - 400 for DTO validation errors, EMPTY_ORDER or DISH_UNAVAILABLE.
            - 404 with DISH_NOT_FOUND when the catalog does not know a dish.
            - 503 with UPSTREAM_UNAVAILABLE when the catalog cannot be reached.
        """
        try:
            dto = PlaceOrderDTO.model_validate(request.data)
        except ValidationError as e:
            return Response({"detail": str(e)}, status=status.HTTP_400_BAD_REQUEST)

        service = providers.get_order_service()
        try:
            order_id = service.place_order(
                restaurant_id=dto.restaurant_id,
                user_id=dto.user_id,
                items=dto.requested_items(),
                payment_mode=dto.payment_mode,
            )
        except OrderError as e:
            return error_response(e)

        order = service.orders.get(order_id)
        body = {"id": str(order_id), "status": order.status.value if order else None}
        return Response(body, status=status.HTTP_201_CREATED)


class RetrieveOrderView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_detail"

    def get(self, request, oid):
        try:
            view = providers.get_order_service().get_order_details(oid)
        except OrderError as e:
            return error_response(e)
        dto = OrderDetailDTO.from_view(view)
        return Response(dto.model_dump(mode="json", exclude_none=True), status=200)


class OrderStatusView(APIView):
    """Administrative status override (no state-machine guard)."""

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_admin"

    def patch(self, request, oid):
        try:
            dto = UpdateStatusDTO.model_validate(request.data)
        except ValidationError as e:
            return Response({"detail": str(e)}, status=status.HTTP_400_BAD_REQUEST)
        try:
            order = providers.get_order_service().update_order_status(oid, dto.status)
        except OrderError as e:
            return error_response(e)
        return Response({"id": str(order.id), "status": order.status.value}, status=200)


class ResumeDeliveryView(APIView):
    """Retry delivery initiation for an order stuck at PAYED."""

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_admin"

    def post(self, request, oid):
        try:
            new_status = providers.get_order_service().resume_delivery(oid)
        except OrderError as e:
            return error_response(e)
        return Response({"id": str(oid), "status": new_status.value}, status=200)
