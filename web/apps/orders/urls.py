from django.urls import path
from .views import OrdersPingView
from .views import (
    OrdersCollectionView,
    OrderStatusView,
    PlaceOrderView,
    ResumeDeliveryView,
    RetrieveOrderView,
)
app_name = "orders"

urlpatterns = [
    path("ping/", OrdersPingView.as_view(), name="ping"),
    path("", OrdersCollectionView.as_view(), name="orders-collection"),
    path("place-order/", PlaceOrderView.as_view(), name="place-order"),
    path("<uuid:oid>/", RetrieveOrderView.as_view(), name="orders-detail"),
    path("<uuid:oid>/status/", OrderStatusView.as_view(), name="orders-status"),
    path("<uuid:oid>/resume-delivery/", ResumeDeliveryView.as_view(), name="orders-resume-delivery"),
]
