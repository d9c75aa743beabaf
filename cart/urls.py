from django.urls import path

from .views import (
    CartItemDetailAPIView,
    CartItemsAPIView,
    CheckoutAPIView,
    OrderHistoryAPIView,
    UserCartAPIView,
)

urlpatterns = [
    path("user/<int:user_id>/", UserCartAPIView.as_view(), name="cart-user"),
    path("user/<int:user_id>/items/", CartItemsAPIView.as_view(), name="cart-items"),
    path(
        "user/<int:user_id>/items/<int:product_id>/",
        CartItemDetailAPIView.as_view(),
        name="cart-item-detail",
    ),
    path("user/<int:user_id>/checkout/", CheckoutAPIView.as_view(), name="cart-checkout"),
    path("user/<int:user_id>/orders/", OrderHistoryAPIView.as_view(), name="cart-orders"),
]
