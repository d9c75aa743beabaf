import logging

from django.db import DatabaseError
from rest_framework import status
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.views import APIView

from core.exceptions import CartServiceError
from core.throttles import CartAddRateThrottle, CheckoutPlaceRateThrottle, OrderHistoryRateThrottle

from .serializers import AddToCartSerializer, UpdateCartItemSerializer
from .services import get_cart_coordinator

logger = logging.getLogger(__name__)


class CartAPIView(APIView):
    authentication_classes = []
    permission_classes = [AllowAny]

    def respond(self, operation, *args, success_status=status.HTTP_200_OK):
        try:
            return Response(operation(*args), status=success_status)
        except CartServiceError as exc:
            response = Response(exc.as_payload(), status=exc.status_code)
            if exc.retryable:
                response["Retry-After"] = "1"
            return response
        except ValueError as exc:
            return Response({"error": str(exc), "retryable": False}, status=400)
        except DatabaseError:
            logger.exception("Store error during %s", getattr(operation, "__name__", operation))
            response = Response(
                {"error": "Service temporarily unavailable, try again shortly", "retryable": True},
                status=status.HTTP_503_SERVICE_UNAVAILABLE,
            )
            response["Retry-After"] = "1"
            return response


class UserCartAPIView(CartAPIView):
    def get(self, request, user_id):
        return self.respond(get_cart_coordinator().get_or_create_cart, user_id)

    def delete(self, request, user_id):
        return self.respond(get_cart_coordinator().clear_cart, user_id)


class CartItemsAPIView(CartAPIView):
    throttle_classes = [CartAddRateThrottle]
    throttle_scope = "cart_add"

    def post(self, request, user_id):
        serializer = AddToCartSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        return self.respond(
            get_cart_coordinator().add_to_cart,
            user_id,
            serializer.validated_data["product_id"],
            serializer.validated_data["quantity"],
            success_status=status.HTTP_201_CREATED,
        )


class CartItemDetailAPIView(CartAPIView):
    def put(self, request, user_id, product_id):
        serializer = UpdateCartItemSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        return self.respond(
            get_cart_coordinator().update_cart_item,
            user_id,
            product_id,
            serializer.validated_data["quantity"],
        )

    def delete(self, request, user_id, product_id):
        return self.respond(get_cart_coordinator().remove_from_cart, user_id, product_id)


class CheckoutAPIView(CartAPIView):
    throttle_classes = [CheckoutPlaceRateThrottle]
    throttle_scope = "checkout_place"

    def post(self, request, user_id):
        return self.respond(get_cart_coordinator().checkout, user_id)


class OrderHistoryAPIView(CartAPIView):
    throttle_classes = [OrderHistoryRateThrottle]
    throttle_scope = "order_history"

    def get(self, request, user_id):
        return self.respond(get_cart_coordinator().order_history, user_id)
