from decimal import Decimal
from unittest import mock

from django.db import OperationalError
from django.test import override_settings
from django.urls import reverse
from rest_framework import status
from rest_framework.test import APITestCase

from core.cache import cache_layer
from locks.backends import DatabaseLeaseBackend
from locks.service import LockService
from products.models import Product
from users.models import Customer


class CartApiTests(APITestCase):
    def setUp(self):
        cache_layer.backend.clear()
        self.user = Customer.objects.create(name="John Doe", email="john@example.com")
        self.laptop = Product.objects.create(name="Laptop", price=Decimal("1299.99"), stock=5)

    def _add(self, quantity, product_id=None):
        return self.client.post(
            reverse("cart-items", args=[self.user.pk]),
            {"product_id": product_id or self.laptop.pk, "quantity": quantity},
            format="json",
        )

    def test_get_cart_creates_it(self):
        response = self.client.get(reverse("cart-user", args=[self.user.pk]))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["status"], "OPEN")
        self.assertEqual(response.data["user_id"], self.user.pk)

    def test_get_cart_for_unknown_user(self):
        response = self.client.get(reverse("cart-user", args=[99999]))

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.data, {"error": "User with ID 99999 not found", "retryable": False})

    def test_add_item(self):
        response = self._add(2)

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data["items"][0]["quantity"], 2)

    def test_add_rejects_invalid_payload(self):
        response = self._add(0)

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn("quantity", response.data)

    def test_add_beyond_stock_is_conflict(self):
        response = self._add(6)

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertFalse(response.data["retryable"])

    def test_busy_cart_is_locked_and_retryable(self):
        LockService(DatabaseLeaseBackend()).acquire(f"cart:{self.user.pk}")

        response = self._add(1)

        self.assertEqual(response.status_code, status.HTTP_423_LOCKED)
        self.assertTrue(response.data["retryable"])
        self.assertEqual(response["Retry-After"], "1")

    def test_update_and_remove_item(self):
        self._add(1)
        url = reverse("cart-item-detail", args=[self.user.pk, self.laptop.pk])

        updated = self.client.put(url, {"quantity": 4}, format="json")
        self.assertEqual(updated.status_code, status.HTTP_200_OK)
        self.assertEqual(updated.data["items"][0]["quantity"], 4)

        removed = self.client.delete(url)
        self.assertEqual(removed.status_code, status.HTTP_200_OK)
        self.assertEqual(removed.data["items"], [])

    def test_clear_cart(self):
        self._add(2)

        response = self.client.delete(reverse("cart-user", args=[self.user.pk]))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["items"], [])

    def test_checkout_and_history(self):
        self._add(5)

        response = self.client.post(reverse("cart-checkout", args=[self.user.pk]))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["status"], "SETTLED")
        self.laptop.refresh_from_db()
        self.assertEqual(self.laptop.stock, 0)

        again = self.client.post(reverse("cart-checkout", args=[self.user.pk]))
        self.assertEqual(again.status_code, status.HTTP_404_NOT_FOUND)

        history = self.client.get(reverse("cart-orders", args=[self.user.pk]))
        self.assertEqual(history.status_code, status.HTTP_200_OK)
        self.assertEqual([order["id"] for order in history.data], [response.data["id"]])

    def test_store_outage_is_retryable_service_unavailable(self):
        coordinator = mock.Mock()
        coordinator.checkout.side_effect = OperationalError("database is locked")

        with mock.patch("cart.views.get_cart_coordinator", return_value=coordinator):
            response = self.client.post(reverse("cart-checkout", args=[self.user.pk]))

        self.assertEqual(response.status_code, status.HTTP_503_SERVICE_UNAVAILABLE)
        self.assertTrue(response.data["retryable"])
        self.assertEqual(response["Retry-After"], "1")

    def test_checkout_empty_cart(self):
        self.client.get(reverse("cart-user", args=[self.user.pk]))

        response = self.client.post(reverse("cart-checkout", args=[self.user.pk]))

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["error"], "Cannot checkout an empty cart")


class ProductApiTests(APITestCase):
    def setUp(self):
        cache_layer.backend.clear()
        self.laptop = Product.objects.create(name="Laptop", price=Decimal("1299.99"), stock=5)

    def test_product_detail(self):
        response = self.client.get(reverse("product-detail", args=[self.laptop.pk]))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["name"], "Laptop")
        self.assertEqual(response.data["stock"], 5)

    def test_missing_product(self):
        response = self.client.get(reverse("product-detail", args=[4040]))

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_product_list(self):
        response = self.client.get(reverse("product-list"), {"limit": 5, "sort_by": "price", "order": "asc"})

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["total"], 1)
        self.assertEqual(response.data["limit"], 5)


class CoordinationStatusApiTests(APITestCase):
    # Test runners force DEBUG=False regardless of the settings module.
    @override_settings(DEBUG=True)
    def test_open_in_debug(self):
        response = self.client.get(reverse("system-coordination"))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["lock_backend"], "database")
        self.assertEqual(response.data["stock_update_strategy"], "transaction")
        self.assertFalse(response.data["redis_configured"])

    @override_settings(DEBUG=False, SYSTEM_STATUS_TOKEN="s3cret")
    def test_requires_token_outside_debug(self):
        url = reverse("system-coordination")

        self.assertEqual(self.client.get(url).status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(self.client.get(url, HTTP_X_SYSTEM_TOKEN="wrong").status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(self.client.get(url, HTTP_X_SYSTEM_TOKEN="s3cret").status_code, status.HTTP_200_OK)
