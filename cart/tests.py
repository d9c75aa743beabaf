from decimal import Decimal
from unittest import mock

from django.test import TestCase

from core.cache import cache_layer
from core.exceptions import InsufficientStock, LockUnavailable, NotFound
from locks.backends import DatabaseLeaseBackend
from locks.models import LockLease
from locks.service import LockService
from products.models import Product
from products.stock import StockLedger
from users.models import Customer

from .cache_store import cart_cache_key, get_cached_cart, set_cached_cart
from .models import Cart
from .serializers import serialize_cart
from .services import CartCoordinator


def _coordinator():
    locks = LockService(DatabaseLeaseBackend(), default_ttl_ms=5000)
    return CartCoordinator(lock_service=locks, stock_ledger=StockLedger(lock_service=locks))


class CartMutationTests(TestCase):
    def setUp(self):
        cache_layer.backend.clear()
        self.carts = _coordinator()
        self.user = Customer.objects.create(name="John Doe", email="john@example.com")
        self.laptop = Product.objects.create(name="Laptop", price=Decimal("1299.99"), stock=5)
        self.phone = Product.objects.create(name="Smartphone", price=Decimal("899.99"), stock=10)

    def test_first_access_creates_one_open_cart(self):
        first = self.carts.get_or_create_cart(self.user.pk)
        cache_layer.backend.clear()
        second = self.carts.get_or_create_cart(self.user.pk)

        self.assertEqual(first["id"], second["id"])
        self.assertEqual(first["status"], "OPEN")
        self.assertEqual(first["items"], [])
        self.assertEqual(Cart.objects.filter(customer=self.user).count(), 1)

    def test_unknown_user_has_no_cart(self):
        with self.assertRaises(NotFound) as ctx:
            self.carts.get_or_create_cart(987654)

        self.assertEqual(str(ctx.exception), "User with ID 987654 not found")
        self.assertFalse(Cart.objects.exists())

    def test_add_creates_cart_lazily_and_snapshots_product(self):
        cart = self.carts.add_to_cart(self.user.pk, self.laptop.pk, 2)

        self.assertEqual(len(cart["items"]), 1)
        line = cart["items"][0]
        self.assertEqual(line["product_id"], self.laptop.pk)
        self.assertEqual(line["name"], "Laptop")
        self.assertEqual(line["quantity"], 2)
        self.assertEqual(Decimal(cart["total_amount"]), Decimal("2599.98"))
        self.assertEqual(cart["total_items"], 2)

    def test_adding_same_product_merges_lines(self):
        self.carts.add_to_cart(self.user.pk, self.laptop.pk, 2)
        self.carts.add_to_cart(self.user.pk, self.phone.pk, 1)
        cart = self.carts.add_to_cart(self.user.pk, self.laptop.pk, 1)

        self.assertEqual([line["product_id"] for line in cart["items"]], [self.laptop.pk, self.phone.pk])
        self.assertEqual(cart["items"][0]["quantity"], 3)

    def test_add_checks_line_total_against_stock(self):
        self.carts.add_to_cart(self.user.pk, self.laptop.pk, 3)

        with self.assertRaises(InsufficientStock) as ctx:
            self.carts.add_to_cart(self.user.pk, self.laptop.pk, 3)

        self.assertEqual(str(ctx.exception), "Cannot add 3 more units. Only 5 units available in total.")
        cart = Cart.objects.get(customer=self.user, settled=False)
        self.assertEqual(cart.items.get().quantity, 3)

    def test_add_more_than_stock_to_new_line(self):
        with self.assertRaises(InsufficientStock) as ctx:
            self.carts.add_to_cart(self.user.pk, self.laptop.pk, 6)

        self.assertEqual(str(ctx.exception), "Not enough stock available. Only 5 units left.")

    def test_add_does_not_reserve_stock(self):
        self.carts.add_to_cart(self.user.pk, self.laptop.pk, 4)

        self.laptop.refresh_from_db()
        self.assertEqual(self.laptop.stock, 5)

    def test_add_unknown_product(self):
        with self.assertRaises(NotFound):
            self.carts.add_to_cart(self.user.pk, 55555, 1)

    def test_add_rejects_non_positive_quantity(self):
        for bad in (0, -2):
            with self.assertRaises(ValueError):
                self.carts.add_to_cart(self.user.pk, self.laptop.pk, bad)
        self.assertFalse(LockLease.objects.exists())

    def test_update_sets_absolute_quantity(self):
        self.carts.add_to_cart(self.user.pk, self.laptop.pk, 1)

        cart = self.carts.update_cart_item(self.user.pk, self.laptop.pk, 5)

        self.assertEqual(cart["items"][0]["quantity"], 5)
        self.assertEqual(Decimal(cart["total_amount"]), Decimal("6499.95"))

    def test_update_beyond_stock(self):
        self.carts.add_to_cart(self.user.pk, self.laptop.pk, 1)

        with self.assertRaises(InsufficientStock):
            self.carts.update_cart_item(self.user.pk, self.laptop.pk, 6)

    def test_update_missing_line_or_cart(self):
        with self.assertRaises(NotFound):
            self.carts.update_cart_item(self.user.pk, self.laptop.pk, 1)

        self.carts.add_to_cart(self.user.pk, self.phone.pk, 1)
        with self.assertRaises(NotFound) as ctx:
            self.carts.update_cart_item(self.user.pk, self.laptop.pk, 1)
        self.assertEqual(str(ctx.exception), f"Product {self.laptop.pk} not found in cart")

    def test_remove_line_recalculates_total(self):
        self.carts.add_to_cart(self.user.pk, self.laptop.pk, 1)
        self.carts.add_to_cart(self.user.pk, self.phone.pk, 2)

        cart = self.carts.remove_from_cart(self.user.pk, self.laptop.pk)

        self.assertEqual([line["product_id"] for line in cart["items"]], [self.phone.pk])
        self.assertEqual(Decimal(cart["total_amount"]), Decimal("1799.98"))

    def test_remove_missing_line(self):
        self.carts.add_to_cart(self.user.pk, self.phone.pk, 1)

        with self.assertRaises(NotFound):
            self.carts.remove_from_cart(self.user.pk, self.laptop.pk)

    def test_clear_empties_cart_and_keeps_it_open(self):
        self.carts.add_to_cart(self.user.pk, self.laptop.pk, 1)
        self.carts.add_to_cart(self.user.pk, self.phone.pk, 2)

        cart = self.carts.clear_cart(self.user.pk)

        self.assertEqual(cart["items"], [])
        self.assertEqual(cart["status"], "OPEN")
        self.assertEqual(Decimal(cart["total_amount"]), Decimal("0"))

    def test_clear_without_open_cart(self):
        with self.assertRaises(NotFound) as ctx:
            self.carts.clear_cart(self.user.pk)

        self.assertEqual(str(ctx.exception), f"Active cart not found for user {self.user.pk}")

    def test_mutations_release_the_cart_lease(self):
        self.carts.add_to_cart(self.user.pk, self.laptop.pk, 1)
        with self.assertRaises(InsufficientStock):
            self.carts.add_to_cart(self.user.pk, self.laptop.pk, 50)
        self.carts.remove_from_cart(self.user.pk, self.laptop.pk)

        self.assertFalse(LockLease.objects.exists())


class CartContentionTests(TestCase):
    def setUp(self):
        cache_layer.backend.clear()
        self.carts = _coordinator()
        self.other_request = LockService(DatabaseLeaseBackend())
        self.user = Customer.objects.create(name="Jane Smith", email="jane@example.com")
        self.laptop = Product.objects.create(name="Laptop", price=Decimal("1299.99"), stock=5)

    def test_busy_cart_lease_rejects_edit_without_changes(self):
        token = self.other_request.acquire(f"cart:{self.user.pk}")

        with self.assertRaises(LockUnavailable) as ctx:
            self.carts.add_to_cart(self.user.pk, self.laptop.pk, 1)

        self.assertTrue(ctx.exception.retryable)
        self.assertFalse(Cart.objects.exists())
        self.assertEqual(LockLease.objects.get().token, token)

    def test_edit_succeeds_once_lease_is_released(self):
        token = self.other_request.acquire(f"cart:{self.user.pk}")
        self.other_request.release(f"cart:{self.user.pk}", token)

        cart = self.carts.add_to_cart(self.user.pk, self.laptop.pk, 1)

        self.assertEqual(cart["items"][0]["quantity"], 1)

    def test_other_users_are_not_blocked(self):
        self.other_request.acquire(f"cart:{self.user.pk}")
        bob = Customer.objects.create(name="Bob Johnson", email="bob@example.com")

        cart = self.carts.add_to_cart(bob.pk, self.laptop.pk, 1)

        self.assertEqual(cart["user_id"], bob.pk)

    def test_concurrent_checkout_is_rejected(self):
        self.carts.add_to_cart(self.user.pk, self.laptop.pk, 1)
        self.other_request.acquire(f"checkout:{self.user.pk}")

        with self.assertRaises(LockUnavailable):
            self.carts.checkout(self.user.pk)

        self.assertEqual(list(LockLease.objects.values_list("key", flat=True)), [f"checkout:{self.user.pk}"])


class CartCacheTests(TestCase):
    def setUp(self):
        cache_layer.backend.clear()
        self.carts = _coordinator()
        self.user = Customer.objects.create(name="John Doe", email="john@example.com")
        self.laptop = Product.objects.create(name="Laptop", price=Decimal("1299.99"), stock=5)

    def test_read_is_served_from_cache(self):
        self.carts.get_or_create_cart(self.user.pk)

        with self.assertNumQueries(0):
            cached = self.carts.get_or_create_cart(self.user.pk)

        self.assertEqual(cached["user_id"], self.user.pk)
        self.assertIsNotNone(get_cached_cart(cart_cache_key(self.user.pk)))

    def test_mutation_invalidates_cached_cart(self):
        self.carts.get_or_create_cart(self.user.pk)
        before = cart_cache_key(self.user.pk)

        self.carts.add_to_cart(self.user.pk, self.laptop.pk, 2)

        self.assertNotEqual(cart_cache_key(self.user.pk), before)
        self.assertIsNone(cache_layer.get(cart_cache_key(self.user.pk)))
        self.assertEqual(self.carts.get_or_create_cart(self.user.pk)["items"][0]["quantity"], 2)

    def test_read_racing_a_write_cannot_cache_stale_cart(self):
        raced = []

        def serialize_then_write(cart):
            payload = serialize_cart(cart)
            if not raced:
                raced.append(cart.pk)
                # A write commits and invalidates between the read and the cache fill.
                self.carts.add_to_cart(self.user.pk, self.laptop.pk, 2)
            return payload

        with mock.patch("cart.services.serialize_cart", side_effect=serialize_then_write):
            stale = self.carts.get_or_create_cart(self.user.pk)

        self.assertEqual(stale["items"], [])
        fresh = self.carts.get_or_create_cart(self.user.pk)
        self.assertEqual(fresh["items"][0]["quantity"], 2)

    def test_other_users_cache_survives_invalidation(self):
        bob = Customer.objects.create(name="Bob Johnson", email="bob@example.com")
        self.carts.get_or_create_cart(bob.pk)
        bob_key = cart_cache_key(bob.pk)

        self.carts.add_to_cart(self.user.pk, self.laptop.pk, 1)

        self.assertEqual(cart_cache_key(bob.pk), bob_key)
        self.assertIsNotNone(get_cached_cart(bob_key))

    def test_mutation_ignores_stale_cached_payload(self):
        self.carts.add_to_cart(self.user.pk, self.laptop.pk, 1)
        stale = self.carts.get_or_create_cart(self.user.pk)
        stale["items"] = [dict(stale["items"][0], quantity=4)]
        set_cached_cart(cart_cache_key(self.user.pk), stale)

        cart = self.carts.add_to_cart(self.user.pk, self.laptop.pk, 3)

        self.assertEqual(cart["items"][0]["quantity"], 4)

    def test_cache_failure_falls_back_to_database(self):
        self.carts.add_to_cart(self.user.pk, self.laptop.pk, 1)

        with self.settings(CACHES={"default": {"BACKEND": "django.core.cache.backends.dummy.DummyCache"}}):
            cart = self.carts.get_or_create_cart(self.user.pk)

        self.assertEqual(cart["items"][0]["quantity"], 1)
