import threading
import time
from decimal import Decimal

from django.db import DatabaseError, connection
from django.test import TransactionTestCase, override_settings

from core.cache import cache_layer
from core.exceptions import InsufficientStock, LockUnavailable, NotFound, TransactionAborted
from products.models import Product
from users.models import Customer

from .models import Cart, CartItem
from .services import CartCoordinator, get_cart_coordinator

RETRYABLE = (LockUnavailable, TransactionAborted, DatabaseError)


def run_concurrently(count, work):
    """Run ``work(index)`` on ``count`` threads released together; return each outcome."""
    barrier = threading.Barrier(count)
    outcomes = [None] * count

    def worker(index):
        try:
            barrier.wait(timeout=10)
            outcomes[index] = ("ok", work(index))
        except Exception as exc:
            outcomes[index] = ("error", exc)
        finally:
            connection.close()

    threads = [threading.Thread(target=worker, args=(index,)) for index in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    return outcomes


def with_retries(call, attempts=300, pause=0.01):
    for attempt in range(attempts):
        try:
            return call()
        except RETRYABLE:
            if attempt == attempts - 1:
                raise
            time.sleep(pause)


# Short leases so one whose release failed expires within the retry window.
@override_settings(
    CART_LOCK_TTL_MS=1000,
    CHECKOUT_LOCK_TTL_MS=1000,
    PRODUCT_LOCK_TTL_MS=1000,
    CART_STOCK_UPDATE_STRATEGY="transaction",
)
class ConcurrentCheckoutTests(TransactionTestCase):
    def setUp(self):
        cache_layer.backend.clear()
        self.laptop = Product.objects.create(name="Laptop", price=Decimal("1299.99"), stock=5)
        self.customers = [
            Customer.objects.create(name=f"Buyer {index}", email=f"buyer{index}@example.com")
            for index in range(4)
        ]
        carts = CartCoordinator()
        for customer in self.customers:
            carts.add_to_cart(customer.pk, self.laptop.pk, 2)

    def test_parallel_checkouts_never_oversell(self):
        def checkout(index):
            return with_retries(lambda: get_cart_coordinator().checkout(self.customers[index].pk))

        outcomes = run_concurrently(len(self.customers), checkout)

        for kind, value in outcomes:
            if kind == "error":
                self.assertIsInstance(value, (InsufficientStock, NotFound))

        self.laptop.refresh_from_db()
        settled = Cart.objects.filter(settled=True)
        committed = sum(
            CartItem.objects.filter(cart__in=settled).values_list("quantity", flat=True)
        )
        self.assertGreaterEqual(self.laptop.stock, 0)
        self.assertEqual(self.laptop.stock, 5 - committed)
        self.assertIn(settled.count(), (1, 2))

        settled_ids = set(settled.values_list("pk", flat=True))
        for kind, value in outcomes:
            if kind == "ok":
                self.assertIn(value["id"], settled_ids)
                self.assertEqual(Decimal(value["total_amount"]), Decimal("2599.98"))

        # Carts that lost the race stay open with every line intact.
        for cart in Cart.objects.filter(settled=False):
            self.assertEqual(list(cart.items.values_list("quantity", flat=True)), [2])


@override_settings(
    CART_LOCK_TTL_MS=1000,
    CHECKOUT_LOCK_TTL_MS=1000,
    PRODUCT_LOCK_TTL_MS=1000,
    CART_STOCK_UPDATE_STRATEGY="transaction",
)
class ConcurrentCartEditTests(TransactionTestCase):
    def setUp(self):
        cache_layer.backend.clear()
        self.laptop = Product.objects.create(name="Laptop", price=Decimal("1299.99"), stock=10)
        self.user = Customer.objects.create(name="John Doe", email="john@example.com")
        CartCoordinator().get_or_create_cart(self.user.pk)

    def test_parallel_adds_compose_like_sequential_adds(self):
        def add_one(index):
            return with_retries(lambda: get_cart_coordinator().add_to_cart(self.user.pk, self.laptop.pk, 1))

        outcomes = run_concurrently(6, add_one)
        added = sum(1 for kind, _ in outcomes if kind == "ok")

        carts = Cart.objects.filter(customer=self.user, settled=False)
        self.assertEqual(carts.count(), 1)
        cart = carts.get()
        self.assertEqual(list(cart.items.values_list("quantity", flat=True)), [added])
        self.assertEqual(cart.total_amount, Decimal("1299.99") * added)
        self.assertGreater(added, 0)

        # Every committed add is visible to the next read.
        payload = CartCoordinator().get_or_create_cart(self.user.pk)
        self.assertEqual(payload["items"][0]["quantity"], added)

        self.laptop.refresh_from_db()
        self.assertEqual(self.laptop.stock, 10)
