from decimal import Decimal
from unittest import mock

from django.db import OperationalError
from django.test import TestCase, override_settings

from core.cache import cache_layer
from core.exceptions import EmptyCart, InsufficientStock, LockUnavailable, NotFound, TransactionAborted
from locks.backends import DatabaseLeaseBackend
from locks.models import LockLease
from locks.service import LockService
from products.models import Product
from products.services import ProductService
from products.stock import LockOrderingStockUpdate, StockLedger, TransactionalStockUpdate
from users.models import Customer

from .models import Cart
from .services import CartCoordinator


class CheckoutScenarioMixin:
    strategy_class = None

    def setUp(self):
        cache_layer.backend.clear()
        locks = LockService(DatabaseLeaseBackend(), default_ttl_ms=5000)
        ledger = StockLedger(lock_service=locks)
        self.carts = CartCoordinator(
            lock_service=locks,
            stock_ledger=ledger,
            stock_strategy=self.strategy_class(ledger),
        )
        self.john = Customer.objects.create(name="John Doe", email="john@example.com")
        self.jane = Customer.objects.create(name="Jane Smith", email="jane@example.com")
        self.laptop = Product.objects.create(name="Laptop", price=Decimal("1299.99"), stock=5)
        self.phone = Product.objects.create(name="Smartphone", price=Decimal("899.99"), stock=3)

    def _stock(self, product):
        product.refresh_from_db()
        return product.stock

    def test_add_update_checkout_flow(self):
        self.carts.add_to_cart(self.john.pk, self.laptop.pk, 3)
        with self.assertRaises(InsufficientStock):
            self.carts.add_to_cart(self.john.pk, self.laptop.pk, 3)
        self.carts.update_cart_item(self.john.pk, self.laptop.pk, 5)

        order = self.carts.checkout(self.john.pk)

        self.assertEqual(order["status"], "SETTLED")
        self.assertTrue(order["settled"])
        self.assertIsNotNone(order["settled_at"])
        self.assertEqual(Decimal(order["total_amount"]), Decimal("6499.95"))
        self.assertEqual(self._stock(self.laptop), 0)
        self.assertFalse(Product.objects.get(pk=self.laptop.pk).is_available)

        with self.assertRaises(NotFound):
            self.carts.checkout(self.john.pk)

    def test_checkout_settles_every_line(self):
        self.carts.add_to_cart(self.john.pk, self.laptop.pk, 2)
        self.carts.add_to_cart(self.john.pk, self.phone.pk, 3)

        self.carts.checkout(self.john.pk)

        self.assertEqual(self._stock(self.laptop), 3)
        self.assertEqual(self._stock(self.phone), 0)
        self.assertFalse(LockLease.objects.exists())

    def test_new_cart_after_checkout(self):
        self.carts.add_to_cart(self.john.pk, self.laptop.pk, 1)
        order = self.carts.checkout(self.john.pk)

        fresh = self.carts.get_or_create_cart(self.john.pk)

        self.assertNotEqual(fresh["id"], order["id"])
        self.assertEqual(fresh["status"], "OPEN")
        self.assertEqual(fresh["items"], [])

    def test_settled_cart_is_immutable(self):
        self.carts.add_to_cart(self.john.pk, self.laptop.pk, 1)
        order = self.carts.checkout(self.john.pk)

        with self.assertRaises(NotFound):
            self.carts.update_cart_item(self.john.pk, self.laptop.pk, 2)
        with self.assertRaises(NotFound):
            self.carts.clear_cart(self.john.pk)

        settled = Cart.objects.get(pk=order["id"])
        self.assertEqual(settled.items.get().quantity, 1)

    def test_empty_cart_cannot_checkout(self):
        self.carts.get_or_create_cart(self.john.pk)

        with self.assertRaises(EmptyCart) as ctx:
            self.carts.checkout(self.john.pk)

        self.assertEqual(str(ctx.exception), "Cannot checkout an empty cart")
        self.assertFalse(LockLease.objects.exists())

    def test_checkout_without_cart(self):
        with self.assertRaises(NotFound):
            self.carts.checkout(self.john.pk)

    def test_two_buyers_cannot_oversell(self):
        self.carts.add_to_cart(self.john.pk, self.laptop.pk, 3)
        self.carts.add_to_cart(self.jane.pk, self.laptop.pk, 3)

        self.carts.checkout(self.john.pk)
        with self.assertRaises(InsufficientStock):
            self.carts.checkout(self.jane.pk)

        self.assertEqual(self._stock(self.laptop), 2)
        jane_cart = Cart.objects.get(customer=self.jane)
        self.assertFalse(jane_cart.settled)
        self.assertEqual(jane_cart.items.get().quantity, 3)

    def test_validation_failure_touches_no_stock(self):
        self.carts.add_to_cart(self.john.pk, self.laptop.pk, 2)
        self.carts.add_to_cart(self.john.pk, self.phone.pk, 3)
        Product.objects.filter(pk=self.phone.pk).update(stock=1)

        with self.assertRaises(InsufficientStock):
            self.carts.checkout(self.john.pk)

        self.assertEqual(self._stock(self.laptop), 5)
        self.assertEqual(self._stock(self.phone), 1)

    def test_racing_decrement_is_compensated(self):
        self.carts.add_to_cart(self.john.pk, self.laptop.pk, 2)
        self.carts.add_to_cart(self.john.pk, self.phone.pk, 3)
        # Stock changes after validation passed.
        Product.objects.filter(pk=self.phone.pk).update(stock=1)

        with mock.patch("products.stock.StockSession.check", return_value=True):
            with self.assertRaises(TransactionAborted) as ctx:
                self.carts.checkout(self.john.pk)

        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(self._stock(self.laptop), 5)
        self.assertEqual(self._stock(self.phone), 1)
        cart = Cart.objects.get(customer=self.john)
        self.assertFalse(cart.settled)
        self.assertIsNone(cart.settled_at)
        self.assertEqual(cart.items.count(), 2)
        self.assertFalse(LockLease.objects.exists())

    def test_store_error_mid_checkout_is_compensated(self):
        self.carts.add_to_cart(self.john.pk, self.laptop.pk, 2)
        self.carts.add_to_cart(self.john.pk, self.phone.pk, 3)
        apply_decrement = StockLedger.apply_decrement
        calls = []

        def fail_second_line(ledger, product_id, quantity):
            calls.append(product_id)
            if len(calls) == 2:
                raise OperationalError("database is locked")
            return apply_decrement(ledger, product_id, quantity)

        with mock.patch.object(StockLedger, "apply_decrement", autospec=True, side_effect=fail_second_line):
            with self.assertRaises(TransactionAborted) as ctx:
                self.carts.checkout(self.john.pk)

        self.assertIsInstance(ctx.exception.__cause__, OperationalError)
        self.assertEqual(calls, [self.laptop.pk, self.phone.pk])
        self.assertEqual(self._stock(self.laptop), 5)
        self.assertEqual(self._stock(self.phone), 3)
        cart = Cart.objects.get(customer=self.john)
        self.assertFalse(cart.settled)
        self.assertEqual(cart.items.count(), 2)
        self.assertFalse(LockLease.objects.exists())

    def test_retry_after_abort_succeeds_once_stock_allows(self):
        self.carts.add_to_cart(self.john.pk, self.laptop.pk, 2)
        self.carts.add_to_cart(self.john.pk, self.phone.pk, 3)
        Product.objects.filter(pk=self.phone.pk).update(stock=1)
        with mock.patch("products.stock.StockSession.check", return_value=True):
            with self.assertRaises(TransactionAborted):
                self.carts.checkout(self.john.pk)

        self.carts.update_cart_item(self.john.pk, self.phone.pk, 1)
        order = self.carts.checkout(self.john.pk)

        self.assertEqual(order["status"], "SETTLED")
        self.assertEqual(self._stock(self.laptop), 3)
        self.assertEqual(self._stock(self.phone), 0)

    def test_checkout_refreshes_cached_product(self):
        self.assertEqual(ProductService.get_product(self.laptop.pk)["stock"], 5)
        self.carts.add_to_cart(self.john.pk, self.laptop.pk, 4)

        self.carts.checkout(self.john.pk)

        self.assertEqual(ProductService.get_product(self.laptop.pk)["stock"], 1)

    def test_order_history_newest_first(self):
        self.carts.add_to_cart(self.john.pk, self.laptop.pk, 1)
        first = self.carts.checkout(self.john.pk)
        self.carts.add_to_cart(self.john.pk, self.phone.pk, 1)
        second = self.carts.checkout(self.john.pk)
        self.carts.add_to_cart(self.john.pk, self.laptop.pk, 1)

        history = self.carts.order_history(self.john.pk)

        self.assertEqual([order["id"] for order in history], [second["id"], first["id"]])
        self.assertTrue(all(order["status"] == "SETTLED" for order in history))
        self.assertEqual(self.carts.order_history(self.jane.pk), [])


class TransactionCheckoutTests(CheckoutScenarioMixin, TestCase):
    strategy_class = TransactionalStockUpdate


class LockOrderingCheckoutTests(CheckoutScenarioMixin, TestCase):
    strategy_class = LockOrderingStockUpdate

    def test_product_leases_released_after_abort(self):
        self.carts.add_to_cart(self.john.pk, self.laptop.pk, 1)
        LockService(DatabaseLeaseBackend()).acquire(f"product:{self.phone.pk}")
        self.carts.add_to_cart(self.john.pk, self.phone.pk, 1)

        with self.assertRaises(LockUnavailable):
            self.carts.checkout(self.john.pk)

        self.assertEqual(
            list(LockLease.objects.values_list("key", flat=True)),
            [f"product:{self.phone.pk}"],
        )
        self.assertEqual(self._stock(self.laptop), 5)


@override_settings(CACHES={"default": {"BACKEND": "django.core.cache.backends.dummy.DummyCache"}})
class CheckoutWithoutCacheTests(CheckoutScenarioMixin, TestCase):
    strategy_class = TransactionalStockUpdate
