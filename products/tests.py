from decimal import Decimal
from io import StringIO
from unittest import mock

from django.core.management import call_command
from django.test import TestCase, override_settings

from core.cache import cache_layer
from core.exceptions import InsufficientStock, LockUnavailable, NotFound
from locks.backends import DatabaseLeaseBackend
from locks.models import LockLease
from locks.service import LockService
from users.models import Customer

from .cache_utils import product_cache_key
from .models import Product
from .services import ProductService
from .stock import (
    LockOrderingStockUpdate,
    StockLedger,
    TransactionalStockUpdate,
    get_stock_update_strategy,
    with_exclusive_stock_update,
)


def _product(name="Laptop", price="1299.99", stock=5):
    return Product.objects.create(name=name, price=Decimal(price), stock=stock)


class StockLedgerTests(TestCase):
    def setUp(self):
        cache_layer.backend.clear()
        self.locks = LockService(DatabaseLeaseBackend(), default_ttl_ms=5000)
        self.ledger = StockLedger(lock_service=self.locks, lock_ttl_ms=5000)
        self.product = _product(stock=5)

    def test_check_stock(self):
        self.assertTrue(self.ledger.check_stock(self.product.pk, 5))
        self.assertFalse(self.ledger.check_stock(self.product.pk, 6))
        self.assertFalse(self.ledger.check_stock(999999, 1))

    def test_decrement_returns_updated_record(self):
        updated = self.ledger.decrement_stock(self.product.pk, 3)

        self.assertEqual(updated.stock, 2)
        self.assertTrue(updated.is_available)
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock, 2)

    def test_decrement_to_zero_marks_unavailable(self):
        updated = self.ledger.decrement_stock(self.product.pk, 5)

        self.assertEqual(updated.stock, 0)
        self.assertFalse(updated.is_available)

    def test_decrement_beyond_stock_fails_without_change(self):
        with self.assertRaises(InsufficientStock) as ctx:
            self.ledger.decrement_stock(self.product.pk, 6)

        self.assertEqual(ctx.exception.available, 5)
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock, 5)

    def test_decrement_missing_product(self):
        with self.assertRaises(NotFound):
            self.ledger.decrement_stock(999999, 1)

    def test_rejects_non_positive_quantities(self):
        for bad in (0, -1, True, 1.5):
            with self.assertRaises(ValueError):
                self.ledger.decrement_stock(self.product.pk, bad)
        with self.assertRaises(ValueError):
            self.ledger.increment_stock(self.product.pk, 0)

    def test_increment_restores_availability(self):
        self.ledger.decrement_stock(self.product.pk, 5)
        updated = self.ledger.increment_stock(self.product.pk, 2)

        self.assertEqual(updated.stock, 2)
        self.assertTrue(updated.is_available)

    def test_stock_write_requires_the_product_lease(self):
        self.locks.acquire(f"product:{self.product.pk}")

        with self.assertRaises(LockUnavailable):
            self.ledger.decrement_stock(self.product.pk, 1)

        self.product.refresh_from_db()
        self.assertEqual(self.product.stock, 5)

    def test_product_lease_is_released_after_failure(self):
        with self.assertRaises(InsufficientStock):
            self.ledger.decrement_stock(self.product.pk, 50)

        self.assertFalse(LockLease.objects.filter(key=f"product:{self.product.pk}").exists())

    def test_decrement_invalidates_cached_product_and_listing(self):
        ProductService.get_product(self.product.pk)
        listing = ProductService.list_products()
        self.assertEqual(listing["products"][0]["stock"], 5)
        self.assertIsNotNone(cache_layer.get(product_cache_key(self.product.pk)))

        self.ledger.decrement_stock(self.product.pk, 2)

        self.assertIsNone(cache_layer.get(product_cache_key(self.product.pk)))
        self.assertEqual(ProductService.get_product(self.product.pk)["stock"], 3)
        self.assertEqual(ProductService.list_products()["products"][0]["stock"], 3)


class ExclusiveStockUpdateTests(TestCase):
    def setUp(self):
        self.locks = LockService(DatabaseLeaseBackend(), default_ttl_ms=5000)
        self.ledger = StockLedger(lock_service=self.locks, lock_ttl_ms=5000)
        self.first = _product(name="Smartphone", price="899.99", stock=4)
        self.second = _product(name="Tablet", price="499.99", stock=4)

    def test_lock_ordering_holds_every_product_lease_during_body(self):
        strategy = LockOrderingStockUpdate(self.ledger)
        seen = []

        def body(session):
            seen.extend(sorted(LockLease.objects.values_list("key", flat=True)))
            session.decrement(self.first.pk, 1)
            session.decrement(self.second.pk, 2)
            return "done"

        result = with_exclusive_stock_update([self.second.pk, self.first.pk, self.second.pk], body, strategy)

        self.assertEqual(result, "done")
        self.assertEqual(seen, sorted([f"product:{self.first.pk}", f"product:{self.second.pk}"]))
        self.assertEqual(LockLease.objects.count(), 0)
        self.first.refresh_from_db()
        self.second.refresh_from_db()
        self.assertEqual((self.first.stock, self.second.stock), (3, 2))

    def test_lock_ordering_acquires_in_ascending_id_order(self):
        strategy = LockOrderingStockUpdate(self.ledger)
        with mock.patch.object(self.locks, "hold_many", wraps=self.locks.hold_many) as hold_many:
            strategy.run([self.second.pk, self.first.pk], lambda session: None)

        keys = hold_many.call_args.args[0]
        self.assertEqual(keys, [f"product:{pk}" for pk in sorted([self.first.pk, self.second.pk])])

    def test_lock_ordering_fails_fast_when_a_product_is_busy(self):
        self.locks.acquire(f"product:{self.second.pk}")
        body = mock.Mock()

        with self.assertRaises(LockUnavailable):
            LockOrderingStockUpdate(self.ledger).run([self.first.pk, self.second.pk], body)

        body.assert_not_called()
        self.assertFalse(LockLease.objects.filter(key=f"product:{self.first.pk}").exists())

    def test_transaction_strategy_rolls_back_on_error(self):
        strategy = TransactionalStockUpdate(self.ledger)

        def body(session):
            session.decrement(self.first.pk, 2)
            raise RuntimeError("downstream failure")

        with self.assertRaises(RuntimeError):
            strategy.run([self.first.pk], body)

        self.first.refresh_from_db()
        self.assertEqual(self.first.stock, 4)

    def test_strategy_selection(self):
        self.assertIsInstance(get_stock_update_strategy(self.ledger, "transaction"), TransactionalStockUpdate)
        self.assertIsInstance(get_stock_update_strategy(self.ledger, "lock_ordering"), LockOrderingStockUpdate)
        # SQLite supports transactions.
        self.assertIsInstance(get_stock_update_strategy(self.ledger, "auto"), TransactionalStockUpdate)

    @override_settings(CART_STOCK_UPDATE_STRATEGY="lock_ordering")
    def test_strategy_follows_settings(self):
        self.assertIsInstance(get_stock_update_strategy(self.ledger), LockOrderingStockUpdate)


class ProductServiceTests(TestCase):
    def setUp(self):
        cache_layer.backend.clear()

    def test_get_product_reads_through_cache(self):
        product = _product()

        first = ProductService.get_product(product.pk)
        with self.assertNumQueries(0):
            second = ProductService.get_product(product.pk)

        self.assertEqual(first, second)
        self.assertEqual(first["price"], "1299.99")

    def test_get_missing_product(self):
        with self.assertRaises(NotFound):
            ProductService.get_product(424242)

    def test_model_save_invalidates_product_and_listing(self):
        product = _product()
        ProductService.get_product(product.pk)
        ProductService.list_products()

        product.price = Decimal("999.00")
        product.save()

        self.assertEqual(ProductService.get_product(product.pk)["price"], "999.00")
        self.assertEqual(ProductService.list_products()["products"][0]["price"], "999.00")

    def test_create_product_shows_up_in_cached_listing(self):
        _product(name="Laptop")
        self.assertEqual(ProductService.list_products()["total"], 1)

        ProductService.create_product(name="Tablet", price=Decimal("10.00"), stock=1)

        self.assertEqual(ProductService.list_products()["total"], 2)

    def test_list_products_pagination_and_sorting(self):
        for name, price in (("A", "3.00"), ("B", "1.00"), ("C", "2.00")):
            _product(name=name, price=price)

        data = ProductService.list_products(page=1, limit=2, sort_by="price", order="asc")

        self.assertEqual([row["name"] for row in data["products"]], ["B", "C"])
        self.assertEqual(data["total"], 3)
        page_two = ProductService.list_products(page=2, limit=2, sort_by="price", order="asc")
        self.assertEqual([row["name"] for row in page_two["products"]], ["A"])

    def test_find_by_name_is_case_insensitive(self):
        product = _product(name="Wireless Headphones")

        self.assertEqual(ProductService.find_by_name("wireless headphones"), product)
        self.assertIsNone(ProductService.find_by_name("Headphones"))

    def test_create_product_rejects_negative_values(self):
        with self.assertRaises(ValueError):
            ProductService.create_product(name="Bad", price=Decimal("-1.00"))
        with self.assertRaises(ValueError):
            ProductService.create_product(name="Bad", price=Decimal("1.00"), stock=-1)

    @override_settings(CACHES={"default": {"BACKEND": "django.core.cache.backends.dummy.DummyCache"}})
    def test_reads_work_when_cache_always_misses(self):
        product = _product(stock=7)

        self.assertEqual(ProductService.get_product(product.pk)["stock"], 7)
        self.assertEqual(ProductService.list_products()["total"], 1)


class SeedCatalogCommandTests(TestCase):
    def test_seed_is_idempotent(self):
        call_command("seed_catalog", stdout=StringIO())
        call_command("seed_catalog", stdout=StringIO())

        self.assertEqual(Customer.objects.count(), 3)
        self.assertEqual(Product.objects.count(), 5)
        self.assertEqual(Product.objects.get(name="Laptop").stock, 30)
