import logging

from django.conf import settings
from django.db import connection, transaction
from django.db.models import BooleanField, Case, F, Value, When

from core.exceptions import InsufficientStock, NotFound
from locks.service import get_lock_service

from .cache_utils import invalidate_product_cache
from .models import Product
from .repositories import ProductRepository

logger = logging.getLogger(__name__)


def product_lock_key(product_id) -> str:
    return f"product:{product_id}"


def validate_quantity(quantity):
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValueError("Quantity must be a positive integer")
    return quantity


class StockLedger:
    """
    Owner of authoritative product stock.

    Every write runs inside the ``product:<id>`` lease and a savepoint with the
    row locked, so concurrent writers on one product are serialized and stock
    can never go below zero. The ``apply_*`` methods skip the lease and are
    only for callers that already hold it.
    """

    def __init__(self, lock_service=None, lock_ttl_ms=None):
        self.locks = lock_service or get_lock_service()
        self.lock_ttl_ms = lock_ttl_ms or settings.PRODUCT_LOCK_TTL_MS

    def check_stock(self, product_id, quantity) -> bool:
        # Pre-flight only; the answer may be stale by the time it is acted on.
        product = ProductRepository.by_id(product_id)
        return product is not None and product.stock >= quantity

    def decrement_stock(self, product_id, quantity) -> Product:
        validate_quantity(quantity)
        with self.locks.hold(product_lock_key(product_id), self.lock_ttl_ms):
            return self.apply_decrement(product_id, quantity)

    def increment_stock(self, product_id, quantity) -> Product:
        validate_quantity(quantity)
        with self.locks.hold(product_lock_key(product_id), self.lock_ttl_ms):
            return self.apply_increment(product_id, quantity)

    def apply_decrement(self, product_id, quantity) -> Product:
        validate_quantity(quantity)
        with transaction.atomic():
            product = ProductRepository.locked(product_id)
            if product is None:
                raise NotFound(f"Product with ID {product_id} not found")
            if quantity > product.stock:
                raise InsufficientStock(
                    f"Not enough stock for {product.name}. Only {product.stock} units left.",
                    product_id=product.pk,
                    requested=quantity,
                    available=product.stock,
                )

            updated = Product.objects.filter(pk=product.pk, stock__gte=quantity).update(
                stock=F("stock") - quantity,
                is_available=Case(
                    When(stock__gt=quantity, then=Value(True)),
                    default=Value(False),
                    output_field=BooleanField(),
                ),
            )
            if not updated:
                raise InsufficientStock(
                    f"Not enough stock for {product.name}.",
                    product_id=product.pk,
                    requested=quantity,
                )
            product.refresh_from_db()

        logger.info("Stock decremented product=%s qty=%s remaining=%s", product.pk, quantity, product.stock)
        self._invalidate(product.pk)
        return product

    def apply_increment(self, product_id, quantity) -> Product:
        validate_quantity(quantity)
        with transaction.atomic():
            product = ProductRepository.locked(product_id)
            if product is None:
                raise NotFound(f"Product with ID {product_id} not found")

            Product.objects.filter(pk=product.pk).update(
                stock=F("stock") + quantity,
                is_available=Value(True),
            )
            product.refresh_from_db()

        logger.info("Stock incremented product=%s qty=%s remaining=%s", product.pk, quantity, product.stock)
        self._invalidate(product.pk)
        return product

    @staticmethod
    def _invalidate(product_id):
        invalidate_product_cache(product_id)
        if transaction.get_connection().in_atomic_block:
            # A reader between now and commit can still cache the old row.
            transaction.on_commit(lambda: invalidate_product_cache(product_id))


class StockSession:
    """Stock operations handed to the body of an exclusive stock update."""

    def __init__(self, ledger, leases_held):
        self.ledger = ledger
        self.leases_held = leases_held

    def check(self, product_id, quantity) -> bool:
        return self.ledger.check_stock(product_id, quantity)

    def decrement(self, product_id, quantity) -> Product:
        if self.leases_held:
            return self.ledger.apply_decrement(product_id, quantity)
        return self.ledger.decrement_stock(product_id, quantity)

    def increment(self, product_id, quantity) -> Product:
        if self.leases_held:
            return self.ledger.apply_increment(product_id, quantity)
        return self.ledger.increment_stock(product_id, quantity)


class TransactionalStockUpdate:
    """One database transaction around the whole body; rows locked by id."""

    name = "transaction"

    def __init__(self, ledger):
        self.ledger = ledger

    def run(self, product_ids, fn):
        ordered = sorted(set(product_ids))
        with transaction.atomic():
            ProductRepository.lock_rows(ordered)
            return fn(StockSession(self.ledger, leases_held=False))


class LockOrderingStockUpdate:
    """
    Holds one product lease per distinct product, taken in ascending id order
    so two checkouts sharing products cannot deadlock. Each stock write
    commits on its own; the body must compensate for partial progress.
    """

    name = "lock_ordering"

    def __init__(self, ledger):
        self.ledger = ledger

    def run(self, product_ids, fn):
        keys = [product_lock_key(product_id) for product_id in sorted(set(product_ids))]
        with self.ledger.locks.hold_many(keys, self.ledger.lock_ttl_ms):
            return fn(StockSession(self.ledger, leases_held=True))


STOCK_UPDATE_STRATEGIES = {
    TransactionalStockUpdate.name: TransactionalStockUpdate,
    LockOrderingStockUpdate.name: LockOrderingStockUpdate,
}


def get_stock_update_strategy(ledger=None, name=None):
    ledger = ledger or StockLedger()
    name = name or settings.CART_STOCK_UPDATE_STRATEGY
    if name == "auto":
        name = "transaction" if connection.features.supports_transactions else "lock_ordering"
    return STOCK_UPDATE_STRATEGIES[name](ledger)


def with_exclusive_stock_update(product_ids, fn, strategy=None):
    return (strategy or get_stock_update_strategy()).run(product_ids, fn)
