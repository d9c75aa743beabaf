import logging
from contextlib import ExitStack

from django.db import DatabaseError, IntegrityError, transaction
from django.db.models import Max
from django.utils import timezone

from core.exceptions import (
    CartServiceError,
    EmptyCart,
    InsufficientStock,
    NotFound,
    TransactionAborted,
)
from locks.service import get_lock_service
from products.repositories import ProductRepository
from products.stock import StockLedger, get_stock_update_strategy, validate_quantity
from users.services import CustomerService

from .cache_store import cart_cache_key, clear_cached_cart, get_cached_cart, set_cached_cart
from .locks import cart_write_lock, checkout_lock
from .models import Cart, CartItem
from .serializers import serialize_cart

logger = logging.getLogger(__name__)


class CartCoordinator:
    """
    Use cases for a user's cart: OPEN carts are edited under the user's
    ``cart:<user>`` lease, checkout settles them under ``checkout:<user>``.

    Mutations always re-read the open cart from the database while holding
    the lease. The cache is only consulted by plain reads.
    """

    def __init__(self, lock_service=None, stock_ledger=None, stock_strategy=None):
        self.locks = lock_service or get_lock_service()
        self.ledger = stock_ledger or StockLedger(lock_service=self.locks)
        self.stock_strategy = stock_strategy or get_stock_update_strategy(self.ledger)

    # =====================================================
    # QUERIES
    # =====================================================
    def get_or_create_cart(self, user_id):
        cache_key = cart_cache_key(user_id)
        cached = get_cached_cart(cache_key)
        if cached is not None:
            return cached

        cart = self._open_cart(user_id) or self._create_cart(user_id)
        return set_cached_cart(cache_key, serialize_cart(cart))

    def order_history(self, user_id):
        # Settled carts never change, so no lease is needed.
        orders = (
            Cart.objects.filter(customer_id=user_id, settled=True)
            .prefetch_related("items")
            .order_by("-settled_at", "-pk")
        )
        return [serialize_cart(order) for order in orders]

    # =====================================================
    # COMMANDS
    # =====================================================
    def add_to_cart(self, user_id, product_id, quantity):
        validate_quantity(quantity)

        with cart_write_lock(self.locks, user_id):
            with transaction.atomic():
                product = ProductRepository.by_id(product_id)
                if not product:
                    raise NotFound(f"Product with ID {product_id} not found")

                cart = self._open_cart(user_id, for_update=True) or self._create_cart(user_id)
                line = cart.items.filter(product_id=product.pk).first()

                # Checked against the line's new total, not just the delta.
                new_quantity = quantity + (line.quantity if line else 0)
                if new_quantity > product.stock:
                    if line:
                        message = (
                            f"Cannot add {quantity} more units. "
                            f"Only {product.stock} units available in total."
                        )
                    else:
                        message = f"Not enough stock available. Only {product.stock} units left."
                    raise InsufficientStock(
                        message,
                        product_id=product.pk,
                        requested=new_quantity,
                        available=product.stock,
                    )

                if line:
                    line.quantity = new_quantity
                    line.save(update_fields=["quantity"])
                else:
                    CartItem.objects.create(
                        cart=cart,
                        product=product,
                        quantity=quantity,
                        price=product.price,
                        name=product.name,
                        position=self._next_position(cart),
                    )

                self._save_total(cart)
                payload = serialize_cart(cart)

            logger.info("Added product=%s qty=%s to cart=%s user=%s", product.pk, quantity, cart.pk, user_id)
            clear_cached_cart(user_id)
            return payload

    def update_cart_item(self, user_id, product_id, quantity):
        validate_quantity(quantity)

        with cart_write_lock(self.locks, user_id):
            with transaction.atomic():
                cart = self._require_open_cart(user_id)
                line = self._require_line(cart, product_id)

                product = ProductRepository.by_id(product_id)
                if not product:
                    raise NotFound(f"Product with ID {product_id} not found")
                if quantity > product.stock:
                    raise InsufficientStock(
                        f"Not enough stock available. Only {product.stock} units left.",
                        product_id=product.pk,
                        requested=quantity,
                        available=product.stock,
                    )

                line.quantity = quantity
                line.save(update_fields=["quantity"])
                self._save_total(cart)
                payload = serialize_cart(cart)

            clear_cached_cart(user_id)
            return payload

    def remove_from_cart(self, user_id, product_id):
        with cart_write_lock(self.locks, user_id):
            with transaction.atomic():
                cart = self._require_open_cart(user_id)
                self._require_line(cart, product_id).delete()
                self._save_total(cart)
                payload = serialize_cart(cart)

            clear_cached_cart(user_id)
            return payload

    def clear_cart(self, user_id):
        with cart_write_lock(self.locks, user_id):
            with transaction.atomic():
                cart = self._require_open_cart(user_id)
                cart.items.all().delete()
                self._save_total(cart)
                payload = serialize_cart(cart)

            clear_cached_cart(user_id)
            return payload

    def checkout(self, user_id):
        """
        Settle the user's open cart and take its stock.

        Stock is validated for every line before anything is decremented. If a
        decrement still fails (another buyer got there after validation), the
        decrements already applied are re-incremented in reverse order and
        TransactionAborted is raised; the cart stays open.
        """
        with ExitStack() as leases:
            leases.enter_context(checkout_lock(self.locks, user_id))
            # Item edits are rejected while the cart is being settled.
            leases.enter_context(cart_write_lock(self.locks, user_id))

            cart = self._require_open_cart(user_id)
            items = list(cart.items.all())
            if not items:
                raise EmptyCart("Cannot checkout an empty cart")

            def settle(session):
                for item in items:
                    if not session.check(item.product_id, item.quantity):
                        raise InsufficientStock(
                            f"Not enough stock for {item.name}",
                            product_id=item.product_id,
                            requested=item.quantity,
                        )

                applied = []
                try:
                    for item in items:
                        session.decrement(item.product_id, item.quantity)
                        applied.append(item)

                    cart.settled = True
                    cart.settled_at = timezone.now()
                    cart.save(update_fields=["settled", "settled_at", "updated_at"])
                except (CartServiceError, DatabaseError) as exc:
                    self._compensate(session, applied, cart)
                    raise TransactionAborted(
                        f"Checkout aborted, stock was restored: {exc}"
                    ) from exc
                except Exception:
                    self._compensate(session, applied, cart)
                    raise
                return cart

            try:
                self.stock_strategy.run([item.product_id for item in items], settle)
            except Exception:
                cart.settled = False
                cart.settled_at = None
                raise

            logger.info(
                "Checked out cart=%s user=%s lines=%s total=%s strategy=%s",
                cart.pk,
                user_id,
                len(items),
                cart.total_amount,
                self.stock_strategy.name,
            )
            clear_cached_cart(user_id)
            return serialize_cart(cart)

    # =====================================================
    # HELPERS
    # =====================================================
    @staticmethod
    def _open_cart(user_id, for_update=False):
        queryset = Cart.objects.filter(customer_id=user_id, settled=False)
        if for_update:
            queryset = queryset.select_for_update()
        return queryset.first()

    def _require_open_cart(self, user_id):
        cart = self._open_cart(user_id, for_update=transaction.get_connection().in_atomic_block)
        if not cart:
            raise NotFound(f"Active cart not found for user {user_id}")
        return cart

    @staticmethod
    def _require_line(cart, product_id):
        line = cart.items.filter(product_id=product_id).first()
        if not line:
            raise NotFound(f"Product {product_id} not found in cart")
        return line

    def _create_cart(self, user_id):
        CustomerService.get_customer(user_id)
        try:
            with transaction.atomic():
                cart = Cart.objects.create(customer_id=user_id)
        except IntegrityError:
            # Lost a race with another first access; that cart is the open one.
            cart = self._open_cart(user_id)
            if cart is None:
                raise
            return cart
        logger.info("Created cart=%s for user=%s", cart.pk, user_id)
        return cart

    @staticmethod
    def _next_position(cart):
        current = cart.items.aggregate(top=Max("position"))["top"]
        return 0 if current is None else current + 1

    @staticmethod
    def _save_total(cart):
        cart.recalculate_total(cart.items.all())
        cart.save(update_fields=["total_amount", "updated_at"])

    @staticmethod
    def _compensate(session, applied, cart):
        for item in reversed(applied):
            try:
                session.increment(item.product_id, item.quantity)
            except Exception:
                logger.critical(
                    "Compensation failed cart=%s product=%s qty=%s; stock must be repaired",
                    cart.pk,
                    item.product_id,
                    item.quantity,
                    exc_info=True,
                )
        if applied:
            logger.warning("Compensated %s stock decrements for cart=%s", len(applied), cart.pk)


def get_cart_coordinator():
    return CartCoordinator()
