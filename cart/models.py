from decimal import Decimal

from django.db import models
from django.db.models import Q

from products.models import Product
from users.models import Customer


class Cart(models.Model):
    """An open cart, or once settled, an immutable order record."""

    customer = models.ForeignKey(Customer, on_delete=models.PROTECT, related_name="carts")
    settled = models.BooleanField(default=False)
    settled_at = models.DateTimeField(blank=True, null=True)
    total_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["customer"],
                condition=Q(settled=False),
                name="cart_one_open_cart_per_customer",
            ),
            models.CheckConstraint(
                condition=Q(settled=False, settled_at__isnull=True) | Q(settled=True, settled_at__isnull=False),
                name="cart_settled_at_matches_state",
            ),
        ]
        indexes = [
            models.Index(fields=["customer", "settled", "settled_at"], name="cart_customer_settled_idx"),
        ]

    @property
    def status(self):
        return "SETTLED" if self.settled else "OPEN"

    def recalculate_total(self, items):
        self.total_amount = sum((item.price * item.quantity for item in items), Decimal("0.00"))
        return self.total_amount

    def __str__(self):
        return f"Cart {self.pk} of {self.customer_id} ({self.status})"


class CartItem(models.Model):
    cart = models.ForeignKey(Cart, on_delete=models.CASCADE, related_name="items", db_index=True)
    product = models.ForeignKey(Product, on_delete=models.PROTECT, db_index=True)
    quantity = models.PositiveIntegerField()
    # Snapshots taken when the line is first added.
    price = models.DecimalField(max_digits=10, decimal_places=2)
    name = models.CharField(max_length=200)
    position = models.PositiveIntegerField(default=0)

    class Meta:
        ordering = ["position", "pk"]
        constraints = [
            models.UniqueConstraint(fields=["cart", "product"], name="cart_unique_product_per_cart"),
            models.CheckConstraint(condition=Q(quantity__gte=1), name="cart_item_quantity_positive"),
        ]
        indexes = [
            models.Index(fields=["product", "cart"], name="cart_item_product_cart_idx"),
        ]

    @property
    def line_total(self):
        return self.price * self.quantity

    def __str__(self):
        return f"{self.name} x {self.quantity}"
