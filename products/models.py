from django.db import models
from django.db.models import Q


class Product(models.Model):
    name = models.CharField(max_length=200)
    description = models.TextField(blank=True, default="")
    price = models.DecimalField(max_digits=10, decimal_places=2)
    # Only the stock ledger writes this column after creation.
    stock = models.PositiveIntegerField(default=0)
    is_available = models.BooleanField(default=False, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at", "name"]
        constraints = [
            models.CheckConstraint(condition=Q(price__gte=0), name="product_price_non_negative"),
            models.CheckConstraint(condition=Q(stock__gte=0), name="product_stock_non_negative"),
        ]
        indexes = [
            models.Index(fields=["name"], name="products_name_idx"),
            models.Index(fields=["is_available", "created_at"], name="products_avail_created_idx"),
        ]

    def save(self, *args, **kwargs):
        self.is_available = self.stock > 0
        update_fields = kwargs.get("update_fields")
        if update_fields is not None and "stock" in update_fields:
            kwargs["update_fields"] = {*update_fields, "is_available"}
        super().save(*args, **kwargs)

    def __str__(self):
        return self.name
