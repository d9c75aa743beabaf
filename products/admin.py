from django.contrib import admin

from .models import Product


@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    list_display = ("id", "name", "price", "stock", "is_available", "created_at")
    list_filter = ("is_available",)
    search_fields = ("name", "description")
    ordering = ("-created_at",)

    def get_readonly_fields(self, request, obj=None):
        if obj is None:
            return ("is_available", "created_at", "updated_at")
        # After creation stock moves only through the stock ledger.
        return ("stock", "is_available", "created_at", "updated_at")
