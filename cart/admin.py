from django.contrib import admin

from .models import Cart, CartItem


class CartItemInline(admin.TabularInline):
    model = CartItem
    extra = 0
    fields = ("product", "name", "price", "quantity", "position")
    readonly_fields = fields
    can_delete = False


@admin.register(Cart)
class CartAdmin(admin.ModelAdmin):
    list_display = ("id", "customer", "settled", "settled_at", "total_amount", "updated_at")
    list_filter = ("settled",)
    search_fields = ("customer__name", "customer__email")
    ordering = ("-updated_at",)
    inlines = [CartItemInline]
    # Carts change only through the cart services so leases are honoured.
    readonly_fields = ("customer", "settled", "settled_at", "total_amount", "created_at", "updated_at")

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
