from .models import Product

SORTABLE_FIELDS = {"created_at", "name", "price", "stock"}


class ProductRepository:
    @staticmethod
    def by_id(product_id):
        return Product.objects.filter(pk=product_id).first()

    @staticmethod
    def by_name(name):
        return Product.objects.filter(name__iexact=(name or "").strip()).order_by("id").first()

    @staticmethod
    def locked(product_id):
        return Product.objects.select_for_update().filter(pk=product_id).first()

    @staticmethod
    def lock_rows(product_ids):
        # Ascending id order keeps row locks deadlock-free across checkouts.
        return list(
            Product.objects.select_for_update()
            .filter(pk__in=product_ids)
            .order_by("pk")
        )

    @staticmethod
    def page(page, limit, sort_by, order):
        sort_field = sort_by if sort_by in SORTABLE_FIELDS else "created_at"
        prefix = "" if order == "asc" else "-"
        offset = (page - 1) * limit
        queryset = Product.objects.order_by(f"{prefix}{sort_field}", "pk")
        return list(queryset[offset:offset + limit]), Product.objects.count()
