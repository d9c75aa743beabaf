from django.conf import settings

from core.cache import cache_layer
from core.exceptions import NotFound

from .cache_utils import product_cache_key, product_list_cache_key
from .models import Product
from .repositories import ProductRepository
from .serializers import ProductSerializer


class ProductService:
    @staticmethod
    def get_product(product_id):
        cache_key = product_cache_key(product_id)
        cached = cache_layer.get(cache_key)
        if cached is not None:
            return cached

        product = ProductRepository.by_id(product_id)
        if not product:
            raise NotFound(f"Product with ID {product_id} not found")

        data = dict(ProductSerializer(product).data)
        cache_layer.set(cache_key, data, settings.PRODUCT_CACHE_TTL)
        return data

    @staticmethod
    def find_by_name(name):
        return ProductRepository.by_name(name)

    @staticmethod
    def list_products(page=1, limit=10, sort_by="created_at", order="desc"):
        cache_key = product_list_cache_key(page, limit, sort_by, order)
        cached = cache_layer.get(cache_key)
        if cached is not None:
            return cached

        products, total = ProductRepository.page(page, limit, sort_by, order)
        data = {
            "products": [dict(row) for row in ProductSerializer(products, many=True).data],
            "total": total,
            "page": page,
            "limit": limit,
        }
        cache_layer.set(cache_key, data, settings.PRODUCT_CACHE_TTL)
        return data

    @staticmethod
    def create_product(name, price, stock=0, description=""):
        if price < 0:
            raise ValueError("Price cannot be negative")
        if stock < 0:
            raise ValueError("Stock cannot be negative")

        product = Product.objects.create(
            name=name,
            price=price,
            stock=stock,
            description=description or "",
        )
        return product
