from core.cache import cache_layer

PRODUCT_LIST_NAMESPACE = "products:list"


def product_cache_key(product_id) -> str:
    return f"products:{product_id}"


def product_list_cache_key(page: int, limit: int, sort_by: str, order: str) -> str:
    return cache_layer.versioned_key(PRODUCT_LIST_NAMESPACE, page, limit, sort_by, order)


def invalidate_product_cache(product_id=None) -> None:
    if product_id is not None:
        cache_layer.delete(product_cache_key(product_id))
    # Any stock or price change can alter every listing page.
    cache_layer.delete_by_pattern(PRODUCT_LIST_NAMESPACE)
