from django.conf import settings

from core.cache import cache_layer


def cart_cache_namespace(user_id) -> str:
    return f"carts:user:{user_id}"


def cart_cache_key(user_id) -> str:
    """
    Key for the user's cached cart at the current generation.

    Readers resolve it before loading the cart, so a payload read before a
    write and stored after it lands under a retired generation.
    """
    return cache_layer.versioned_key(cart_cache_namespace(user_id))


def get_cached_cart(cache_key):
    data = cache_layer.get(cache_key)
    if not isinstance(data, dict):
        return None
    return data


def set_cached_cart(cache_key, payload, timeout=None):
    cache_layer.set(
        cache_key,
        dict(payload),
        settings.CART_CACHE_TTL if timeout is None else timeout,
    )
    return payload


def clear_cached_cart(user_id):
    cache_layer.delete_by_pattern(cart_cache_namespace(user_id))
