from contextlib import contextmanager

from django.conf import settings


def cart_lock_key(user_id) -> str:
    return f"cart:{user_id}"


def checkout_lock_key(user_id) -> str:
    return f"checkout:{user_id}"


@contextmanager
def cart_write_lock(lock_service, user_id):
    """
    Lease serializing item edits on one user's open cart.

    Raises LockUnavailable straight away when another request holds it;
    the caller decides whether to retry.
    """
    with lock_service.hold(cart_lock_key(user_id), settings.CART_LOCK_TTL_MS) as token:
        yield token


@contextmanager
def checkout_lock(lock_service, user_id):
    with lock_service.hold(checkout_lock_key(user_id), settings.CHECKOUT_LOCK_TTL_MS) as token:
        yield token
