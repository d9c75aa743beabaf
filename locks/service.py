import logging
import secrets
from contextlib import ExitStack, contextmanager

from django.conf import settings
from django.db import DatabaseError
from redis.exceptions import RedisError

from core.exceptions import LockUnavailable

from .backends import DatabaseLeaseBackend, RedisLeaseBackend

logger = logging.getLogger(__name__)


class LockService:
    """
    Short-lived, named, tokenized leases over a shared coordination store.

    - acquire(key, ttl) -> token | None, a single atomic set-if-absent
    - release(key, token) -> bool, an atomic compare-and-delete
    - leases expire after ``ttl`` milliseconds even if never released
    """

    def __init__(self, backend, default_ttl_ms=30000):
        self.backend = backend
        self.default_ttl_ms = default_ttl_ms

    def acquire(self, key, ttl=None):
        ttl_ms = int(self.default_ttl_ms if ttl is None else ttl)
        if ttl_ms <= 0:
            raise ValueError("Lease ttl must be a positive number of milliseconds")

        token = secrets.token_urlsafe(24)
        try:
            acquired = self.backend.acquire(key, token, ttl_ms)
        except (RedisError, DatabaseError) as exc:
            logger.warning("Lease store unavailable on acquire key=%s error=%s", key, exc)
            raise LockUnavailable(key) from exc

        if not acquired:
            logger.info("Lease busy key=%s", key)
            return None
        return token

    def release(self, key, token):
        try:
            released = self.backend.release(key, token)
        except (RedisError, DatabaseError) as exc:
            # The ttl reclaims the lease; the caller's own outcome stands.
            logger.error("Lease release failed key=%s error=%s", key, exc)
            return False

        if not released:
            logger.warning("Lease key=%s was not held by this token at release", key)
        return released

    @contextmanager
    def hold(self, key, ttl=None):
        token = self.acquire(key, ttl)
        if token is None:
            raise LockUnavailable(key)
        try:
            yield token
        finally:
            self.release(key, token)

    @contextmanager
    def hold_many(self, keys, ttl=None):
        """Hold every key in the given order; all or nothing."""
        ordered = list(dict.fromkeys(keys))
        with ExitStack() as stack:
            tokens = {key: stack.enter_context(self.hold(key, ttl)) for key in ordered}
            yield tokens


def build_lease_backend():
    if settings.LOCK_BACKEND == "redis":
        return RedisLeaseBackend(alias=settings.LOCK_CACHE_ALIAS)
    return DatabaseLeaseBackend()


def get_lock_service():
    return LockService(build_lease_backend(), default_ttl_ms=settings.LOCK_DEFAULT_TTL_MS)
