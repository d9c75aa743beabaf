import logging

from django.core.cache import caches
from django.utils import timezone

logger = logging.getLogger(__name__)

GENERATION_KEY_PREFIX = "cache:generation"


def _new_generation_value() -> int:
    return int(timezone.now().timestamp() * 1000)


class CacheLayer:
    """
    Read-through accelerator over Django's cache framework.

    Entries are derived state only. Every failure of the underlying backend is
    logged and treated as a miss or a no-op, so callers always fall back to
    the database and stay correct when the cache is gone.
    """

    def __init__(self, alias: str = "default"):
        self.alias = alias

    @property
    def backend(self):
        return caches[self.alias]

    def get(self, key: str):
        try:
            return self.backend.get(key)
        except Exception as exc:
            logger.warning("Cache get failed key=%s error=%s", key, exc)
            return None

    def set(self, key: str, value, ttl=None) -> None:
        try:
            self.backend.set(key, value, ttl)
        except Exception as exc:
            logger.warning("Cache set failed key=%s error=%s", key, exc)

    def delete(self, key: str) -> None:
        try:
            self.backend.delete(key)
        except Exception as exc:
            logger.warning("Cache delete failed key=%s error=%s", key, exc)

    def delete_by_pattern(self, prefix: str) -> None:
        """
        Drop every key under ``prefix``.

        django-redis can sweep keys natively. Backends that cannot scan keys
        rely on the namespace generation used by ``versioned_key``; it is
        bumped in both cases.
        """
        sweeper = getattr(self.backend, "delete_pattern", None)
        if callable(sweeper):
            try:
                sweeper(f"{prefix}:*")
            except Exception as exc:
                logger.warning("Cache pattern sweep failed prefix=%s error=%s", prefix, exc)
        self._bump_generation(prefix)

    def generation(self, namespace: str) -> int:
        key = f"{GENERATION_KEY_PREFIX}:{namespace}"
        value = self.get(key)
        if value is None:
            value = _new_generation_value()
            # add, not set: a concurrent bump must win over a fresh seed.
            try:
                added = self.backend.add(key, value, None)
            except Exception as exc:
                logger.warning("Cache generation seed failed namespace=%s error=%s", namespace, exc)
                added = True
            if not added:
                value = self.get(key) or value
        return int(value)

    def versioned_key(self, namespace: str, *parts) -> str:
        normalized_parts = [str(part).strip() for part in parts if str(part).strip()]
        key = f"{namespace}:g{self.generation(namespace)}"
        if normalized_parts:
            key = f"{key}:{':'.join(normalized_parts)}"
        return key

    def _bump_generation(self, namespace: str) -> None:
        key = f"{GENERATION_KEY_PREFIX}:{namespace}"
        try:
            self.backend.incr(key)
        except ValueError:
            # Missing counter; any fresh value differs from the one in use.
            self.set(key, _new_generation_value(), None)
        except Exception as exc:
            logger.warning("Cache generation bump failed namespace=%s error=%s", namespace, exc)


cache_layer = CacheLayer()
