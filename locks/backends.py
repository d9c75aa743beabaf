from datetime import timedelta

from django.db import IntegrityError, transaction
from django.utils import timezone
from django_redis import get_redis_connection

from .models import LockLease

# Compare-and-delete in one server-side step: a stale holder whose lease
# expired and was re-acquired by someone else cannot delete the new lease.
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class RedisLeaseBackend:
    key_prefix = "lock:"

    def __init__(self, alias="default"):
        self.alias = alias
        self._release_script = None

    def _client(self):
        return get_redis_connection(self.alias)

    def _key(self, key):
        return f"{self.key_prefix}{key}"

    def acquire(self, key, token, ttl_ms):
        # SET lock:<key> <token> NX PX <ttl>
        return bool(self._client().set(self._key(key), token, nx=True, px=ttl_ms))

    def release(self, key, token):
        if self._release_script is None:
            self._release_script = self._client().register_script(RELEASE_SCRIPT)
        result = self._release_script(keys=[self._key(key)], args=[token])
        return int(result or 0) == 1


class DatabaseLeaseBackend:
    """
    Leases stored as ``LockLease`` rows.

    The unique constraint on ``key`` turns the insert into the atomic
    set-if-absent; release is one conditional DELETE.
    """

    def acquire(self, key, token, ttl_ms):
        now = timezone.now()
        try:
            with transaction.atomic():
                LockLease.objects.filter(key=key, expires_at__lte=now).delete()
                LockLease.objects.create(
                    key=key,
                    token=token,
                    expires_at=now + timedelta(milliseconds=ttl_ms),
                )
        except IntegrityError:
            return False
        return True

    def release(self, key, token):
        deleted, _ = LockLease.objects.filter(
            key=key,
            token=token,
            expires_at__gt=timezone.now(),
        ).delete()
        return deleted > 0

    @staticmethod
    def purge_expired():
        deleted, _ = LockLease.objects.filter(expires_at__lte=timezone.now()).delete()
        return deleted
