import threading
import time
from datetime import timedelta
from unittest import mock

from django.db import DatabaseError, connection
from django.test import TestCase, TransactionTestCase
from django.utils import timezone
from redis.exceptions import ConnectionError as RedisConnectionError

from core.exceptions import LockUnavailable

from .backends import RELEASE_SCRIPT, DatabaseLeaseBackend, RedisLeaseBackend
from .models import LockLease
from .service import LockService
from .tasks import purge_expired_leases


def _expire(key):
    LockLease.objects.filter(key=key).update(expires_at=timezone.now() - timedelta(seconds=1))


class DatabaseLeaseTests(TestCase):
    def setUp(self):
        self.locks = LockService(DatabaseLeaseBackend(), default_ttl_ms=5000)

    def test_acquire_returns_unique_token_and_blocks_second_holder(self):
        token = self.locks.acquire("cart:1")

        self.assertTrue(token)
        self.assertIsNone(self.locks.acquire("cart:1"))
        self.assertEqual(LockLease.objects.get(key="cart:1").token, token)

    def test_distinct_keys_do_not_contend(self):
        self.assertIsNotNone(self.locks.acquire("cart:1"))
        self.assertIsNotNone(self.locks.acquire("checkout:1"))
        self.assertIsNotNone(self.locks.acquire("cart:2"))

    def test_release_with_matching_token(self):
        token = self.locks.acquire("cart:1")

        self.assertTrue(self.locks.release("cart:1", token))
        self.assertFalse(LockLease.objects.filter(key="cart:1").exists())
        self.assertIsNotNone(self.locks.acquire("cart:1"))

    def test_release_with_wrong_token_keeps_lease(self):
        token = self.locks.acquire("cart:1")

        self.assertFalse(self.locks.release("cart:1", "not-the-token"))
        self.assertEqual(LockLease.objects.get(key="cart:1").token, token)

    def test_expired_lease_can_be_reacquired(self):
        self.locks.acquire("cart:1")
        _expire("cart:1")

        self.assertIsNotNone(self.locks.acquire("cart:1"))

    def test_stale_holder_cannot_release_reacquired_lease(self):
        stale_token = self.locks.acquire("cart:1")
        _expire("cart:1")
        fresh_token = self.locks.acquire("cart:1")

        self.assertFalse(self.locks.release("cart:1", stale_token))
        self.assertEqual(LockLease.objects.get(key="cart:1").token, fresh_token)
        self.assertTrue(self.locks.release("cart:1", fresh_token))

    def test_release_after_expiry_reports_false(self):
        token = self.locks.acquire("cart:1")
        _expire("cart:1")

        self.assertFalse(self.locks.release("cart:1", token))

    def test_rejects_non_positive_ttl(self):
        with self.assertRaises(ValueError):
            self.locks.acquire("cart:1", ttl=-5)
        with self.assertRaises(ValueError):
            self.locks.acquire("cart:1", ttl=0)

    def test_hold_releases_on_error(self):
        with self.assertRaises(RuntimeError):
            with self.locks.hold("cart:1"):
                self.assertTrue(LockLease.objects.filter(key="cart:1").exists())
                raise RuntimeError("boom")

        self.assertFalse(LockLease.objects.filter(key="cart:1").exists())

    def test_hold_raises_lock_unavailable_when_busy(self):
        self.locks.acquire("cart:1")

        with self.assertRaises(LockUnavailable) as ctx:
            with self.locks.hold("cart:1"):
                self.fail("body must not run without the lease")

        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(ctx.exception.key, "cart:1")

    def test_hold_many_is_all_or_nothing(self):
        self.locks.acquire("product:3")

        with self.assertRaises(LockUnavailable):
            with self.locks.hold_many(["product:1", "product:2", "product:3"]):
                pass

        self.assertEqual(list(LockLease.objects.values_list("key", flat=True)), ["product:3"])

    def test_hold_many_holds_each_key_once(self):
        with self.locks.hold_many(["product:1", "product:2", "product:1"]) as tokens:
            self.assertEqual(list(tokens), ["product:1", "product:2"])
            self.assertEqual(LockLease.objects.count(), 2)

        self.assertEqual(LockLease.objects.count(), 0)

    def test_store_failure_on_acquire_is_retryable(self):
        backend = mock.Mock()
        backend.acquire.side_effect = DatabaseError("connection lost")
        locks = LockService(backend)

        with self.assertRaises(LockUnavailable):
            locks.acquire("cart:1")

    def test_store_failure_on_release_reports_false(self):
        backend = mock.Mock()
        backend.release.side_effect = DatabaseError("connection lost")
        locks = LockService(backend)

        self.assertFalse(locks.release("cart:1", "token"))

    def test_purge_task_removes_only_expired_rows(self):
        self.locks.acquire("cart:1")
        self.locks.acquire("cart:2")
        _expire("cart:1")

        deleted = purge_expired_leases.apply().get()

        self.assertEqual(deleted, 1)
        self.assertEqual(list(LockLease.objects.values_list("key", flat=True)), ["cart:2"])


class RedisLeaseBackendTests(TestCase):
    def setUp(self):
        self.client = mock.Mock()
        patcher = mock.patch("locks.backends.get_redis_connection", return_value=self.client)
        self.get_connection = patcher.start()
        self.addCleanup(patcher.stop)
        self.backend = RedisLeaseBackend(alias="default")

    def test_acquire_is_single_set_nx_with_expiry(self):
        self.client.set.return_value = True

        self.assertTrue(self.backend.acquire("cart:7", "tok", 30000))
        self.client.set.assert_called_once_with("lock:cart:7", "tok", nx=True, px=30000)
        self.get_connection.assert_called_with("default")

    def test_acquire_reports_busy_when_key_exists(self):
        self.client.set.return_value = None

        self.assertFalse(self.backend.acquire("cart:7", "tok", 30000))

    def test_release_runs_compare_and_delete_script(self):
        script = mock.Mock(return_value=1)
        self.client.register_script.return_value = script

        self.assertTrue(self.backend.release("cart:7", "tok"))
        self.client.register_script.assert_called_once_with(RELEASE_SCRIPT)
        script.assert_called_once_with(keys=["lock:cart:7"], args=["tok"])

    def test_release_with_foreign_token_returns_false(self):
        self.client.register_script.return_value = mock.Mock(return_value=0)

        self.assertFalse(self.backend.release("cart:7", "someone-else"))

    def test_service_maps_redis_outage_to_lock_unavailable(self):
        self.client.set.side_effect = RedisConnectionError("down")
        locks = LockService(self.backend)

        with self.assertRaises(LockUnavailable):
            locks.acquire("cart:7")


class ConcurrentLeaseTests(TransactionTestCase):
    def test_one_holder_at_a_time_across_threads(self):
        locks = LockService(DatabaseLeaseBackend(), default_ttl_ms=1000)
        guard = threading.Lock()
        state = {"inside": 0, "peak": 0, "done": 0}
        barrier = threading.Barrier(5)
        failures = []

        def worker():
            try:
                barrier.wait(timeout=10)
                for _ in range(500):
                    try:
                        with locks.hold("cart:1"):
                            with guard:
                                state["inside"] += 1
                                state["peak"] = max(state["peak"], state["inside"])
                            time.sleep(0.005)
                            with guard:
                                state["inside"] -= 1
                                state["done"] += 1
                        return
                    except LockUnavailable:
                        time.sleep(0.01)
                failures.append("gave up waiting for the lease")
            except Exception as exc:
                failures.append(exc)
            finally:
                connection.close()

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        self.assertEqual(failures, [])
        self.assertEqual(state["peak"], 1)
        self.assertEqual(state["done"], 5)
