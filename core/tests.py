from unittest import mock

from django.test import SimpleTestCase, override_settings
from rest_framework import status

from .cache import CacheLayer
from .exceptions import InsufficientStock, LockUnavailable, NotFound, TransactionAborted


class CacheLayerTests(SimpleTestCase):
    def setUp(self):
        self.cache = CacheLayer()
        self.cache.backend.clear()

    def test_get_set_delete(self):
        self.cache.set("carts:user:1", {"id": 1}, 60)
        self.assertEqual(self.cache.get("carts:user:1"), {"id": 1})

        self.cache.delete("carts:user:1")
        self.assertIsNone(self.cache.get("carts:user:1"))

    def test_pattern_delete_moves_versioned_keys(self):
        before = self.cache.versioned_key("products:list", 1, 10, "price", "asc")
        self.cache.set(before, ["page"], 60)

        self.cache.delete_by_pattern("products:list")
        after = self.cache.versioned_key("products:list", 1, 10, "price", "asc")

        self.assertNotEqual(before, after)
        self.assertIsNone(self.cache.get(after))

    def test_versioned_key_shape(self):
        key = self.cache.versioned_key("products:list", 2, "", " name ")
        generation = self.cache.generation("products:list")

        self.assertEqual(key, f"products:list:g{generation}:2:name")

    def test_generation_seed_keeps_a_concurrent_bump(self):
        self.cache.set("cache:generation:carts:user:1", 7, None)

        # The first read misses, as if the bump landed right after it.
        with mock.patch.object(self.cache, "get", side_effect=[None, 7]):
            self.assertEqual(self.cache.generation("carts:user:1"), 7)

        self.assertEqual(self.cache.backend.get("cache:generation:carts:user:1"), 7)

    def test_uses_native_sweep_when_available(self):
        backend = mock.Mock()
        with mock.patch.object(CacheLayer, "backend", new_callable=mock.PropertyMock, return_value=backend):
            self.cache.delete_by_pattern("products:list")

        backend.delete_pattern.assert_called_once_with("products:list:*")
        backend.incr.assert_called_once_with("cache:generation:products:list")

    def test_backend_failures_behave_like_misses(self):
        backend = mock.Mock()
        backend.get.side_effect = ConnectionError("cache down")
        backend.set.side_effect = ConnectionError("cache down")
        backend.delete.side_effect = ConnectionError("cache down")
        backend.delete_pattern.side_effect = ConnectionError("cache down")
        backend.incr.side_effect = ConnectionError("cache down")
        backend.add.side_effect = ConnectionError("cache down")

        with mock.patch.object(CacheLayer, "backend", new_callable=mock.PropertyMock, return_value=backend):
            self.assertIsNone(self.cache.get("products:1"))
            self.cache.set("products:1", {}, 60)
            self.cache.delete("products:1")
            self.cache.delete_by_pattern("products:list")
            self.assertTrue(self.cache.versioned_key("products:list", 1).startswith("products:list:g"))

    @override_settings(CACHES={"default": {"BACKEND": "django.core.cache.backends.dummy.DummyCache"}})
    def test_dummy_backend_always_misses(self):
        self.cache.set("products:1", {"id": 1}, 60)
        self.cache.delete_by_pattern("products:list")

        self.assertIsNone(self.cache.get("products:1"))


class ServiceErrorTests(SimpleTestCase):
    def test_status_codes_and_retry_hints(self):
        cases = [
            (NotFound("missing"), status.HTTP_404_NOT_FOUND, False),
            (InsufficientStock("short", product_id=1, requested=3, available=2), status.HTTP_409_CONFLICT, False),
            (LockUnavailable("cart:1"), status.HTTP_423_LOCKED, True),
            (TransactionAborted("aborted"), status.HTTP_409_CONFLICT, True),
        ]
        for exc, expected_status, retryable in cases:
            with self.subTest(exc=type(exc).__name__):
                self.assertEqual(exc.status_code, expected_status)
                self.assertEqual(exc.as_payload(), {"error": str(exc), "retryable": retryable})
