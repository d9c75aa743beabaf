#!/usr/bin/env python3
"""Locust contention test for the stockcart cart and checkout API.

Run `python manage.py seed_catalog` first so the seeded customers and
products exist.

Examples:
  locust -f scripts/locustfile.py --host http://127.0.0.1:8000
  LOCUST_USE_SHAPE=true locust -f scripts/locustfile.py --headless --host http://127.0.0.1:8000

Environment variables:
  LOAD_USER_IDS=1,2,3
  LOAD_BROWSING_WEIGHT=5
  LOAD_BUYER_WEIGHT=5
  LOAD_MIN_WAIT_SECONDS=0.2
  LOAD_MAX_WAIT_SECONDS=1.0
  LOAD_HOT_PRODUCT_PROB=0.7
  LOCUST_STAGES_JSON='[{"duration":120,"users":50,"spawn_rate":10},{"duration":300,"users":200,"spawn_rate":25}]'
"""

from __future__ import annotations

import json
import os
import random
import threading
from typing import Dict, List

from locust import HttpUser, LoadTestShape, between, task

DEFAULT_STAGE_JSON = json.dumps(
    [
        {"duration": 120, "users": 50, "spawn_rate": 10},
        {"duration": 300, "users": 150, "spawn_rate": 20},
        {"duration": 600, "users": 300, "spawn_rate": 30},
    ]
)

# Statuses the API returns for rejections that are correct under contention.
EXPECTED_REJECTIONS = {400, 404, 409, 423}


def _env_int(name: str, default: int, min_value: int = 1) -> int:
    raw = str(os.getenv(name, str(default)) or "").strip()
    try:
        value = int(raw)
    except (TypeError, ValueError):
        value = default
    return max(min_value, value)


def _env_float(name: str, default: float, min_value: float = 0.0) -> float:
    raw = str(os.getenv(name, str(default)) or "").strip()
    try:
        value = float(raw)
    except (TypeError, ValueError):
        value = default
    return max(min_value, value)


def _env_user_ids() -> List[int]:
    raw = os.getenv("LOAD_USER_IDS", "1,2,3")
    ids = []
    for part in raw.split(","):
        part = part.strip()
        if part.isdigit():
            ids.append(int(part))
    return ids or [1, 2, 3]


def _load_stage_profile() -> List[Dict[str, int]]:
    raw = os.getenv("LOCUST_STAGES_JSON", DEFAULT_STAGE_JSON)
    try:
        rows = json.loads(raw)
    except json.JSONDecodeError:
        rows = json.loads(DEFAULT_STAGE_JSON)

    parsed = []
    for row in rows:
        try:
            duration = int(row.get("duration", 0))
            users = int(row.get("users", 1))
            spawn_rate = int(row.get("spawn_rate", 1))
        except (TypeError, ValueError, AttributeError):
            continue
        if duration <= 0 or users <= 0 or spawn_rate <= 0:
            continue
        parsed.append({"duration": duration, "users": users, "spawn_rate": spawn_rate})

    return parsed or json.loads(DEFAULT_STAGE_JSON)


BROWSING_WEIGHT = _env_int("LOAD_BROWSING_WEIGHT", 5)
BUYER_WEIGHT = _env_int("LOAD_BUYER_WEIGHT", 5)
MIN_WAIT_SECONDS = _env_float("LOAD_MIN_WAIT_SECONDS", 0.2, min_value=0.0)
MAX_WAIT_SECONDS = _env_float("LOAD_MAX_WAIT_SECONDS", 1.0, min_value=MIN_WAIT_SECONDS or 0.001)
HOT_PRODUCT_PROB = max(0.0, min(1.0, _env_float("LOAD_HOT_PRODUCT_PROB", 0.7)))


class SharedCatalog:
    """Product ids fetched once and shared by every virtual user."""

    lock = threading.Lock()
    bootstrapped = False
    product_ids: List[int] = []
    user_ids: List[int] = _env_user_ids()

    @classmethod
    def bootstrap(cls, user: "BaseCartUser") -> None:
        if cls.bootstrapped:
            return

        with cls.lock:
            if cls.bootstrapped:
                return

            resp = user.client.get("/api/products/?limit=100", name="/api/products/")
            product_ids: List[int] = []
            if resp.status_code == 200:
                try:
                    rows = (resp.json() or {}).get("products") or []
                except ValueError:
                    rows = []
                for row in rows:
                    pid = row.get("id")
                    if isinstance(pid, int) and row.get("is_available"):
                        product_ids.append(pid)

            cls.product_ids = product_ids
            cls.bootstrapped = True


class BaseCartUser(HttpUser):
    abstract = True
    wait_time = between(MIN_WAIT_SECONDS, MAX_WAIT_SECONDS)

    def on_start(self):
        SharedCatalog.bootstrap(self)
        # Several virtual users share one customer so cart leases contend.
        self.user_id = random.choice(SharedCatalog.user_ids)

    def _pick_product_id(self) -> int | None:
        if not SharedCatalog.product_ids:
            return None
        if random.random() <= HOT_PRODUCT_PROB:
            return SharedCatalog.product_ids[0]
        return random.choice(SharedCatalog.product_ids)

    @staticmethod
    def _settle(resp, ok_statuses):
        if resp.status_code in ok_statuses or resp.status_code in EXPECTED_REJECTIONS:
            resp.success()
        else:
            resp.failure(f"Unexpected status {resp.status_code}")


class BrowsingUser(BaseCartUser):
    weight = BROWSING_WEIGHT

    @task(3)
    def list_products(self):
        self.client.get("/api/products/?sort_by=price&order=asc", name="/api/products/")

    @task(2)
    def view_product(self):
        product_id = self._pick_product_id()
        if not product_id:
            return
        self.client.get(f"/api/products/{product_id}/", name="/api/products/[id]/")

    @task(2)
    def view_cart(self):
        self.client.get(f"/api/carts/user/{self.user_id}/", name="/api/carts/user/[id]/")

    @task(1)
    def view_orders(self):
        self.client.get(f"/api/carts/user/{self.user_id}/orders/", name="/api/carts/user/[id]/orders/")


class BuyerUser(BaseCartUser):
    weight = BUYER_WEIGHT

    @task
    def add_to_cart_and_checkout(self):
        product_id = self._pick_product_id()
        if not product_id:
            return

        with self.client.post(
            f"/api/carts/user/{self.user_id}/items/",
            json={"product_id": product_id, "quantity": random.randint(1, 2)},
            name="/api/carts/user/[id]/items/",
            catch_response=True,
        ) as add_resp:
            self._settle(add_resp, {201})
            if add_resp.status_code != 201:
                return

        with self.client.post(
            f"/api/carts/user/{self.user_id}/checkout/",
            name="/api/carts/user/[id]/checkout/",
            catch_response=True,
        ) as checkout_resp:
            self._settle(checkout_resp, {200})


if os.getenv("LOCUST_USE_SHAPE", "false").strip().lower() in {"1", "true", "yes", "on"}:

    class StagedLoadShape(LoadTestShape):
        stages = _load_stage_profile()

        def tick(self):
            run_time = int(self.get_run_time())
            for stage in self.stages:
                if run_time < stage["duration"]:
                    return stage["users"], stage["spawn_rate"]
            return None
