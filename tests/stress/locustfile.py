"""
Storefront Load Testing with Locust

Prepare a database with an admin account and one low-stock saree, then run:
    python -m flask --app storefront system init --admin-email admin@example.com
    locust -f tests/stress/locustfile.py --host http://127.0.0.1:5000

Or headless:
    STRESS_PRODUCT_ID=1 STRESS_INITIAL_STOCK=25 \
    locust -f tests/stress/locustfile.py --host http://127.0.0.1:5000 \
           --users 20 --spawn-rate 5 --run-time 60s --headless

Shoppers race for the same product. A placed order must never push stock
below zero: the summary compares units sold against STRESS_INITIAL_STOCK.

Pass thresholds:
- p95 response time < 500ms for reads
- p95 response time < 1000ms for writes
- Error rate < 1% (OUT_OF_STOCK rejections are expected, not errors)
- Units sold <= initial stock
"""

import os
import time
import uuid
import random
from typing import Optional, Dict, List

from locust import HttpUser, task, between, events


# =============================================================================
# CONFIGURATION
# =============================================================================

PRODUCT_ID = int(os.environ.get("STRESS_PRODUCT_ID", "1"))
INITIAL_STOCK = int(os.environ.get("STRESS_INITIAL_STOCK", "0")) or None
PASSWORD = "LoadTest123!"

SHIPPING_ADDRESS = {
    "label": "Home",
    "full_address": "21 Loom Street",
    "city": "Kanchipuram",
    "pincode": "631501",
    "phone": "9800000000",
}


# =============================================================================
# METRICS TRACKING
# =============================================================================

class MetricsCollector:
    """Collect and report metrics."""

    def __init__(self):
        self.request_counts: Dict[str, int] = {}
        self.error_counts: Dict[str, int] = {}
        self.response_times: Dict[str, List[float]] = {}
        self.units_sold = 0
        self.units_returned = 0
        self.stock_rejections = 0

    def record(self, name: str, response_time: float, success: bool):
        self.request_counts.setdefault(name, 0)
        self.error_counts.setdefault(name, 0)
        self.response_times.setdefault(name, [])

        self.request_counts[name] += 1
        if not success:
            self.error_counts[name] += 1
        self.response_times[name].append(response_time)

    def get_summary(self) -> Dict:
        summary = {}
        for name in self.request_counts:
            times = sorted(self.response_times[name])
            count = len(times)
            if count == 0:
                continue

            p50_idx = int(count * 0.50)
            p95_idx = int(count * 0.95)

            summary[name] = {
                "count": self.request_counts[name],
                "errors": self.error_counts[name],
                "error_rate": self.error_counts[name] / self.request_counts[name] * 100,
                "avg_ms": sum(times) / count,
                "p50_ms": times[p50_idx] if p50_idx < count else times[-1],
                "p95_ms": times[p95_idx] if p95_idx < count else times[-1],
            }
        return summary


metrics = MetricsCollector()


# =============================================================================
# USER BEHAVIORS
# =============================================================================

class StorefrontUser(HttpUser):
    """Customer that registers a fresh account on start."""
    wait_time = between(0.5, 2)
    abstract = True

    token: Optional[str] = None

    def on_start(self):
        email = f"load-{uuid.uuid4().hex[:12]}@example.com"
        response = self.client.post(
            "/api/auth/register",
            json={"email": email, "password": PASSWORD, "display_name": "Load Tester"},
            name="auth/register",
        )
        if response.status_code == 201:
            self.token = response.json().get("token")

    def get_headers(self) -> Dict:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def timed_get(self, path: str, name: str, ok=(200,), **kwargs):
        start = time.time()
        response = self.client.get(path, headers=self.get_headers(), name=name, **kwargs)
        metrics.record(name, (time.time() - start) * 1000, response.status_code in ok)
        return response


class BrowsingUser(StorefrontUser):
    """Window shopper: catalog reads only."""
    weight = 3

    @task(5)
    def list_products(self):
        self.timed_get("/api/products", "products/list", params={"sort": random.choice(["newest", "price_asc"])})

    @task(3)
    def trending(self):
        self.timed_get("/api/products/trending", "products/trending")

    @task(2)
    def categories(self):
        self.timed_get("/api/categories", "categories/list")

    @task(2)
    def product_detail(self):
        self.timed_get(f"/api/products/{PRODUCT_ID}", "products/get", ok=(200, 404))

    @task(1)
    def settings(self):
        self.timed_get("/api/settings", "settings/get")

    @task(1)
    def health_check(self):
        self.timed_get("/health", "system/health")


class ShopperUser(StorefrontUser):
    """Buyer racing for the contested product."""
    weight = 2

    placed_orders: List[int]

    def on_start(self):
        super().on_start()
        self.placed_orders = []

    @task(4)
    def place_order(self):
        quantity = random.randint(1, 2)
        start = time.time()
        response = self.client.post(
            "/api/orders",
            json={
                "items": [{"product_id": PRODUCT_ID, "quantity": quantity}],
                "shipping_address": SHIPPING_ADDRESS,
            },
            headers=self.get_headers(),
            name="orders/create",
        )
        elapsed = (time.time() - start) * 1000

        if response.status_code == 201:
            metrics.units_sold += quantity
            self.placed_orders.append(response.json()["order"]["id"])
            metrics.record("orders/create", elapsed, True)
        elif response.status_code == 400 and response.json().get("kind") == "OUT_OF_STOCK":
            metrics.stock_rejections += 1
            metrics.record("orders/create", elapsed, True)
        else:
            metrics.record("orders/create", elapsed, False)

    @task(1)
    def cancel_recent_order(self):
        """Cancelling returns units to the pool for other shoppers."""
        if not self.placed_orders:
            return
        order_id = self.placed_orders.pop()

        start = time.time()
        response = self.client.put(
            f"/api/orders/{order_id}/cancel",
            json={"reason": "Load test"},
            headers=self.get_headers(),
            name="orders/cancel",
        )
        metrics.record("orders/cancel", (time.time() - start) * 1000, response.status_code == 200)
        if response.status_code == 200:
            order = response.json()["order"]
            metrics.units_returned += sum(item["quantity"] for item in order["items"])

    @task(2)
    def my_orders(self):
        self.timed_get("/api/orders/my-orders", "orders/mine")

    @task(1)
    def quote(self):
        start = time.time()
        response = self.client.post(
            "/api/orders/quote",
            json={"items": [{"product_id": PRODUCT_ID, "quantity": 1}]},
            headers=self.get_headers(),
            name="orders/quote",
        )
        metrics.record("orders/quote", (time.time() - start) * 1000, response.status_code in (200, 400))


# =============================================================================
# EVENT HANDLERS
# =============================================================================

@events.test_stop.add_listener
def on_test_stop(environment, **kwargs):
    """Print summary when test stops."""
    print("\n" + "=" * 80)
    print("LOAD TEST SUMMARY")
    print("=" * 80)

    summary = metrics.get_summary()

    print(f"\n{'Endpoint':<30} {'Count':>8} {'Errors':>8} {'Err%':>8} {'Avg(ms)':>10} {'P95(ms)':>10}")
    print("-" * 80)

    total_requests = 0
    total_errors = 0
    all_pass = True

    for name, stats in sorted(summary.items()):
        total_requests += stats["count"]
        total_errors += stats["errors"]

        p95_threshold = 1000 if "create" in name or "cancel" in name else 500
        passed = stats["p95_ms"] < p95_threshold and stats["error_rate"] < 1

        status = "PASS" if passed else "FAIL"
        if not passed:
            all_pass = False

        print(f"{name:<30} {stats['count']:>8} {stats['errors']:>8} {stats['error_rate']:>7.2f}% {stats['avg_ms']:>9.1f} {stats['p95_ms']:>9.1f} [{status}]")

    print("-" * 80)
    print(f"{'TOTAL':<30} {total_requests:>8} {total_errors:>8} {total_errors/max(total_requests,1)*100:>7.2f}%")

    net_sold = metrics.units_sold - metrics.units_returned
    print(f"\nUnits sold: {metrics.units_sold}  returned by cancel: {metrics.units_returned}  "
          f"net: {net_sold}  out-of-stock rejections: {metrics.stock_rejections}")
    if INITIAL_STOCK is not None:
        if net_sold > INITIAL_STOCK:
            all_pass = False
            print(f"[FAIL] Oversold: {net_sold} units against initial stock {INITIAL_STOCK}")
        else:
            print(f"[PASS] No oversell against initial stock {INITIAL_STOCK}")
    print("=" * 80)

    if all_pass:
        print("\n[PASS] All endpoints within thresholds")
    else:
        print("\n[FAIL] Some checks failed")
        print("  - Reads: P95 < 500ms, Error rate < 1%")
        print("  - Writes (create/cancel): P95 < 1000ms, Error rate < 1%")

    print("=" * 80)
