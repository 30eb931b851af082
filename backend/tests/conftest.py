"""
Shared fixtures for the order sync tests.

FakeSupabase mimics the small slice of the supabase-py query builder the engine
uses (table/select/eq/in_/gte/lte/order/limit/upsert/update/execute) on top of
plain dicts, so tests can assert on stored rows.
FakeShop serves a scripted Shopify store through httpx.MockTransport so the real
ShopifyClient (URL building, Link header parsing, error mapping) is exercised.
"""

import copy
import os
import sys
from datetime import datetime, timezone
from unittest.mock import MagicMock

import httpx
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from connection_store import ConnectionStore
from order_store import OrderStore
from shopify_client import ShopifyClient
from sync_engine import SyncOrchestrator
from sync_progress import SyncProgressTracker
from sync_settings import SyncSettings

SHOP_URL = "demo-store.myshopify.com"
FIXED_NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Supabase fake
# ---------------------------------------------------------------------------

class FakeQuery:

    def __init__(self, db: "FakeSupabase", table_name: str):
        self.db = db
        self.table_name = table_name
        self._op = "select"
        self._payload = None
        self._conflict_keys = None
        self._filters = []
        self._order = None
        self._limit = None

    def select(self, columns="*"):
        self._op = "select"
        return self

    def upsert(self, row, on_conflict=None):
        self._op = "upsert"
        self._payload = row
        self._conflict_keys = (on_conflict or "id").split(",")
        return self

    def update(self, data):
        self._op = "update"
        self._payload = data
        return self

    def eq(self, column, value):
        self._filters.append(lambda r: r.get(column) == value)
        return self

    def in_(self, column, values):
        values = list(values)
        self._filters.append(lambda r: r.get(column) in values)
        return self

    def gte(self, column, value):
        self._filters.append(lambda r: r.get(column) is not None and r.get(column) >= value)
        return self

    def lte(self, column, value):
        self._filters.append(lambda r: r.get(column) is not None and r.get(column) <= value)
        return self

    def order(self, column, desc=False):
        self._order = (column, desc)
        return self

    def limit(self, n):
        self._limit = n
        return self

    def _matches(self, row):
        return all(f(row) for f in self._filters)

    def execute(self):
        self.db.calls.append((self.table_name, self._op, copy.deepcopy(self._payload)))
        if self.db.should_fail(self.table_name, self._op, self._payload):
            raise RuntimeError(f"simulated {self._op} failure on {self.table_name}")

        table = self.db.tables.setdefault(self.table_name, {})

        if self._op == "upsert":
            rows = self._payload if isinstance(self._payload, list) else [self._payload]
            for row in rows:
                key = tuple(row[k] for k in self._conflict_keys)
                table[key] = {**table.get(key, {}), **copy.deepcopy(row)}
            return MagicMock(data=copy.deepcopy(rows))

        if self._op == "update":
            updated = []
            for row in table.values():
                if self._matches(row):
                    row.update(copy.deepcopy(self._payload))
                    updated.append(copy.deepcopy(row))
            return MagicMock(data=updated)

        rows = [copy.deepcopy(r) for r in table.values() if self._matches(r)]
        if self._order:
            column, desc = self._order
            rows.sort(key=lambda r: r.get(column) or "", reverse=desc)
        if self._limit is not None:
            rows = rows[:self._limit]
        return MagicMock(data=rows)


class FakeSupabase:

    def __init__(self):
        self.tables: dict[str, dict] = {}
        self.calls: list = []
        self.failures: list = []

    def table(self, name):
        return FakeQuery(self, name)

    def fail_when(self, table_name, op, predicate=lambda payload: True):
        self.failures.append((table_name, op, predicate))

    def should_fail(self, table_name, op, payload):
        return any(t == table_name and o == op and p(payload) for t, o, p in self.failures)

    def rows(self, table_name) -> list[dict]:
        return list(self.tables.get(table_name, {}).values())

    def seed(self, table_name, key, row):
        self.tables.setdefault(table_name, {})[key] = copy.deepcopy(row)


# ---------------------------------------------------------------------------
# Shopify fake
# ---------------------------------------------------------------------------

def make_order(order_id, **overrides):
    order = {
        "id": order_id,
        "order_number": 1000 + int(order_id),
        "name": f"#{1000 + int(order_id)}",
        "created_at": "2026-02-20T10:00:00Z",
        "updated_at": "2026-02-21T10:00:00Z",
        "currency": "USD",
        "total_price": "25.00",
        "subtotal_price": "20.00",
        "total_tax": "5.00",
        "total_discounts": "0.00",
        "financial_status": "paid",
        "fulfillment_status": None,
        "customer": {"id": 77, "email": "buyer@example.com", "first_name": "Ada", "last_name": "Lovelace"},
        "line_items": [{"id": 1, "product_id": 9, "variant_id": 10, "title": "Mug", "sku": "MUG-1",
                        "quantity": 2, "price": "10.00"}],
    }
    order.update(overrides)
    return order


class FakeShop:
    """
    Scripted Shopify store.

    pages maps a filter name (created_at_min / updated_at_min) to a list of pages,
    each a list of orders. rate_limits maps (filter, page_number) to how many
    429s that page answers before succeeding. errors maps (filter, page_number)
    to an HTTP status to return instead.
    """

    def __init__(self, pages=None, count=None, rate_limits=None, errors=None, count_status=200,
                 retry_after="2.0"):
        self.pages = pages or {}
        self.count = count
        self.rate_limits = dict(rate_limits or {})
        self.errors = dict(errors or {})
        self.count_status = count_status
        self.retry_after = retry_after
        self.requests: list[tuple[str, int]] = []
        self.count_requests: list[str] = []
        self.tokens: list[str] = []

    def _page_url(self, filter_field, page_number):
        return (
            f"https://{SHOP_URL}/admin/api/2025-10/orders.json"
            f"?limit=250&page_info={filter_field}:{page_number}"
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.tokens.append(request.headers.get("X-Shopify-Access-Token"))
        params = request.url.params

        if request.url.path.endswith("/orders/count.json"):
            filter_field = "updated_at_min" if "updated_at_min" in params else "created_at_min"
            self.count_requests.append(filter_field)
            if self.count_status != 200:
                return httpx.Response(self.count_status, json={"errors": "boom"})
            pages = self.pages.get(filter_field, [])
            count = self.count if self.count is not None else sum(len(p) for p in pages)
            return httpx.Response(200, json={"count": count})

        page_info = params.get("page_info")
        if page_info:
            filter_field, number = page_info.split(":")
            page_number = int(number)
        else:
            filter_field = "updated_at_min" if "updated_at_min" in params else "created_at_min"
            page_number = 1
        self.requests.append((filter_field, page_number))

        key = (filter_field, page_number)
        if self.rate_limits.get(key, 0) > 0:
            self.rate_limits[key] -= 1
            return httpx.Response(429, headers={"Retry-After": self.retry_after}, json={"errors": "Exceeded 2 calls per second"})
        if key in self.errors:
            return httpx.Response(self.errors[key], json={"errors": "upstream failure"})

        pages = self.pages.get(filter_field, [])
        orders = pages[page_number - 1] if page_number <= len(pages) else []
        headers = {}
        if page_number < len(pages):
            headers["Link"] = f'<{self._page_url(filter_field, page_number + 1)}>; rel="next"'
        if page_number > 1:
            previous = f'<{self._page_url(filter_field, page_number - 1)}>; rel="previous"'
            headers["Link"] = f"{previous}, {headers['Link']}" if "Link" in headers else previous
        return httpx.Response(200, headers=headers, json={"orders": orders})

    def client(self, **kwargs) -> ShopifyClient:
        return ShopifyClient(transport=httpx.MockTransport(self.handler), **kwargs)


class RecordingSleep:
    """Stand-in for asyncio.sleep that records durations and returns at once."""

    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def fake_supabase():
    return FakeSupabase()


@pytest.fixture
def settings():
    return SyncSettings(
        supabase_url="http://localhost",
        supabase_key="test-key",
        full_sync_delay=120,
        incremental_delay=30,
        rate_limit_cooldown=300,
        max_rate_limit_retries=3,
        max_pages_per_pass=100,
    )


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def build_engine(fake_supabase, settings, recording_sleep):
    """Factory: build_engine(shop) -> SyncOrchestrator wired to the fakes."""
    def _build(shop: FakeShop, clock=lambda: FIXED_NOW):
        return SyncOrchestrator(
            settings=settings,
            client=shop.client(),
            orders=OrderStore(fake_supabase, settings.orders_table, clock=clock),
            progress=SyncProgressTracker(fake_supabase, settings.status_table, clock=clock),
            connections=ConnectionStore(fake_supabase, settings.connections_table),
            sleep=recording_sleep,
            clock=clock,
        )
    return _build


def record_statuses(engine: SyncOrchestrator) -> list[str]:
    """Capture every status written through the engine's progress tracker."""
    statuses = []
    original_update = engine.progress.update

    async def capture_update(tenant_id, **fields):
        if "status" in fields:
            statuses.append(fields["status"])
        return await original_update(tenant_id, **fields)

    engine.progress.update = capture_update
    return statuses


def seed_connection(fake_supabase, tenant_id="t1", **extra):
    row = {
        "tenant_id": tenant_id,
        "shop_url": SHOP_URL,
        "access_token": "shpat_abc",
        "status": "active",
        "initial_sync_completed": False,
        "last_sync_at": None,
    }
    row.update(extra)
    fake_supabase.seed("shopify_connections", (tenant_id,), row)
