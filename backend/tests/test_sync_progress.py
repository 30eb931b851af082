"""Progress tracker tests: merge, cache-first reads, durable fallback, best-effort writes."""

import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sync_models import SyncJob
from sync_progress import SyncProgressTracker
from sync_status import SyncMode, SyncStatus
from conftest import FIXED_NOW


def _tracker(supabase, cache=None):
    return SyncProgressTracker(supabase, "sync_status", cache=cache, clock=lambda: FIXED_NOW)


class TestUpdate:

    @pytest.mark.asyncio
    async def test_merges_fields_and_stamps_updated_at(self, fake_supabase):
        tracker = _tracker(fake_supabase)
        await tracker.reset(SyncJob(tenant_id="t1", mode=SyncMode.FULL, status=SyncStatus.STARTING))

        job = await tracker.update("t1", status=SyncStatus.COUNTING, message="Counting...")
        job = await tracker.update("t1", total_estimate=40)

        assert job.status == SyncStatus.COUNTING
        assert job.message == "Counting..."
        assert job.total_estimate == 40
        assert job.mode == SyncMode.FULL
        assert job.updated_at == FIXED_NOW

    @pytest.mark.asyncio
    async def test_writes_durable_row(self, fake_supabase):
        tracker = _tracker(fake_supabase)
        await tracker.reset(SyncJob(tenant_id="t1", status=SyncStatus.STARTING))
        await tracker.update("t1", status=SyncStatus.COUNTING, processed_count=3)

        rows = fake_supabase.rows("sync_status")
        assert len(rows) == 1
        assert rows[0]["tenant_id"] == "t1"
        assert rows[0]["status"] == "counting"
        assert rows[0]["processed_count"] == 3
        assert rows[0]["updated_at"].startswith("2026-03-01T12:00:00")

    @pytest.mark.asyncio
    async def test_durable_write_failure_is_swallowed(self, fake_supabase):
        fake_supabase.fail_when("sync_status", "upsert")
        tracker = _tracker(fake_supabase)

        await tracker.reset(SyncJob(tenant_id="t1", status=SyncStatus.STARTING))
        job = await tracker.update("t1", status=SyncStatus.COUNTING)

        assert job.status == SyncStatus.COUNTING
        assert (await tracker.get("t1")).status == SyncStatus.COUNTING
        assert fake_supabase.rows("sync_status") == []


class TestGet:

    @pytest.mark.asyncio
    async def test_unknown_tenant_returns_none(self, fake_supabase):
        assert await _tracker(fake_supabase).get("nobody") is None

    @pytest.mark.asyncio
    async def test_cache_served_before_store(self, fake_supabase):
        cached = SyncJob(tenant_id="t1", status=SyncStatus.SYNCING, processed_count=12)
        fake_supabase.seed("sync_status", ("t1",), {"tenant_id": "t1", "status": "completed"})

        tracker = _tracker(fake_supabase, cache={"t1": cached})
        job = await tracker.get("t1")

        assert job.status == SyncStatus.SYNCING
        assert not [c for c in fake_supabase.calls if c[1] == "select"]

    @pytest.mark.asyncio
    async def test_cold_start_falls_back_to_store(self, fake_supabase):
        writer = _tracker(fake_supabase)
        await writer.reset(SyncJob(tenant_id="t1", mode=SyncMode.INCREMENTAL, status=SyncStatus.STARTING))
        await writer.update("t1", status=SyncStatus.COUNTING, total_estimate=9,
                            next_page_url="https://demo/orders.json?page_info=abc")

        # New process: empty cache, same table
        reader = _tracker(fake_supabase)
        job = await reader.get("t1")

        assert job.status == SyncStatus.COUNTING
        assert job.mode == SyncMode.INCREMENTAL
        assert job.total_estimate == 9
        assert job.next_page_url == "https://demo/orders.json?page_info=abc"
        assert job.updated_at == FIXED_NOW

    @pytest.mark.asyncio
    async def test_store_read_failure_returns_none(self, fake_supabase):
        fake_supabase.fail_when("sync_status", "select")
        assert await _tracker(fake_supabase).get("t1") is None

    @pytest.mark.asyncio
    async def test_caches_are_per_instance(self, fake_supabase):
        a = _tracker(fake_supabase, cache={})
        b = _tracker(fake_supabase, cache={})
        await a.reset(SyncJob(tenant_id="t1", status=SyncStatus.STARTING))
        fake_supabase.fail_when("sync_status", "select")
        assert await b.get("t1") is None


class TestListActive:

    @pytest.mark.asyncio
    async def test_only_active_rows(self, fake_supabase):
        tracker = _tracker(fake_supabase)
        for tenant, status in [("a", "syncing"), ("b", "completed"), ("c", "rate_limited"), ("d", "error")]:
            fake_supabase.seed("sync_status", (tenant,), {"tenant_id": tenant, "status": status})

        jobs = await tracker.list_active()
        assert sorted(j.tenant_id for j in jobs) == ["a", "c"]
