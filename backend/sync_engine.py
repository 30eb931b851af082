"""
Shopify Order Sync Engine.
Handles the one-time backfill (after onboarding) and the daily incremental catch-up.
No LLM cost. Pure ETL pipeline.

One job per tenant, each running as its own asyncio task. Inside a job pages are
fetched strictly one after another (the next page URL comes from the previous
response), spaced by SyncPacer. Every step is written through the progress
tracker so pollers, and a restarted process, can see where the job is.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

from connection_store import ConnectionStore
from order_store import OrderStore, PersistResult
from rate_limiter import SyncPacer
from shopify_client import ShopifyClient, ShopifyRateLimitError
from sync_models import StoreCredential, SyncJob
from sync_progress import InvalidSyncTransition, SyncProgressTracker
from sync_settings import SyncSettings
from sync_status import MODE_PASSES, OrderFilter, SyncMode, SyncStage, SyncStatus

logger = logging.getLogger(__name__)

# Jobs that were mid-page when the process died can pick up from these states
_RESUMABLE_STATES = frozenset({SyncStatus.SYNCING, SyncStatus.WAITING, SyncStatus.RATE_LIMITED})


class PageLimitExceeded(Exception):
    """Safety cap on pages per pass was hit. Treated as a fatal job error."""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SyncOrchestrator:
    """Starts, runs, resumes and reports per-tenant order sync jobs."""

    def __init__(
        self,
        settings: SyncSettings,
        client: ShopifyClient,
        orders: OrderStore,
        progress: SyncProgressTracker,
        connections: ConnectionStore,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings
        self.client = client
        self.orders = orders
        self.progress = progress
        self.connections = connections
        self._sleep = sleep
        self.clock = clock
        # Live job tasks keyed by tenant. The only thing that decides "already running".
        self._tasks: dict[str, asyncio.Task] = {}
        self._start_lock = asyncio.Lock()

    # ==================== Triggers ====================

    def is_running(self, tenant_id: str) -> bool:
        task = self._tasks.get(tenant_id)
        return task is not None and not task.done()

    def lower_bound_for(self, mode: str, last_sync_at: Optional[datetime] = None,
                        now: Optional[datetime] = None) -> datetime:
        """
        Window start for a new job.

        full: fixed lookback. incremental: last successful sync minus an overlap
        buffer, or the last 24 hours when the tenant has never synced.
        """
        now = now or self.clock()
        if mode == SyncMode.FULL:
            return now - timedelta(days=self.settings.backfill_days)
        if last_sync_at is not None:
            return _as_utc(last_sync_at) - timedelta(hours=self.settings.incremental_overlap_hours)
        return now - timedelta(hours=self.settings.incremental_fallback_hours)

    async def start(self, tenant_id: str, mode: str, credential: StoreCredential,
                    lower_bound: Optional[datetime] = None) -> SyncJob:
        """
        Start a sync job in the background.

        If the tenant already has a running job this is a no-op and the current
        snapshot is returned.
        """
        if mode not in SyncMode.ALL:
            raise ValueError(f"Unsupported sync mode: {mode}")

        async with self._start_lock:
            if self.is_running(tenant_id):
                logger.info(f"Sync already running for {tenant_id}, skipping duplicate {mode} start")
                return await self.progress.get(tenant_id)

            now = self.clock()
            if lower_bound is None:
                last_sync_at = None
                if mode == SyncMode.INCREMENTAL:
                    connection = await self.connections.get(tenant_id)
                    last_sync_at = connection.last_sync_at if connection else None
                lower_bound = self.lower_bound_for(mode, last_sync_at, now)

            label = "backfill" if mode == SyncMode.FULL else "incremental"
            job = await self.progress.reset(SyncJob(
                tenant_id=tenant_id,
                mode=mode,
                date_lower_bound=_as_utc(lower_bound),
                status=SyncStatus.STARTING,
                stage=SyncStage.INITIALIZING,
                started_at=now,
                message=f"Initializing Shopify {label} sync (orders since {lower_bound.date().isoformat()})...",
            ))
            self._spawn(job, credential, resume=False)

        logger.info(f"Started {mode} sync for {tenant_id} (orders since {job.date_lower_bound.isoformat()})")
        return job

    async def start_incremental(self, tenant_id: str) -> Optional[SyncJob]:
        """Daily / manual entry point: load the stored connection and catch up."""
        connection = await self.connections.get(tenant_id)
        if connection is None:
            logger.warning(f"No Shopify connection found for {tenant_id}, skipping incremental sync")
            return None
        lower_bound = self.lower_bound_for(SyncMode.INCREMENTAL, connection.last_sync_at)
        return await self.start(tenant_id, SyncMode.INCREMENTAL, connection.credential, lower_bound)

    async def get_status(self, tenant_id: str) -> Optional[SyncJob]:
        return await self.progress.get(tenant_id)

    async def status_payload(self, tenant_id: str) -> dict:
        """Shape returned to status pollers."""
        job = await self.get_status(tenant_id)
        if job is None:
            job = SyncJob(tenant_id=tenant_id, message="No sync has run yet")
        return job.to_row()

    async def wait(self, tenant_id: str):
        """Block until the tenant's current job (if any) finishes."""
        task = self._tasks.get(tenant_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    # ==================== Lifecycle ====================

    def _spawn(self, job: SyncJob, credential: StoreCredential, resume: bool):
        tenant_id = job.tenant_id
        task = asyncio.create_task(self._run(job, credential, resume), name=f"order-sync:{tenant_id}")
        self._tasks[tenant_id] = task

        def _done(t: asyncio.Task):
            if self._tasks.get(tenant_id) is t:
                self._tasks.pop(tenant_id, None)

        task.add_done_callback(_done)

    async def recover_interrupted_jobs(self) -> list[str]:
        """
        Resume jobs that were active when the previous process died.

        Called on startup. The durable snapshot carries the pass and page cursor,
        so the job continues where it stopped instead of starting over.
        """
        resumed = []
        for stale in await self.progress.list_active():
            tenant_id = stale.tenant_id
            # Same lock as start(): a tenant gets at most one live task
            async with self._start_lock:
                if self.is_running(tenant_id):
                    continue
                # A start() that finished while we waited has replaced the stale row
                job = await self.progress.get(tenant_id)
                if job is None or not job.is_active:
                    continue

                connection = await self.connections.get(tenant_id)
                if connection is None:
                    await self._fail(tenant_id, "Reset on restart: Shopify connection no longer available")
                    continue

                job = await self.progress.update(
                    tenant_id,
                    resume_at=self._interrupted_deadline(job),
                    message="Resuming sync after restart...",
                )
                self._spawn(job, connection.credential, resume=True)
                resumed.append(tenant_id)

        if resumed:
            logger.info(f"Resumed {len(resumed)} interrupted sync job(s): {resumed}")
        return resumed

    async def shutdown(self):
        """
        Cancel running jobs on process shutdown.

        Snapshots are left as they are so recover_interrupted_jobs() picks them up.
        """
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Cancelled {len(tasks)} running sync job(s) on shutdown")

    # ==================== Job body ====================

    async def _run(self, job: SyncJob, credential: StoreCredential, resume: bool):
        tenant_id = job.tenant_id
        pacer = SyncPacer(self.settings, job.mode, sleep=self._sleep)
        passes = MODE_PASSES[job.mode]

        try:
            if resume and job.status in _RESUMABLE_STATES:
                await self._finish_interrupted_delay(job, pacer)
            else:
                job = await self._count(job, credential)

            for pass_index in range(job.current_pass, len(passes)):
                filter_field = passes[pass_index]
                url = None
                if pass_index == job.current_pass:
                    url = job.next_page_url
                if not url:
                    url = self.client.orders_url(credential.shop_url, filter_field, job.date_lower_bound)
                job = await self._run_pass(job, credential, pacer, pass_index, filter_field, url)

            completed_at = self.clock()
            job = await self.progress.update(
                tenant_id,
                status=SyncStatus.COMPLETED,
                stage=SyncStage.FINISHED,
                next_page_url=None,
                completed_at=completed_at,
                message=f"{job.mode} sync completed! {job.processed_count} orders synced successfully.",
            )
            await self.connections.mark_synced(tenant_id, job.mode, completed_at)
            logger.info(
                f"{job.mode} sync complete for {tenant_id}: "
                f"{job.processed_count} orders, {job.current_page} pages"
            )

        except asyncio.CancelledError:
            logger.info(f"Sync task for {tenant_id} cancelled; snapshot kept for resume")
            raise
        except Exception as e:
            logger.error(f"{job.mode} sync failed for {tenant_id}: {e}")
            await self._fail(tenant_id, f"{job.mode} sync failed: {e}")

    def _interrupted_deadline(self, job: SyncJob) -> Optional[datetime]:
        """
        When a job stopped mid-wait or mid-cooldown, the time that delay ends.

        Snapshots without resume_at fall back to updated_at plus the delay the
        state implies.
        """
        if job.status not in (SyncStatus.WAITING, SyncStatus.RATE_LIMITED):
            return None
        if job.resume_at is not None:
            return _as_utc(job.resume_at)
        if job.updated_at is None:
            return None
        pacer = SyncPacer(self.settings, job.mode)
        delay = pacer.page_delay if job.status == SyncStatus.WAITING else pacer.cooldown_seconds()
        return _as_utc(job.updated_at) + timedelta(seconds=delay)

    async def _finish_interrupted_delay(self, job: SyncJob, pacer: SyncPacer):
        """A resumed job still owes the rest of the delay it was in when it stopped."""
        resume_at = self._interrupted_deadline(job)
        if resume_at is not None:
            await pacer.wait_until(resume_at, self.clock())

    async def _count(self, job: SyncJob, credential: StoreCredential) -> SyncJob:
        tenant_id = job.tenant_id
        await self.progress.update(
            tenant_id,
            status=SyncStatus.COUNTING,
            stage=SyncStage.COUNTING,
            message=f"Counting orders for {job.mode} sync...",
        )

        since = job.date_lower_bound
        total = await self.client.count_orders(
            credential.shop_url, credential.access_token,
            OrderFilter.CREATED, since, fallback=self.settings.count_fallback,
        )
        if job.mode == SyncMode.INCREMENTAL:
            updated = await self.client.count_orders(
                credential.shop_url, credential.access_token,
                OrderFilter.UPDATED, since, fallback=0,
            )
            # The two passes overlap, so the larger count is the better estimate
            total = max(total, updated)

        return await self.progress.update(
            tenant_id,
            status=SyncStatus.SYNCING,
            stage=SyncStage.SYNCING,
            total_estimate=total,
            current_pass=0,
            next_page_url=None,
            message=f"Found ~{total} orders. Starting {job.mode} sync...",
        )

    async def _run_pass(self, job: SyncJob, credential: StoreCredential, pacer: SyncPacer,
                        pass_index: int, filter_field: str, url: str) -> SyncJob:
        tenant_id = job.tenant_id
        pages_in_pass = 0
        retrying = False

        logger.info(f"Sync pass {pass_index + 1} ({filter_field}) for {tenant_id}")

        while True:
            if not retrying:
                if pages_in_pass >= self.settings.max_pages_per_pass:
                    raise PageLimitExceeded(
                        f"Stopped after {pages_in_pass} pages ({filter_field}); page limit reached"
                    )
                if pacer.needs_wait:
                    await self.progress.update(
                        tenant_id,
                        status=SyncStatus.WAITING,
                        stage=SyncStage.WAITING,
                        resume_at=self.clock() + timedelta(seconds=pacer.page_delay),
                        message=(
                            f"Waiting {pacer.page_delay:.0f}s before fetching page "
                            f"{job.current_page + 1}... (rate limit protection)"
                        ),
                    )
                    await pacer.wait_before_request()

            job = await self.progress.update(
                tenant_id,
                status=SyncStatus.SYNCING,
                stage=SyncStage.SYNCING,
                current_pass=pass_index,
                resume_at=None,
                next_page_url=url,
                message=(
                    f"Syncing page {job.current_page + 1}... "
                    f"({job.processed_count}/{job.total_estimate} orders)"
                ),
            )

            pacer.record_request()
            try:
                page = await self.client.fetch_page(url, credential.access_token)
            except ShopifyRateLimitError as e:
                seconds = pacer.begin_cooldown(e.retry_after)
                await self.progress.update(
                    tenant_id,
                    status=SyncStatus.RATE_LIMITED,
                    stage=SyncStage.RATE_LIMITED,
                    resume_at=self.clock() + timedelta(seconds=seconds),
                    message=f"Rate limit reached. Waiting {seconds / 60:.0f} minutes before retrying...",
                )
                await pacer.sleep(seconds)
                # Same URL again: the cursor only advances on success
                retrying = True
                continue

            retrying = False
            pacer.record_success()
            pages_in_pass += 1

            result = PersistResult()
            if page.orders:
                result = await self.orders.persist(tenant_id, credential.shop_url, page.orders)
                if result.failed or result.skipped:
                    logger.warning(
                        f"Page {job.current_page + 1} for {tenant_id}: "
                        f"{result.failed} failed, {result.skipped} skipped of {len(page.orders)}"
                    )

            next_url = None if page.is_last else page.next_url
            job = await self.progress.update(
                tenant_id,
                processed_count=job.processed_count + result.stored,
                current_page=job.current_page + 1,
                next_page_url=next_url,
                message=(
                    f"Stored {result.stored} orders from page {job.current_page + 1} "
                    f"({job.processed_count + result.stored}/{job.total_estimate})"
                ),
            )

            if next_url is None:
                break
            url = next_url

        if pass_index + 1 < len(MODE_PASSES[job.mode]):
            job = await self.progress.update(tenant_id, current_pass=pass_index + 1, next_page_url=None)
        return job

    async def _fail(self, tenant_id: str, message: str):
        try:
            await self.progress.update(
                tenant_id,
                status=SyncStatus.ERROR,
                stage=SyncStage.FAILED,
                error_at=self.clock(),
                message=message,
            )
        except InvalidSyncTransition as e:
            logger.error(f"Could not record sync failure for {tenant_id}: {e}")
