"""
Daily incremental sync scheduler.
Runs one round immediately on start, then every DAILY_SYNC_INTERVAL seconds.
Each round kicks off an incremental job per active Shopify connection; the jobs
themselves run concurrently as their own tasks.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from connection_store import ConnectionStore
from sync_engine import SyncOrchestrator
from sync_models import SyncJob
from sync_status import SyncMode

logger = logging.getLogger(__name__)


class SyncScheduler:

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        connections: ConnectionStore,
        interval: float = 24 * 60 * 60,
        stagger: float = 1.0,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
    ):
        self.orchestrator = orchestrator
        self.connections = connections
        self.interval = interval
        self.stagger = stagger
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.is_running:
            logger.warning("Sync scheduler is already running")
            return

        async def _loop():
            while True:
                try:
                    await self.run_daily_sync()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    # Keep the loop alive; next tick gets another chance
                    logger.error(f"Daily sync round failed: {e}")
                await self._sleep(self.interval)

        self._task = asyncio.create_task(_loop(), name="order-sync-scheduler")
        logger.info(f"Started sync scheduler (interval={self.interval:.0f}s, first run now)")

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        logger.info("Sync scheduler stopped")

    async def run_daily_sync(self) -> dict:
        """Start an incremental job for every active connection. Returns a summary."""
        connections = await self.connections.list_active()
        summary = {"total": len(connections), "started": 0, "skipped": 0, "failed": 0}

        if not connections:
            logger.info("No active Shopify connections found. Skipping daily sync.")
            return summary

        logger.info(f"Daily sync: {len(connections)} Shopify connection(s)")

        for index, connection in enumerate(connections):
            tenant_id = connection.tenant_id
            try:
                if self.orchestrator.is_running(tenant_id):
                    summary["skipped"] += 1
                    logger.info(f"Skipping {tenant_id}: a sync is already running")
                    continue
                job = await self.orchestrator.start(
                    tenant_id,
                    SyncMode.INCREMENTAL,
                    connection.credential,
                    self.orchestrator.lower_bound_for(SyncMode.INCREMENTAL, connection.last_sync_at),
                )
                if job is not None:
                    summary["started"] += 1
            except Exception as e:
                summary["failed"] += 1
                logger.error(f"Daily sync could not start for {tenant_id}: {e}")

            if self.stagger > 0 and index < len(connections) - 1:
                await self._sleep(self.stagger)

        logger.info(
            f"Daily sync round done: {summary['started']} started, "
            f"{summary['skipped']} skipped, {summary['failed']} failed"
        )
        return summary

    async def trigger_manual_sync(self, tenant_id: str) -> Optional[SyncJob]:
        """'Sync now' from the dashboard."""
        logger.info(f"Manual sync triggered for {tenant_id}")
        return await self.orchestrator.start_incremental(tenant_id)
