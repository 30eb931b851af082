"""Order Sync Worker - process entrypoint.

Wires the sync engine to Supabase and Shopify, resumes jobs interrupted by the
previous shutdown, and runs the daily scheduler until SIGINT/SIGTERM.
"""
import asyncio
import logging
import signal

from connection_store import ConnectionStore
from db_utils import get_supabase
from order_store import OrderStore
from shopify_client import ShopifyClient
from sync_engine import SyncOrchestrator
from sync_progress import SyncProgressTracker
from sync_scheduler import SyncScheduler
from sync_settings import SyncSettings, configure_logging

logger = logging.getLogger(__name__)


def build_orchestrator(settings: SyncSettings, supabase) -> SyncOrchestrator:
    client = ShopifyClient(
        api_version=settings.shopify_api_version,
        page_size=settings.page_size,
        timeout=settings.request_timeout,
        count_timeout=settings.count_timeout,
    )
    return SyncOrchestrator(
        settings=settings,
        client=client,
        orders=OrderStore(supabase, settings.orders_table),
        progress=SyncProgressTracker(supabase, settings.status_table),
        connections=ConnectionStore(supabase, settings.connections_table),
    )


def build_scheduler(settings: SyncSettings, orchestrator: SyncOrchestrator) -> SyncScheduler:
    return SyncScheduler(
        orchestrator,
        orchestrator.connections,
        interval=settings.daily_sync_interval,
        stagger=settings.scheduler_stagger,
    )


async def run_worker(settings: SyncSettings):
    supabase = get_supabase(settings)
    orchestrator = build_orchestrator(settings, supabase)
    scheduler = build_scheduler(settings, orchestrator)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            pass

    await orchestrator.recover_interrupted_jobs()
    scheduler.start()
    logger.info("Order sync worker running")

    try:
        await stop_event.wait()
    finally:
        logger.info("Shutting down order sync worker...")
        await scheduler.stop()
        await orchestrator.shutdown()


def main():
    configure_logging()
    settings = SyncSettings.from_env()
    asyncio.run(run_worker(settings))


if __name__ == "__main__":
    main()
