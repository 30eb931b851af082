"""
Supabase access helpers.

IMPORTANT: The supabase-py client is SYNCHRONOUS (httpx.Client, not AsyncClient).
Every .execute() call blocks the thread. All Supabase calls made from the sync
engine MUST go through `db_call(fn)` which runs them in a thread pool via
asyncio.to_thread(), so one tenant's writes never stall another tenant's job.
"""

import asyncio
import logging
from typing import Optional

from supabase import Client, create_client

from sync_settings import SyncSettings

logger = logging.getLogger(__name__)

_supabase_client: Optional[Client] = None


async def db_call(fn):
    """Run a synchronous Supabase call in a thread pool to avoid blocking the event loop."""
    return await asyncio.to_thread(fn)


def get_supabase(settings: SyncSettings) -> Client:
    """Lazily create the shared Supabase client."""
    global _supabase_client
    if _supabase_client is None:
        if not settings.supabase_url or not settings.supabase_key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set")
        _supabase_client = create_client(settings.supabase_url, settings.supabase_key)
        logger.info("Supabase client initialised")
    return _supabase_client
