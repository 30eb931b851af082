"""
Read/write access to shopify_connections for the sync engine.
The connection row is owned by the onboarding/OAuth flow; we only read the
credential and stamp sync completion on it.
"""

import logging
from datetime import datetime
from typing import Optional

from db_utils import db_call
from sync_models import StoreConnection
from sync_status import SyncMode

logger = logging.getLogger(__name__)

ACTIVE_CONNECTION_STATUS = "active"


class ConnectionStore:

    def __init__(self, supabase, table_name: str = "shopify_connections"):
        self.supabase = supabase
        self.table_name = table_name

    async def get(self, tenant_id: str) -> Optional[StoreConnection]:
        try:
            result = await db_call(lambda: self.supabase.table(self.table_name).select(
                "*"
            ).eq("tenant_id", tenant_id).execute())
        except Exception as e:
            logger.error(f"Failed to load Shopify connection for {tenant_id}: {e}")
            return None

        if not result.data:
            return None
        row = result.data[0]
        if not row.get("access_token") or not row.get("shop_url"):
            logger.warning(f"Shopify connection for {tenant_id} has no credential")
            return None
        return StoreConnection.model_validate(row)

    async def list_active(self) -> list[StoreConnection]:
        """All connections with status='active' that carry a usable credential."""
        try:
            result = await db_call(lambda: self.supabase.table(self.table_name).select(
                "*"
            ).eq("status", ACTIVE_CONNECTION_STATUS).execute())
        except Exception as e:
            logger.error(f"Get active Shopify connections error: {e}")
            return []

        connections = []
        for row in result.data or []:
            if row.get("access_token") and row.get("shop_url"):
                connections.append(StoreConnection.model_validate(row))
        return connections

    async def mark_synced(self, tenant_id: str, mode: str, completed_at: datetime):
        """
        Stamp a finished job on the connection.

        last_sync_at is always moved forward. initial_sync_completed is only ever
        set (never cleared) and only by a full backfill.
        """
        timestamp = completed_at.isoformat()
        data = {"last_sync_at": timestamp}
        if mode == SyncMode.FULL:
            data["initial_sync_completed"] = True
            data["sync_completed_at"] = timestamp

        try:
            await db_call(lambda: self.supabase.table(self.table_name).update(
                data
            ).eq("tenant_id", tenant_id).execute())
            logger.info(f"Connection updated: {mode} sync completed at {timestamp} (tenant={tenant_id})")
        except Exception as e:
            logger.error(f"Error marking connection as synced for {tenant_id}: {e}")

    async def is_initial_sync_completed(self, tenant_id: str) -> bool:
        connection = await self.get(tenant_id)
        return bool(connection and connection.initial_sync_completed)
