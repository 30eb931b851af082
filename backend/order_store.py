"""
Order persistence into Supabase.
Each order is upserted on its own keyed by (tenant_id, order_id), so a bad row
costs us that row only. Replays overwrite with the same values (last write wins).
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional

from db_utils import db_call
from order_normalizer import normalize_order

logger = logging.getLogger(__name__)

ORDERS_CONFLICT_KEY = "tenant_id,order_id"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PersistResult:
    stored: int = 0
    skipped: int = 0  # no usable order id
    failed: int = 0   # write rejected by the store


def _jsonable(value):
    if isinstance(value, Decimal):
        return str(value)
    return value


class OrderStore:
    """Writes normalized Shopify orders to the orders table."""

    def __init__(self, supabase, table_name: str = "shopify_orders",
                 clock: Callable[[], datetime] = utc_now):
        self.supabase = supabase
        self.table_name = table_name
        self.clock = clock

    def build_row(self, tenant_id: str, shop_url: str, order: dict, synced_at: str) -> dict:
        row = {key: _jsonable(value) for key, value in normalize_order(order).items()}
        row["tenant_id"] = tenant_id
        row["shop_url"] = shop_url
        row["synced_at"] = synced_at
        return row

    async def persist(self, tenant_id: str, shop_url: str, orders: list) -> PersistResult:
        """Upsert a page of raw orders. Never raises for a single bad record."""
        result = PersistResult()
        synced_at = self.clock().isoformat()

        for order in orders:
            row = self.build_row(tenant_id, shop_url, order, synced_at)
            if not row.get("order_id"):
                result.skipped += 1
                logger.warning(f"Skipping order without id (tenant={tenant_id})")
                continue
            try:
                await db_call(lambda r=row: self.supabase.table(self.table_name).upsert(
                    r,
                    on_conflict=ORDERS_CONFLICT_KEY,
                ).execute())
                result.stored += 1
            except Exception as e:
                result.failed += 1
                logger.error(
                    f"Error storing order {row['order_id']} (tenant={tenant_id}): {e}"
                )

        return result

    async def list_orders(self, tenant_id: str, start: Optional[datetime] = None,
                          end: Optional[datetime] = None) -> list[dict]:
        """Orders for a tenant, optionally bounded by created_at. For downstream readers."""
        def _query():
            query = self.supabase.table(self.table_name).select("*").eq("tenant_id", tenant_id)
            if start is not None:
                query = query.gte("created_at", start.isoformat())
            if end is not None:
                query = query.lte("created_at", end.isoformat())
            return query.order("created_at", desc=True).execute()

        result = await db_call(_query)
        return result.data or []
