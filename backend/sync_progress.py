"""
Per-tenant sync progress.

Snapshots live in two places: an in-memory dict for cheap polling and the
sync_status table so progress survives a restart. The table is the source of
truth after a cold start. Table writes are best-effort: a failed write is logged
and the sync carries on with the in-memory copy.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from db_utils import db_call
from sync_models import SyncJob
from sync_status import SyncStatus

logger = logging.getLogger(__name__)


class InvalidSyncTransition(Exception):
    """A status update tried to move the job backwards through the state machine."""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SyncProgressTracker:
    """Merges, persists and serves SyncJob snapshots keyed by tenant."""

    def __init__(self, supabase, table_name: str = "sync_status",
                 cache: Optional[dict] = None, clock: Callable[[], datetime] = utc_now):
        self.supabase = supabase
        self.table_name = table_name
        self._cache: dict[str, SyncJob] = cache if cache is not None else {}
        self.clock = clock

    async def reset(self, job: SyncJob) -> SyncJob:
        """
        Replace the tenant's snapshot with a freshly started job.

        The caller owns mutual exclusion (it holds the live task handles), so an
        active snapshot seen here belongs to a job that died with its process.
        """
        current = await self.get(job.tenant_id)
        if current and current.is_active:
            logger.warning(
                f"Superseding stale '{current.status}' sync snapshot for {job.tenant_id}"
            )
        job = job.model_copy(update={"updated_at": self.clock()})
        await self._store(job)
        return job

    async def update(self, tenant_id: str, **fields) -> SyncJob:
        """Merge fields into the current snapshot and persist it."""
        current = await self.get(tenant_id) or SyncJob(tenant_id=tenant_id)

        new_status = fields.get("status")
        if new_status is not None:
            if not SyncStatus.is_valid(new_status):
                raise InvalidSyncTransition(f"Unknown sync status '{new_status}'")
            if not SyncStatus.can_transition(current.status, new_status):
                raise InvalidSyncTransition(
                    f"{tenant_id}: '{current.status}' -> '{new_status}' is not allowed"
                )

        if "processed_count" in fields and fields["processed_count"] < current.processed_count:
            raise InvalidSyncTransition(
                f"{tenant_id}: processed_count cannot go from "
                f"{current.processed_count} to {fields['processed_count']}"
            )

        fields["updated_at"] = self.clock()
        job = current.model_copy(update=fields)
        await self._store(job)
        return job

    async def _store(self, job: SyncJob):
        self._cache[job.tenant_id] = job
        try:
            await db_call(lambda: self.supabase.table(self.table_name).upsert(
                job.to_row(),
                on_conflict="tenant_id",
            ).execute())
        except Exception as e:
            logger.warning(f"Failed to persist sync status for {job.tenant_id}: {e}")

    async def get(self, tenant_id: str) -> Optional[SyncJob]:
        """In-memory first, then the sync_status table."""
        job = self._cache.get(tenant_id)
        if job is not None:
            return job

        try:
            result = await db_call(lambda: self.supabase.table(self.table_name).select(
                "*"
            ).eq("tenant_id", tenant_id).execute())
        except Exception as e:
            logger.warning(f"Failed to load sync status for {tenant_id}: {e}")
            return None

        if not result.data:
            return None
        job = SyncJob.model_validate(result.data[0])
        self._cache[tenant_id] = job
        return job

    async def list_active(self) -> list[SyncJob]:
        """Durable snapshots still in an active status (used for restart recovery)."""
        try:
            result = await db_call(lambda: self.supabase.table(self.table_name).select(
                "*"
            ).in_("status", sorted(SyncStatus.ACTIVE)).execute())
        except Exception as e:
            logger.warning(f"Failed to list active sync jobs: {e}")
            return []
        return [SyncJob.model_validate(row) for row in (result.data or [])]
