"""Pydantic models shared by the order sync engine."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from sync_status import SyncMode, SyncStage, SyncStatus


class StoreCredential(BaseModel):
    """Opaque per-tenant credential handed to us by the connection module."""
    shop_url: str
    access_token: str


class StoreConnection(BaseModel):
    tenant_id: str
    shop_url: str
    access_token: str
    status: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    initial_sync_completed: bool = False
    sync_completed_at: Optional[datetime] = None

    @property
    def credential(self) -> StoreCredential:
        return StoreCredential(shop_url=self.shop_url, access_token=self.access_token)


class SyncJob(BaseModel):
    """Snapshot of one tenant's sync job, as stored in sync_status and polled by the UI."""
    tenant_id: str
    mode: str = SyncMode.FULL
    date_lower_bound: Optional[datetime] = None
    status: str = SyncStatus.IDLE
    stage: str = SyncStage.INITIALIZING
    total_estimate: int = 0
    processed_count: int = 0
    current_page: int = 0
    # Resume cursor: pass index into MODE_PASSES[mode] and the next page URL within it
    current_pass: int = 0
    next_page_url: Optional[str] = None
    # End of the current page delay or 429 cooldown; a resumed job sleeps until then
    resume_at: Optional[datetime] = None
    message: str = ""
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return SyncStatus.is_active(self.status)

    def to_row(self) -> dict:
        """Serialize for a Supabase upsert (ISO strings, bare status values)."""
        return self.model_dump(mode="json")
