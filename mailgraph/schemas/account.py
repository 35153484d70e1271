"""Pydantic schemas for linked mail accounts and their sync status."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class SyncStateRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    mode: str
    history_id: int | None
    baseline_history_id: int | None
    initial_window_start: datetime | None
    initial_started_at: datetime | None
    backfill_before: datetime | None
    backfill_completed_at: datetime | None
    last_success_at: datetime | None
    last_error: str | None
    version: int


class AccountRead(BaseModel):
    """Linked account (credentials never leave the service)."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    provider: str
    email_address: str
    display_name: str | None
    is_enabled: bool
    sync_status: str
    sync_status_reason: str | None
    history_gap_detected: bool
    watch_expiration_at: datetime | None
    watch_last_error: str | None
    created_at: datetime


class AccountSyncStatusRead(BaseModel):
    """Account status, cursor state and in-flight job counts."""

    account: AccountRead
    sync_state: SyncStateRead | None
    active_jobs: dict[str, dict[str, int]]


class ScheduledSyncResponse(BaseModel):
    accounts_checked: int
    jobs_created: int
    duplicates_skipped: int
    watch_jobs_queued: int
