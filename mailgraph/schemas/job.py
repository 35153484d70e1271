"""Pydantic schemas for background jobs."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class JobRead(BaseModel):
    """Job response schema."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    account_id: UUID | None
    job_type: str
    payload: dict
    priority: int
    run_at: datetime
    status: str
    attempts: int
    max_attempts: int
    rate_limit_hits: int
    last_error: str | None
    dedupe_key: str | None
    lease_expires_at: datetime | None
    claimed_by: str | None
    cancel_requested: bool
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None


class JobListItem(BaseModel):
    """Job list item (minimal)."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    account_id: UUID | None
    job_type: str
    status: str
    priority: int
    run_at: datetime
    attempts: int
    last_error: str | None
    created_at: datetime
    completed_at: datetime | None


class JobRequeue(BaseModel):
    """Optional overrides when requeueing a dead job."""
    max_attempts: int | None = None
